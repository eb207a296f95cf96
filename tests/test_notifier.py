from concurrent.futures import ThreadPoolExecutor

from paydesk.services import notifier as n


class _Resp:
    def __init__(self, ok=True, status_code=200, text=""):
        self.ok = ok
        self.status_code = status_code
        self.text = text


class _FakeHttp:
    def __init__(self, resp):
        self.resp = resp
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        return self.resp


class _Sink:
    configured = True

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, notification):
        if self.fail:
            raise ConnectionError("unreachable")
        self.sent.append(notification)
        return True


def test_format_amount():
    assert n.format_amount(123400, "cad") == "$1,234.00 CAD"
    assert n.format_amount(None, "usd") == "$0.00 USD"

def test_message_builders():
    paid = n.payment_received(50000, "CAD", "Logo Project", project_id=7, dashboard_url="https://dash.example/")
    assert paid.title == "Payment Received"
    assert paid.message == "$500.00 CAD received for Logo Project"
    assert paid.url == "https://dash.example/projects/7"

    partial = n.refund_processed(2500, "CAD", "Logo Project", is_partial=True, original_minor=50000, charge_id="ch_1")
    assert partial.title == "Partial Refund"
    assert "$25.00 CAD of $500.00 CAD refunded" in partial.message
    assert "Charge: ch_1" in partial.message

    dispute = n.dispute_alert(50000, "CAD", "Unknown Project", dispute_id="dp_9", reason="fraudulent")
    assert dispute.priority == n.PRIORITY_HIGH
    assert dispute.sound == "siren"
    assert "Reason: fraudulent" in dispute.message

    lead = n.new_lead("Jane", service="web", lead_id=3, dashboard_url="https://dash.example")
    assert lead.url == "https://dash.example/leads/3"

def test_pushover_sink_posts_and_reports_errors():
    http = _FakeHttp(_Resp())
    sink = n.PushoverSink("tok", "usr", timeout=2.5, http=http)
    assert sink.send(n.dispute_alert(100, "CAD", "X"))
    [call] = http.calls
    assert call["url"] == n.PushoverSink.API_URL
    assert call["timeout"] == 2.5
    assert call["json"]["token"] == "tok"
    assert call["json"]["priority"] == 1

    failing = n.PushoverSink("tok", "usr", http=_FakeHttp(_Resp(ok=False, status_code=400, text="invalid token")))
    assert failing.send(n.new_lead("Jane")) is False

def test_unconfigured_sink_is_skipped():
    http = _FakeHttp(_Resp())
    notifier = n.Notifier(n.PushoverSink(None, None, http=http))
    assert notifier.notify(n.new_lead("Jane")) is None
    assert http.calls == []

def test_delivery_failure_is_contained():
    notifier = n.Notifier(_Sink(fail=True))
    # no exception escapes
    notifier.notify(n.new_lead("Jane"))
    assert notifier._deliver(n.new_lead("Jane")) is False

def test_background_delivery():
    sink = _Sink()
    with ThreadPoolExecutor(max_workers=1) as pool:
        notifier = n.Notifier(sink, executor=pool)
        future = notifier.notify(n.new_lead("Jane"))
        assert future.result(timeout=5) is True
    assert len(sink.sent) == 1

    # after shutdown the alert is dropped, not raised
    assert notifier.notify(n.new_lead("Late")) is None
