import pytest

from paydesk.extensions import db
from paydesk.models import Invoice, Project
from paydesk.services import billing


class _FakeSession:
    def __init__(self, sid):
        self.id = sid
        self.url = f"https://checkout.stripe.example/{sid}"


class _FakeSessions:
    def __init__(self, calls):
        self.calls = calls

    def create(self, params=None, options=None):
        self.calls.append({"params": params, "options": options})
        return _FakeSession(f"cs_test_{len(self.calls)}")


@pytest.fixture()
def stripe_calls(app, monkeypatch):
    calls = []

    class _FakeClient:
        def __init__(self, key):
            assert key == "sk_test_x"
            self.checkout = type("Checkout", (), {"sessions": _FakeSessions(calls)})()

    monkeypatch.setitem(app.config, "STRIPE_SECRET_KEY", "sk_test_x")
    monkeypatch.setattr(billing, "StripeClient", _FakeClient)
    return calls


def _seed(app):
    with app.app_context():
        p = Project(public_id="prj_chk", name="Brand Sprint", currency="CAD")
        db.session.add(p)
        db.session.flush()
        db.session.add(Invoice(public_id="inv_chk", invoice_number="INV-0100", amount_due=75000,
                               description="Deposit", project_id=p.id))
        db.session.commit()


def test_checkout_embeds_correlation_metadata(app, stripe_calls):
    _seed(app)
    with app.app_context():
        invoice = db.session.query(Invoice).filter_by(public_id="inv_chk").one()
        session = billing.create_checkout_session(invoice=invoice)

    assert session == {"id": "cs_test_1", "url": "https://checkout.stripe.example/cs_test_1"}
    [call] = stripe_calls
    params = call["params"]
    expected_meta = {"project_public_id": "prj_chk", "invoice_id": "inv_chk", "environment": "development"}
    assert params["metadata"] == expected_meta
    assert params["payment_intent_data"]["metadata"] == expected_meta
    assert params["mode"] == "payment"
    item = params["line_items"][0]["price_data"]
    assert item["unit_amount"] == 75000
    assert item["currency"] == "cad"
    assert item["product_data"]["name"] == "Invoice INV-0100 - Deposit"
    assert params["success_url"].startswith("http://example.test/")
    assert call["options"]["idempotency_key"].startswith("checkout:")

def test_idempotency_key_is_parameter_aware(app, stripe_calls):
    _seed(app)
    with app.app_context():
        project = db.session.query(Project).filter_by(public_id="prj_chk").one()
        billing.create_checkout_session(project=project, amount_minor=10000)
        billing.create_checkout_session(project=project, amount_minor=10000)
        billing.create_checkout_session(project=project, amount_minor=20000)

    keys = [c["options"]["idempotency_key"] for c in stripe_calls]
    assert keys[0] == keys[1]
    assert keys[0] != keys[2]
    assert "invoice_id" not in stripe_calls[0]["params"]["metadata"]

def test_checkout_requires_a_target_and_amount(app, stripe_calls):
    _seed(app)
    with app.app_context():
        with pytest.raises(ValueError):
            billing.create_checkout_session()
        project = db.session.query(Project).filter_by(public_id="prj_chk").one()
        with pytest.raises(ValueError):
            billing.create_checkout_session(project=project)
    assert stripe_calls == []

def test_checkout_without_stripe_key(app, monkeypatch):
    _seed(app)
    monkeypatch.setitem(app.config, "STRIPE_SECRET_KEY", None)
    with app.app_context():
        project = db.session.query(Project).filter_by(public_id="prj_chk").one()
        with pytest.raises(RuntimeError):
            billing.create_checkout_session(project=project, amount_minor=100)
