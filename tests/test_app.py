import pytest

from paydesk import create_app


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}

def test_not_found_is_json(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "not_found", "code": 404}

def test_wrong_method_is_json(client):
    resp = client.get("/webhooks/stripe")
    assert resp.status_code == 405
    assert resp.get_json()["error"] == "method_not_allowed"

def test_staging_requires_env(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_app()
