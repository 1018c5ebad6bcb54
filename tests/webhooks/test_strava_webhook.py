from contextlib import contextmanager
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from activity_sync.core.encryption import decrypt_token
from activity_sync.db.models import Activity, OAuthCredential
from activity_sync.integrations.strava import oauth as strava_oauth
from activity_sync.integrations.strava.client import STRAVA_BASE_URL
from activity_sync.main import app
from activity_sync.utils.deadline import Deadline
from activity_sync.webhooks import strava as strava_webhook

ACTIVITY_ID = 987654321
OWNER_ID = 12345


@pytest.fixture
def client(session_factory):
    return TestClient(app)


def _event(**overrides) -> dict:
    event = {
        "aspect_type": "create",
        "object_type": "activity",
        "object_id": ACTIVITY_ID,
        "owner_id": OWNER_ID,
        "subscription_id": 1,
        "event_time": 1717236000,
        "updates": {},
    }
    event.update(overrides)
    return event


def _strava_activity() -> dict:
    return {
        "id": ACTIVITY_ID,
        "name": "Lunch Run",
        "type": "Run",
        "sport_type": "Run",
        "start_date": "2024-06-01T12:00:00Z",
        "distance": 8000.0,
        "elapsed_time": 2700,
    }


def test_verification_with_wrong_token_is_forbidden_without_db_access(monkeypatch):
    @contextmanager
    def _no_db():
        raise AssertionError("verification must not touch the database")
        yield

    monkeypatch.setattr(strava_webhook, "get_session", _no_db)
    client = TestClient(app)

    resp = client.get(
        "/webhooks/strava",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "abc"},
    )

    assert resp.status_code == 403


def test_verification_echoes_challenge():
    client = TestClient(app)

    resp = client.get(
        "/webhooks/strava",
        params={"hub.mode": "subscribe", "hub.verify_token": "test-verify-token", "hub.challenge": "abc123"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"hub.challenge": "abc123"}


def test_verification_rejects_wrong_mode():
    resp = TestClient(app).get(
        "/webhooks/strava",
        params={"hub.mode": "unsubscribe", "hub.verify_token": "test-verify-token", "hub.challenge": "abc"},
    )

    assert resp.status_code == 403


def test_create_event_stores_activity_and_refreshes_profile(client, db_session, athlete, make_credential, provider_api):
    make_credential(athlete, provider_user_id=str(OWNER_ID))
    provider_api.add(f"{STRAVA_BASE_URL}/activities/{ACTIVITY_ID}", _strava_activity())
    provider_api.add(f"{STRAVA_BASE_URL}/athlete", {"id": OWNER_ID, "firstname": "Jo", "city": "Boulder"})

    resp = client.post("/webhooks/strava", json=_event())

    assert resp.status_code == 200
    assert resp.text == "EVENT_RECEIVED"
    db_session.expire_all()
    stored = db_session.get(Activity, f"strava-{ACTIVITY_ID}")
    assert stored is not None
    assert stored.athlete_id == athlete.id
    assert stored.name == "Lunch Run"
    assert athlete.first_name == "Jo"
    assert athlete.city == "Boulder"


def test_create_event_for_unknown_owner_is_ignored(client, provider_api):
    resp = client.post("/webhooks/strava", json=_event(owner_id=999))

    assert resp.status_code == 200
    assert resp.text == "IGNORED_DISCONNECTED_USER"
    assert provider_api.calls == []


def test_create_event_for_disconnected_owner_is_ignored(client, athlete, make_credential, provider_api):
    make_credential(athlete, provider_user_id=str(OWNER_ID), connected=False)

    resp = client.post("/webhooks/strava", json=_event())

    assert resp.text == "IGNORED_DISCONNECTED_USER"
    assert provider_api.calls == []


@pytest.mark.parametrize("missing", ["object_id", "owner_id"])
def test_create_event_without_ids_is_rejected(client, missing):
    event = _event()
    del event[missing]

    resp = client.post("/webhooks/strava", json=event)

    assert resp.status_code == 400


def test_malformed_body_is_rejected(client):
    resp = client.post("/webhooks/strava", content=b"not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400


def test_provider_failure_is_acknowledged(client, athlete, make_credential, provider_api):
    make_credential(athlete, provider_user_id=str(OWNER_ID))
    provider_api.add(f"{STRAVA_BASE_URL}/activities/{ACTIVITY_ID}", {"message": "error"}, status_code=500)

    resp = client.post("/webhooks/strava", json=_event())

    assert resp.status_code == 200
    assert resp.text == "ERROR_LOGGED"


def test_deauthorization_clears_credentials(client, db_session, athlete, make_credential):
    credential = make_credential(athlete, provider_user_id=str(OWNER_ID))

    resp = client.post(
        "/webhooks/strava",
        json=_event(aspect_type="update", object_type="athlete", object_id=OWNER_ID, updates={"authorized": "false"}),
    )

    assert resp.text == "DEAUTH_PROCESSED"
    db_session.expire_all()
    credential = db_session.get(OAuthCredential, credential.id)
    assert credential.connected is False
    assert credential.access_token is None
    assert credential.refresh_token is None


def test_deauthorization_failure_is_acknowledged(client, monkeypatch):
    @contextmanager
    def _broken():
        raise RuntimeError("database down")
        yield

    monkeypatch.setattr(strava_webhook, "get_session", _broken)

    resp = client.post(
        "/webhooks/strava",
        json=_event(aspect_type="update", object_type="athlete", object_id=OWNER_ID, updates={"authorized": "false"}),
    )

    assert resp.status_code == 200
    assert resp.text == "DEAUTH_FAILED"


def test_update_event_refetches_known_activity(client, db_session, athlete, make_credential, provider_api):
    make_credential(athlete, provider_user_id=str(OWNER_ID))
    url = f"{STRAVA_BASE_URL}/activities/{ACTIVITY_ID}"
    provider_api.add(url, _strava_activity())
    provider_api.add(f"{STRAVA_BASE_URL}/athlete", {"id": OWNER_ID})
    client.post("/webhooks/strava", json=_event())
    provider_api.add(url, {**_strava_activity(), "name": "Renamed Run"})

    resp = client.post("/webhooks/strava", json=_event(aspect_type="update", updates={"title": "Renamed Run"}))

    assert resp.text == "UPDATE_ACKNOWLEDGED"
    db_session.expire_all()
    assert db_session.get(Activity, f"strava-{ACTIVITY_ID}").name == "Renamed Run"


def test_update_for_unknown_activity_is_acknowledged_without_fetch(client, athlete, make_credential, provider_api):
    make_credential(athlete, provider_user_id=str(OWNER_ID))

    resp = client.post("/webhooks/strava", json=_event(aspect_type="update", updates={"title": "x"}))

    assert resp.text == "UPDATE_ACKNOWLEDGED"
    assert provider_api.calls == []


def test_delete_event_is_acknowledged(client):
    resp = client.post("/webhooks/strava", json=_event(aspect_type="delete"))

    assert resp.text == "DELETE_ACKNOWLEDGED"


def test_credential_tokens_survive_create_event(client, db_session, athlete, make_credential, provider_api):
    credential = make_credential(athlete, provider_user_id=str(OWNER_ID))
    provider_api.add(f"{STRAVA_BASE_URL}/activities/{ACTIVITY_ID}", _strava_activity())
    provider_api.add(f"{STRAVA_BASE_URL}/athlete", {"id": OWNER_ID})

    client.post("/webhooks/strava", json=_event())

    db_session.expire_all()
    assert decrypt_token(db_session.get(OAuthCredential, credential.id).access_token) == "access-token"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_slow_fetch_skips_profile_refresh_and_notification(client, db_session, athlete, make_credential, provider_api, monkeypatch):
    make_credential(athlete, provider_user_id=str(OWNER_ID))
    athlete.fcm_token = "device-token"
    db_session.commit()
    clock = FakeClock()
    monkeypatch.setattr(strava_webhook, "webhook_deadline", lambda: Deadline(1.8, clock=clock))
    monkeypatch.setattr(strava_webhook.settings, "fcm_server_key", "server-key")
    pushes = []
    monkeypatch.setattr(httpx, "post", lambda *args, **kwargs: pushes.append(kwargs))

    def _slow_activity(params):
        clock.now += 2.5
        return 200, _strava_activity()

    provider_api.add_handler(f"{STRAVA_BASE_URL}/activities/{ACTIVITY_ID}", _slow_activity)
    provider_api.add(f"{STRAVA_BASE_URL}/athlete", {"id": OWNER_ID, "firstname": "Jo"})

    resp = client.post("/webhooks/strava", json=_event())

    assert resp.text == "EVENT_RECEIVED"
    assert provider_api.calls_to(f"{STRAVA_BASE_URL}/athlete") == []
    assert pushes == []
    db_session.expire_all()
    assert db_session.get(Activity, f"strava-{ACTIVITY_ID}") is not None
    assert athlete.first_name == "Jamie"


def test_webhook_calls_use_budget_capped_timeouts(client, athlete, make_credential, provider_api, monkeypatch):
    make_credential(athlete, provider_user_id=str(OWNER_ID), expires_in=timedelta(hours=-1))
    refresh_timeouts = []

    def _refresh(**kwargs):
        refresh_timeouts.append(kwargs["timeout"])
        return {"access_token": "fresh-access", "refresh_token": "fresh-refresh", "expires_in": 21600}

    monkeypatch.setattr(strava_oauth, "refresh_access_token", _refresh)
    provider_api.add(f"{STRAVA_BASE_URL}/activities/{ACTIVITY_ID}", _strava_activity())
    provider_api.add(f"{STRAVA_BASE_URL}/athlete", {"id": OWNER_ID})

    resp = client.post("/webhooks/strava", json=_event())

    assert resp.text == "EVENT_RECEIVED"
    budget = strava_webhook.settings.webhook_response_budget_seconds
    per_request = strava_webhook.settings.webhook_http_timeout_seconds
    assert len(refresh_timeouts) == 1
    assert 0 < refresh_timeouts[0] <= min(budget, per_request)
    assert provider_api.calls
    assert all(0 < call["timeout"] <= min(budget, per_request) for call in provider_api.calls)
