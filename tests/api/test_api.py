from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from activity_sync.config.settings import settings
from activity_sync.core.encryption import decrypt_token
from activity_sync.db.models import Athlete, OAuthCredential, OAuthState
from activity_sync.ingestion.credentials import create_oauth_state
from activity_sync.integrations.garmin import oauth as garmin_oauth
from activity_sync.integrations.strava import oauth as strava_oauth
from activity_sync.main import app
from activity_sync.utils.timezone import utcnow


@pytest.fixture
def client(session_factory):
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_and_read_sync_job(client, athlete):
    resp = client.post(
        "/sync/jobs",
        json={"athlete_id": athlete.id, "sync_type": "full", "metadata": {"max_activities": 20}},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"

    status_resp = client.get(f"/sync/jobs/{body['job_id']}")
    assert status_resp.status_code == 200
    job = status_resp.json()
    assert job["athlete_id"] == athlete.id
    assert job["provider"] == "strava"
    assert job["total_activities"] == 0
    assert job["error_message"] is None


def test_create_sync_job_for_unknown_athlete(client):
    resp = client.post("/sync/jobs", json={"athlete_id": "missing", "sync_type": "full"})

    assert resp.status_code == 404


def test_create_sync_job_with_inverted_window(client, athlete):
    resp = client.post(
        "/sync/jobs",
        json={
            "athlete_id": athlete.id,
            "sync_type": "full",
            "after": "2024-02-01T00:00:00Z",
            "before": "2024-01-01T00:00:00Z",
        },
    )

    assert resp.status_code == 400


def test_create_sync_job_with_unknown_type(client, athlete):
    resp = client.post("/sync/jobs", json={"athlete_id": athlete.id, "sync_type": "everything"})

    assert resp.status_code == 400


def test_unknown_job_is_404(client):
    assert client.get("/sync/jobs/does-not-exist").status_code == 404


def test_job_stats(client, athlete):
    client.post("/sync/jobs", json={"athlete_id": athlete.id, "sync_type": "incremental"})

    resp = client.get("/sync/jobs/stats")

    assert resp.status_code == 200
    assert resp.json() == {"pending": 1, "in_progress": 0, "completed": 0, "failed": 0}


def _start(client, provider, athlete_id):
    resp = client.get(f"/auth/{provider}/start", params={"athlete_id": athlete_id})
    assert resp.status_code == 200
    return resp.json()


def test_oauth_start_builds_strava_authorization_url(client, db_session, athlete):
    body = _start(client, "strava", athlete.id)

    url = urlsplit(body["authorization_url"])
    query = parse_qs(url.query)
    assert f"{url.scheme}://{url.netloc}{url.path}" == "https://www.strava.com/oauth/authorize"
    assert query["state"] == [body["state"]]
    assert query["client_id"] == ["test-client-id"]
    assert query["scope"] == ["read,activity:read_all"]
    assert "code_challenge" not in query
    pending = db_session.get(OAuthState, body["state"])
    assert pending.athlete_id == athlete.id
    assert pending.code_verifier is None


def test_oauth_start_for_unknown_athlete(client):
    assert client.get("/auth/strava/start", params={"athlete_id": "missing"}).status_code == 404


def test_oauth_start_when_garmin_disabled(client, athlete, monkeypatch):
    monkeypatch.setattr(settings, "garmin_enabled", False)

    assert client.get("/auth/garmin/start", params={"athlete_id": athlete.id}).status_code == 503


def test_oauth_callback_connects_strava(client, db_session, athlete, monkeypatch):
    def _exchange(**kwargs):
        assert kwargs["code"] == "auth-code"
        return {
            "access_token": "granted-access",
            "refresh_token": "granted-refresh",
            "expires_at": 1893456000,
            "scope": "read,activity:read_all",
            "athlete": {"id": 4242, "firstname": "Sam", "country": "Norway"},
        }

    monkeypatch.setattr(strava_oauth, "exchange_code_for_token", _exchange)
    state = _start(client, "strava", athlete.id)["state"]

    resp = client.get("/auth/strava/callback", params={"code": "auth-code", "state": state})

    assert resp.status_code == 200
    assert resp.json()["provider_user_id"] == "4242"
    db_session.expire_all()
    credential = db_session.query(OAuthCredential).filter_by(athlete_id=athlete.id, provider="strava").one()
    assert credential.connected is True
    assert decrypt_token(credential.access_token) == "granted-access"
    assert db_session.get(Athlete, athlete.id).first_name == "Sam"
    assert db_session.get(OAuthState, state) is None


def test_garmin_handshake_uses_stored_pkce_verifier(client, db_session, athlete, provider_api, monkeypatch):
    exchanged = []

    def _exchange(**kwargs):
        exchanged.append(kwargs)
        return {"access_token": "garmin-access", "refresh_token": "garmin-refresh", "expires_in": 86400}

    monkeypatch.setattr(garmin_oauth, "exchange_code_for_token", _exchange)
    provider_api.add("https://apis.garmin.com/wellness-api/rest/user/id", {"userId": "garmin-user-9"})

    body = _start(client, "garmin", athlete.id)
    query = parse_qs(urlsplit(body["authorization_url"]).query)
    assert query["code_challenge_method"] == ["S256"]
    verifier = db_session.get(OAuthState, body["state"]).code_verifier
    assert 43 <= len(verifier) <= 128
    assert query["code_challenge"] == [garmin_oauth.generate_code_challenge(verifier)]

    resp = client.get("/auth/garmin/callback", params={"code": "garmin-code", "state": body["state"]})

    assert resp.status_code == 200
    assert resp.json() == {
        "connected": True,
        "provider": "garmin",
        "athlete_id": athlete.id,
        "provider_user_id": "garmin-user-9",
    }
    assert exchanged[0]["code"] == "garmin-code"
    assert exchanged[0]["code_verifier"] == verifier


def test_oauth_callback_rejects_unknown_state(client, athlete, monkeypatch):
    monkeypatch.setattr(strava_oauth, "exchange_code_for_token", pytest.fail)

    resp = client.get("/auth/strava/callback", params={"code": "auth-code", "state": athlete.id})

    assert resp.status_code == 400


def test_oauth_state_is_single_use(client, athlete, monkeypatch):
    monkeypatch.setattr(
        strava_oauth,
        "exchange_code_for_token",
        lambda **kwargs: {"access_token": "a", "refresh_token": "r", "expires_in": 3600, "athlete": {"id": 7}},
    )
    state = _start(client, "strava", athlete.id)["state"]

    first = client.get("/auth/strava/callback", params={"code": "auth-code", "state": state})
    second = client.get("/auth/strava/callback", params={"code": "auth-code", "state": state})

    assert first.status_code == 200
    assert second.status_code == 400


def test_oauth_callback_rejects_expired_state(client, db_session, athlete, monkeypatch):
    monkeypatch.setattr(strava_oauth, "exchange_code_for_token", pytest.fail)
    pending = create_oauth_state(
        db_session, athlete.id, "strava", now=utcnow() - timedelta(minutes=settings.oauth_state_ttl_minutes + 1)
    )
    db_session.commit()

    resp = client.get("/auth/strava/callback", params={"code": "auth-code", "state": pending.state})

    assert resp.status_code == 400


def test_oauth_callback_rejects_state_issued_for_other_provider(client, athlete, monkeypatch):
    monkeypatch.setattr(garmin_oauth, "exchange_code_for_token", pytest.fail)
    state = _start(client, "strava", athlete.id)["state"]

    resp = client.get("/auth/garmin/callback", params={"code": "garmin-code", "state": state})

    assert resp.status_code == 400


def test_oauth_callback_with_provider_error(client, db_session, athlete):
    state = _start(client, "strava", athlete.id)["state"]

    resp = client.get("/auth/strava/callback", params={"error": "access_denied", "state": state})

    assert resp.status_code == 400
    assert db_session.get(OAuthState, state) is None


def test_oauth_callback_for_unknown_provider(client):
    assert client.get("/auth/polar/callback", params={"code": "x", "state": "y"}).status_code == 404


def test_disconnect_revokes_and_clears_tokens(client, db_session, athlete, make_credential, monkeypatch):
    credential = make_credential(athlete)
    revoked = []
    monkeypatch.setattr(strava_oauth, "deauthorize", revoked.append)

    resp = client.post("/auth/strava/disconnect", json={"athlete_id": athlete.id})

    assert resp.status_code == 200
    assert revoked == ["access-token"]
    db_session.expire_all()
    credential = db_session.get(OAuthCredential, credential.id)
    assert credential.connected is False
    assert credential.access_token is None


def test_disconnect_without_connection_is_404(client, athlete):
    assert client.post("/auth/strava/disconnect", json={"athlete_id": athlete.id}).status_code == 404
