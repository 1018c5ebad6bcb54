import pytest
from fastapi.testclient import TestClient

from activity_sync.db.models import Activity, OAuthCredential
from activity_sync.main import app
from activity_sync.webhooks import garmin as garmin_webhook

GARMIN_USER = "garmin-user-1"


@pytest.fixture
def client(session_factory):
    return TestClient(app)


@pytest.fixture
def garmin_credential(athlete, make_credential):
    return make_credential(athlete, provider="garmin", provider_user_id=GARMIN_USER)


def _garmin_activity(activity_id: int = 555, **overrides) -> dict:
    activity = {
        "userId": GARMIN_USER,
        "summaryId": f"{activity_id}-detail",
        "activityId": activity_id,
        "activityName": "Evening Ride",
        "activityType": "CYCLING",
        "startTimeInSeconds": 1717264800,
        "durationInSeconds": 5400,
        "distanceInMeters": 42000.0,
        "averageHeartRateInBeatsPerMinute": 138,
    }
    activity.update(overrides)
    return activity


def test_push_notification_stores_activity(client, db_session, garmin_credential):
    resp = client.post("/webhooks/garmin/activities", json={"activities": [_garmin_activity()]})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "processed": 1}
    stored = db_session.get(Activity, "garmin-555")
    assert stored.athlete_id == garmin_credential.athlete_id
    assert stored.name == "Evening Ride"
    assert stored.average_heartrate == 138.0


def test_ping_notification_fetches_callback(client, db_session, garmin_credential, provider_api):
    callback_url = "https://apis.garmin.com/wellness-api/rest/activities?uploadStartTimeInSeconds=1&token=x"
    provider_api.add(callback_url, [_garmin_activity(777)])

    resp = client.post(
        "/webhooks/garmin/activities",
        json={"activities": [{"userId": GARMIN_USER, "callbackURL": callback_url}]},
    )

    assert resp.json() == {"success": True, "processed": 1}
    assert provider_api.calls[0]["headers"]["Authorization"] == "Bearer access-token"
    assert db_session.get(Activity, "garmin-777") is not None


def test_notification_for_unknown_user_is_ignored(client, db_session):
    resp = client.post("/webhooks/garmin/activities", json={"activities": [_garmin_activity()]})

    assert resp.json() == {"success": True, "ignored": 1}
    assert db_session.get(Activity, "garmin-555") is None


def test_bad_item_does_not_block_the_rest(client, db_session, garmin_credential):
    broken = _garmin_activity(556)
    del broken["startTimeInSeconds"]

    resp = client.post(
        "/webhooks/garmin/activities",
        json={"activities": [broken, _garmin_activity(557)], "manuallyUpdatedActivities": [_garmin_activity(558)]},
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "failed": 1, "processed": 2}
    assert db_session.get(Activity, "garmin-557") is not None
    assert db_session.get(Activity, "garmin-558") is not None


def test_deregistration_disconnects_user(client, db_session, garmin_credential):
    resp = client.post("/webhooks/garmin/activities", json={"deregistrations": [{"userId": GARMIN_USER}]})

    assert resp.json() == {"success": True, "deregistered": 1}
    db_session.expire_all()
    credential = db_session.get(OAuthCredential, garmin_credential.id)
    assert credential.connected is False
    assert credential.access_token is None


def test_unparseable_body_is_acknowledged_with_warning(client):
    resp = client.post("/webhooks/garmin/activities", content=b"[1, 2", headers={"Content-Type": "application/json"})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "warning": "Error processing"}


def test_disabled_integration_ignores_notifications(client, monkeypatch):
    monkeypatch.setattr(garmin_webhook.settings, "garmin_enabled", False)

    resp = client.post("/webhooks/garmin/activities", json={"activities": [_garmin_activity()]})

    assert resp.json() == {"success": True, "status": "ignored"}
