"""Shared fixtures.

Environment variables are set before the package is imported so settings
validation passes and no test talks to a real database, broker or provider.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRAVA_CLIENT_ID"] = "test-client-id"
os.environ["STRAVA_CLIENT_SECRET"] = "test-client-secret"
os.environ["STRAVA_WEBHOOK_VERIFY_TOKEN"] = "test-verify-token"
os.environ["GARMIN_ENABLED"] = "true"
os.environ["GARMIN_CLIENT_ID"] = "test-garmin-id"
os.environ["GARMIN_CLIENT_SECRET"] = "test-garmin-secret"
os.environ["ENCRYPTION_KEY"] = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PROVIDER_PAGE_DELAY_SECONDS"] = "0"
os.environ["FCM_SERVER_KEY"] = ""

from collections.abc import Callable
from datetime import timedelta
from typing import Any

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from activity_sync.core.encryption import encrypt_token
from activity_sync.db import session as db_session_module
from activity_sync.db.models import Athlete, Base, OAuthCredential
from activity_sync.utils.timezone import utcnow


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine, monkeypatch):
    """Session factory bound to the in-memory database.

    Also installed as the application's session factory, so get_session()
    (Celery tasks, webhooks, API routes) uses the same database.
    """
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)
    monkeypatch.setattr(db_session_module, "_SessionLocal", factory)
    return factory


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def athlete(db_session) -> Athlete:
    athlete = Athlete(first_name="Jamie", last_name="Rivera")
    db_session.add(athlete)
    db_session.commit()
    return athlete


@pytest.fixture
def make_credential(db_session) -> Callable[..., OAuthCredential]:
    def _make(
        athlete: Athlete,
        *,
        provider: str = "strava",
        provider_user_id: str = "12345",
        access_token: str = "access-token",
        refresh_token: str = "refresh-token",
        expires_in: timedelta = timedelta(hours=6),
        connected: bool = True,
    ) -> OAuthCredential:
        credential = OAuthCredential(
            athlete_id=athlete.id,
            provider=provider,
            provider_user_id=provider_user_id,
            access_token=encrypt_token(access_token),
            refresh_token=encrypt_token(refresh_token),
            expires_at=utcnow() + expires_in,
            connected=connected,
            connected_at=utcnow(),
        )
        db_session.add(credential)
        db_session.commit()
        return credential

    return _make


class FakeProviderAPI:
    """Stand-in for provider REST endpoints behind httpx.get.

    Routes map a URL to (status_code, payload) or to a callable taking the
    query params and returning (status_code, payload). Unknown URLs get a 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Any] = {}
        self.calls: list[dict[str, Any]] = []

    def add(self, url: str, payload: Any = None, *, status_code: int = 200) -> None:
        self.routes[url] = (status_code, payload)

    def add_handler(self, url: str, handler: Callable[[dict[str, Any]], tuple[int, Any]]) -> None:
        self.routes[url] = handler

    def get(self, url, headers=None, params=None, timeout=None):
        params = dict(params or {})
        self.calls.append({"url": url, "headers": dict(headers or {}), "params": params, "timeout": timeout})
        route = self.routes.get(url)
        if route is None:
            status_code, payload = 404, {"message": "Record Not Found"}
        elif callable(route):
            status_code, payload = route(params)
        else:
            status_code, payload = route
        return httpx.Response(status_code, json=payload, request=httpx.Request("GET", url))

    def calls_to(self, url: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["url"] == url]


@pytest.fixture
def provider_api(monkeypatch) -> FakeProviderAPI:
    api = FakeProviderAPI()
    monkeypatch.setattr(httpx, "get", api.get)
    return api
