"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any app import, and the
settings cache is cleared so they take effect.
"""

import json
import os
import tempfile
import time

os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.gettempdir(), 'chatsync-test.db')}",
)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-0123456789abcdef0123456789")
os.environ.setdefault("PROVIDER_BASE_URL", "https://provider.test")
os.environ["SYNC_CONVERSATION_DELAY_SECONDS"] = "0"

import httpx
import jwt
import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chatsync.config import get_settings
get_settings.cache_clear()

from chatsync.storage import Base, SessionLocal, engine
from chatsync.utils import utc_now_iso

TEST_JWT_SECRET = os.environ["AUTH_JWT_SECRET"]
OWNER_ID = "parent-1"
SUBJECT_ID = "child-1"


def make_token(sub: str = OWNER_ID, secret: str = TEST_JWT_SECRET, audience: str = "authenticated",
               expires_in: int = 3600) -> str:
    """Sign an identity token the way the auth service does."""
    return jwt.encode(
        {"sub": sub, "aud": audience, "exp": int(time.time()) + expires_in},
        secret,
        algorithm="HS256",
    )


def remote_message(id_message, timestamp, text="hello", **extra) -> dict:
    """A provider history entry."""
    message = {
        "idMessage": id_message,
        "timestamp": timestamp,
        "type": "incoming",
        "typeMessage": "textMessage",
        "chatId": extra.pop("chatId", "chat@c.us"),
        "senderId": "972500000001@c.us",
        "senderName": "Friend",
        "textMessage": text,
    }
    message.update(extra)
    if id_message is None:
        del message["idMessage"]
    return message


def _json_response(status_code: int, data) -> httpx.Response:
    # ASCII-escaped JSON so lone surrogates survive the trip like they do from the real API
    return httpx.Response(
        status_code,
        content=json.dumps(data).encode("ascii"),
        headers={"Content-Type": "application/json"},
    )


class FakeProvider:
    """
    In-memory stand-in for the messaging provider's HTTP API.

    histories maps chat id to a list of messages, or to an int status code
    the history call should fail with. queued maps an endpoint name to
    status codes returned (in order) before normal answers resume.
    """

    def __init__(self, chats=None, histories=None, media=None):
        self.chats = chats or []
        self.histories = histories or {}
        self.media = media or {}
        self.queued = {}
        self.calls = []
        self.on_history = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        # /waInstance{id}/{endpoint}/{token}
        endpoint = request.url.path.strip("/").split("/")[1]
        payload = json.loads(request.content) if request.content else None
        self.calls.append((endpoint, payload))

        queued = self.queued.get(endpoint)
        if queued:
            return _json_response(queued.pop(0), {"error": "queued"})

        if endpoint == "getChats":
            return _json_response(200, self.chats)

        if endpoint == "getChatHistory":
            if self.on_history is not None:
                self.on_history(payload["chatId"])
            history = self.histories.get(payload["chatId"], [])
            if isinstance(history, int):
                return _json_response(history, {"error": "history failed"})
            return _json_response(200, history[: payload["count"]])

        if endpoint == "downloadFile":
            url = self.media.get(payload["idMessage"])
            if isinstance(url, int):
                return _json_response(url, {"error": "download failed"})
            return _json_response(200, {"downloadUrl": url or ""})

        return _json_response(404, {"error": "unknown endpoint"})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def calls_to(self, endpoint: str) -> list:
        return [payload for name, payload in self.calls if name == endpoint]


@pytest.fixture
def db_session():
    """Fresh tables and a session for each test."""
    import chatsync.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_provider():
    return FakeProvider()


def seed_subject(db, subject_id: str = SUBJECT_ID, owner_id: str = OWNER_ID, display_name: str = "Noa"):
    from chatsync.models import Subject

    subject = Subject(id=subject_id, owner_id=owner_id, display_name=display_name, created_at=utc_now_iso())
    db.add(subject)
    db.commit()
    return subject


def seed_credential(db, subject_id: str = SUBJECT_ID, instance_id: str = "1101",
                    api_token: str = "secret-token", status: str = "authorized"):
    from chatsync.models import ConnectorCredential

    credential = ConnectorCredential(
        subject_id=subject_id,
        instance_id=instance_id,
        api_token=api_token,
        status=status,
        created_at=utc_now_iso(),
    )
    db.add(credential)
    db.commit()
    return credential
