# support_sync/tests/conftest.py

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import keyring
import keyring.errors
import pytest

from support_sync.config import AppConfig
from support_sync.domain.entities import (
    ChatRoom,
    Identity,
    Message,
    MessageStatus,
    Notification,
    SenderRole,
)
from support_sync.infrastructure.api_client import ApiClient, ApiResponse
from support_sync.infrastructure.local_storage import KeyringStorage, SurfacedRegistry

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(scope="function")
def app_config():
    return AppConfig(
        API_BASE_URL="http://testserver/api",
        KEYRING_SERVICE="support-sync-test",
        ROOM_POLL_INTERVAL=60,
        MESSAGE_POLL_INTERVAL=60,
        NOTIFICATION_POLL_INTERVAL=60,
        REALTIME_ENABLED=False,
    )


@pytest.fixture
def identity():
    return Identity(id="u1", display_name="Alice", role=SenderRole.USER)


@pytest.fixture
def operator():
    return Identity(id="op1", display_name="Olga", role=SenderRole.OPERATOR)


@pytest.fixture
def memory_keyring(monkeypatch):
    """Replace the OS keyring with an in-memory dict."""
    store = {}

    def get_password(service, key):
        return store.get((service, key))

    def set_password(service, key, value):
        store[(service, key)] = value

    def delete_password(service, key):
        if (service, key) not in store:
            raise keyring.errors.PasswordDeleteError("not found")
        del store[(service, key)]

    monkeypatch.setattr(keyring, "get_password", get_password)
    monkeypatch.setattr(keyring, "set_password", set_password)
    monkeypatch.setattr(keyring, "delete_password", delete_password)
    return store


@pytest.fixture
def storage(memory_keyring):
    return KeyringStorage("support-sync-test")


@pytest.fixture
def surfaced(storage, identity):
    registry = SurfacedRegistry(storage)
    registry.load(identity.id)
    return registry


@pytest.fixture
def api_client():
    client = AsyncMock(spec=ApiClient)
    client.get_rooms.return_value = ApiResponse(True, data=[], status_code=200)
    client.get_messages.return_value = ApiResponse(True, data=[], status_code=200)
    client.get_notifications.return_value = ApiResponse(True, data=[], status_code=200)
    client.mark_room_read.return_value = ApiResponse(True, data={}, status_code=200)
    client.mark_notification_read.return_value = ApiResponse(True, data={}, status_code=200)
    client.dismiss_notification.return_value = ApiResponse(True, data={}, status_code=200)
    client.mark_all_notifications_read.return_value = ApiResponse(True, data={}, status_code=200)
    client.delete_notification.return_value = ApiResponse(True, data={}, status_code=200)
    return client


@pytest.fixture
def make_room():
    def factory(room_id="r1", seconds=0, **fields):
        at = T0 + timedelta(seconds=seconds)
        return ChatRoom(id=room_id, created_at=at, updated_at=at, **fields)

    return factory


@pytest.fixture
def make_message():
    def factory(
        message_id="m1",
        room_id="r1",
        sender_id="op1",
        content="hello",
        seconds=0,
        status=MessageStatus.SENT,
        **fields,
    ):
        return Message(
            id=message_id,
            room_id=room_id,
            sender_id=sender_id,
            sender_name=fields.pop("sender_name", "Someone"),
            sender_role=fields.pop("sender_role", SenderRole.OPERATOR),
            content=content,
            created_at=T0 + timedelta(seconds=seconds),
            status=status,
            **fields,
        )

    return factory


@pytest.fixture
def make_notification():
    def factory(notification_id="n1", recipient_id="u1", seconds=0, **fields):
        return Notification(
            id=notification_id,
            title=fields.pop("title", "Heads up"),
            message=fields.pop("message", "Something happened"),
            recipient_id=recipient_id,
            created_at=T0 + timedelta(seconds=seconds),
            **fields,
        )

    return factory
