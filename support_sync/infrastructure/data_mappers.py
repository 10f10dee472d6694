# support_sync/infrastructure/data_mappers.py
from datetime import datetime
from typing import Any, Protocol, TypeVar

import pytz

from support_sync.domain.entities import (
    ChatRoom,
    Message,
    MessageStatus,
    Notification,
    NotificationAction,
    NotificationPriority,
    NotificationType,
    RoomStatus,
    SenderRole,
)

EntityT_co = TypeVar("EntityT_co", covariant=True)

MAPPING_ERRORS = (KeyError, TypeError, ValueError)

SYSTEM_MESSAGE_TYPES = {"system", "auto_reply"}


class DataMapper(Protocol[EntityT_co]):
    def to_entity(self, payload: dict[str, Any]) -> EntityT_co:
        raise NotImplementedError


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an API timestamp; naive values are taken to be UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=pytz.UTC)
    return parsed


def _first(payload: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return default


def _required_str(payload: dict[str, Any], *keys: str) -> str:
    value = _first(payload, *keys)
    if value is None:
        raise KeyError(keys[0])
    return str(value)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def notification_defaults(kind: NotificationType) -> tuple[bool, int, NotificationPriority]:
    """Auto-close flag, duration (ms) and priority used when the server omits them."""
    match kind:
        case NotificationType.ERROR:
            return False, 10000, NotificationPriority.HIGH
        case NotificationType.WARNING:
            return False, 5000, NotificationPriority.NORMAL
        case NotificationType.INFO | NotificationType.SUCCESS:
            return True, 5000, NotificationPriority.NORMAL
        case NotificationType.CUSTOM:
            return False, 5000, NotificationPriority.NORMAL


class RoomMapper(DataMapper[ChatRoom]):
    def to_entity(self, payload: dict[str, Any]) -> ChatRoom:
        creator = payload.get("creator") or {}
        created_at = parse_timestamp(_first(payload, "created_at", "createdAt"))
        return ChatRoom(
            id=str(payload["id"]),
            name=payload.get("name") or "Customer Support",
            participants=[str(p) for p in payload.get("participants") or []],
            last_message=payload.get("last_message"),
            last_message_id=_optional_str(payload.get("last_message_id")),
            last_message_at=parse_timestamp(payload.get("last_message_at")),
            unread_count=int(payload.get("unread_count") or 0),
            status=_enum_or(RoomStatus, payload.get("status"), RoomStatus.ACTIVE),
            created_at=created_at,
            updated_at=parse_timestamp(_first(payload, "updated_at", "updatedAt")) or created_at,
            user_name=creator.get("name") or payload.get("user_name"),
            user_email=creator.get("email") or payload.get("user_email"),
        )


class MessageMapper(DataMapper[Message]):
    def to_entity(self, payload: dict[str, Any]) -> Message:
        sender = payload.get("sender") or {}
        kind = payload.get("type")

        if kind in SYSTEM_MESSAGE_TYPES:
            sender_id = None
            sender_name = sender.get("name") or (
                "Auto reply" if kind == "auto_reply" else "System"
            )
            sender_role = SenderRole.SYSTEM
        else:
            sender_id = _optional_str(_first(payload, "sender_id", "senderId"))
            sender_name = (
                sender.get("name")
                or sender.get("email")
                or _first(payload, "sender_name", "senderName")
                or "Unknown"
            )
            sender_role = _enum_or(
                SenderRole,
                sender.get("role") or _first(payload, "sender_role", "senderRole"),
                SenderRole.USER,
            )

        fallback = MessageStatus.READ if payload.get("is_read") else MessageStatus.SENT
        status = _enum_or(MessageStatus, payload.get("status"), fallback)

        return Message(
            id=str(payload["id"]),
            room_id=_required_str(payload, "room_id", "roomId"),
            sender_id=sender_id,
            sender_name=sender_name,
            sender_role=sender_role,
            content=payload.get("content") or "",
            created_at=parse_timestamp(_first(payload, "created_at", "timestamp")),
            status=status,
            is_deleted=bool(_first(payload, "is_deleted", "isDeleted", default=False)),
        )


class NotificationMapper(DataMapper[Notification]):
    def to_entity(self, payload: dict[str, Any]) -> Notification:
        kind = NotificationType(payload.get("type") or NotificationType.INFO.value)
        auto_close, duration, priority = notification_defaults(kind)

        auto_close_value = _first(payload, "auto_close", "autoClose")
        priority_value = payload.get("priority")

        return Notification(
            id=str(payload["id"]),
            type=kind,
            title=payload.get("title") or "",
            message=payload.get("message") or "",
            sender=str(payload.get("sender") or "system"),
            recipient_id=_required_str(payload, "recipient_id", "recipientId"),
            created_at=parse_timestamp(_first(payload, "created_at", "createdAt")),
            read_at=parse_timestamp(_first(payload, "read_at", "readAt")),
            dismissed_at=parse_timestamp(_first(payload, "dismissed_at", "dismissedAt")),
            priority=NotificationPriority(priority_value) if priority_value else priority,
            auto_close=auto_close if auto_close_value is None else bool(auto_close_value),
            duration=payload.get("duration") or duration,
            icon=payload.get("icon"),
            actions=[
                NotificationAction(
                    label=action["label"],
                    action=str(action.get("action", "")),
                    style=action.get("style") or "primary",
                )
                for action in payload.get("actions") or []
            ],
            metadata=payload.get("metadata") or {},
        )


room_mapper = RoomMapper()
message_mapper = MessageMapper()
notification_mapper = NotificationMapper()
