# support_sync/domain/reconciler.py
"""
Merge rules shared by the room, message and notification stores.

Every function here is pure: it takes the current cached value(s) and a
candidate update and returns the new value(s). Push and poll deliveries go
through the same functions, so the stores never need to know which channel an
update came from.
"""

from bisect import insort
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from enum import Enum

from support_sync.domain.entities import (
    ChatRoom,
    Message,
    MessageStatus,
    Notification,
    RoomStatus,
)

_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

_ROOM_STATUS_RANK = {
    RoomStatus.ACTIVE: 0,
    RoomStatus.ARCHIVED: 1,
    RoomStatus.CLOSED: 2,
}


class MergeOutcome(Enum):
    INSERTED = "inserted"
    MERGED = "merged"
    REPLACED_PLACEHOLDER = "replaced_placeholder"
    UNCHANGED = "unchanged"


# Messages


def merge_status(current: MessageStatus, incoming: MessageStatus) -> MessageStatus:
    """
    Combine two observations of the same message's delivery status.

    Statuses only move forward along pending -> sent -> delivered -> read.
    ``failed`` can only replace ``pending`` and nothing replaces it.
    """
    if current is MessageStatus.FAILED:
        return current
    if incoming is MessageStatus.FAILED:
        return incoming if current is MessageStatus.PENDING else current
    if _STATUS_RANK[incoming] > _STATUS_RANK[current]:
        return incoming
    return current


def message_sort_key(message: Message) -> tuple[datetime, str]:
    return message.created_at, message.id


def sort_messages(messages: Iterable[Message]) -> list[Message]:
    return sorted(messages, key=message_sort_key)


def merge_message(existing: Message, incoming: Message) -> Message:
    """Fold the mutable fields of ``incoming`` into ``existing``."""
    status = merge_status(existing.status, incoming.status)
    is_deleted = existing.is_deleted or incoming.is_deleted
    if status is existing.status and is_deleted == existing.is_deleted:
        return existing
    return existing.model_copy(update={"status": status, "is_deleted": is_deleted})


def find_placeholder(
    messages: Sequence[Message],
    incoming: Message,
    identity_id: str | None,
    window: timedelta,
    placeholder_id: str | None = None,
) -> int | None:
    """
    Locate the optimistic placeholder that ``incoming`` confirms.

    An explicit ``placeholder_id`` wins. Otherwise the candidate must be the
    identity's own pending local message in the same room, with the same
    content, created within ``window`` of the server timestamp. The oldest
    match is used so repeated identical sends are confirmed in order.
    """
    if placeholder_id is not None:
        for index, message in enumerate(messages):
            if message.id == placeholder_id:
                return index

    if incoming.is_local or identity_id is None or incoming.sender_id != identity_id:
        return None

    for index, message in enumerate(messages):
        if (
            message.is_local
            and message.status is MessageStatus.PENDING
            and message.room_id == incoming.room_id
            and message.content == incoming.content
            and abs(message.created_at - incoming.created_at) <= window
        ):
            return index
    return None


def reconcile_message(
    messages: Sequence[Message],
    incoming: Message,
    identity_id: str | None,
    window: timedelta,
    placeholder_id: str | None = None,
) -> tuple[list[Message], MergeOutcome]:
    """
    Merge one candidate message into a time-ordered sequence.

    1. A known id only has its status and soft-delete flag merged; an
       explicitly named placeholder is dropped alongside.
    2. A matching pending placeholder of the identity is replaced.
    3. Anything else is inserted at its ``(created_at, id)`` position.

    The input sequence is not modified.
    """
    result = list(messages)

    for index, message in enumerate(result):
        if message.id == incoming.id:
            merged = merge_message(message, incoming)
            outcome = MergeOutcome.UNCHANGED if merged is message else MergeOutcome.MERGED
            result[index] = merged
            # The push copy got here first; the send response still retires its placeholder.
            if placeholder_id is not None:
                stale = [m for m in result if m.id == placeholder_id]
                if stale:
                    result.remove(stale[0])
                    outcome = MergeOutcome.REPLACED_PLACEHOLDER
            return result, outcome

    outcome = MergeOutcome.INSERTED
    index = find_placeholder(result, incoming, identity_id, window, placeholder_id)
    if index is not None:
        placeholder = result.pop(index)
        incoming = incoming.model_copy(
            update={"status": merge_status(placeholder.status, incoming.status)}
        )
        outcome = MergeOutcome.REPLACED_PLACEHOLDER

    insort(result, incoming, key=message_sort_key)
    return result, outcome


# Rooms


def room_status_max(current: RoomStatus, incoming: RoomStatus) -> RoomStatus:
    return max(current, incoming, key=_ROOM_STATUS_RANK.__getitem__)


def merge_room(
    existing: ChatRoom | None,
    incoming: ChatRoom,
    unread_count: int,
    own_state_change: bool = False,
) -> ChatRoom:
    """
    The fetched record overwrites the cached one, except that the unread count
    is always the client-side value and, for a push about the identity's own
    state change, the lifecycle status never moves backwards.
    """
    status = incoming.status
    if existing is not None and own_state_change:
        status = room_status_max(existing.status, incoming.status)
    return incoming.model_copy(
        update={"unread_count": max(0, unread_count), "status": status}
    )


def counts_as_unread(
    message: Message, identity_id: str | None, focused_room_id: str | None
) -> bool:
    if message.is_local or message.is_deleted:
        return False
    if message.sender_id is not None and message.sender_id == identity_id:
        return False
    return message.room_id != focused_room_id


def with_last_message(room: ChatRoom, message: Message) -> ChatRoom:
    """Return ``room`` with ``message`` as its preview when it is newer."""
    if message.is_deleted or message.is_local:
        return room
    if room.last_message_at is not None and message.created_at < room.last_message_at:
        return room
    if room.last_message_id == message.id:
        return room
    return room.model_copy(
        update={
            "last_message": message.content,
            "last_message_id": message.id,
            "last_message_at": message.created_at,
        }
    )


# Notifications


def merge_notification(existing: Notification | None, incoming: Notification) -> Notification:
    """
    Server fields win, but read and dismissed timestamps are set-once: a
    stale delivery cannot bring back a notification the user already handled.
    """
    if existing is None:
        return incoming
    merged = incoming.model_copy(
        update={
            "read_at": existing.read_at or incoming.read_at,
            "dismissed_at": existing.dismissed_at or incoming.dismissed_at,
        }
    )
    if merged == existing:
        return existing
    return merged


def apply_surfaced(notification: Notification, already_surfaced: bool, now: datetime) -> Notification:
    if already_surfaced and notification.dismissed_at is None:
        return notification.model_copy(update={"dismissed_at": now})
    return notification


def apply_read_policy(
    notification: Notification, read_implies_dismissed: bool, now: datetime
) -> Notification:
    if read_implies_dismissed and notification.read_at is not None and notification.dismissed_at is None:
        return notification.model_copy(update={"dismissed_at": now})
    return notification


def notification_sort_key(notification: Notification) -> tuple[datetime, str]:
    return notification.created_at, notification.id
