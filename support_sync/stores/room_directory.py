# support_sync/stores/room_directory.py
from collections import defaultdict
from datetime import datetime

from support_sync.domain.entities import ChatRoom, Message
from support_sync.domain.reconciler import counts_as_unread, merge_room, with_last_message
from support_sync.domain.results import ActionResult
from support_sync.infrastructure.api_client import ApiClient
from support_sync.stores.base import ObservableStore, StoreEvent


class RoomDirectory(ObservableStore):
    """
    Rooms visible to the current identity, with previews and unread counts.

    Unread counts are owned by the client: the server's value only seeds a
    room the directory has not seen before.
    """

    # Per-room cap on remembered message ids.
    SEEN_LIMIT = 500

    def __init__(self, api_client: ApiClient) -> None:
        super().__init__("RoomDirectory")
        self.api_client = api_client
        self.identity_id: str | None = None

        self._rooms: dict[str, ChatRoom] = {}
        self._unread: dict[str, int] = {}
        self._seen_messages: dict[str, dict[str, datetime]] = defaultdict(dict)
        self._read_marks: dict[str, datetime] = {}
        self._current_room_id: str | None = None
        self._request_seq = 0
        self._applied_seq = 0

    @property
    def rooms(self) -> list[ChatRoom]:
        """Rooms ordered by most recent activity, then id."""
        return sorted(
            self._rooms.values(),
            key=lambda room: (
                -(room.last_message_at or room.updated_at).timestamp(),
                room.id,
            ),
        )

    @property
    def current_room_id(self) -> str | None:
        return self._current_room_id

    @property
    def total_unread(self) -> int:
        return sum(self._unread.values())

    def get_room(self, room_id: str) -> ChatRoom | None:
        return self._rooms.get(room_id)

    def unread_count(self, room_id: str) -> int:
        return self._unread.get(room_id, 0)

    async def load_rooms(self, identity_id: str) -> ActionResult:
        """
        Fetch the full room list and replace the cached set.

        Calls are sequence-stamped: a response that comes back after a newer
        call's response has been applied is dropped.
        """
        self.identity_id = identity_id
        self._request_seq += 1
        seq = self._request_seq
        self._set_loading(True)

        response = await self.api_client.get_rooms()

        if seq == self._request_seq:
            self._set_loading(False)
        if seq < self._applied_seq:
            self.logger.debug(f"Discarding stale room list response #{seq}")
            return ActionResult.ok(self.rooms)
        if not response.success:
            self.logger.error(f"Failed to load rooms: {response.error}")
            self._set_error("Failed to load chat rooms.")
            return ActionResult.failed(response.error or "Failed to load chat rooms.")

        self._applied_seq = seq
        self._replace_rooms(response.data)
        self._set_error(None)
        return ActionResult.ok(self.rooms)

    def _replace_rooms(self, fetched: list[ChatRoom]) -> None:
        rooms: dict[str, ChatRoom] = {}
        unread: dict[str, int] = {}
        for room in fetched:
            count = self._unread.get(room.id, room.unread_count)
            unread[room.id] = count
            rooms[room.id] = merge_room(self._rooms.get(room.id), room, count)

        self._rooms = rooms
        self._unread = unread
        self._notify_observers(StoreEvent.ROOMS_LOADED, {"rooms": self.rooms})
        self.logger.info(f"Loaded {len(rooms)} rooms")

    async def create_room(self, name: str | None = None) -> ActionResult:
        room_data = {"name": name} if name else {}
        response = await self.api_client.create_room(room_data)
        if not response.success:
            return ActionResult.failed(response.error or "Failed to create chat room.")
        return ActionResult.ok(self.apply_room_update(response.data))

    def apply_room_update(self, room: ChatRoom, own_state_change: bool = False) -> ChatRoom:
        """Upsert one room record coming from a poll, a push or an action."""
        count = self._unread.get(room.id, room.unread_count)
        merged = merge_room(self._rooms.get(room.id), room, count, own_state_change)
        self._unread[room.id] = merged.unread_count
        if self._rooms.get(room.id) != merged:
            self._rooms[room.id] = merged
            self._notify_observers(StoreEvent.ROOM_UPDATED, {"room": merged})
        return merged

    def set_current_room(self, room_id: str | None) -> None:
        old_room_id = self._current_room_id
        self._current_room_id = room_id
        if old_room_id != room_id:
            self._notify_observers(
                StoreEvent.CURRENT_ROOM_CHANGED,
                {"old_room_id": old_room_id, "new_room_id": room_id},
            )
            self.logger.info(f"Current room changed from {old_room_id} to {room_id}")

    def observe_message(self, message: Message) -> None:
        """
        Account for a message seen on any channel.

        Each distinct message from another party in an unfocused room adds one
        to that room's unread count; every message may refresh the preview.
        """
        room = self._rooms.get(message.room_id)
        if room is not None:
            updated = with_last_message(room, message)
            if updated is not room:
                self._rooms[room.id] = updated
                self._notify_observers(StoreEvent.ROOM_UPDATED, {"room": updated})

        if message.is_local:
            return
        mark = self._read_marks.get(message.room_id)
        if mark is not None and message.created_at <= mark:
            return
        seen = self._seen_messages[message.room_id]
        if message.id in seen:
            return
        seen[message.id] = message.created_at
        if len(seen) > self.SEEN_LIMIT:
            self._forget_oldest(message.room_id)

        if counts_as_unread(message, self.identity_id, self._current_room_id):
            self._set_unread(message.room_id, self._unread.get(message.room_id, 0) + 1)

    def reset_unread(self, room_id: str) -> None:
        """Zero the count and forget every message at or before the newest one known."""
        self._set_unread(room_id, 0)
        seen = self._seen_messages.get(room_id, {})
        room = self._rooms.get(room_id)
        candidates = list(seen.values())
        if room is not None and room.last_message_at is not None:
            candidates.append(room.last_message_at)
        if room_id in self._read_marks:
            candidates.append(self._read_marks[room_id])
        if not candidates:
            return
        mark = max(candidates)
        self._read_marks[room_id] = mark
        self._seen_messages[room_id] = {
            message_id: created_at
            for message_id, created_at in seen.items()
            if created_at > mark
        }

    def _forget_oldest(self, room_id: str) -> None:
        seen = self._seen_messages[room_id]
        ordered = sorted(seen.items(), key=lambda item: item[1])
        dropped = ordered[: len(seen) - self.SEEN_LIMIT]
        for message_id, _ in dropped:
            del seen[message_id]
        # Anything at or before the dropped ids can no longer be told apart.
        newest_dropped = dropped[-1][1]
        mark = self._read_marks.get(room_id)
        self._read_marks[room_id] = newest_dropped if mark is None else max(mark, newest_dropped)

    def _set_unread(self, room_id: str, count: int) -> None:
        count = max(0, count)
        old_count = self._unread.get(room_id, 0)
        self._unread[room_id] = count
        room = self._rooms.get(room_id)
        if room is not None and room.unread_count != count:
            self._rooms[room_id] = room.model_copy(update={"unread_count": count})

        if old_count != count:
            self._notify_observers(
                StoreEvent.UNREAD_COUNT_UPDATED,
                {"room_id": room_id, "old_count": old_count, "new_count": count},
            )
            self.logger.info(f"Unread count for room {room_id}: {old_count} -> {count}")

    def clear(self) -> None:
        """Clear all state (for logout)."""
        self._rooms = {}
        self._unread = {}
        self._seen_messages = defaultdict(dict)
        self._read_marks = {}
        self._current_room_id = None
        self.identity_id = None
        # Responses to loads issued before the clear must not repopulate it.
        self._request_seq += 1
        self._applied_seq = self._request_seq
        self._set_loading(False)
        self._set_error(None)
        self.logger.info("Room state cleared")
