# support_sync/stores/message_stream.py
from collections.abc import Iterable
from datetime import timedelta
from uuid import uuid4

from support_sync.domain.entities import (
    LOCAL_ID_PREFIX,
    Identity,
    Message,
    MessageStatus,
    utcnow,
)
from support_sync.domain.reconciler import MergeOutcome, merge_status, reconcile_message
from support_sync.domain.results import ActionResult
from support_sync.infrastructure.api_client import ApiClient
from support_sync.stores.base import ObservableStore, StoreEvent


class MessageStream(ObservableStore):
    """
    Time-ordered, de-duplicated history of the focused room.

    Only one room is held in memory. Every focus change bumps a generation
    counter; fetches remember the room and generation they were issued for and
    are dropped if either changed before they completed.
    """

    def __init__(
        self,
        api_client: ApiClient,
        page_size: int = 50,
        match_window: float = 30.0,
    ) -> None:
        super().__init__("MessageStream")
        self.api_client = api_client
        self.page_size = page_size
        self.match_window = timedelta(seconds=match_window)
        self.identity: Identity | None = None

        self._room_id: str | None = None
        self._generation = 0
        self._messages: list[Message] = []

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def bind_identity(self, identity: Identity | None) -> None:
        self.identity = identity

    def focus(self, room_id: str | None) -> None:
        if room_id == self._room_id:
            return
        self._room_id = room_id
        self._generation += 1
        self._messages = []
        # A history load for the previous room is abandoned.
        self._set_loading(False)
        self._notify_observers(
            StoreEvent.MESSAGES_CHANGED, {"room_id": room_id, "messages": []}
        )

    def clear(self) -> None:
        self.focus(None)
        self._set_loading(False)
        self._set_error(None)

    def _in_scope(self, room_id: str, generation: int) -> bool:
        return self._room_id == room_id and self._generation == generation

    async def load_history(
        self, room_id: str, limit: int | None = None, offset: int = 0
    ) -> ActionResult:
        """Fetch one page of ``room_id`` (focusing it first) and merge it in."""
        self.focus(room_id)
        generation = self._generation
        self._set_loading(True)

        response = await self.api_client.get_messages(
            room_id, limit or self.page_size, offset
        )

        if not self._in_scope(room_id, generation):
            self.logger.debug(f"Discarding history for room {room_id}; focus moved on")
            return ActionResult.failed("Room changed before its history arrived.")

        self._set_loading(False)
        if not response.success:
            self.logger.error(f"Failed to load messages for room {room_id}: {response.error}")
            self._set_error("Failed to load messages.")
            return ActionResult.failed(response.error or "Failed to load messages.")

        self._set_error(None)
        self._apply_batch(response.data)
        return ActionResult.ok(self.messages)

    async def poll(self, room_id: str) -> list[Message]:
        """
        One polling tick for ``room_id``; returns the messages that were applied.

        Failures are logged only, the next tick will try again.
        """
        generation = self._generation
        offset = self._poll_offset() if room_id == self._room_id else 0
        response = await self.api_client.get_messages(room_id, self.page_size, offset)

        if not self._in_scope(room_id, generation):
            self.logger.debug(f"Discarding poll result for room {room_id}; focus moved on")
            return []
        if not response.success:
            self.logger.warning(f"Message poll for room {room_id} failed: {response.error}")
            return []

        self._apply_batch(response.data)
        return list(response.data)

    def _poll_offset(self) -> int:
        """Start one message before the newest known one so consecutive pages overlap."""
        known = sum(1 for message in self._messages if not message.is_local)
        return max(0, known - 1)

    def receive_candidate(self, message: Message) -> MergeOutcome | None:
        """
        Merge a message delivered by push or poll.

        Returns None when the message belongs to a room that is not focused.
        """
        if message.room_id != self._room_id:
            return None
        return self._reconcile(message)

    def _reconcile(self, message: Message, placeholder_id: str | None = None) -> MergeOutcome:
        identity_id = self.identity.id if self.identity else None
        messages, outcome = reconcile_message(
            self._messages, message, identity_id, self.match_window, placeholder_id
        )
        if outcome is not MergeOutcome.UNCHANGED:
            self._messages = messages
            self._notify_observers(
                StoreEvent.MESSAGES_CHANGED,
                {"room_id": self._room_id, "messages": self.messages, "outcome": outcome},
            )
        return outcome

    def _apply_batch(self, batch: Iterable[Message]) -> None:
        identity_id = self.identity.id if self.identity else None
        messages = self._messages
        changed = False
        for message in batch:
            if message.room_id != self._room_id:
                continue
            messages, outcome = reconcile_message(
                messages, message, identity_id, self.match_window
            )
            changed = changed or outcome is not MergeOutcome.UNCHANGED
        if changed:
            self._messages = messages
            self._notify_observers(
                StoreEvent.MESSAGES_CHANGED,
                {"room_id": self._room_id, "messages": self.messages},
            )

    async def send(self, room_id: str, content: str) -> ActionResult:
        """
        Send ``content`` with an optimistic placeholder.

        The placeholder is replaced by the server's copy on success and marked
        failed (but kept) on error, so exactly one entry is visible throughout.
        """
        if self.identity is None:
            return ActionResult.failed("No signed-in identity.")
        if not content.strip():
            return ActionResult.failed("Message is empty.")

        placeholder = Message(
            id=f"{LOCAL_ID_PREFIX}{uuid4().hex}",
            room_id=room_id,
            sender_id=self.identity.id,
            sender_name=self.identity.display_name,
            sender_role=self.identity.role,
            content=content,
            created_at=utcnow(),
            status=MessageStatus.PENDING,
        )
        generation = self._generation
        if room_id == self._room_id:
            self._reconcile(placeholder)

        response = await self.api_client.send_message(room_id, content)

        if response.success:
            if self._in_scope(room_id, generation):
                self._reconcile(response.data, placeholder_id=placeholder.id)
            return ActionResult.ok(response.data)

        if self._in_scope(room_id, generation):
            self._update_status(placeholder.id, MessageStatus.FAILED)
        return ActionResult.failed(response.error or "Failed to send message.")

    def _update_status(self, message_id: str, status: MessageStatus) -> None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                new_status = merge_status(message.status, status)
                if new_status is message.status:
                    return
                self._messages[index] = message.model_copy(update={"status": new_status})
                self._notify_observers(
                    StoreEvent.MESSAGES_CHANGED,
                    {"room_id": self._room_id, "messages": self.messages},
                )
                return

    async def mark_all_read(self, room_id: str, identity_id: str) -> ActionResult:
        """
        Mark every message not sent by ``identity_id`` as read.

        Applied locally first; rolled back if the server rejects it.
        """
        previous: dict[str, MessageStatus] = {}
        generation = self._generation
        if room_id == self._room_id:
            for index, message in enumerate(self._messages):
                if message.is_local or message.sender_id == identity_id:
                    continue
                status = merge_status(message.status, MessageStatus.READ)
                if status is not message.status:
                    previous[message.id] = message.status
                    self._messages[index] = message.model_copy(update={"status": status})
            if previous:
                self._notify_observers(
                    StoreEvent.MESSAGES_CHANGED,
                    {"room_id": room_id, "messages": self.messages},
                )

        response = await self.api_client.mark_room_read(room_id)
        if response.success:
            return ActionResult.ok()

        if previous and self._in_scope(room_id, generation):
            self._messages = [
                message.model_copy(update={"status": previous[message.id]})
                if message.id in previous and message.status is MessageStatus.READ
                else message
                for message in self._messages
            ]
            self._notify_observers(
                StoreEvent.MESSAGES_CHANGED,
                {"room_id": room_id, "messages": self.messages},
            )
        return ActionResult.failed(response.error or "Failed to mark messages as read.")
