# support_sync/stores/notification_inbox.py
import asyncio
import itertools
from collections.abc import Awaitable, Iterable

from support_sync.domain.entities import Identity, Notification, utcnow
from support_sync.domain.reconciler import (
    apply_read_policy,
    apply_surfaced,
    merge_notification,
    notification_sort_key,
)
from support_sync.domain.results import ActionResult
from support_sync.infrastructure.api_client import ApiClient, ApiResponse
from support_sync.infrastructure.local_storage import SurfacedRegistry
from support_sync.stores.base import ObservableStore, StoreEvent


class NotificationInbox(ObservableStore):
    """
    Notifications addressed to the current identity (or broadcast).

    Read/dismiss/delete are applied locally at once and confirmed with the
    server in the background. A failed confirmation is logged and otherwise
    ignored: notifications are best-effort state.
    """

    def __init__(
        self,
        api_client: ApiClient,
        surfaced: SurfacedRegistry,
        max_visible: int = 3,
        read_implies_dismissed: bool = True,
    ) -> None:
        super().__init__("NotificationInbox")
        self.api_client = api_client
        self.surfaced = surfaced
        self.max_visible = max_visible
        self.read_implies_dismissed = read_implies_dismissed
        self.identity: Identity | None = None

        self._items: dict[str, Notification] = {}
        self._arrival: dict[str, int] = {}
        self._arrival_seq = itertools.count()
        self._pending: set[asyncio.Task] = set()

    def bind_identity(self, identity: Identity | None) -> None:
        self.identity = identity

    @property
    def enabled(self) -> bool:
        return self.identity is not None and self.identity.role.receives_notifications

    @property
    def notifications(self) -> list[Notification]:
        """The full inbox, newest first."""
        return sorted(self._items.values(), key=notification_sort_key, reverse=True)

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self._items.values() if item.read_at is None)

    def get(self, notification_id: str) -> Notification | None:
        return self._items.get(notification_id)

    def toasts(self) -> list[Notification]:
        """Undismissed, unread notifications in arrival order, capped."""
        eligible = [item for item in self._items.values() if item.is_toast_eligible]
        eligible.sort(key=lambda item: self._arrival[item.id])
        return eligible[: self.max_visible]

    # Fetching

    async def load(self) -> ActionResult:
        if not self.enabled:
            return ActionResult.ok([])
        identity_id = self.identity.id
        self._set_loading(True)
        response = await self.api_client.get_notifications(identity_id)
        self._set_loading(False)
        if self.identity is None or self.identity.id != identity_id:
            self.logger.debug("Discarding notification load for a previous identity")
            return ActionResult.failed("Identity changed before notifications arrived.")
        if not response.success:
            self.logger.error(f"Failed to load notifications: {response.error}")
            self._set_error("Failed to load notifications.")
            return ActionResult.failed(response.error or "Failed to load notifications.")
        self._set_error(None)
        self._receive_many(response.data)
        return ActionResult.ok(self.notifications)

    async def poll(self) -> list[Notification]:
        if not self.enabled:
            return []
        identity_id = self.identity.id
        response = await self.api_client.get_notifications(identity_id)
        if self.identity is None or self.identity.id != identity_id:
            self.logger.debug("Discarding notification poll for a previous identity")
            return []
        if not response.success:
            self.logger.warning(f"Notification poll failed: {response.error}")
            return []
        self._receive_many(response.data)
        return list(response.data)

    # Delivery

    def receive_candidate(self, notification: Notification) -> Notification | None:
        """
        Upsert one notification from push or poll.

        On first sight, an id already recorded as surfaced (in this or an
        earlier session) is dismissed straight away so it never toasts again;
        a fresh toast-eligible id is recorded as surfaced.
        """
        if not self.enabled or not notification.addressed_to(self.identity.id):
            return None
        if self._upsert(notification):
            self._notify_observers(
                StoreEvent.NOTIFICATIONS_CHANGED,
                {"notifications": self.notifications, "toasts": self.toasts()},
            )
        return self._items[notification.id]

    def _receive_many(self, notifications: Iterable[Notification]) -> None:
        changed = False
        for notification in notifications:
            if notification.addressed_to(self.identity.id):
                changed = self._upsert(notification) or changed
        if changed:
            self._notify_observers(
                StoreEvent.NOTIFICATIONS_CHANGED,
                {"notifications": self.notifications, "toasts": self.toasts()},
            )

    def _upsert(self, incoming: Notification) -> bool:
        now = utcnow()
        existing = self._items.get(incoming.id)

        if existing is None:
            item = apply_surfaced(incoming, incoming.id in self.surfaced, now)
            item = apply_read_policy(item, self.read_implies_dismissed, now)
            self._arrival[item.id] = next(self._arrival_seq)
            self._items[item.id] = item
            if item.is_toast_eligible:
                self.surfaced.add([item.id])
            return True

        merged = merge_notification(existing, incoming)
        merged = apply_read_policy(merged, self.read_implies_dismissed, now)
        if merged == existing:
            return False
        self._items[merged.id] = merged
        return True

    # Actions

    def mark_read(self, notification_id: str) -> bool:
        item = self._items.get(notification_id)
        if item is None:
            return False
        now = utcnow()
        update = {"read_at": item.read_at or now}
        if self.read_implies_dismissed:
            update["dismissed_at"] = item.dismissed_at or now
        self._replace(item.model_copy(update=update))
        self._confirm(
            self.api_client.mark_notification_read(notification_id),
            f"mark notification {notification_id} as read",
        )
        return True

    def dismiss(self, notification_id: str) -> bool:
        item = self._items.get(notification_id)
        if item is None:
            return False
        self._replace(item.model_copy(update={"dismissed_at": item.dismissed_at or utcnow()}))
        self._confirm(
            self.api_client.dismiss_notification(notification_id),
            f"dismiss notification {notification_id}",
        )
        return True

    def mark_all_read(self, identity_id: str | None = None) -> int:
        recipient_id = identity_id or (self.identity.id if self.identity else None)
        if recipient_id is None:
            return 0
        now = utcnow()
        changed = 0
        for item in list(self._items.values()):
            if item.read_at is not None:
                continue
            update = {"read_at": now}
            if self.read_implies_dismissed:
                update["dismissed_at"] = item.dismissed_at or now
            self._items[item.id] = item.model_copy(update=update)
            changed += 1
        if changed:
            self.surfaced.add(self._items.keys())
            self._notify_observers(
                StoreEvent.NOTIFICATIONS_CHANGED,
                {"notifications": self.notifications, "toasts": self.toasts()},
            )
        self._confirm(
            self.api_client.mark_all_notifications_read(recipient_id),
            "mark all notifications as read",
        )
        return changed

    def delete(self, notification_id: str) -> bool:
        if self._items.pop(notification_id, None) is None:
            return False
        self._arrival.pop(notification_id, None)
        self._notify_observers(
            StoreEvent.NOTIFICATIONS_CHANGED,
            {"notifications": self.notifications, "toasts": self.toasts()},
        )
        self._confirm(
            self.api_client.delete_notification(notification_id),
            f"delete notification {notification_id}",
        )
        return True

    def _replace(self, item: Notification) -> None:
        self._items[item.id] = item
        self.surfaced.add([item.id])
        self._notify_observers(
            StoreEvent.NOTIFICATIONS_CHANGED,
            {"notifications": self.notifications, "toasts": self.toasts()},
        )

    def _confirm(self, request: Awaitable[ApiResponse], description: str) -> None:
        task = asyncio.create_task(self._run_confirmation(request, description))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_confirmation(self, request: Awaitable[ApiResponse], description: str) -> None:
        response = await request
        if not response.success:
            self.logger.warning(f"Could not {description}: {response.error}")

    async def drain(self) -> None:
        """Wait for every background confirmation issued so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await self.drain()
        self._items = {}
        self._arrival = {}
        self.identity = None
        self._set_loading(False)
        self._set_error(None)
