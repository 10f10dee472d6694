# support_sync/session.py
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

from support_sync.config import AppConfig, FeatureConfig
from support_sync.domain.entities import Identity, Message, Notification, NotificationAction
from support_sync.domain.events import FeatureConfigChanged, SessionStarted, SessionStopped
from support_sync.domain.results import ActionResult
from support_sync.infrastructure.api_client import ApiClient, ApiResponse
from support_sync.infrastructure.event_dispatcher import EventDispatcher
from support_sync.infrastructure.local_storage import (
    FeatureConfigStore,
    KeyringStorage,
    SurfacedRegistry,
)
from support_sync.infrastructure.logger import get_logger
from support_sync.infrastructure.transport import TransportClient
from support_sync.scheduler import PollKind, SyncScheduler
from support_sync.stores.message_stream import MessageStream
from support_sync.stores.notification_inbox import NotificationInbox
from support_sync.stores.room_directory import RoomDirectory

Cleanup = Callable[[], Awaitable[None]]


class SyncSession:
    """
    Coordinates the API client, the push channel, the polling loops and the
    client-side stores for one signed-in identity.

    Lifecycle: construct once per process, ``start(identity)`` after sign-in,
    ``logout()`` (or ``stop()``) on sign-out. Nothing runs before ``start`` and
    every push or poll callback is ignored after ``stop``.
    """

    def __init__(
        self,
        config: AppConfig,
        api_client: ApiClient | None = None,
        transport: TransportClient | None = None,
        storage: KeyringStorage | None = None,
        scheduler: SyncScheduler | None = None,
        dispatcher: EventDispatcher | None = None,
        on_unauthorized: Callable[[ApiResponse], None] | None = None,
    ) -> None:
        self.config = config
        self.logger = get_logger("SyncSession")

        self.storage = storage or KeyringStorage(config.KEYRING_SERVICE)
        self.api_client = api_client or ApiClient(
            config.API_BASE_URL,
            timeout=config.REQUEST_TIMEOUT,
            on_unauthorized=on_unauthorized,
            keyring_service=config.KEYRING_SERVICE,
        )
        self.transport = transport or TransportClient(
            config.REDIS_HOST,
            config.REDIS_PORT,
            initial_delay=config.RECONNECT_INITIAL_DELAY,
            max_delay=config.RECONNECT_MAX_DELAY,
        )
        self.scheduler = scheduler or SyncScheduler()
        self.dispatcher = dispatcher or EventDispatcher()

        self.surfaced = SurfacedRegistry(self.storage)
        self.feature_store = FeatureConfigStore(self.storage)
        self.features = self.feature_store.load(FeatureConfig.from_app_config(config))

        self.rooms = RoomDirectory(self.api_client)
        self.messages = MessageStream(
            self.api_client,
            page_size=config.MESSAGE_PAGE_SIZE,
            match_window=config.PLACEHOLDER_MATCH_WINDOW,
        )
        self.notifications = NotificationInbox(
            self.api_client,
            self.surfaced,
            max_visible=config.MAX_VISIBLE_TOASTS,
            read_implies_dismissed=config.READ_IMPLIES_DISMISSED,
        )

        self.identity: Identity | None = None
        self._active = False
        self.dispatcher.register(FeatureConfigChanged, self._on_feature_config_changed)

    @property
    def is_active(self) -> bool:
        return self._active

    # Lifecycle

    async def start(self, identity: Identity) -> None:
        """Begin syncing for ``identity``; a different running identity is stopped first."""
        if self._active and self.identity == identity:
            return
        if self._active:
            await self.stop()

        self.identity = identity
        self._active = True
        self.surfaced.load(identity.id)
        self.rooms.identity_id = identity.id
        self.messages.bind_identity(identity)
        self.notifications.bind_identity(identity)

        self.transport.on_message(self._handle_push_message)
        self.transport.on_notification(self._handle_push_notification)
        self.transport.on_status(self._handle_connection_status)

        self.logger.info(f"Starting session for '{identity.id}' ({identity.role.value})")
        if self.features.chat_enabled:
            await self.load_rooms()
            if not self._is_current(identity):
                return
        if self.features.notifications_enabled:
            await self.notifications.load()
            if not self._is_current(identity):
                return
        await self._apply_features()
        if not self._is_current(identity):
            return
        await self.dispatcher.dispatch(SessionStarted(identity=identity))

    def _is_current(self, identity: Identity) -> bool:
        """False once the session was stopped or restarted for someone else."""
        return self._active and self.identity == identity

    async def stop(self, reset_surfaced: bool = False) -> None:
        """Tear everything down; stored surfaced ids survive unless ``reset_surfaced``."""
        if not self._active:
            return
        self._active = False
        identity_id = self.identity.id

        await self.scheduler.stop_all()
        await self.transport.disconnect()
        self.transport.on_message(None)
        self.transport.on_notification(None)
        self.transport.on_status(None)

        await self.notifications.close()
        if reset_surfaced:
            self.surfaced.reset()
        self.surfaced.close()
        self.rooms.clear()
        self.messages.clear()
        self.messages.bind_identity(None)
        self.identity = None

        self.logger.info(f"Session for '{identity_id}' stopped")
        await self.dispatcher.dispatch(SessionStopped(identity_id=identity_id))

    async def logout(self, reset_surfaced: bool = False) -> None:
        await self.stop(reset_surfaced=reset_surfaced)

    async def aclose(self) -> None:
        await self.stop()
        await self.api_client.aclose()

    # Feature flags

    async def update_features(self, **changes: Any) -> FeatureConfig:
        """Persist new feature flags and broadcast them."""
        previous = self.features
        updated = FeatureConfig.model_validate({**previous.model_dump(), **changes})
        self.feature_store.save(updated)
        await self.dispatcher.dispatch(FeatureConfigChanged(config=updated, previous=previous))
        return updated

    async def reset_features(self) -> FeatureConfig:
        previous = self.features
        defaults = FeatureConfig.from_app_config(self.config)
        self.feature_store.clear()
        await self.dispatcher.dispatch(FeatureConfigChanged(config=defaults, previous=previous))
        return defaults

    async def _on_feature_config_changed(self, event: FeatureConfigChanged) -> None:
        self.features = event.config
        self.logger.info(f"Feature config changed: {event.config.model_dump()}")
        if self._active:
            await self._apply_features()

    async def _apply_features(self) -> None:
        features = self.features
        identity = self.identity
        identity_id = identity.id

        wants_push = features.realtime_enabled and (
            features.chat_enabled or features.notifications_enabled
        )
        if wants_push:
            await self.transport.connect(identity_id)
        else:
            await self.transport.disconnect()
        if not self._is_current(identity):
            return

        if features.chat_enabled:
            await self.scheduler.start(
                PollKind.ROOMS, identity_id, features.room_poll_interval, self._poll_rooms
            )
            room_id = self.rooms.current_room_id
            if room_id is not None:
                await self._start_message_polling(room_id)
        else:
            await self.scheduler.stop(PollKind.ROOMS)
            await self.scheduler.stop(PollKind.MESSAGES)
        if not self._is_current(identity):
            return

        if features.notifications_enabled and self.notifications.enabled:
            await self.scheduler.start(
                PollKind.NOTIFICATIONS,
                identity_id,
                features.notification_poll_interval,
                self._poll_notifications,
            )
        else:
            await self.scheduler.stop(PollKind.NOTIFICATIONS)

    # Push handlers

    def _handle_push_message(self, message: Message) -> None:
        if not self._active or not self.features.chat_enabled:
            return
        self._observe_message(message)

    def _handle_push_notification(self, notification: Notification) -> None:
        if not self._active or not self.features.notifications_enabled:
            return
        self.notifications.receive_candidate(notification)

    def _handle_connection_status(self, connected: bool) -> None:
        if self._active:
            self.logger.info(f"Push channel {'connected' if connected else 'disconnected'}")

    def _observe_message(self, message: Message) -> None:
        self.rooms.observe_message(message)
        self.messages.receive_candidate(message)

    # Poll ticks

    async def _poll_rooms(self) -> None:
        if self._active:
            await self.rooms.load_rooms(self.identity.id)

    async def _poll_messages(self, room_id: str) -> None:
        applied = await self.messages.poll(room_id)
        if not self._active:
            return
        for message in applied:
            self.rooms.observe_message(message)

    async def _poll_notifications(self) -> None:
        if self._active:
            await self.notifications.poll()

    async def _start_message_polling(self, room_id: str) -> None:
        await self.scheduler.start(
            PollKind.MESSAGES,
            room_id,
            self.features.message_poll_interval,
            partial(self._poll_messages, room_id),
        )

    # Chat actions

    async def load_rooms(self) -> ActionResult:
        if not self._active:
            return ActionResult.failed("Session is not active.")
        return await self.rooms.load_rooms(self.identity.id)

    async def create_room(self, name: str | None = None) -> ActionResult:
        if not self._active:
            return ActionResult.failed("Session is not active.")
        return await self.rooms.create_room(name)

    async def set_current_room(self, room_id: str | None) -> ActionResult:
        """
        Focus ``room_id``: load its history, mark it read and poll it.

        ``None`` clears the focus and stops message polling.
        """
        if not self._active:
            return ActionResult.failed("Session is not active.")

        self.rooms.set_current_room(room_id)
        if room_id is None:
            self.messages.focus(None)
            await self.scheduler.stop(PollKind.MESSAGES)
            return ActionResult.ok()

        if self.features.chat_enabled:
            await self._start_message_polling(room_id)

        result = await self.messages.load_history(room_id)
        if not result.success or self.rooms.current_room_id != room_id:
            return result
        for message in result.data:
            self.rooms.observe_message(message)

        await self.mark_all_as_read()
        return result

    async def send_message(self, content: str, room_id: str | None = None) -> ActionResult:
        if not self._active:
            return ActionResult.failed("Session is not active.")
        room_id = room_id or self.rooms.current_room_id
        if room_id is None:
            return ActionResult.failed("No room selected.")

        result = await self.messages.send(room_id, content)
        if result.success and self._active:
            self.rooms.observe_message(result.data)
        return result

    async def mark_all_as_read(self) -> ActionResult:
        """Mark the focused room read on the server and reset its unread count."""
        room_id = self.rooms.current_room_id
        if not self._active or room_id is None:
            return ActionResult.failed("No room selected.")

        result = await self.messages.mark_all_read(room_id, self.identity.id)
        if result.success and self.rooms.current_room_id == room_id:
            self.rooms.reset_unread(room_id)
        return result

    async def subscribe_to_messages(self, room_id: str) -> Cleanup:
        """Poll ``room_id`` until the returned cleanup is awaited."""
        if self._active and self.features.chat_enabled:
            await self._start_message_polling(room_id)

        async def cleanup() -> None:
            if self.scheduler.active_scope(PollKind.MESSAGES) == room_id:
                await self.scheduler.stop(PollKind.MESSAGES)

        return cleanup

    async def subscribe_to_room_updates(self) -> Cleanup:
        """Poll the room list until the returned cleanup is awaited."""
        identity_id = self.identity.id if self.identity else None
        if self._active and self.features.chat_enabled:
            await self.scheduler.start(
                PollKind.ROOMS, identity_id, self.features.room_poll_interval, self._poll_rooms
            )

        async def cleanup() -> None:
            if self.scheduler.active_scope(PollKind.ROOMS) == identity_id:
                await self.scheduler.stop(PollKind.ROOMS)

        return cleanup

    # Notification actions

    def mark_as_read(self, notification_id: str) -> ActionResult:
        if self.notifications.mark_read(notification_id):
            return ActionResult.ok()
        return ActionResult.failed("Notification not found.")

    def dismiss(self, notification_id: str) -> ActionResult:
        if self.notifications.dismiss(notification_id):
            return ActionResult.ok()
        return ActionResult.failed("Notification not found.")

    def mark_all_notifications_read(self) -> ActionResult:
        if not self._active:
            return ActionResult.failed("Session is not active.")
        return ActionResult.ok(self.notifications.mark_all_read(self.identity.id))

    def delete_notification(self, notification_id: str) -> ActionResult:
        if self.notifications.delete(notification_id):
            return ActionResult.ok()
        return ActionResult.failed("Notification not found.")

    def run_notification_action(
        self,
        notification_id: str,
        index: int,
        runner: Callable[[NotificationAction], None],
    ) -> ActionResult:
        """Hand one of a notification's actions to ``runner``, then mark it read."""
        notification = self.notifications.get(notification_id)
        if notification is None:
            return ActionResult.failed("Notification not found.")
        if not 0 <= index < len(notification.actions):
            return ActionResult.failed("Unknown notification action.")

        action = notification.actions[index]
        try:
            runner(action)
        except Exception as e:
            self.logger.error(f"Notification action '{action.label}' failed: {str(e)}")
            return ActionResult.failed(str(e))
        return self.mark_as_read(notification_id)

    # Presentation

    def snapshot(self) -> dict[str, Any]:
        stores = (self.rooms, self.messages, self.notifications)
        return {
            "rooms": self.rooms.rooms,
            "current_room_id": self.rooms.current_room_id,
            "messages": self.messages.messages,
            "notifications": self.notifications.notifications,
            "toasts": self.notifications.toasts(),
            "unread_count": self.rooms.total_unread,
            "notification_unread_count": self.notifications.unread_count,
            "loading": any(store.loading for store in stores),
            "error": next((store.error for store in stores if store.error), None),
            "connected": self.transport.is_connected,
        }
