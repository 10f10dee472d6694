# support_sync/stores/base.py
from collections.abc import Callable
from enum import Enum
from typing import Any

from support_sync.infrastructure.logger import get_logger

Observer = Callable[[dict[str, Any]], None]


class StoreEvent(Enum):
    """Events that can trigger state changes."""

    ROOMS_LOADED = "rooms_loaded"
    ROOM_UPDATED = "room_updated"
    CURRENT_ROOM_CHANGED = "current_room_changed"
    UNREAD_COUNT_UPDATED = "unread_count_updated"
    MESSAGES_CHANGED = "messages_changed"
    NOTIFICATIONS_CHANGED = "notifications_changed"
    LOADING_CHANGED = "loading_changed"
    ERROR_CHANGED = "error_changed"


class ObservableStore:
    """
    Observer-pattern base for the client-side stores.

    All stores live on one event loop, so state is mutated between suspension
    points only and needs no locking.
    """

    def __init__(self, name: str) -> None:
        self.logger = get_logger(name)
        self._observers: dict[StoreEvent, list[Observer]] = {
            event: [] for event in StoreEvent
        }
        self._loading = False
        self._error: str | None = None

    def subscribe(self, event: StoreEvent, callback: Observer) -> Callable[[], None]:
        """Subscribe to state changes for a specific event; returns the unsubscribe handle."""
        if callback not in self._observers[event]:
            self._observers[event].append(callback)
            self.logger.debug(f"Subscribed to {event.value}")
        return lambda: self.unsubscribe(event, callback)

    def unsubscribe(self, event: StoreEvent, callback: Observer) -> None:
        if callback in self._observers[event]:
            self._observers[event].remove(callback)
            self.logger.debug(f"Unsubscribed from {event.value}")

    def _notify_observers(self, event: StoreEvent, data: dict[str, Any]) -> None:
        for callback in list(self._observers[event]):
            try:
                callback(data)
            except Exception as e:
                self.logger.error(
                    f"Error in observer callback for {event.value}: {str(e)}"
                )

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> str | None:
        return self._error

    def _set_loading(self, loading: bool) -> None:
        if self._loading != loading:
            self._loading = loading
            self._notify_observers(StoreEvent.LOADING_CHANGED, {"loading": loading})

    def _set_error(self, error: str | None) -> None:
        if self._error != error:
            self._error = error
            self._notify_observers(StoreEvent.ERROR_CHANGED, {"error": error})

    def clear_error(self) -> None:
        self._set_error(None)
