# support_sync/infrastructure/event_dispatcher.py
from collections import defaultdict
from collections.abc import Awaitable, Callable

from support_sync.domain.events import Event
from support_sync.infrastructure.logger import get_logger

Handler = Callable[[Event], Awaitable[None]]


class EventDispatcher:
    def __init__(self) -> None:
        self.handlers: dict[type[Event], list[Handler]] = defaultdict(list)
        self.logger = get_logger("EventDispatcher")

    def register(self, event_type: type[Event], handler: Handler) -> Callable[[], None]:
        self.handlers[event_type].append(handler)

        def unregister() -> None:
            if handler in self.handlers[event_type]:
                self.handlers[event_type].remove(handler)

        return unregister

    async def dispatch(self, event: Event) -> None:
        for handler in list(self.handlers[type(event)]):
            try:
                await handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in handler for {type(event).__name__}: {str(e)}"
                )
