import asyncio
import os

from support_sync.config import AppConfig
from support_sync.domain.entities import Identity, SenderRole
from support_sync.infrastructure.logger import get_logger
from support_sync.session import SyncSession
from support_sync.stores.base import StoreEvent

logger = get_logger("main")


def identity_from_env() -> Identity:
    return Identity(
        id=os.environ["SYNC_USER_ID"],
        display_name=os.environ.get("SYNC_USER_NAME", ""),
        role=SenderRole(os.environ.get("SYNC_USER_ROLE", SenderRole.USER.value)),
    )


async def main():
    session = SyncSession(AppConfig())

    session.rooms.subscribe(
        StoreEvent.UNREAD_COUNT_UPDATED,
        lambda data: logger.info(f"Unread in {data['room_id']}: {data['new_count']}"),
    )
    session.notifications.subscribe(
        StoreEvent.NOTIFICATIONS_CHANGED,
        lambda data: logger.info(f"{len(data['toasts'])} notification(s) to show"),
    )

    await session.start(identity_from_env())
    try:
        while True:
            await asyncio.sleep(30)
            snapshot = session.snapshot()
            logger.info(
                f"{len(snapshot['rooms'])} rooms, {snapshot['unread_count']} unread messages, "
                f"{snapshot['notification_unread_count']} unread notifications, "
                f"connected={snapshot['connected']}"
            )
    finally:
        await session.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
