# support_sync/domain/entities.py
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

BROADCAST_RECIPIENT = "all"
LOCAL_ID_PREFIX = "local-"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class SenderRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    OPERATOR = "operator"
    SYSTEM = "system"

    @property
    def is_staff(self) -> bool:
        match self:
            case SenderRole.ADMIN | SenderRole.OPERATOR:
                return True
            case SenderRole.USER | SenderRole.SYSTEM:
                return False

    @property
    def receives_notifications(self) -> bool:
        # Operators send notifications, they never receive them.
        match self:
            case SenderRole.OPERATOR:
                return False
            case SenderRole.USER | SenderRole.ADMIN | SenderRole.SYSTEM:
                return True


class RoomStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    CLOSED = "closed"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CUSTOM = "custom"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Identity(BaseModel):
    id: str
    display_name: str = ""
    role: SenderRole = SenderRole.USER

    model_config = ConfigDict(frozen=True)


class ChatRoom(BaseModel):
    id: str
    name: str = "Customer Support"
    participants: list[str] = Field(default_factory=list)
    last_message: str | None = None
    last_message_id: str | None = None
    last_message_at: datetime | None = None
    unread_count: int = Field(default=0, ge=0)
    status: RoomStatus = RoomStatus.ACTIVE
    created_at: datetime
    updated_at: datetime
    user_name: str | None = None
    user_email: str | None = None

    model_config = ConfigDict(frozen=True)


class Message(BaseModel):
    id: str
    room_id: str
    sender_id: str | None
    sender_name: str
    sender_role: SenderRole
    content: str
    created_at: datetime
    status: MessageStatus = MessageStatus.SENT
    is_deleted: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def is_local(self) -> bool:
        return self.id.startswith(LOCAL_ID_PREFIX)

    @property
    def is_system(self) -> bool:
        return self.sender_id is None


class NotificationAction(BaseModel):
    label: str
    action: str
    style: str = "primary"

    model_config = ConfigDict(frozen=True)


class Notification(BaseModel):
    id: str
    type: NotificationType = NotificationType.INFO
    title: str
    message: str
    sender: str = "system"
    recipient_id: str
    created_at: datetime
    read_at: datetime | None = None
    dismissed_at: datetime | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    auto_close: bool = True
    duration: int | None = None
    icon: str | None = None
    actions: list[NotificationAction] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def is_broadcast(self) -> bool:
        return self.recipient_id == BROADCAST_RECIPIENT

    @property
    def is_toast_eligible(self) -> bool:
        return self.read_at is None and self.dismissed_at is None

    def addressed_to(self, identity_id: str) -> bool:
        return self.is_broadcast or self.recipient_id == identity_id


def utcnow() -> datetime:
    return datetime.now(UTC)
