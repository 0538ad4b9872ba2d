"""Domain layer - 外部依存なしのドメインモデルとインターフェース定義"""

from halloo.domain.errors import (
    DuplicateWrite,
    HallooError,
    InvalidPhoneNumber,
    MalformedInboundEvent,
    ProfileNotFound,
    SendFailed,
    StoreWriteFailed,
    TaskNotFound,
)
from halloo.domain.models import (
    Change,
    Classification,
    ElderlyProfile,
    GalleryEventType,
    GalleryHistoryEvent,
    InboundSMS,
    ProfileCreatedData,
    ProfileStatus,
    ResponseType,
    Sentiment,
    SMSResponse,
    Task,
    TaskFrequency,
    TaskResponseData,
    TaskStatus,
    TransitionWrite,
    User,
    Weekday,
)
from halloo.domain.ports import (
    BlobStorage,
    EntityStore,
    MediaFetcher,
    SMSSender,
    Subscription,
)

__all__ = [
    # Models
    "User",
    "ElderlyProfile",
    "Task",
    "SMSResponse",
    "GalleryHistoryEvent",
    "ProfileCreatedData",
    "TaskResponseData",
    "InboundSMS",
    "Classification",
    "TransitionWrite",
    "Change",
    "ProfileStatus",
    "TaskStatus",
    "TaskFrequency",
    "Weekday",
    "ResponseType",
    "Sentiment",
    "GalleryEventType",
    # Errors
    "HallooError",
    "InvalidPhoneNumber",
    "MalformedInboundEvent",
    "ProfileNotFound",
    "TaskNotFound",
    "StoreWriteFailed",
    "DuplicateWrite",
    "SendFailed",
    # Ports
    "EntityStore",
    "Subscription",
    "SMSSender",
    "MediaFetcher",
    "BlobStorage",
]
