"""Lifecycle events, event bus and notification relay."""

from .bus import DealEventBus
from .types import (
    TransitionEvent,
    PaymentRequestedEvent,
    NoShowReportedEvent,
    RatingRecordedEvent,
    FulfillmentStalledEvent,
)
from .notifier import (
    TransitionNotice,
    NotificationEmitter,
    LoggingNotificationEmitter,
    NotificationRelay,
    recipients_for,
)

__all__ = [
    "DealEventBus",
    "TransitionEvent",
    "PaymentRequestedEvent",
    "NoShowReportedEvent",
    "RatingRecordedEvent",
    "FulfillmentStalledEvent",
    "TransitionNotice",
    "NotificationEmitter",
    "LoggingNotificationEmitter",
    "NotificationRelay",
    "recipients_for",
]
