"""
Notification boundary: turns committed lifecycle events into per-user notices.

Delivery is fire-and-forget. A failing emitter is logged and never rolls
back a transition (the transition is already committed when the event is
dispatched).

Routing:
- party action       -> the other party
- automatic / system -> both parties
- no-show, stalled   -> both parties
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from dealdesk.events.bus import DealEventBus
from dealdesk.events.types import (
    FulfillmentStalledEvent,
    NoShowReportedEvent,
    TransitionEvent,
)
from dealdesk.logging import get_logger, LogStream
from dealdesk.state.models import SYSTEM_ACTOR
from dealdesk.time import utc_now


@dataclass(frozen=True)
class TransitionNotice:
    """What one user is told about one transaction change."""
    transaction_id: str
    kind: str
    action: str
    new_state: str
    acting_party_id: str
    recipient_id: str
    previous_state: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


class NotificationEmitter(Protocol):
    """External delivery channel (chat system message, push, email)."""

    def send(self, notice: TransitionNotice) -> None: ...


class LoggingNotificationEmitter:
    """Default emitter: writes each notice to the events log stream."""

    def __init__(self):
        self.logger = get_logger(LogStream.EVENTS)

    def send(self, notice: TransitionNotice) -> None:
        self.logger.info(
            f"Notify {notice.recipient_id}: {notice.kind} {notice.transaction_id} {notice.action} -> {notice.new_state}",
            extra={
                "transaction_id": notice.transaction_id,
                "recipient_id": notice.recipient_id,
                "action": notice.action,
                "new_state": notice.new_state,
            },
        )


def recipients_for(event: TransitionEvent) -> List[str]:
    """Who hears about a transition."""
    parties = [event.initiator_id, event.counterparty_id]
    if event.automatic or event.actor_id == SYSTEM_ACTOR or event.actor_id not in parties:
        return parties
    return [p for p in parties if p != event.actor_id]


class NotificationRelay:
    """
    Bridges the event bus to a NotificationEmitter.

    USAGE:
        relay = NotificationRelay(LoggingNotificationEmitter())
        relay.attach(bus)     # before bus.start()
    """

    def __init__(self, emitter: NotificationEmitter):
        self.emitter = emitter
        self.logger = get_logger(LogStream.EVENTS)
        self.sent = 0
        self.failed = 0

    def attach(self, bus: DealEventBus) -> None:
        bus.subscribe(TransitionEvent, self.on_transition)
        bus.subscribe(NoShowReportedEvent, self.on_no_show)
        bus.subscribe(FulfillmentStalledEvent, self.on_stalled)

    def on_transition(self, event: TransitionEvent) -> None:
        self._deliver(
            TransitionNotice(
                transaction_id=event.transaction_id,
                kind=event.kind,
                action=event.action,
                new_state=event.to_state,
                acting_party_id=event.actor_id,
                recipient_id=recipient,
                previous_state=event.from_state,
                timestamp=event.timestamp,
            )
            for recipient in recipients_for(event)
        )

    def on_no_show(self, event: NoShowReportedEvent) -> None:
        self._deliver(
            TransitionNotice(
                transaction_id=event.transaction_id,
                kind=event.kind,
                action="report_no_show",
                new_state="under_review",
                acting_party_id=event.reported_by_id,
                recipient_id=recipient,
                timestamp=event.timestamp,
            )
            for recipient in (event.reported_by_id, event.reported_party_id)
        )

    def on_stalled(self, event: FulfillmentStalledEvent) -> None:
        self._deliver(
            TransitionNotice(
                transaction_id=event.transaction_id,
                kind=event.kind,
                action="fulfillment_stalled",
                new_state=event.state,
                acting_party_id=SYSTEM_ACTOR,
                recipient_id=recipient,
                previous_state=event.state,
                timestamp=event.timestamp,
            )
            for recipient in (event.initiator_id, event.counterparty_id)
        )

    def _deliver(self, notices: Iterable[TransitionNotice]) -> None:
        # One recipient failing must not starve the other
        for notice in notices:
            try:
                self.emitter.send(notice)
                self.sent += 1
            except Exception as e:
                self.failed += 1
                self.logger.error(
                    "Notification delivery failed",
                    extra={
                        "transaction_id": notice.transaction_id,
                        "recipient_id": notice.recipient_id,
                        "error": str(e),
                    },
                    exc_info=True,
                )
