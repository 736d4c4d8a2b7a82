"""
Fulfillment coordinator: post-acceptance steps of offers and swaps.

Every operation here is a per-party write. Each returns a Decision whose
record already carries the macro-state move (if any) computed by the
authority's aggregate readiness check, so the move commits in the same
conditional write as the party's own step. The engine retries these
writes on a version conflict; re-applying on the fresh record is what
merges two parties acting at the same time.

CRITICAL RULES:
1. Per-party fields are write-once
2. exchange_mode is chosen once, by either party
3. Completion requires BOTH parties (meetup, reception)
4. A no-show report is advisory: it never completes or cancels
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from dealdesk.logging import get_logger, LogStream
from dealdesk.state.authority import Action, Decision, TransitionAuthority, in_person_blocker
from dealdesk.state.errors import InvalidRequestError, InvalidTransitionError
from dealdesk.state.models import (
    SYSTEM_ACTOR,
    ExchangeMode,
    NoShowReport,
    Offer,
    PartyRole,
    PhotoProof,
    Swap,
    Transaction,
)
from dealdesk.time import ensure_utc

_IN_PERSON_MESSAGES = {
    "not_a_meetup_offer": "offer has no meetup",
    "already_completed": "offer already completed",
    "not_hand_delivery": "swap is not in hand delivery mode",
}


class FulfillmentCoordinator:
    """
    Decides fulfillment steps on fresh records.

    USAGE:
        coordinator = FulfillmentCoordinator(authority)
        decision = coordinator.confirm_reception(swap, user_id, now)
        # decision.auto_steps == [shipping -> completed] once both confirmed
    """

    def __init__(self, authority: TransitionAuthority):
        self.authority = authority
        self.logger = get_logger(LogStream.FULFILLMENT)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reject(self, cls, message: str, record: Transaction, action: Action, actor_id: str, reason: str):
        return cls(
            message,
            transaction_id=record.transaction_id,
            current_state=record.state.value,
            attempted=action.value,
            actor_id=actor_id,
            reason=reason,
        )

    def _finish(
        self,
        record: Transaction,
        new: Transaction,
        action: Action,
        actor_id: str,
        now: datetime,
        details: Optional[dict] = None,
    ) -> Decision:
        steps = self.authority.advance(new, now)
        decision = Decision(
            record=new,
            action=action,
            actor_id=actor_id,
            from_state=record.state,
            to_state=record.state,
            expected_version=record.version,
            auto_steps=steps,
            details=details or {},
        )
        self.logger.info(
            f"{record.kind.value} {record.transaction_id}: {action.value} by {actor_id}",
            extra={
                "transaction_id": record.transaction_id,
                "action": action.value,
                "actor_id": actor_id,
                "state": new.state.value,
                "auto_steps": [f"{s.from_state.value}->{s.to_state.value}" for s in steps],
            },
        )
        return decision

    def _noop(self, record: Transaction, action: Action, actor_id: str) -> Decision:
        return Decision(
            record=record,
            action=action,
            actor_id=actor_id,
            from_state=record.state,
            to_state=record.state,
            expected_version=record.version,
            noop=True,
        )

    def _require_in_person(self, record: Transaction, action: Action, actor_id: str) -> None:
        reason = in_person_blocker(record)
        if reason is not None:
            raise self._reject(
                InvalidTransitionError, _IN_PERSON_MESSAGES[reason], record, action, actor_id, reason
            )

    # ------------------------------------------------------------------
    # Swap: exchange mode
    # ------------------------------------------------------------------

    def select_exchange_mode(self, record: Swap, actor_id: str, mode, now: datetime) -> Decision:
        """
        Choose hand_delivery or shipping. Set once, never changed.

        Shipping moves the swap to photos_pending in the same write.
        """
        action = Action.SELECT_EXCHANGE_MODE
        self.authority.check(record, action, actor_id, now)
        if record.exchange_mode is not None:
            raise self._reject(
                InvalidTransitionError,
                f"exchange mode already set to {record.exchange_mode.value}",
                record, action, actor_id, "exchange_mode_already_set",
            )
        try:
            mode = ExchangeMode(mode)
        except ValueError as e:
            raise self._reject(
                InvalidRequestError, f"unknown exchange mode: {mode!r}", record, action, actor_id, "invalid_mode"
            ) from e

        new = record.clone()
        new.exchange_mode = mode
        new.stamp(f"exchange_mode_{mode.value}", now)
        return self._finish(record, new, action, actor_id, now, {"exchange_mode": mode.value})

    # ------------------------------------------------------------------
    # Swap: shipping path
    # ------------------------------------------------------------------

    def submit_photos(self, record: Swap, actor_id: str, photo_urls: Iterable[str], now: datetime) -> Decision:
        """Photo proof of the item the actor is sending (write-once per party)."""
        action = Action.UPLOAD_PHOTOS
        self.authority.check(record, action, actor_id, now)
        role = record.role_of(actor_id)
        if role in record.photos:
            raise self._reject(
                InvalidTransitionError, "photos already submitted", record, action, actor_id, "photos_already_submitted"
            )
        if isinstance(photo_urls, str):
            photo_urls = [photo_urls]
        urls = tuple(u.strip() for u in (photo_urls or ()) if isinstance(u, str) and u.strip())
        if not urls:
            raise self._reject(
                InvalidRequestError, "at least one photo is required", record, action, actor_id, "no_photos"
            )

        new = record.clone()
        new.photos[role] = PhotoProof(photo_urls=urls, uploaded_at=ensure_utc(now))
        return self._finish(record, new, action, actor_id, now, {"photo_count": len(urls), "role": role.value})

    def confirm_shipping(self, record: Swap, actor_id: str, now: datetime, tracking_id: Optional[str] = None) -> Decision:
        """Actor handed its item to the carrier (write-once per party)."""
        action = Action.CONFIRM_SHIPPING
        self.authority.check(record, action, actor_id, now)
        role = record.role_of(actor_id)
        if role in record.shipped_at:
            raise self._reject(
                InvalidTransitionError, "shipping already confirmed", record, action, actor_id, "already_shipped"
            )

        new = record.clone()
        new.shipped_at[role] = ensure_utc(now)
        if tracking_id:
            new.tracking_ids[role] = str(tracking_id)
        return self._finish(record, new, action, actor_id, now, {"role": role.value, "tracking_id": tracking_id})

    def confirm_reception(self, record: Swap, actor_id: str, now: datetime) -> Decision:
        """
        Actor received the other party's item (write-once per party).

        The second confirmation completes the swap.
        """
        action = Action.CONFIRM_RECEPTION
        self.authority.check(record, action, actor_id, now)
        role = record.role_of(actor_id)
        if role in record.received_at:
            raise self._reject(
                InvalidTransitionError, "reception already confirmed", record, action, actor_id, "already_received"
            )

        new = record.clone()
        new.received_at[role] = ensure_utc(now)
        return self._finish(record, new, action, actor_id, now, {"role": role.value})

    def record_delivery(
        self,
        record: Transaction,
        shipper_id: str,
        now: datetime,
        tracking_id: Optional[str] = None,
    ) -> Decision:
        """
        Carrier reports the parcel sent by *shipper_id* delivered.

        Swap: records reception for the other party.
        Ship-to-buyer offer: completes the offer.
        Repeated carrier events are no-ops.
        """
        action = Action.RECORD_DELIVERY
        self.authority.check(record, action, SYSTEM_ACTOR, now)
        shipper = record.role_of(shipper_id)
        if shipper is None:
            raise self._reject(
                InvalidRequestError, f"{shipper_id} is not a party", record, action, SYSTEM_ACTOR, "shipper_not_party"
            )

        if isinstance(record, Offer):
            if record.is_meetup:
                raise self._reject(
                    InvalidTransitionError, "meetup offers are not shipped", record, action, SYSTEM_ACTOR, "meetup_offer"
                )
            if shipper is not PartyRole.COUNTERPARTY:
                raise self._reject(
                    InvalidRequestError, "only the seller ships an offer", record, action, SYSTEM_ACTOR, "wrong_shipper"
                )
            if record.stamped("delivered") is not None:
                return self._noop(record, action, SYSTEM_ACTOR)
            new = record.clone()
            new.stamp("delivered", now)
            if tracking_id:
                new.tracking_id = str(tracking_id)
            return self._finish(record, new, action, SYSTEM_ACTOR, now, {"shipper_id": shipper_id})

        recipient = shipper.other()
        if recipient in record.received_at:
            return self._noop(record, action, SYSTEM_ACTOR)
        new = record.clone()
        new.received_at[recipient] = ensure_utc(now)
        if tracking_id and shipper not in new.tracking_ids:
            new.tracking_ids[shipper] = str(tracking_id)
        return self._finish(
            record, new, action, SYSTEM_ACTOR, now,
            {"shipper_id": shipper_id, "recipient_role": recipient.value, "tracking_id": tracking_id},
        )

    # ------------------------------------------------------------------
    # In-person handover (meetup offers, hand-delivery swaps)
    # ------------------------------------------------------------------

    def confirm_meetup(self, record: Transaction, actor_id: str, now: datetime) -> Decision:
        """Actor confirms the handover happened; both confirmations complete it."""
        action = Action.CONFIRM_MEETUP
        self.authority.check(record, action, actor_id, now)
        self._require_in_person(record, action, actor_id)
        role = record.role_of(actor_id)
        if role in record.meetup_confirmations:
            raise self._reject(
                InvalidTransitionError, "meetup already confirmed", record, action, actor_id, "already_confirmed"
            )

        new = record.clone()
        new.meetup_confirmations[role] = ensure_utc(now)
        return self._finish(record, new, action, actor_id, now, {"role": role.value})

    def report_no_show(self, record: Transaction, actor_id: str, now: datetime, reason: Optional[str] = None) -> Decision:
        """
        Actor says the other party did not show up.

        Allowed once per party and only after the scheduled time (if any).
        Recorded for manual review; the state does not change.
        """
        action = Action.REPORT_NO_SHOW
        self.authority.check(record, action, actor_id, now)
        self._require_in_person(record, action, actor_id)
        role = record.role_of(actor_id)
        if record.has_reported_no_show(role):
            raise self._reject(
                InvalidTransitionError, "no-show already reported", record, action, actor_id, "already_reported"
            )
        if isinstance(record, Offer) and record.meetup.date_time is not None:
            if ensure_utc(now) < record.meetup.date_time:
                raise self._reject(
                    InvalidTransitionError,
                    f"meetup is scheduled for {record.meetup.date_time.isoformat()}",
                    record, action, actor_id, "meetup_not_yet_due",
                )

        new = record.clone()
        new.no_show_reports.append(NoShowReport(reported_by=role, reported_at=ensure_utc(now), reason=reason))
        self.logger.warning(
            f"No-show reported on {record.transaction_id}",
            extra={
                "transaction_id": record.transaction_id,
                "reported_by": actor_id,
                "reported_party": record.party_id(role.other()),
                "reason": reason,
            },
        )
        return self._finish(record, new, action, actor_id, now, {"role": role.value, "reason": reason})

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    @staticmethod
    def stalled_for(record: Transaction, now: datetime, threshold: timedelta) -> Optional[timedelta]:
        """Idle time if *record* sits in fulfillment longer than *threshold*."""
        if not record.in_fulfillment:
            return None
        idle = ensure_utc(now) - record.last_activity()
        return idle if idle >= threshold else None
