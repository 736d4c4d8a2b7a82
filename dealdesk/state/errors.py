"""
Error taxonomy for the transaction lifecycle engine.

Every rejection raised by the engine derives from DealError and carries
structured detail (transaction, current state, attempted action, actor) so
callers can render it without parsing messages.

Persistence failures are NOT DealErrors: StoreUnavailableError is a plain
I/O failure the caller retries with backoff.
"""

from typing import Any, Dict, Optional


class DealError(Exception):
    """Base class for all engine rejections."""

    code = "deal_error"

    def __init__(
        self,
        message: str,
        *,
        transaction_id: Optional[str] = None,
        current_state: Optional[str] = None,
        attempted: Optional[str] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id
        self.current_state = current_state
        self.attempted = attempted
        self.actor_id = actor_id
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "current_state": self.current_state,
            "attempted": self.attempted,
            "actor_id": self.actor_id,
            "reason": self.reason,
        }


class InvalidTransitionError(DealError):
    """Requested action is not legal from the current state."""
    code = "invalid_transition"


class ExpiredWindowError(InvalidTransitionError):
    """Decision deadline passed before the sweeper got to the record."""
    code = "expired_window"


class UnauthorizedActorError(DealError):
    """Actor is not a party, or not the party allowed to perform the action."""
    code = "unauthorized_actor"


class StaleWriteError(DealError):
    """Record changed between read and conditional write."""
    code = "stale_write"

    def __init__(self, message: str, *, expected_version: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expected_version = expected_version

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["expected_version"] = self.expected_version
        return data


class IncompleteFulfillmentError(DealError):
    """Aggregate-gated transition requested before both parties are done."""
    code = "incomplete_fulfillment"


class InvalidRequestError(DealError):
    """Malformed request payload."""
    code = "invalid_request"


class DuplicateProposalError(DealError):
    """An active transaction already exists for the same parties and subject."""
    code = "duplicate_proposal"


class TransactionNotFoundError(DealError):
    """Unknown transaction id."""
    code = "not_found"


class StoreUnavailableError(RuntimeError):
    """Persistence layer failed; no state was mutated."""
    pass
