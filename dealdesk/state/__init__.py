"""
Transaction state: records, errors, persistence and transition rules.
"""

from .errors import (
    DealError,
    InvalidTransitionError,
    ExpiredWindowError,
    UnauthorizedActorError,
    StaleWriteError,
    IncompleteFulfillmentError,
    InvalidRequestError,
    DuplicateProposalError,
    TransactionNotFoundError,
    StoreUnavailableError,
)
from .models import (
    SYSTEM_ACTOR,
    TransactionKind,
    PartyRole,
    OfferStatus,
    SwapStatus,
    ExchangeMode,
    MeetupDetails,
    ItemSnapshot,
    CashTopUp,
    PhotoProof,
    Rating,
    NoShowReport,
    NegotiationEntry,
    Transaction,
    Offer,
    Swap,
)
from .store import TransactionStore, SqliteTransactionStore, MemoryTransactionStore
from .transaction_log import TransactionLog, TransactionLogError, TransactionLogCorruptionError
from .authority import Action, Permission, TransitionRule, TRANSITION_RULES, Decision, AutoStep, TransitionAuthority

__all__ = [
    "DealError",
    "InvalidTransitionError",
    "ExpiredWindowError",
    "UnauthorizedActorError",
    "StaleWriteError",
    "IncompleteFulfillmentError",
    "InvalidRequestError",
    "DuplicateProposalError",
    "TransactionNotFoundError",
    "StoreUnavailableError",
    "SYSTEM_ACTOR",
    "TransactionKind",
    "PartyRole",
    "OfferStatus",
    "SwapStatus",
    "ExchangeMode",
    "MeetupDetails",
    "ItemSnapshot",
    "CashTopUp",
    "PhotoProof",
    "Rating",
    "NoShowReport",
    "NegotiationEntry",
    "Transaction",
    "Offer",
    "Swap",
    "TransactionStore",
    "SqliteTransactionStore",
    "MemoryTransactionStore",
    "TransactionLog",
    "TransactionLogError",
    "TransactionLogCorruptionError",
    "Action",
    "Permission",
    "TransitionRule",
    "TRANSITION_RULES",
    "Decision",
    "AutoStep",
    "TransitionAuthority",
]
