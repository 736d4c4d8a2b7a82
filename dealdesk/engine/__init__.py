from .deal_engine import DealEngine, ACTIVE_SWAP_STATES

__all__ = ["DealEngine", "ACTIVE_SWAP_STATES"]
