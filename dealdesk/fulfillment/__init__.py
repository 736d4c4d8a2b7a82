from .coordinator import FulfillmentCoordinator

__all__ = ["FulfillmentCoordinator"]
