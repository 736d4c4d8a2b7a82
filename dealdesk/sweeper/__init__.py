"""Background expiry of overdue negotiations."""

from .expiry import ExpirySweeper, SweepResult

__all__ = ["ExpirySweeper", "SweepResult"]
