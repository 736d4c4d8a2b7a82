from .collector import RatingCollector, RatingSummary, MIN_SCORE, MAX_SCORE

__all__ = ["RatingCollector", "RatingSummary", "MIN_SCORE", "MAX_SCORE"]
