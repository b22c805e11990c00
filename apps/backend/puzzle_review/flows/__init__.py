"""Orchestration over the scheduler core and the review record store."""

from .review_queue import DueReview, ReviewQueueService, ReviewResult
from .review_stats import ReviewStats, ReviewStatsAggregator, start_of_day
from .retry import StoreRetry

__all__ = [
    "DueReview",
    "ReviewQueueService",
    "ReviewResult",
    "ReviewStats",
    "ReviewStatsAggregator",
    "StoreRetry",
    "start_of_day",
]
