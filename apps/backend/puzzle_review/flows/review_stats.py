from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from datetime import datetime, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo

from ..logging import logger
from ..scheduler import ensure_aware, is_due, utcnow
from ..store.base import ReviewRecordStore
from .retry import StoreRetry


@dataclass(frozen=True)
class ReviewStats:
    due_count: int
    total_tracked: int
    reviews_today: int
    avg_quality: float


def start_of_day(now: datetime, tz: tzinfo | str | None = None) -> datetime:
    """Midnight of ``now``'s calendar day in ``tz`` (UTC when omitted), as an aware datetime."""

    zone = ZoneInfo(tz) if isinstance(tz, str) else (tz or ZoneInfo("UTC"))
    local = ensure_aware(now).astimezone(zone)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


class ReviewStatsAggregator:
    """Read-only summary counters over a learner's review records and review log."""

    def __init__(
        self,
        store: ReviewRecordStore,
        *,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._retry = StoreRetry(max_attempts=max_attempts, backoff_ms=backoff_ms, sleep=sleep)

    def get_review_stats(
        self,
        learner_id: str,
        *,
        day_start: datetime | None = None,
        now: datetime | None = None,
    ) -> ReviewStats:
        """Aggregate due/tracked counts and today's review activity.

        - day_start: 呼び出し側で解決済みの「今日の開始時刻」（未指定なら UTC 0 時）
        - avg_quality: 今日の採点が無い場合は 0.0（NaN や欠損にはしない）
        """

        reference = ensure_aware(now or utcnow())
        boundary = ensure_aware(day_start) if day_start is not None else start_of_day(reference)

        items = self._retry.call(
            "list_review_items",
            lambda: self._store.list_review_items(learner_id),
            learner_id=learner_id,
        )
        events = self._retry.call(
            "list_review_events",
            lambda: self._store.list_review_events(learner_id, boundary),
            learner_id=learner_id,
        )

        due_count = sum(1 for it in items if is_due(it, reference))
        reviews_today = sum(
            1 for it in items if it.last_reviewed_at is not None and ensure_aware(it.last_reviewed_at) >= boundary
        )
        qualities = [ev.quality for ev in events]
        avg_quality = round(sum(qualities) / len(qualities), 2) if qualities else 0.0

        stats = ReviewStats(
            due_count=due_count,
            total_tracked=len(items),
            reviews_today=reviews_today,
            avg_quality=avg_quality,
        )
        logger.debug("review_stats_computed", learner_id=learner_id, **asdict(stats))
        return stats
