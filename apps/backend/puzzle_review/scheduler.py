"""SM-2 spaced-repetition scheduling.

Pure functions over :class:`ReviewItem`; nothing here touches storage or the
wall clock unless the caller omits ``now``.

- quality: 0..5 （0-2=失念, 3=辛うじて想起, 4-5=容易に想起）
- easiness_factor は 1.3 を下限にクランプ
- 成功時の間隔は 1日 → 6日 → round(前回間隔 × EF) と段階的に伸びる
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from .errors import InvalidQuality


MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3

DEFAULT_EASINESS = 2.5
MIN_EASINESS = 1.3
DEFAULT_INTERVAL_DAYS = 1
LAPSE_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6


@dataclass(frozen=True)
class ReviewItem:
    """Review state of one (learner, item) pair."""

    learner_id: str
    item_id: str
    easiness_factor: float = DEFAULT_EASINESS
    interval_days: int = DEFAULT_INTERVAL_DAYS
    repetitions: int = 0
    next_review_date: datetime | None = None
    last_reviewed_at: datetime | None = None
    created_at: datetime | None = None
    revision: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.learner_id, self.item_id)

    @property
    def is_persisted(self) -> bool:
        return self.revision > 0


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalise aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def validate_quality(quality: object) -> int:
    """Return ``quality`` if it is an int in 0..5, raise :class:`InvalidQuality` otherwise.

    bool は int のサブクラスだが評価値としては受け付けない。範囲外の値を
    丸めて受理することはしない。
    """

    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidQuality(quality)
    if quality < MIN_QUALITY or quality > MAX_QUALITY:
        raise InvalidQuality(quality)
    return quality


def next_easiness(easiness_factor: float, quality: int) -> float:
    penalty = MAX_QUALITY - quality
    updated = easiness_factor + (0.1 - penalty * (0.08 + penalty * 0.02))
    return max(updated, MIN_EASINESS)


def next_interval(
    interval_days: int,
    repetitions: int,
    easiness_factor: float,
) -> int:
    """Interval for the ``repetitions``-th consecutive success (already incremented)."""

    if repetitions == 1:
        return DEFAULT_INTERVAL_DAYS
    if repetitions == 2:
        return SECOND_INTERVAL_DAYS
    return max(1, round(interval_days * easiness_factor))


def seed_state(learner_id: str, item_id: str, *, now: datetime | None = None) -> ReviewItem:
    """Initial state for an item that just entered the review system."""

    created = ensure_aware(now or utcnow())
    return ReviewItem(
        learner_id=learner_id,
        item_id=item_id,
        easiness_factor=DEFAULT_EASINESS,
        interval_days=DEFAULT_INTERVAL_DAYS,
        repetitions=0,
        next_review_date=created + timedelta(days=DEFAULT_INTERVAL_DAYS),
        last_reviewed_at=None,
        created_at=created,
        revision=0,
    )


def advance(
    state: ReviewItem,
    quality: int,
    *,
    now: datetime | None = None,
    lapse_interval_days: int = LAPSE_INTERVAL_DAYS,
) -> ReviewItem:
    """Apply one review with ``quality`` and return the next state.

    入力の state は変更せず新しい値を返す。同じ入力には常に同じ出力を返すため、
    二重送信の検出は呼び出し側（ReviewQueueService）の責務となる。
    """

    quality = validate_quality(quality)
    reviewed_at = ensure_aware(now or utcnow())
    easiness = next_easiness(state.easiness_factor, quality)

    if quality < PASSING_QUALITY:
        repetitions = 0
        interval = max(1, int(lapse_interval_days))
    else:
        repetitions = state.repetitions + 1
        interval = next_interval(state.interval_days, repetitions, easiness)

    return replace(
        state,
        easiness_factor=easiness,
        interval_days=interval,
        repetitions=repetitions,
        next_review_date=reviewed_at + timedelta(days=interval),
        last_reviewed_at=reviewed_at,
        created_at=state.created_at or reviewed_at,
    )


def is_due(state: ReviewItem, now: datetime | None = None) -> bool:
    if state.next_review_date is None:
        return True
    return ensure_aware(state.next_review_date) <= ensure_aware(now or utcnow())


def days_overdue(state: ReviewItem, now: datetime | None = None) -> int:
    """Whole days elapsed since the item became due (0 when not yet due)."""

    if state.next_review_date is None:
        return 0
    delta = ensure_aware(now or utcnow()) - ensure_aware(state.next_review_date)
    if delta <= timedelta(0):
        return 0
    return delta.days


def days_until_due(state: ReviewItem, now: datetime | None = None) -> int:
    """Days remaining until the item is due, rounded up (0 when already due)."""

    if state.next_review_date is None:
        return 0
    delta = ensure_aware(state.next_review_date) - ensure_aware(now or utcnow())
    if delta <= timedelta(0):
        return 0
    return math.ceil(delta.total_seconds() / 86400)
