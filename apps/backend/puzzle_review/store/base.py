from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Protocol

from ..scheduler import ReviewItem


@dataclass(frozen=True)
class ReviewEvent:
    """One submitted review, appended to the review log."""

    learner_id: str
    item_id: str
    quality: int
    time_spent_seconds: int
    reviewed_at: datetime
    easiness_factor: float
    interval_days: int
    next_review_date: datetime


@dataclass(frozen=True)
class ItemMetadata:
    """Display attributes owned by the content collaborator."""

    item_id: str
    title: str
    math_concept: str = ""
    difficulty: int = 1
    zone_id: str | None = None


class ReviewRecordStore(Protocol):
    """Keyed storage for review records, the review log and puzzle metadata.

    実装は backend 固有の例外を RecordConflict / StoreUnavailable へ変換する。
    """

    def get_review_item(self, learner_id: str, item_id: str) -> ReviewItem | None: ...

    def insert_review_item(self, item: ReviewItem) -> bool:
        """Insert ``item`` if no record exists for its key; False when one already does."""
        ...

    def commit_review(self, item: ReviewItem, event: ReviewEvent, *, expected_revision: int) -> ReviewItem:
        """Write ``item`` and ``event`` atomically if the stored revision equals ``expected_revision``.

        ``expected_revision == 0`` は「未作成であること」を条件とする。
        Returns the stored item with its new revision.
        """
        ...

    def list_due_items(self, learner_id: str, now: datetime, limit: int | None = None) -> list[ReviewItem]: ...

    def list_review_items(self, learner_id: str) -> list[ReviewItem]: ...

    def list_review_events(self, learner_id: str, since: datetime) -> list[ReviewEvent]: ...

    def save_item_metadata(self, metadata: ItemMetadata) -> None: ...

    def get_item_metadata(self, item_ids: Iterable[str]) -> Mapping[str, ItemMetadata]: ...

