from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from ..config import settings
from ..errors import InvalidQuality, RecordConflict, ReviewError, StoreUnavailable
from ..logging import logger
from ..metrics import MetricsRegistry, registry
from ..scheduler import (
    ReviewItem,
    advance,
    days_overdue,
    ensure_aware,
    seed_state,
    utcnow,
    validate_quality,
)
from ..store.base import ItemMetadata, ReviewEvent, ReviewRecordStore
from .retry import StoreRetry


@dataclass(frozen=True)
class DueReview:
    """A due review record joined with its puzzle metadata."""

    item: ReviewItem
    metadata: ItemMetadata | None
    days_overdue: int


@dataclass(frozen=True)
class ReviewResult:
    """Outcome of a review submission.

    - ok=False の場合 error に invalid_quality / invalid_time_spent / stale_revision /
      conflict / store_unavailable のいずれかが入り、保存済みの状態は変更されていない
    """

    ok: bool
    item: ReviewItem | None = None
    error: str | None = None
    attempts: int = 0


class ReviewQueueService:
    """Due-queue reads and review submissions on top of a :class:`ReviewRecordStore`.

    採点の反映は「読み取り → advance → revision 条件付き書き込み」を1単位として
    扱い、競合や一時的なストア障害の場合は指数バックオフで再試行する。
    """

    def __init__(
        self,
        store: ReviewRecordStore,
        *,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        queue_limit: int | None = None,
        lapse_interval_days: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        metrics: MetricsRegistry = registry,
    ) -> None:
        self._store = store
        self._retry = StoreRetry(max_attempts=max_attempts, backoff_ms=backoff_ms, sleep=sleep)
        self._queue_limit = settings.review_queue_limit if queue_limit is None else max(0, queue_limit)
        self._lapse_interval_days = (
            settings.review_lapse_interval_days if lapse_interval_days is None else lapse_interval_days
        )
        self._metrics = metrics

    def _commit_landed(
        self,
        current: ReviewItem | None,
        pending_revision: int,
        item_id: str,
        quality: int,
        reviewed_at: datetime,
    ) -> bool:
        """Whether a commit that raised StoreUnavailable was in fact persisted.

        書き込みは revision を +1 し、同じ単位で履歴も追加する。revision が1つだけ進み
        last_reviewed_at が一致すれば自分の書き込み、さらに進んでいれば履歴で確認する。
        """

        if current is None or current.revision <= pending_revision:
            return False
        if current.revision == pending_revision + 1:
            last = current.last_reviewed_at
            return last is not None and ensure_aware(last) == reviewed_at
        events = self._store.list_review_events(current.learner_id, reviewed_at)
        return any(
            ev.item_id == item_id and ev.quality == quality and ensure_aware(ev.reviewed_at) == reviewed_at
            for ev in events
        )

    # --- queue ---
    def get_due_queue(
        self,
        learner_id: str,
        *,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[DueReview]:
        """Return due items for ``learner_id``, most overdue first.

        何も期限が来ていなければ空リストを返す。ストア障害は StoreUnavailable として
        送出し、空リストで「期限なし」と誤認させることはしない。
        """

        reference = ensure_aware(now or utcnow())
        cap = self._queue_limit if limit is None else max(0, int(limit))
        if cap == 0:
            return []
        items = self._retry.call(
            "list_due_items",
            lambda: self._store.list_due_items(learner_id, reference, cap),
            learner_id=learner_id,
        )
        metadata = self._retry.call(
            "get_item_metadata",
            lambda: self._store.get_item_metadata(it.item_id for it in items),
            learner_id=learner_id,
        )
        return [
            DueReview(
                item=it,
                metadata=metadata.get(it.item_id),
                days_overdue=days_overdue(it, reference),
            )
            for it in items
        ]

    # --- submissions ---
    def submit_review(
        self,
        learner_id: str,
        item_id: str,
        quality: int,
        time_spent: int = 0,
        *,
        now: datetime | None = None,
        expected_revision: int | None = None,
    ) -> ReviewResult:
        """Apply one self-graded review and persist it all-or-nothing.

        ``expected_revision`` はキュー取得時に受け取った revision。指定された場合、
        既に別の採点が反映済みであれば二重送信として stale_revision を返す。
        """

        try:
            quality = validate_quality(quality)
        except InvalidQuality as exc:
            logger.warning("review_invalid_quality", learner_id=learner_id, item_id=item_id, quality=repr(quality))
            self._metrics.record_review_outcome(exc.code)
            return ReviewResult(ok=False, error=exc.code)
        if isinstance(time_spent, bool) or not isinstance(time_spent, int) or time_spent < 0:
            logger.warning(
                "review_invalid_time_spent", learner_id=learner_id, item_id=item_id, time_spent=repr(time_spent)
            )
            self._metrics.record_review_outcome("invalid_time_spent")
            return ReviewResult(ok=False, error="invalid_time_spent")

        reviewed_at = ensure_aware(now or utcnow())
        max_attempts = self._retry.max_attempts
        last_error: ReviewError | None = None
        # commit 中に StoreUnavailable が出た場合、その時点の revision を保持する
        pending_revision: int | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                current = self._store.get_review_item(learner_id, item_id)
                if pending_revision is not None:
                    if self._commit_landed(current, pending_revision, item_id, quality, reviewed_at):
                        logger.info(
                            "review_commit_recovered",
                            learner_id=learner_id,
                            item_id=item_id,
                            revision=current.revision,  # type: ignore[union-attr]
                            attempts=attempt,
                        )
                        self._metrics.record_review_outcome("recorded")
                        return ReviewResult(ok=True, item=current, attempts=attempt)
                    pending_revision = None
                current_revision = current.revision if current is not None else 0
                if expected_revision is not None and expected_revision != current_revision:
                    logger.info(
                        "review_stale_revision",
                        learner_id=learner_id,
                        item_id=item_id,
                        expected_revision=expected_revision,
                        current_revision=current_revision,
                    )
                    self._metrics.record_review_outcome("stale_revision")
                    return ReviewResult(ok=False, item=current, error="stale_revision", attempts=attempt)
                # 未登録のアイテムは初期状態から採点する
                base = current or seed_state(learner_id, item_id, now=reviewed_at)
                updated = advance(
                    base,
                    quality,
                    now=reviewed_at,
                    lapse_interval_days=self._lapse_interval_days,
                )
                event = ReviewEvent(
                    learner_id=learner_id,
                    item_id=item_id,
                    quality=quality,
                    time_spent_seconds=time_spent,
                    reviewed_at=reviewed_at,
                    easiness_factor=updated.easiness_factor,
                    interval_days=updated.interval_days,
                    next_review_date=updated.next_review_date,  # type: ignore[arg-type]
                )
                try:
                    stored = self._store.commit_review(updated, event, expected_revision=current_revision)
                except StoreUnavailable:
                    # 書き込み自体は反映済みの可能性がある。次の読み取りで確認する
                    pending_revision = current_revision
                    raise
            except RecordConflict as exc:
                last_error = exc
                self._metrics.record_conflict_retry()
                logger.info(
                    "review_conflict_retry",
                    learner_id=learner_id,
                    item_id=item_id,
                    attempt=attempt,
                    error=str(exc),
                )
            except StoreUnavailable as exc:
                last_error = exc
                logger.warning(
                    "review_store_unavailable",
                    operation="submit_review",
                    learner_id=learner_id,
                    item_id=item_id,
                    attempt=attempt,
                    error=str(exc),
                )
            else:
                logger.info(
                    "review_recorded",
                    learner_id=learner_id,
                    item_id=item_id,
                    quality=quality,
                    time_spent=time_spent,
                    repetitions=stored.repetitions,
                    interval_days=stored.interval_days,
                    easiness_factor=round(stored.easiness_factor, 4),
                    attempts=attempt,
                )
                self._metrics.record_review_outcome("recorded")
                return ReviewResult(ok=True, item=stored, attempts=attempt)
            self._retry.backoff(attempt)

        code = last_error.code if last_error is not None else StoreUnavailable.code
        logger.error(
            "review_submit_failed",
            learner_id=learner_id,
            item_id=item_id,
            attempts=max_attempts,
            error_code=code,
        )
        self._metrics.record_review_outcome(code)
        return ReviewResult(ok=False, error=code, attempts=max_attempts)

    def record_review(
        self,
        learner_id: str,
        item_id: str,
        quality: int,
        time_spent: int = 0,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Return True only when the review was durably committed."""

        return self.submit_review(learner_id, item_id, quality, time_spent, now=now).ok

    # --- completion trigger ---
    def on_puzzle_first_completed(
        self,
        learner_id: str,
        item_id: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Seed a review record the first time a puzzle is solved.

        既に登録済みなら何もしない（False を返す）。新規作成時は True。
        """

        seed = seed_state(learner_id, item_id, now=now)
        created = self._retry.call(
            "insert_review_item",
            lambda: self._store.insert_review_item(seed),
            learner_id=learner_id,
            item_id=item_id,
        )
        logger.info(
            "review_item_seeded" if created else "review_item_already_tracked",
            learner_id=learner_id,
            item_id=item_id,
        )
        return created

    def register_item_metadata(self, metadata: ItemMetadata) -> None:
        self._retry.call(
            "save_item_metadata",
            lambda: self._store.save_item_metadata(metadata),
            item_id=metadata.item_id,
        )
