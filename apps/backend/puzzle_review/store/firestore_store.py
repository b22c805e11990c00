from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Iterable, Iterator, Mapping

from google.api_core import exceptions as gexc
from google.cloud import firestore

from ..errors import RecordConflict, StoreUnavailable
from ..logging import logger
from ..scheduler import ReviewItem
from .base import ItemMetadata, ReviewEvent
from .common import normalize_non_negative_int, parse_iso, review_doc_id, to_iso


def _item_payload(item: ReviewItem, revision: int) -> dict[str, Any]:
    return {
        "learner_id": item.learner_id,
        "item_id": item.item_id,
        "easiness_factor": float(item.easiness_factor),
        "interval_days": int(item.interval_days),
        "repetitions": int(item.repetitions),
        "next_review_date": to_iso(item.next_review_date),
        "last_reviewed_at": to_iso(item.last_reviewed_at),
        "created_at": to_iso(item.created_at or datetime.now(UTC)),
        "revision": revision,
    }


def _snapshot_to_item(data: Mapping[str, Any]) -> ReviewItem:
    return ReviewItem(
        learner_id=str(data.get("learner_id") or ""),
        item_id=str(data.get("item_id") or ""),
        easiness_factor=float(data.get("easiness_factor") or 2.5),
        interval_days=max(1, normalize_non_negative_int(data.get("interval_days"))),
        repetitions=normalize_non_negative_int(data.get("repetitions")),
        next_review_date=parse_iso(data.get("next_review_date")),
        last_reviewed_at=parse_iso(data.get("last_reviewed_at")),
        created_at=parse_iso(data.get("created_at")),
        revision=normalize_non_negative_int(data.get("revision")),
    )


class FirestoreReviewStore:
    """Firestore 上の復習レコード / 採点履歴 / パズルメタデータを扱う。

    - review_items: ドキュメントID `<learner_id>__<item_id>`
    - review_sessions: 自動採番IDの採点履歴
    - puzzles: ドキュメントID = item_id
    - 採点の反映は WriteBatch に create（新規）または last_update_time 前提条件付き
      update（既存）と履歴追加をまとめてコミットする
    """

    def __init__(self, client: firestore.Client, *, timeout_seconds: float = 10.0):
        self._client = client
        self._timeout = timeout_seconds
        self._items = client.collection("review_items")
        self._sessions = client.collection("review_sessions")
        self._puzzles = client.collection("puzzles")

    @contextmanager
    def _translate_errors(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except (gexc.Conflict, gexc.FailedPrecondition, gexc.Aborted) as exc:
            raise RecordConflict(
                str(context.get("learner_id", "")),
                str(context.get("item_id", "")),
                exc.__class__.__name__,
            ) from exc
        except (gexc.GoogleAPIError, gexc.RetryError) as exc:
            logger.warning(
                "firestore_review_store_error",
                operation=operation,
                error=str(exc),
                error_class=exc.__class__.__name__,
                **context,
            )
            raise StoreUnavailable(f"firestore {operation} failed: {exc}") from exc

    # --- review records ---
    def get_review_item(self, learner_id: str, item_id: str) -> ReviewItem | None:
        with self._translate_errors("get_review_item", learner_id=learner_id, item_id=item_id):
            snapshot = self._items.document(review_doc_id(learner_id, item_id)).get(timeout=self._timeout)
        if not snapshot.exists:
            return None
        return _snapshot_to_item(snapshot.to_dict() or {})

    def insert_review_item(self, item: ReviewItem) -> bool:
        ref = self._items.document(review_doc_id(item.learner_id, item.item_id))
        try:
            with self._translate_errors("insert_review_item", learner_id=item.learner_id, item_id=item.item_id):
                ref.create(_item_payload(item, 1), timeout=self._timeout)
        except RecordConflict:
            return False
        return True

    def commit_review(self, item: ReviewItem, event: ReviewEvent, *, expected_revision: int) -> ReviewItem:
        ref = self._items.document(review_doc_id(item.learner_id, item.item_id))
        context = {"learner_id": item.learner_id, "item_id": item.item_id}
        with self._translate_errors("commit_review", **context):
            snapshot = ref.get(timeout=self._timeout)
            current_revision = (
                normalize_non_negative_int((snapshot.to_dict() or {}).get("revision"))
                if snapshot.exists
                else 0
            )
            if current_revision != expected_revision:
                raise RecordConflict(
                    item.learner_id,
                    item.item_id,
                    f"expected revision {expected_revision}, found {current_revision}",
                )
            payload = _item_payload(item, current_revision + 1)
            batch = self._client.batch()
            if snapshot.exists:
                # 読み取り後に別リクエストが更新していれば FailedPrecondition でコミット全体が失敗する
                batch.update(
                    ref,
                    payload,
                    option=self._client.write_option(last_update_time=snapshot.update_time),
                )
            else:
                batch.create(ref, payload)
            batch.set(
                self._sessions.document(),
                {
                    "learner_id": event.learner_id,
                    "item_id": event.item_id,
                    "quality": int(event.quality),
                    "time_spent_seconds": normalize_non_negative_int(event.time_spent_seconds),
                    "reviewed_at": to_iso(event.reviewed_at),
                    "easiness_factor": float(event.easiness_factor),
                    "interval_days": int(event.interval_days),
                    "next_review_date": to_iso(event.next_review_date),
                },
            )
            batch.commit(timeout=self._timeout)
        return _snapshot_to_item(payload)

    def list_due_items(self, learner_id: str, now: datetime, limit: int | None = None) -> list[ReviewItem]:
        query = (
            self._items.where("learner_id", "==", learner_id)
            .where("next_review_date", "<=", to_iso(now))
            .order_by("next_review_date")
            .order_by("item_id")
        )
        if limit is not None:
            query = query.limit(int(limit))
        with self._translate_errors("list_due_items", learner_id=learner_id):
            return [_snapshot_to_item(doc.to_dict() or {}) for doc in query.stream(timeout=self._timeout)]

    def list_review_items(self, learner_id: str) -> list[ReviewItem]:
        query = self._items.where("learner_id", "==", learner_id).order_by("item_id")
        with self._translate_errors("list_review_items", learner_id=learner_id):
            return [_snapshot_to_item(doc.to_dict() or {}) for doc in query.stream(timeout=self._timeout)]

    def list_review_events(self, learner_id: str, since: datetime) -> list[ReviewEvent]:
        query = (
            self._sessions.where("learner_id", "==", learner_id)
            .where("reviewed_at", ">=", to_iso(since))
            .order_by("reviewed_at")
        )
        events: list[ReviewEvent] = []
        with self._translate_errors("list_review_events", learner_id=learner_id):
            for doc in query.stream(timeout=self._timeout):
                data = doc.to_dict() or {}
                events.append(
                    ReviewEvent(
                        learner_id=str(data.get("learner_id") or ""),
                        item_id=str(data.get("item_id") or ""),
                        quality=int(data.get("quality") or 0),
                        time_spent_seconds=normalize_non_negative_int(data.get("time_spent_seconds")),
                        reviewed_at=parse_iso(data.get("reviewed_at")),  # type: ignore[arg-type]
                        easiness_factor=float(data.get("easiness_factor") or 0.0),
                        interval_days=normalize_non_negative_int(data.get("interval_days")),
                        next_review_date=parse_iso(data.get("next_review_date")),  # type: ignore[arg-type]
                    )
                )
        return events

    # --- puzzle metadata ---
    def save_item_metadata(self, metadata: ItemMetadata) -> None:
        with self._translate_errors("save_item_metadata", item_id=metadata.item_id):
            self._puzzles.document(metadata.item_id).set(
                {
                    "item_id": metadata.item_id,
                    "title": metadata.title,
                    "math_concept": metadata.math_concept,
                    "difficulty": int(metadata.difficulty),
                    "zone_id": metadata.zone_id,
                    "updated_at": to_iso(datetime.now(UTC)),
                },
                timeout=self._timeout,
            )

    def get_item_metadata(self, item_ids: Iterable[str]) -> Mapping[str, ItemMetadata]:
        result: dict[str, ItemMetadata] = {}
        for item_id in sorted({str(i) for i in item_ids}):
            with self._translate_errors("get_item_metadata", item_id=item_id):
                snapshot = self._puzzles.document(item_id).get(timeout=self._timeout)
            if not snapshot.exists:
                continue
            data = snapshot.to_dict() or {}
            result[item_id] = ItemMetadata(
                item_id=item_id,
                title=str(data.get("title") or ""),
                math_concept=str(data.get("math_concept") or ""),
                difficulty=normalize_non_negative_int(data.get("difficulty")) or 1,
                zone_id=data.get("zone_id"),
            )
        return result
