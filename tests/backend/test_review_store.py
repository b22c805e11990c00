from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "apps" / "backend"))

from puzzle_review.errors import RecordConflict  # noqa: E402
from puzzle_review.scheduler import advance, seed_state  # noqa: E402
from puzzle_review.store import ItemMetadata, ReviewEvent  # noqa: E402


NOW = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def _event_for(item, quality: int, reviewed_at: datetime) -> ReviewEvent:
    return ReviewEvent(
        learner_id=item.learner_id,
        item_id=item.item_id,
        quality=quality,
        time_spent_seconds=30,
        reviewed_at=reviewed_at,
        easiness_factor=item.easiness_factor,
        interval_days=item.interval_days,
        next_review_date=item.next_review_date,
    )


def test_insert_review_item_is_insert_if_absent(review_store) -> None:
    seed = seed_state("learner-1", "puzzle-1", now=NOW)

    assert review_store.insert_review_item(seed) is True
    assert review_store.insert_review_item(seed_state("learner-1", "puzzle-1", now=NOW + timedelta(days=9))) is False

    stored = review_store.get_review_item("learner-1", "puzzle-1")
    assert stored is not None
    assert stored.revision == 1
    assert stored.created_at == NOW
    assert stored.next_review_date == NOW + timedelta(days=1)
    assert stored.last_reviewed_at is None


def test_get_review_item_returns_none_when_missing(review_store) -> None:
    assert review_store.get_review_item("learner-1", "nope") is None


def test_commit_review_bumps_revision_and_logs_event(review_store) -> None:
    review_store.insert_review_item(seed_state("learner-1", "puzzle-1", now=NOW))
    current = review_store.get_review_item("learner-1", "puzzle-1")
    reviewed_at = NOW + timedelta(days=1)
    updated = advance(current, 4, now=reviewed_at)

    stored = review_store.commit_review(updated, _event_for(updated, 4, reviewed_at), expected_revision=1)

    assert stored.revision == 2
    assert stored.repetitions == 1
    assert stored.last_reviewed_at == reviewed_at
    assert review_store.get_review_item("learner-1", "puzzle-1") == stored
    events = review_store.list_review_events("learner-1", NOW)
    assert [(ev.item_id, ev.quality, ev.time_spent_seconds) for ev in events] == [("puzzle-1", 4, 30)]


def test_commit_review_creates_record_when_expected_revision_is_zero(review_store) -> None:
    updated = advance(seed_state("learner-1", "puzzle-9", now=NOW), 5, now=NOW)

    stored = review_store.commit_review(updated, _event_for(updated, 5, NOW), expected_revision=0)

    assert stored.revision == 1
    assert stored.repetitions == 1


def test_commit_review_rejects_stale_revision_without_writing(review_store) -> None:
    review_store.insert_review_item(seed_state("learner-1", "puzzle-1", now=NOW))
    current = review_store.get_review_item("learner-1", "puzzle-1")
    first = advance(current, 5, now=NOW)
    review_store.commit_review(first, _event_for(first, 5, NOW), expected_revision=1)

    second = advance(current, 1, now=NOW)
    with pytest.raises(RecordConflict):
        review_store.commit_review(second, _event_for(second, 1, NOW), expected_revision=1)

    stored = review_store.get_review_item("learner-1", "puzzle-1")
    assert stored.repetitions == 1
    assert stored.revision == 2
    assert len(review_store.list_review_events("learner-1", NOW)) == 1


def test_list_due_items_orders_most_overdue_first(review_store) -> None:
    for offset, item_id in [(-1, "b"), (-5, "c"), (2, "future"), (-5, "a")]:
        review_store.insert_review_item(seed_state("learner-1", item_id, now=NOW + timedelta(days=offset - 1)))
    review_store.insert_review_item(seed_state("learner-2", "other", now=NOW - timedelta(days=30)))

    due = review_store.list_due_items("learner-1", NOW)

    assert [it.item_id for it in due] == ["a", "c", "b"]
    assert [it.item_id for it in review_store.list_due_items("learner-1", NOW, limit=2)] == ["a", "c"]


def test_list_review_items_is_scoped_to_learner(review_store) -> None:
    review_store.insert_review_item(seed_state("learner-1", "p2", now=NOW))
    review_store.insert_review_item(seed_state("learner-1", "p1", now=NOW))
    review_store.insert_review_item(seed_state("learner-2", "p3", now=NOW))

    assert [it.item_id for it in review_store.list_review_items("learner-1")] == ["p1", "p2"]
    assert review_store.list_review_items("nobody") == []


def test_list_review_events_filters_by_since(review_store) -> None:
    review_store.insert_review_item(seed_state("learner-1", "p1", now=NOW - timedelta(days=3)))
    current = review_store.get_review_item("learner-1", "p1")
    yesterday = advance(current, 3, now=NOW - timedelta(days=1))
    stored = review_store.commit_review(yesterday, _event_for(yesterday, 3, NOW - timedelta(days=1)), expected_revision=1)
    today = advance(stored, 5, now=NOW)
    review_store.commit_review(today, _event_for(today, 5, NOW), expected_revision=2)

    events = review_store.list_review_events("learner-1", NOW - timedelta(hours=1))

    assert [ev.quality for ev in events] == [5]


def test_item_metadata_upsert_and_lookup(review_store) -> None:
    review_store.save_item_metadata(ItemMetadata(item_id="p1", title="Fractions", math_concept="fractions", difficulty=2))
    review_store.save_item_metadata(
        ItemMetadata(item_id="p1", title="Fractions II", math_concept="fractions", difficulty=3, zone_id="zone-a")
    )

    found = review_store.get_item_metadata(["p1", "missing"])

    assert set(found) == {"p1"}
    assert found["p1"].title == "Fractions II"
    assert found["p1"].difficulty == 3
    assert found["p1"].zone_id == "zone-a"
    assert review_store.get_item_metadata([]) == {}
