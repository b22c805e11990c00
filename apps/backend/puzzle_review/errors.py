"""Exceptions raised by the review scheduler and its stores.

ストア実装はバックエンド固有の例外（sqlite3 / google.api_core）をここで
定義した例外へ変換してからサービス層へ渡す。
"""

from __future__ import annotations


class ReviewError(Exception):
    """Base class for review subsystem failures."""

    code = "review_error"


class InvalidQuality(ReviewError, ValueError):
    """Quality rating outside the integer range 0..5."""

    code = "invalid_quality"

    def __init__(self, quality: object) -> None:
        super().__init__(f"quality must be an integer between 0 and 5, got {quality!r}")
        self.quality = quality


class RecordConflict(ReviewError):
    """A concurrent write changed the record between read and write."""

    code = "conflict"

    def __init__(self, learner_id: str, item_id: str, detail: str = "") -> None:
        message = f"review record {learner_id}/{item_id} changed concurrently"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.learner_id = learner_id
        self.item_id = item_id


class StoreUnavailable(ReviewError):
    """The underlying persistence layer could not be reached."""

    code = "store_unavailable"
