from __future__ import annotations

import time
from typing import Callable, TypeVar

from ..config import settings
from ..errors import StoreUnavailable
from ..logging import logger


T = TypeVar("T")


class StoreRetry:
    """Bounded retry with exponential backoff for transient store failures.

    - max_attempts: 1 回目を含む試行回数の上限
    - backoff_ms: 初回の待機時間。n 回目の失敗後は backoff_ms * 2**(n-1) 待つ
    """

    def __init__(
        self,
        *,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        attempts = settings.review_conflict_max_attempts if max_attempts is None else max_attempts
        self.max_attempts = max(1, attempts)
        self.backoff_ms = settings.review_retry_backoff_ms if backoff_ms is None else max(0, backoff_ms)
        self._sleep = sleep

    def backoff(self, attempt: int) -> None:
        if attempt >= self.max_attempts or self.backoff_ms <= 0:
            return
        self._sleep(self.backoff_ms * (2 ** (attempt - 1)) / 1000.0)

    def call(self, operation: str, fn: Callable[[], T], **context: object) -> T:
        """Run a store call, retrying StoreUnavailable; re-raise once attempts are exhausted."""

        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except StoreUnavailable as exc:
                logger.warning(
                    "review_store_unavailable",
                    operation=operation,
                    attempt=attempt,
                    error=str(exc),
                    **context,
                )
                if attempt >= self.max_attempts:
                    raise
                self.backoff(attempt)
        raise StoreUnavailable(f"{operation} failed")  # pragma: no cover - loop always returns or raises
