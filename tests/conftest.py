"""Pytest configuration: isolated settings and shared store fixtures."""

import os
import sys
import tempfile
from datetime import UTC, datetime
from pathlib import Path

import pytest

_BACKEND_ROOT = Path(__file__).resolve().parent.parent / "apps" / "backend"
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))

# 設定はモジュール import 時に読み込まれるため、先に環境変数を固定する。
# `puzzle_review.main` の import で作られる既定ストアは一時ディレクトリへ向ける。
os.environ.setdefault("STRICT_MODE", "false")
os.environ.setdefault("STORE_BACKEND", "sqlite")
os.environ.setdefault("REVIEW_DB_PATH", str(Path(tempfile.mkdtemp(prefix="review-tests-")) / "review.sqlite3"))
os.environ.setdefault("REVIEW_RETRY_BACKOFF_MS", "0")

from firestore_fakes import FakeFirestoreClient  # noqa: E402
from puzzle_review.store import FirestoreReviewStore, SQLiteReviewStore  # noqa: E402


FIXED_NOW = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def sqlite_store(tmp_path) -> SQLiteReviewStore:
    return SQLiteReviewStore(str(tmp_path / "review.sqlite3"))


@pytest.fixture
def fake_firestore() -> FakeFirestoreClient:
    return FakeFirestoreClient()


@pytest.fixture
def firestore_store(fake_firestore: FakeFirestoreClient) -> FirestoreReviewStore:
    return FirestoreReviewStore(fake_firestore, timeout_seconds=2.0)


@pytest.fixture(params=["sqlite", "firestore"])
def review_store(request, tmp_path):
    """両 backend で同じ振る舞いを検証するためのパラメタライズ済みストア。"""

    if request.param == "sqlite":
        return SQLiteReviewStore(str(tmp_path / "review.sqlite3"))
    return FirestoreReviewStore(FakeFirestoreClient(), timeout_seconds=2.0)
