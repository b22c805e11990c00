from __future__ import annotations

import os

from google.cloud import firestore

from ..config import Settings, settings as default_settings
from .base import ItemMetadata, ReviewEvent, ReviewRecordStore
from .firestore_store import FirestoreReviewStore
from .sqlite_store import SQLiteReviewStore


def _normalize_emulator_host(raw_host: str | None) -> str | None:
    """FIRESTORE_EMULATOR_HOST で受け取ったホスト文字列を正規化する。

    スキームなしの `localhost:8080` でもクライアントオプションに渡せるよう、
    http:// を自動付与する。空文字や None は未設定として扱う。
    """

    host = (raw_host or "").strip()
    if not host:
        return None
    if host.startswith(("http://", "https://")):
        return host
    return f"http://{host}"


def _build_firestore_client(config: Settings) -> firestore.Client:
    """Firestore クライアントを構築する。

    - FIRESTORE_EMULATOR_HOST が指定されていればエミュレータへ接続する。
    - それ以外は Cloud Firestore へ接続する。
    """

    emulator_host = _normalize_emulator_host(
        config.firestore_emulator_host or os.environ.get("FIRESTORE_EMULATOR_HOST")
    )
    if emulator_host:
        # google-cloud-firestore は FIRESTORE_EMULATOR_HOST を検知して匿名認証へ切り替える。
        os.environ.setdefault(
            "FIRESTORE_EMULATOR_HOST",
            emulator_host.replace("http://", "").replace("https://", ""),
        )
        return firestore.Client(
            project=config.firestore_project_id,
            client_options={"api_endpoint": emulator_host},
        )
    return firestore.Client(project=config.firestore_project_id)


def create_store(config: Settings | None = None) -> ReviewRecordStore:
    """設定された backend の ReviewRecordStore を生成する。"""

    config = config or default_settings
    if config.store_backend == "firestore":
        return FirestoreReviewStore(
            _build_firestore_client(config),
            timeout_seconds=config.store_timeout_seconds,
        )
    return SQLiteReviewStore(
        config.review_db_path,
        timeout_seconds=config.store_timeout_seconds,
    )


__all__ = [
    "FirestoreReviewStore",
    "ItemMetadata",
    "ReviewEvent",
    "ReviewRecordStore",
    "SQLiteReviewStore",
    "create_store",
]
