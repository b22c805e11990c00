from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import quote

from ..scheduler import ensure_aware


def to_iso(value: datetime | None) -> str | None:
    """Serialise a datetime as a fixed-width UTC ISO string.

    SQLite / Firestore の双方で文字列比較による期限判定を行うため、
    マイクロ秒まで桁を固定して辞書順と時系列順を一致させる。
    """

    if value is None:
        return None
    return ensure_aware(value).isoformat(timespec="microseconds")


def parse_iso(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    return ensure_aware(datetime.fromisoformat(str(value)))


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する（不正値/負値は0）。"""

    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0


def _encode_key_part(value: str) -> str:
    # "_" も符号化し、区切りの "__" が各要素内に現れないようにする
    return quote(value, safe="").replace("_", "%5F")


def review_doc_id(learner_id: str, item_id: str) -> str:
    """Document id for the composite (learner, item) key.

    各要素をパーセントエンコードしてから "__" で連結するため、異なる組が同じ ID に
    なることはない（"/" も符号化されるので Firestore のパス区切りとも衝突しない）。
    """

    return f"{_encode_key_part(learner_id)}__{_encode_key_part(item_id)}"
