"""Firestore をテストで再現するための簡易フェイク実装。

- update_time はクライアント内の単調増加カウンタで表現する
- WriteBatch は全操作の前提条件を検証してから一括適用する（途中失敗で部分書き込みしない）
- fail_next() で次の API 呼び出しに google.api_core の例外を注入できる
"""

from __future__ import annotations

import itertools
import uuid
from typing import Any, Callable

from google.api_core import exceptions as gexc
from google.cloud import firestore


class FakeDocumentSnapshot:
    def __init__(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any] | None,
        client: "FakeFirestoreClient",
        update_time: int | None = None,
    ) -> None:
        self._collection = collection
        self.id = doc_id
        self._data = data
        self._client = client
        self.update_time = update_time

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> dict[str, Any] | None:
        return None if self._data is None else dict(self._data)

    @property
    def reference(self) -> "FakeDocumentReference":
        return FakeDocumentReference(self._client, self._collection, self.id)


class FakeWriteOption:
    def __init__(self, last_update_time: int | None) -> None:
        self.last_update_time = last_update_time


class FakeDocumentReference:
    def __init__(self, client: "FakeFirestoreClient", collection: str, doc_id: str) -> None:
        self._client = client
        self._collection = collection
        self.id = doc_id

    def _bucket(self) -> dict[str, dict[str, Any]]:
        return self._client._data.setdefault(self._collection, {})

    def set(self, data: dict[str, Any], merge: bool = False, timeout: float | None = None) -> None:
        self._client._maybe_fail("set")
        self._client._apply([("set", self, dict(data), merge)])

    def create(self, data: dict[str, Any], timeout: float | None = None) -> None:
        self._client._maybe_fail("create")
        self._client._apply([("create", self, dict(data), None)])

    def update(
        self,
        data: dict[str, Any],
        option: FakeWriteOption | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client._maybe_fail("update")
        self._client._apply([("update", self, dict(data), option)])

    def get(self, timeout: float | None = None) -> FakeDocumentSnapshot:
        self._client._maybe_fail("get")
        self._client.read_timeouts.append(timeout)
        bucket = self._bucket()
        payload = dict(bucket[self.id]) if self.id in bucket else None
        update_time = self._client._update_times.get((self._collection, self.id))
        return FakeDocumentSnapshot(self._collection, self.id, payload, self._client, update_time)


class FakeCollectionReference:
    def __init__(self, client: "FakeFirestoreClient", name: str) -> None:
        self._client = client
        self._name = name

    def document(self, doc_id: str | None = None) -> FakeDocumentReference:
        return FakeDocumentReference(self._client, self._name, doc_id or uuid.uuid4().hex[:20])

    def _all_snapshots(self) -> list[FakeDocumentSnapshot]:
        bucket = self._client._data.setdefault(self._name, {})
        return [
            FakeDocumentSnapshot(
                self._name,
                doc_id,
                dict(data),
                self._client,
                self._client._update_times.get((self._name, doc_id)),
            )
            for doc_id, data in bucket.items()
        ]

    def order_by(self, field_path: str, direction=firestore.Query.ASCENDING) -> "FakeQuery":
        return FakeQuery(self).order_by(field_path, direction)

    def where(self, field_path: str, op_string: str, value: Any) -> "FakeQuery":
        return FakeQuery(self).where(field_path, op_string, value)

    def stream(self, timeout: float | None = None):
        return FakeQuery(self).stream(timeout=timeout)


class FakeQuery:
    def __init__(
        self,
        collection: FakeCollectionReference,
        *,
        orderings: list[tuple[str, bool]] | None = None,
        filters: list[tuple[str, str, Any]] | None = None,
        limit: int | None = None,
    ) -> None:
        self._collection = collection
        self._orderings: list[tuple[str, bool]] = list(orderings or [])
        self._filters: list[tuple[str, str, Any]] = list(filters or [])
        self._limit: int | None = limit

    def _clone(self, **kwargs: Any) -> "FakeQuery":
        params = {
            "orderings": kwargs.pop("orderings", self._orderings),
            "filters": kwargs.pop("filters", self._filters),
            "limit": kwargs.pop("limit", self._limit),
        }
        return FakeQuery(self._collection, **params)

    def order_by(self, field_path: str, direction=firestore.Query.ASCENDING) -> "FakeQuery":
        updated = list(self._orderings)
        updated.append((field_path, direction == firestore.Query.DESCENDING))
        return self._clone(orderings=updated)

    def where(self, field_path: str, op_string: str, value: Any) -> "FakeQuery":
        updated = list(self._filters)
        updated.append((field_path, op_string, value))
        return self._clone(filters=updated)

    def limit(self, value: int) -> "FakeQuery":
        return self._clone(limit=max(0, int(value)))

    def _matching_snapshots(self) -> list[FakeDocumentSnapshot]:
        docs = self._collection._all_snapshots()
        for field_path, op_string, expected in self._filters:
            docs = [doc for doc in docs if self._matches_filter(doc, field_path, op_string, expected)]
        for field_path, descending in reversed(self._orderings):
            docs.sort(key=lambda snap, fp=field_path: self._order_value(snap, fp), reverse=descending)
        if self._limit is not None:
            docs = docs[: self._limit]
        return docs

    def stream(self, timeout: float | None = None):
        client = self._collection._client
        client._maybe_fail("stream")
        client.read_timeouts.append(timeout)
        yield from self._matching_snapshots()

    def _matches_filter(self, snapshot: FakeDocumentSnapshot, field_path: str, op_string: str, expected: Any) -> bool:
        actual = (snapshot.to_dict() or {}).get(field_path)
        if op_string == "==":
            return actual == expected
        if actual is None:
            return False
        if op_string == ">=":
            return actual >= expected
        if op_string == "<=":
            return actual <= expected
        if op_string == ">":
            return actual > expected
        if op_string == "<":
            return actual < expected
        raise NotImplementedError(f"unsupported operator: {op_string}")

    def _order_value(self, snapshot: FakeDocumentSnapshot, field_path: str) -> Any:
        value = (snapshot.to_dict() or {}).get(field_path)
        if isinstance(value, (int, float)):
            return value
        return str(value or "")


class FakeWriteBatch:
    """Firestore の WriteBatch API を模した簡易フェイク。"""

    def __init__(self, client: "FakeFirestoreClient") -> None:
        self._client = client
        self._operations: list[tuple[str, FakeDocumentReference, dict[str, Any], Any]] = []

    def create(self, doc_ref: FakeDocumentReference, data: dict[str, Any]) -> None:
        self._operations.append(("create", doc_ref, dict(data), None))

    def set(self, doc_ref: FakeDocumentReference, data: dict[str, Any], merge: bool = False) -> None:
        self._operations.append(("set", doc_ref, dict(data), merge))

    def update(
        self,
        doc_ref: FakeDocumentReference,
        data: dict[str, Any],
        option: FakeWriteOption | None = None,
    ) -> None:
        self._operations.append(("update", doc_ref, dict(data), option))

    def commit(self, timeout: float | None = None) -> list[Any]:
        self._client._maybe_fail("commit")
        if self._client.before_commit is not None:
            hook = self._client.before_commit
            self._client.before_commit = None
            hook()
        self._client._apply(self._operations)
        self._client.commit_count += 1
        return []


class FakeFirestoreClient:
    """google.cloud.firestore.Client 互換の最小フェイク。

    - collection/batch/write_option だけを実装する
    - _data は collection ごとに {doc_id: payload} を保持し、テスト毎に新規インスタンスで分離する
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self._update_times: dict[tuple[str, str], int] = {}
        self._clock = itertools.count(1)
        self._failures: list[tuple[str | None, Exception]] = []
        self.before_commit: Callable[[], None] | None = None
        self.commit_count = 0
        self.read_timeouts: list[float | None] = []

    def collection(self, name: str) -> FakeCollectionReference:
        return FakeCollectionReference(self, name)

    def batch(self) -> FakeWriteBatch:
        return FakeWriteBatch(self)

    def write_option(self, **kwargs: Any) -> FakeWriteOption:
        return FakeWriteOption(kwargs.get("last_update_time"))

    def fail_next(self, exc: Exception, *, operation: str | None = None, times: int = 1) -> None:
        """次の API 呼び出し（operation 指定時はその種別のみ）で exc を送出させる。"""

        for _ in range(times):
            self._failures.append((operation, exc))

    def documents(self, collection: str) -> dict[str, dict[str, Any]]:
        return {doc_id: dict(data) for doc_id, data in self._data.get(collection, {}).items()}

    def _maybe_fail(self, operation: str) -> None:
        for index, (target, exc) in enumerate(self._failures):
            if target is None or target == operation:
                del self._failures[index]
                raise exc

    def _apply(self, operations: list[tuple[str, FakeDocumentReference, dict[str, Any], Any]]) -> None:
        # 前提条件を全件検証してから書き込む
        for action, ref, _data, option in operations:
            bucket = ref._bucket()
            if action == "create" and ref.id in bucket:
                raise gexc.AlreadyExists(f"document {ref._collection}/{ref.id} already exists")
            if action == "update":
                if ref.id not in bucket:
                    raise gexc.NotFound(f"document {ref._collection}/{ref.id} not found")
                current = self._update_times.get((ref._collection, ref.id))
                if option is not None and option.last_update_time != current:
                    raise gexc.FailedPrecondition(f"document {ref._collection}/{ref.id} was modified")
        for action, ref, data, option in operations:
            bucket = ref._bucket()
            if action == "update" or (action == "set" and option):
                bucket.setdefault(ref.id, {}).update(data)
            else:
                bucket[ref.id] = dict(data)
            self._update_times[(ref._collection, ref.id)] = next(self._clock)


def use_fake_firestore_client(monkeypatch, client: FakeFirestoreClient | None = None) -> FakeFirestoreClient:
    """google.cloud.firestore.Client をフェイクに差し替え、同一インスタンスを返す。"""

    instance = client or FakeFirestoreClient()
    monkeypatch.setattr(firestore, "Client", lambda *args, **kwargs: instance)
    return instance
