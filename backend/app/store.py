from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Iterator, Protocol, Sequence

import httpx
import structlog

from .config import StoreConfig

log = structlog.get_logger(__name__)


class StoreError(RuntimeError):
    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


@dataclass(frozen=True)
class TxOp:
    """One insert-or-update step, addressed by surrogate id or by a unique attribute."""

    entity: str
    attrs: dict[str, Any]
    id: str | None = None
    lookup: tuple[str, Any] | None = None

    def to_step(self) -> list[Any]:
        target: Any = [self.lookup[0], self.lookup[1]] if self.lookup else self.id
        return ["update", self.entity, target, self.attrs]


def new_id() -> str:
    return str(uuid.uuid4())


def update(entity: str, entity_id: str, attrs: dict[str, Any]) -> TxOp:
    return TxOp(entity=entity, attrs=attrs, id=entity_id)


def upsert_by(entity: str, attr: str, value: Any, attrs: dict[str, Any]) -> TxOp:
    return TxOp(entity=entity, attrs=attrs, lookup=(attr, value))


class Store(Protocol):
    def query(self, query: dict[str, Any]) -> dict[str, Any]: ...

    def transact(self, ops: Sequence[TxOp]) -> dict[str, Any]: ...


def unwrap_rows(result: Any, key: str) -> list[dict[str, Any]]:
    if not isinstance(result, dict):
        return []
    direct = result.get(key)
    if isinstance(direct, list):
        return direct
    nested = result.get("data")
    if isinstance(nested, dict) and isinstance(nested.get(key), list):
        return nested[key]
    return []


def chunked(items: Sequence[Any], size: int) -> Iterator[list[Any]]:
    if size <= 0:
        return
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def transact_chunked(store: Store, ops: Sequence[TxOp], size: int) -> int:
    batches = 0
    for chunk in chunked(ops, size):
        store.transact(chunk)
        batches += 1
    return batches


def _short_error_text(text: str, limit: int = 240) -> str:
    one_line = " ".join(text.split())
    if len(one_line) <= limit:
        return one_line
    return one_line[:limit] + "..."


class InstantAdminStore:
    """Store backed by the hosted database's admin HTTP API."""

    def __init__(self, client: httpx.Client, config: StoreConfig):
        self.client = client
        self.config = config

    def _post(self, path: str, body: dict[str, Any], stage: str) -> dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/admin/{path}"
        headers = {
            "Authorization": f"Bearer {self.config.admin_token}",
            "App-Id": self.config.app_id,
            "Content-Type": "application/json",
        }
        try:
            response = self.client.post(url, json=body, headers=headers, timeout=self.config.timeout)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise StoreError(stage, f"Network error: {exc!s}") from exc

        if response.status_code >= 400:
            raise StoreError(
                stage, f"HTTP {response.status_code}: {_short_error_text(response.text)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise StoreError(stage, f"Invalid JSON in store response (HTTP {response.status_code})") from exc
        return payload if isinstance(payload, dict) else {}

    def query(self, query: dict[str, Any]) -> dict[str, Any]:
        return self._post("query", {"query": query}, stage="store:query")

    def transact(self, ops: Sequence[TxOp]) -> dict[str, Any]:
        if not ops:
            return {}
        return self._post(
            "transact",
            {"steps": [op.to_step() for op in ops]},
            stage="store:transact",
        )
