import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Any

import httpx

from cashtalk_categorizer.logger import get_logger

logger = get_logger(__name__)

DIRECT_MAPPINGS_TABLE = "user_direct_mappings"
USER_MAPPINGS_TABLE = "user_category_mappings"
GLOBAL_MAPPINGS_TABLE = "global_category_mappings"
TRANSACTIONS_TABLE = "transactions"

# Columns that identify a row for upserts.
TABLE_KEYS: dict[str, tuple[str, ...]] = {
    DIRECT_MAPPINGS_TABLE: ("user_id", "keyword"),
    USER_MAPPINGS_TABLE: ("user_id", "keyword"),
    GLOBAL_MAPPINGS_TABLE: ("keyword",),
    TRANSACTIONS_TABLE: ("id",),
}

Row = dict[str, Any]


class PersistenceError(Exception):
    """Raised when the persistence service rejects or cannot serve a request."""


class PersistenceBackend(ABC):
    @abstractmethod
    async def select(self, table: str, filters: dict[str, Any] | None = None) -> list[Row]:
        """Return every row of ``table`` whose columns equal ``filters``."""
        pass

    @abstractmethod
    async def upsert(self, table: str, rows: list[Row]) -> None:
        """Insert rows, merging into existing rows with the same key columns."""
        pass

    @abstractmethod
    async def insert(self, table: str, rows: list[Row]) -> None:
        pass

    @abstractmethod
    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        pass

    async def aclose(self) -> None:
        return None


def _matches(row: Row, filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(row.get(column) == value for column, value in filters.items())


class LocalBackend(PersistenceBackend):
    """In-process tables, written through to a JSON file when a path is given."""

    def __init__(self, data_path: str | None = None) -> None:
        self.data_path = data_path
        self.tables: dict[str, list[Row]] = {}
        self._lock = asyncio.Lock()
        self.load()

    def load(self) -> None:
        if not self.data_path or not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as handle:
                self.tables = json.load(handle)
        except json.JSONDecodeError:
            logger.warning("[MAPPINGS] Could not parse %s, starting empty.", self.data_path)
            self.tables = {}

    def _write(self, snapshot: dict[str, list[Row]]) -> None:
        if not self.data_path:
            return
        with open(self.data_path, "w", encoding="utf-8") as handle:
            json.dump(snapshot, handle, indent=2, ensure_ascii=False, default=str)

    async def _persist(self) -> None:
        snapshot = {table: [dict(row) for row in rows] for table, rows in self.tables.items()}
        try:
            await asyncio.to_thread(self._write, snapshot)
        except OSError as exc:
            raise PersistenceError(f"Could not write {self.data_path}: {exc}") from exc

    async def select(self, table: str, filters: dict[str, Any] | None = None) -> list[Row]:
        async with self._lock:
            return [dict(row) for row in self.tables.get(table, []) if _matches(row, filters)]

    async def upsert(self, table: str, rows: list[Row]) -> None:
        keys = TABLE_KEYS.get(table, ())
        async with self._lock:
            existing = self.tables.setdefault(table, [])
            for row in rows:
                key_filter = {column: row.get(column) for column in keys}
                target = next((item for item in existing if keys and _matches(item, key_filter)), None)
                if target is None:
                    existing.append(dict(row))
                else:
                    target.update(row)
            await self._persist()

    async def insert(self, table: str, rows: list[Row]) -> None:
        async with self._lock:
            self.tables.setdefault(table, []).extend(dict(row) for row in rows)
            await self._persist()

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        async with self._lock:
            rows = self.tables.get(table, [])
            self.tables[table] = [row for row in rows if not _matches(row, filters)]
            await self._persist()


class RestBackend(PersistenceBackend):
    """PostgREST-style HTTP API (``/rest/v1/<table>``) reached through httpx."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.timeout = timeout
        self._client = client
        self._client_lock = asyncio.Lock()
        self.refresh(base_url, api_key)

    def refresh(self, base_url: str | None = None, api_key: str | None = None) -> None:
        base_value = base_url if base_url is not None else os.getenv("MAPPINGS_URL")
        key_value = api_key if api_key is not None else os.getenv("MAPPINGS_API_KEY")
        self.base_url = (base_value or "").rstrip("/") or None
        self.api_key = key_value or None
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            self.headers["apikey"] = self.api_key
            self.headers["Authorization"] = f"Bearer {self.api_key}"

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self.timeout)
                self._client = client
            return client

    def _url(self, table: str) -> str:
        if not self.base_url:
            raise PersistenceError("MAPPINGS_URL is not configured.")
        return f"{self.base_url}/rest/v1/{table}"

    @staticmethod
    def _filter_params(filters: dict[str, Any] | None) -> dict[str, str]:
        return {column: f"eq.{value}" for column, value in (filters or {}).items()}

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: list[Row] | None = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        url = self._url(table)
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        client = await self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"{method} {table} failed: {exc}") from exc
        return response

    async def select(self, table: str, filters: dict[str, Any] | None = None) -> list[Row]:
        params = {"select": "*", **self._filter_params(filters)}
        response = await self._request("GET", table, params=params)
        try:
            data = response.json()
        except ValueError as exc:
            raise PersistenceError(f"GET {table} returned invalid JSON") from exc
        return data if isinstance(data, list) else []

    async def upsert(self, table: str, rows: list[Row]) -> None:
        params = {}
        keys = TABLE_KEYS.get(table)
        if keys:
            params["on_conflict"] = ",".join(keys)
        await self._request(
            "POST",
            table,
            params=params,
            json_body=rows,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def insert(self, table: str, rows: list[Row]) -> None:
        await self._request("POST", table, json_body=rows, prefer="return=minimal")

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        if not filters:
            raise PersistenceError(f"Refusing to delete every row of {table}.")
        await self._request("DELETE", table, params=self._filter_params(filters))


def create_backend(data_dir: str = ".") -> PersistenceBackend:
    backend = os.getenv("MAPPINGS_BACKEND", "local").strip().lower()
    if backend == "rest":
        if os.getenv("MAPPINGS_URL"):
            logger.info("[MAPPINGS] Using REST persistence at %s", os.getenv("MAPPINGS_URL"))
            return RestBackend()
        logger.warning("[MAPPINGS] MAPPINGS_BACKEND=rest but MAPPINGS_URL not set. Using local storage.")
    elif backend != "local":
        logger.warning("[MAPPINGS] Unknown MAPPINGS_BACKEND '%s'. Using local storage.", backend)
    return LocalBackend(os.path.join(data_dir, "mappings.json"))
