from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import StorageFailure


logger = logging.getLogger(__name__)

# table -> (partition fields, sort field)
TABLE_KEYS: Dict[str, Tuple[Tuple[str, ...], Optional[str]]] = {
    "teams": (("team_id",), None),
    "racers": (("racer_id",), None),
    "races": (("race_id",), None),
    "rosters": (("race_id", "team_id"), "racer_id"),
    "start_lists": (("race_id",), "bib"),
    "results": (("race_id",), "bib"),
}


@dataclass
class Page:
    items: List[Dict[str, Any]]
    next_token: Optional[int] = None


class DataStore:
    """Record storage backed by Supabase (PostgREST) or a local JSON mirror.

    Offers single-record get / conditional put / delete and paginated queries
    by partition. There are no multi-record transactions; callers replacing a
    set of records do so one write at a time.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        """Initialize the DataStore.

        Args:
            data_dir: Directory for the local JSON mirror. Falls back to
                ``SLALOM_DATA_DIR``; with neither set, local records live only
                in memory.
        """
        env_dir = os.getenv("SLALOM_DATA_DIR", "")
        self.data_dir: Path | None = data_dir or (Path(env_dir) if env_dir else None)

        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.table_names: Dict[str, str] = {
            table: os.getenv(f"SUPABASE_{table.upper()}_TABLE", table) for table in TABLE_KEYS
        }
        try:
            self.page_size = max(1, int(os.getenv("SLALOM_PAGE_SIZE", "100")))
        except ValueError:
            logger.warning("Ignoring invalid SLALOM_PAGE_SIZE; using 100")
            self.page_size = 100

        self._local: Dict[str, Dict[tuple, Dict[str, Any]]] = {}

    @property
    def remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Public API

    def get(self, table: str, key: Dict[str, Any]) -> Dict[str, Any] | None:
        self._check_key(table, key, full=True)
        key = self._key_dict(table, key)
        if self.remote:
            rows = self._remote_select(table, key, limit=1)
            return rows[0] if rows else None
        row = self._local_table(table).get(self._key_of(table, key))
        return copy.deepcopy(row) if row is not None else None

    def put(self, table: str, item: Dict[str, Any], *, if_absent: bool = False) -> bool:
        """Write one record. Returns False when ``if_absent`` and the key exists."""

        self._check_key(table, item, full=True)
        if self.remote:
            return self._remote_put(table, item, if_absent=if_absent)

        rows = self._local_table(table)
        key = self._key_of(table, item)
        if if_absent and key in rows:
            return False
        rows[key] = copy.deepcopy(item)
        self._flush(table)
        return True

    def delete(self, table: str, key: Dict[str, Any]) -> None:
        self._check_key(table, key, full=True)
        key = self._key_dict(table, key)
        if self.remote:
            self._remote_delete(table, key)
            return
        rows = self._local_table(table)
        if rows.pop(self._key_of(table, key), None) is not None:
            self._flush(table)

    def query(
        self,
        table: str,
        partition: Dict[str, Any],
        *,
        limit: int | None = None,
        start: int | None = None,
    ) -> Page:
        """Return one page of records in ``partition`` ordered by sort key."""

        self._check_key(table, partition, full=False)
        limit = limit or self.page_size
        offset = start or 0
        if self.remote:
            rows = self._remote_select(table, partition, limit=limit, offset=offset)
            next_token = offset + limit if len(rows) == limit else None
            return Page(items=rows, next_token=next_token)

        matching = [
            row
            for row in self._local_table(table).values()
            if all(row.get(name) == value for name, value in partition.items())
        ]
        matching.sort(key=lambda row: self._sort_value(table, row))
        window = matching[offset : offset + limit]
        next_token = offset + limit if offset + limit < len(matching) else None
        return Page(items=copy.deepcopy(window), next_token=next_token)

    def query_all(self, table: str, partition: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        token: int | None = None
        while True:
            page = self.query(table, partition, start=token)
            items.extend(page.items)
            if page.next_token is None:
                return items
            token = page.next_token

    def scan(self, table: str) -> List[Dict[str, Any]]:
        return self.query_all(table, {})

    # ------------------------------------------------------------------
    # Key helpers

    @staticmethod
    def _fields(table: str) -> Tuple[Tuple[str, ...], Optional[str]]:
        try:
            return TABLE_KEYS[table]
        except KeyError as exc:
            raise ValueError(f"Unknown table '{table}'") from exc

    def _check_key(self, table: str, values: Dict[str, Any], full: bool) -> None:
        partition, sort = self._fields(table)
        required = partition + ((sort,) if (full and sort) else ())
        if not full:
            unexpected = set(values) - set(partition)
            if unexpected:
                raise ValueError(f"{table} cannot be queried by {sorted(unexpected)}")
            return
        missing = [name for name in required if values.get(name) is None]
        if missing:
            raise ValueError(f"{table} record is missing key field(s): {', '.join(missing)}")

    def _key_dict(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        partition, sort = self._fields(table)
        return {name: values[name] for name in partition + ((sort,) if sort else ())}

    def _key_of(self, table: str, values: Dict[str, Any]) -> tuple:
        partition, sort = self._fields(table)
        names = partition + ((sort,) if sort else ())
        return tuple(values[name] for name in names)

    def _sort_value(self, table: str, row: Dict[str, Any]) -> tuple:
        partition, sort = self._fields(table)
        values = []
        for name in partition + ((sort,) if sort else ()):
            value = row.get(name)
            values.append(value if isinstance(value, int) else str(value))
        return tuple(values)

    # ------------------------------------------------------------------
    # Local backend

    def _local_table(self, table: str) -> Dict[tuple, Dict[str, Any]]:
        if table not in self._local:
            rows: Dict[tuple, Dict[str, Any]] = {}
            if self.data_dir is not None:
                for row in self._read_json_file(self._local_path(table), []):
                    if isinstance(row, dict):
                        try:
                            rows[self._key_of(table, row)] = row
                        except KeyError:
                            logger.warning("Skipping %s row without a full key: %s", table, row)
            self._local[table] = rows
        return self._local[table]

    def _local_path(self, table: str) -> Path:
        assert self.data_dir is not None
        return self.data_dir / f"{table}.json"

    def _flush(self, table: str) -> None:
        if self.data_dir is None:
            return
        rows = sorted(self._local_table(table).values(), key=lambda row: self._sort_value(table, row))
        self._write_json_file(self._local_path(table), rows)

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
        except OSError as exc:
            raise StorageFailure(f"Failed to write local data store {path}") from exc

    # ------------------------------------------------------------------
    # Supabase backend

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{self.table_names[table]}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _eq_filters(values: Dict[str, Any]) -> Dict[str, str]:
        return {name: f"eq.{value}" for name, value in values.items()}

    def _remote_select(
        self,
        table: str,
        filters: Dict[str, Any],
        *,
        limit: int,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        partition, sort = self._fields(table)
        order_fields = partition + ((sort,) if sort else ())
        params: Dict[str, Any] = {
            "select": "*",
            "order": ",".join(f"{name}.asc" for name in order_fields),
            "limit": limit,
            "offset": offset,
            **self._eq_filters(filters),
        }
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(
                    self._supabase_endpoint(table),
                    params=params,
                    headers=self._supabase_headers(include_content_profile=False),
                )
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPError as exc:
            raise StorageFailure(f"Failed to query {table}: {exc}") from exc

        if not isinstance(rows, list):
            logger.warning("Supabase %s query returned unexpected payload: %s", table, type(rows))
            return []
        return [row for row in rows if isinstance(row, dict)]

    def _remote_put(self, table: str, item: Dict[str, Any], *, if_absent: bool) -> bool:
        partition, sort = self._fields(table)
        params: Dict[str, Any] = {}
        if if_absent:
            headers = self._supabase_headers("return=minimal")
        else:
            headers = self._supabase_headers("resolution=merge-duplicates,return=minimal")
            params["on_conflict"] = ",".join(partition + ((sort,) if sort else ()))
        headers["Content-Type"] = "application/json"

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(self._supabase_endpoint(table), params=params, json=item, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if if_absent and exc.response is not None and exc.response.status_code == 409:
                return False
            raise StorageFailure(f"Failed to write {table} record: {exc}") from exc
        except httpx.HTTPError as exc:
            raise StorageFailure(f"Failed to write {table} record: {exc}") from exc
        return True

    def _remote_delete(self, table: str, key: Dict[str, Any]) -> None:
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.delete(
                    self._supabase_endpoint(table),
                    params=self._eq_filters(key),
                    headers=self._supabase_headers(),
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageFailure(f"Failed to delete {table} record: {exc}") from exc
