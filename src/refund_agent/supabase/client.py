from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from ..domain.errors import DatabaseError, NetworkTimeout
from ..domain.models import Filter
from ..domain.normalize import fix_storage_url
from ..logging import get_logger


class SupabaseStore:
    """Thin wrapper over supabase-py with logging and error translation.

    Only implements the subset we use: filtered select/insert/update/delete
    on tables and public URLs from one storage bucket.
    """

    def __init__(self, client: Client, bucket: str) -> None:
        self.client = client
        self.bucket = bucket
        self.log = get_logger("supabase-client")

    @classmethod
    def connect(cls, url: str, key: str, bucket: str) -> "SupabaseStore":
        return cls(create_client(url, key), bucket)

    # ---------- helpers ----------
    def _apply(self, q: Any, filters: Optional[Iterable[Filter]]) -> Any:
        for f in filters or []:
            target = q.not_ if f.negate else q
            if f.op == "is":
                q = target.is_(f.column, _is_literal(f.value))
            elif f.op == "in":
                q = target.in_(f.column, list(f.value))
            elif f.op in ("eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike"):
                q = getattr(target, f.op)(f.column, f.value)
            else:
                raise DatabaseError(f"Unsupported filter op: {f.op}")
        return q

    def _execute(self, q: Any, what: str) -> List[Dict[str, Any]]:
        try:
            resp = q.execute()
        except APIError as e:
            msg = e.message or str(e)
            self.log.error(f"{what} failed: {msg}")
            raise DatabaseError(msg) from e
        except httpx.TimeoutException as e:
            self.log.error(f"{what} timed out: {e}")
            raise NetworkTimeout(f"Database request timeout: {e}") from e
        except httpx.HTTPError as e:
            self.log.error(f"{what} failed: {e}")
            raise DatabaseError(str(e)) from e
        return list(resp.data or [])

    # ---------- tables ----------
    def select(
        self,
        table: str,
        filters: Optional[Iterable[Filter]] = None,
        *,
        columns: str = "*",
        order: Optional[Tuple[str, bool]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        q = self._apply(self.client.table(table).select(columns), filters)
        if order:
            column, ascending = order
            q = q.order(column, desc=not ascending)
        if limit is not None:
            q = q.limit(int(limit))
        rows = self._execute(q, f"SELECT {table}")
        self.log.debug(f"SELECT {table}: {len(rows)} row(s)")
        return rows

    def insert(self, table: str, rows: Any) -> List[Dict[str, Any]]:
        self.log.info(f"INSERT {table}: {rows!r}")
        return self._execute(self.client.table(table).insert(rows), f"INSERT {table}")

    def update(self, table: str, patch: Dict[str, Any], filters: Iterable[Filter]) -> List[Dict[str, Any]]:
        filters = list(filters)
        self.log.info(f"UPDATE {table} set={patch!r} where={filters!r}")
        q = self._apply(self.client.table(table).update(patch), filters)
        return self._execute(q, f"UPDATE {table}")

    def delete(self, table: str, filters: Iterable[Filter]) -> List[Dict[str, Any]]:
        filters = list(filters)
        self.log.info(f"DELETE {table} where={filters!r}")
        q = self._apply(self.client.table(table).delete(), filters)
        return self._execute(q, f"DELETE {table}")

    # ---------- storage ----------
    def public_url(self, filename: str, bucket: Optional[str] = None) -> str:
        bucket = bucket or self.bucket
        url = self.client.storage.from_(bucket).get_public_url(filename)
        return fix_storage_url(str(url), bucket)


def _is_literal(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)
