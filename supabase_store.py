"""
supabase_store.py

Minimal PostgREST client for the hosted Supabase database.

Every table operation returns a ``StoreResult(data, error)`` pair instead of
raising, so route handlers decide how to report a failed read or write.

Auth headers:
- apikey: <service role key>
- Authorization: Bearer <service role key>   (or the user's token for /auth/v1/user)
"""

import json
import logging
import os
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union
from urllib.parse import urlencode

import requests
from requests.exceptions import RequestException

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
SUPABASE_TIMEOUT_SECONDS = float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "30"))

Filter = Tuple[str, str, Any]  # (col, op, value) where op in FILTER_OPS
FILTER_OPS = {"eq", "neq", "gt", "gte", "lt", "lte", "in", "is"}

logger = logging.getLogger("supabase_store")


class StoreError(NamedTuple):
    message: str
    code: Optional[str] = None
    status: Optional[int] = None


class StoreResult(NamedTuple):
    data: Any
    error: Optional[StoreError] = None


def format_schema_error(error: Optional[StoreError]) -> str:
    if error is None:
        return "Request failed."
    if "schema cache" in (error.message or ""):
        return "Database schema missing. Run the Supabase schema migration first."
    return error.message or "Request failed."


def _fmt_value(val: Any) -> str:
    if val is None:
        return "null"
    if isinstance(val, bool):
        return "true" if val else "false"
    return str(val)


class SupabaseStore:
    def __init__(
        self,
        url: str,
        key: str,
        schema: str = "public",
        timeout_seconds: float = SUPABASE_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not url or not key:
            raise ValueError("url and key are required")
        self.url = url.rstrip("/")
        self.key = key
        self.schema = schema
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @property
    def rest_base(self) -> str:
        return f"{self.url}/rest/v1"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        h = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Accept-Profile": self.schema,
            "Content-Profile": self.schema,
        }
        if extra:
            h.update(extra)
        return h

    def _fmt_filter(self, col: str, op: str, val: Any) -> Tuple[str, str]:
        if op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {op}")
        if op == "in":
            if not isinstance(val, (list, tuple, set)):
                raise ValueError("in filter requires a list/tuple/set value")
            inner = ",".join(_fmt_value(v) for v in val)
            return col, f"in.({inner})"
        return col, f"{op}.{_fmt_value(val)}"

    def _build_query(
        self,
        select: Optional[str] = None,
        filters: Optional[Iterable[Filter]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        on_conflict: Optional[str] = None,
    ) -> str:
        params: List[Tuple[str, Any]] = []
        if select:
            params.append(("select", select))
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", int(limit)))
        if on_conflict:
            params.append(("on_conflict", on_conflict))
        for col, op, val in filters or []:
            params.append(self._fmt_filter(col, op, val))
        return urlencode(params)

    def _request(self, method: str, table: str, query: str, body=None, prefer: Optional[str] = None) -> StoreResult:
        url = f"{self.rest_base}/{table}"
        if query:
            url = f"{url}?{query}"
        headers = self._headers({"Prefer": prefer} if prefer else None)
        data = json.dumps(body) if body is not None else None
        try:
            r = self.session.request(method, url, headers=headers, data=data, timeout=self.timeout_seconds)
        except RequestException as e:
            logger.error("Supabase %s %s failed: %s", method, table, e)
            return StoreResult(None, StoreError(f"Supabase request failed: {e}"))
        if r.status_code >= 400:
            return StoreResult(None, self._parse_error(r))
        if not r.text:
            return StoreResult([] if method == "GET" else None)
        try:
            return StoreResult(r.json())
        except ValueError:
            return StoreResult(None, StoreError("Supabase returned invalid JSON.", status=r.status_code))

    @staticmethod
    def _parse_error(r) -> StoreError:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = payload.get("message") or payload.get("msg") or r.text
            return StoreError(message, code=payload.get("code"), status=r.status_code)
        return StoreError(f"{r.status_code} {r.text}", status=r.status_code)

    # ---------- Tables ----------

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[List[Filter]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> StoreResult:
        qs = self._build_query(select=columns, filters=filters, order=order, limit=limit)
        return self._request("GET", table, qs)

    def insert(self, table: str, rows: Union[dict, List[dict]], returning: str = "*") -> StoreResult:
        qs = self._build_query(select=returning)
        return self._request("POST", table, qs, body=rows, prefer="return=representation")

    def update(
        self,
        table: str,
        values: dict,
        filters: List[Filter],
        returning: Optional[str] = None,
    ) -> StoreResult:
        if not filters:
            # PostgREST would update every row
            raise ValueError("update requires at least one filter")
        qs = self._build_query(select=returning, filters=filters)
        prefer = "return=representation" if returning else "return=minimal"
        return self._request("PATCH", table, qs, body=values, prefer=prefer)

    def upsert(
        self,
        table: str,
        rows: Union[dict, List[dict]],
        on_conflict: str,
        returning: str = "*",
    ) -> StoreResult:
        body = rows if isinstance(rows, list) else [rows]
        qs = self._build_query(select=returning, on_conflict=on_conflict)
        return self._request(
            "POST",
            table,
            qs,
            body=body,
            prefer="resolution=merge-duplicates,return=representation",
        )

    # ---------- Auth ----------

    def get_user(self, access_token: str) -> StoreResult:
        """Resolve a user access token through Supabase Auth."""
        url = f"{self.url}/auth/v1/user"
        headers = {"apikey": self.key, "Authorization": f"Bearer {access_token}"}
        try:
            r = self.session.get(url, headers=headers, timeout=self.timeout_seconds)
        except RequestException as e:
            return StoreResult(None, StoreError(f"Supabase auth request failed: {e}"))
        if r.status_code >= 400:
            return StoreResult(None, self._parse_error(r))
        try:
            user = r.json()
        except ValueError:
            return StoreResult(None, StoreError("Supabase auth returned invalid JSON.", status=r.status_code))
        if not isinstance(user, dict) or not user.get("id"):
            return StoreResult(None, StoreError("Invalid auth token.", status=r.status_code))
        return StoreResult(user)


def store_from_env() -> Optional[SupabaseStore]:
    """Build a store from SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY, or None if unset."""
    if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
        return None
    return SupabaseStore(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
