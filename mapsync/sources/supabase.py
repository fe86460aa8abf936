"""
Supabase (PostgREST) data source for map projects.

Queries the ``projects`` table in two parts: priority projects by id, then
the remaining recent projects ordered by ``updated_at``, row-limited in
initial mode.
"""

from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from mapsync.config import Settings, get_settings
from mapsync.sources.base import (
    DataSource,
    FetchCriteria,
    FetchMode,
    Filter,
    MapProject,
    RateLimitError,
    SourceError,
    dedupe_by_id,
)
from mapsync.sources.filters import (
    ACTION_RECENT,
    ACTION_TRANSIT,
    ACTION_UNDER_CONSTRUCTION,
    RECENT_STATUSES,
    TEXT_COLUMNS,
    ColumnPredicate,
    recent_cutoff,
    resolve_filters,
)
from mapsync.utils.logging import get_logger

logger = get_logger(__name__)

PROJECT_COLUMNS = "id,title,slug,latitude,longitude,status,city_slug,neighborhood_slug,uses,updated_at"

Params = list[tuple[str, str]]


def _pg_list(values: tuple[str, ...]) -> str:
    return "(" + ",".join(f'"{v}"' for v in values) + ")"


def _pg_array(values: tuple[str, ...]) -> str:
    return "{" + ",".join(f'"{v}"' for v in values) + "}"


def predicate_params(p: ColumnPredicate) -> tuple[str, str]:
    """Render a column predicate as a PostgREST query parameter."""
    if p.op == "eq":
        return p.column, f"eq.{p.values[0]}"
    if p.op == "neq":
        return p.column, f"neq.{p.values[0]}"
    if p.op == "in":
        return p.column, f"in.{_pg_list(p.values)}"
    if p.op == "not_in":
        return p.column, f"not.in.{_pg_list(p.values)}"
    if p.op == "overlaps":
        return p.column, f"ov.{_pg_array(p.values)}"
    if p.op == "not_overlaps":
        return p.column, f"not.ov.{_pg_array(p.values)}"
    raise ValueError(f"Unsupported predicate op: {p.op}")


def _text_search(term: str, columns: tuple[str, ...]) -> tuple[str, str]:
    pattern = f"*{term}*"
    return "or", "(" + ",".join(f"{c}.ilike.{pattern}" for c in columns) + ")"


class SupabaseSource(DataSource):
    """PostgREST-backed project source."""

    name = "supabase"

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._url = (url or self.settings.supabase_url or "").rstrip("/")
        self._key = key or self.settings.supabase_key
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        """Create the PostgREST HTTP client."""
        if not self._url or not self._key:
            raise SourceError("Supabase URL and key are required", self.name, "config")

        self._http_client = httpx.AsyncClient(
            base_url=f"{self._url}/rest/v1",
            timeout=self.settings.supabase_timeout,
            headers={
                "apikey": self._key,
                "Authorization": f"Bearer {self._key}",
                "Accept": "application/json",
            },
            transport=self._transport,
        )
        logger.info("Supabase source initialized", url=self._url)

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def _select(self, table: str, params: Params) -> list[dict]:
        """GET rows from a table with retry on rate limit."""
        if not self._http_client:
            raise RuntimeError("Client not initialized")

        try:
            response = await self._http_client.get(f"/{table}", params=params)

            if response.status_code == 429:
                logger.warning("Rate limited by PostgREST, retrying...", table=table)
                raise RateLimitError("Rate limit exceeded", self.name, "429")

            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            detail = ""
            try:
                body = e.response.json()
                if isinstance(body, dict):
                    detail = body.get("message") or body.get("hint") or ""
            except ValueError:
                detail = e.response.text[:200]
            logger.error("PostgREST error", table=table, status=e.response.status_code, detail=detail)
            raise SourceError(
                f"PostgREST {e.response.status_code}: {detail}" if detail else f"PostgREST error {e.response.status_code}",
                self.name,
                str(e.response.status_code),
            ) from e
        except httpx.RequestError as e:
            raise SourceError(f"Request failed: {e}", self.name, "network") from e

    def _base_params(self, columns: str = PROJECT_COLUMNS) -> Params:
        return [
            ("select", columns),
            ("latitude", "not.is.null"),
            ("longitude", "not.is.null"),
            ("has_articles", "eq.true"),
        ]

    def build_priority_params(self, criteria: FetchCriteria) -> Params:
        params = self._base_params()
        params.append(("id", f"in.{_pg_list(tuple(criteria.priority_ids))}"))
        params.extend(predicate_params(p) for p in resolve_filters(criteria.active_filters))
        return params

    def build_recent_params(
        self,
        criteria: FetchCriteria,
        exclude_ids: tuple[str, ...] = (),
        limit: Optional[int] = None,
    ) -> Params:
        params = self._base_params()
        params.append(("status", "not.is.null"))

        if criteria.city_slug:
            params.append(("city_slug", f"eq.{criteria.city_slug}"))

        if criteria.query:
            params.append(_text_search(criteria.query, TEXT_COLUMNS))
        elif criteria.action_id == ACTION_RECENT:
            params.append(("status", f"in.{_pg_list(RECENT_STATUSES)}"))
            params.append(("updated_at", f"gte.{recent_cutoff(self.settings.recent_days)}"))
        elif criteria.action_id == ACTION_UNDER_CONSTRUCTION:
            params.append(("status", "eq.under_construction"))
        elif criteria.action_id == ACTION_TRANSIT:
            params.append(_text_search("transit", ("title", "description")))

        params.extend(predicate_params(p) for p in resolve_filters(criteria.active_filters))

        if exclude_ids:
            params.append(("id", f"not.in.{_pg_list(exclude_ids)}"))

        params.append(("order", "updated_at.desc"))
        if criteria.fetch_mode == FetchMode.INITIAL and limit is not None:
            params.append(("limit", str(limit)))
        return params

    async def query(self, criteria: FetchCriteria, limit: Optional[int] = None) -> list[MapProject]:
        priority: list[MapProject] = []
        if criteria.priority_ids:
            rows = await self._select("projects", self.build_priority_params(criteria))
            priority = [MapProject.from_dict(r) for r in rows]

        exclude = tuple(p.id for p in priority)
        rows = await self._select("projects", self.build_recent_params(criteria, exclude, limit))
        recent = [MapProject.from_dict(r) for r in rows]

        logger.debug(
            "Supabase query completed",
            priority=len(priority),
            recent=len(recent),
            fetch_mode=criteria.fetch_mode.value,
        )
        return dedupe_by_id(priority + recent)

    async def query_ids(self, city_slug: Optional[str], filters: tuple[Filter, ...]) -> list[str]:
        params: Params = [("select", "id"), ("has_articles", "eq.true")]
        if city_slug:
            params.append(("city_slug", f"eq.{city_slug}"))
        params.extend(predicate_params(p) for p in resolve_filters(tuple(f for f in filters if f.is_active)))
        rows = await self._select("projects", params)
        return [str(r["id"]) for r in rows]
