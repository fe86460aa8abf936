"""
Map filter semantics shared by every data source.

Translates UI filters (display labels) into column predicates so the
PostgREST source and the in-memory source agree on what a filter means.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from mapsync.sources.base import Filter, FilterOperator, FilterType, MapProject
from mapsync.utils.logging import get_logger

logger = get_logger(__name__)


STATUS_TO_DB = {
    "Proposed": "proposed",
    "Approved": "approved",
    "Under Construction": "under_construction",
    "Completed": "completed",
}

# Action shortcuts offered on the home page
ACTION_RECENT = "1"
ACTION_UNDER_CONSTRUCTION = "2"
ACTION_TRANSIT = "3"

RECENT_STATUSES = ("completed", "approved", "under_construction")
TEXT_COLUMNS = ("title", "description", "address")


@dataclass(frozen=True)
class ColumnPredicate:
    """One resolved filter: ``column <op> values``.

    ``op`` is one of ``eq``, ``neq``, ``in``, ``not_in``, ``overlaps``,
    ``not_overlaps``.
    """
    column: str
    op: str
    values: tuple[str, ...]


def status_to_db(label: str) -> Optional[str]:
    value = STATUS_TO_DB.get(label)
    if value is None:
        logger.warning("Unknown project status value", status=label)
    return value


def resolve_filter(f: Filter) -> Optional[ColumnPredicate]:
    """Map a UI filter onto a column predicate; None when it cannot apply."""
    values = [v for v in f.value if v]
    if not values:
        return None

    if f.type == FilterType.PROPERTY_TYPE.value:
        uses = tuple(v.lower() for v in values)
        if f.operator in (FilterOperator.IS.value, FilterOperator.IS_ANY_OF.value):
            return ColumnPredicate("uses", "overlaps", uses)
        if f.operator == FilterOperator.IS_NOT.value:
            return ColumnPredicate("uses", "not_overlaps", uses)
        logger.warning("Unsupported operator for Property Type filter", operator=f.operator)
        return None

    if f.type == FilterType.PROJECT_STATUS.value:
        db_values = tuple(v for v in (status_to_db(x) for x in values) if v is not None)
        if not db_values:
            return None
        if f.operator == FilterOperator.IS.value:
            return ColumnPredicate("status", "eq" if len(db_values) == 1 else "in", db_values)
        if f.operator == FilterOperator.IS_NOT.value:
            return ColumnPredicate("status", "neq" if len(db_values) == 1 else "not_in", db_values)
        if f.operator in (FilterOperator.IS_ANY_OF.value, FilterOperator.IS_ONE_OF.value):
            return ColumnPredicate("status", "in", db_values)
        logger.warning("Unsupported filter operator", operator=f.operator, type=f.type)
        return None

    logger.warning("Unsupported filter type", type=f.type)
    return None


def resolve_filters(filters: tuple[Filter, ...]) -> list[ColumnPredicate]:
    predicates = []
    for f in filters:
        p = resolve_filter(f)
        if p is not None:
            predicates.append(p)
    return predicates


def matches_predicate(project: MapProject, p: ColumnPredicate) -> bool:
    if p.column == "uses":
        overlap = bool(set(u.lower() for u in project.uses) & set(p.values))
        return overlap if p.op == "overlaps" else not overlap

    value = getattr(project, p.column, None)
    if p.op in ("eq", "in"):
        return value in p.values
    if p.op in ("neq", "not_in"):
        return value not in p.values
    return False


def matches_text(project: MapProject, term: str, columns: tuple[str, ...] = TEXT_COLUMNS) -> bool:
    """Case-insensitive substring match, like ``ilike '%term%'``."""
    needle = term.lower()
    for col in columns:
        text = getattr(project, col, None)
        if text and needle in text.lower():
            return True
    return False


def recent_cutoff(days: int, now: Optional[datetime] = None) -> str:
    """ISO timestamp ``days`` before now."""
    now = now or datetime.now(timezone.utc)
    return (now - timedelta(days=days)).isoformat()


def matches_action(project: MapProject, action_id: str, cutoff: str) -> bool:
    """Predicate for the home-page action shortcuts. Unknown ids match all."""
    if action_id == ACTION_RECENT:
        return project.status in RECENT_STATUSES and (project.updated_at or "") >= cutoff
    if action_id == ACTION_UNDER_CONSTRUCTION:
        return project.status == "under_construction"
    if action_id == ACTION_TRANSIT:
        return matches_text(project, "transit", ("title", "description"))
    return True
