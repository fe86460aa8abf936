"""
Viewport windowing: which merged projects to materialize on the map.

A zoom-keyed step function caps how many markers are rendered, the cap is
then narrowed to the visible bounds, and hovered/selected projects are
always appended even if that pushes the result past the cap.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from mapsync.config import Settings, get_settings
from mapsync.services.merge import MergedDataset
from mapsync.sources.base import MapProject


@dataclass(frozen=True)
class Bounds:
    """Geographic bounding box in degrees."""
    west: float
    south: float
    east: float
    north: float

    def contains(self, longitude: float, latitude: float) -> bool:
        if not self.south <= latitude <= self.north:
            return False
        if self.west <= self.east:
            return self.west <= longitude <= self.east
        # Box crosses the antimeridian
        return longitude >= self.west or longitude <= self.east


@dataclass(frozen=True)
class ViewportState:
    zoom: float
    bounds: Optional[Bounds] = None
    hovered_id: Optional[str] = None
    selected_id: Optional[str] = None

    @property
    def pinned(self) -> tuple[str, ...]:
        """Ids that must stay visible, hovered first."""
        pinned: list[str] = []
        for pid in (self.hovered_id, self.selected_id):
            if pid and pid not in pinned:
                pinned.append(pid)
        return tuple(pinned)


class ZoomCaps:
    """Monotonic zoom -> max marker count step function."""

    def __init__(self, steps: Sequence[tuple[Optional[float], int]]):
        self.steps = list(steps)

    def cap_for(self, zoom: float) -> int:
        for upper, cap in self.steps:
            if upper is None or zoom < upper:
                return cap
        return self.steps[-1][1]


class Windower:
    """Derives the visible subset for a viewport."""

    def __init__(self, caps: Optional[ZoomCaps] = None, settings: Optional[Settings] = None):
        if caps is None:
            caps = ZoomCaps((settings or get_settings()).zoom_caps)
        self.caps = caps

    def cap_for(self, zoom: float, dataset_size: int) -> int:
        return min(self.caps.cap_for(zoom), dataset_size)

    def visible(self, dataset: MergedDataset, viewport: ViewportState) -> list[MapProject]:
        projects = dataset.values()
        candidates = projects[: self.cap_for(viewport.zoom, len(projects))]

        if viewport.bounds is not None:
            bounds = viewport.bounds
            candidates = [
                p for p in candidates
                if p.has_coordinates and bounds.contains(p.longitude, p.latitude)
            ]

        # Pinned projects outrank the cap; ids not in the dataset are ignored
        shown = {p.id for p in candidates}
        for pid in viewport.pinned:
            if pid in shown:
                continue
            project = dataset.get(pid)
            if project is not None:
                candidates.append(project)
                shown.add(pid)

        return candidates
