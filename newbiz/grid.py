"""Grid planning and adaptive cell subdivision for region coverage."""
from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from . import config
from .geo import haversine_m, offset_point
from .models import Cell, Region

logger = logging.getLogger(__name__)


@dataclass
class AdaptiveSearchResult:
    results: List[Dict[str, Any]] = field(default_factory=list)
    cells_searched: int = 0
    saturated_cells: List[Cell] = field(default_factory=list)


class GridPlanner:
    def __init__(
        self,
        overlap: Optional[float] = None,
        geofence_factor: Optional[float] = None,
        min_radius_m: Optional[float] = None,
        max_depth: Optional[int] = None,
        result_cap: Optional[int] = None,
        radius_by_tier: Optional[Dict[int, int]] = None,
    ) -> None:
        self.overlap = config.GRID_OVERLAP if overlap is None else overlap
        self.geofence_factor = config.GEOFENCE_FACTOR if geofence_factor is None else geofence_factor
        self.min_radius_m = config.SUBDIVISION_MIN_RADIUS_M if min_radius_m is None else min_radius_m
        self.max_depth = config.SUBDIVISION_MAX_DEPTH if max_depth is None else max_depth
        self.result_cap = config.PLACES_RESULT_CAP if result_cap is None else result_cap
        self.radius_by_tier = dict(radius_by_tier or config.CELL_RADIUS_BY_TIER)
        if not 0 <= self.overlap < 1:
            raise ValueError("overlap must be in [0, 1)")

    def cell_radius_for(self, tier: int) -> int:
        tiers = sorted(self.radius_by_tier)
        tier = min(max(int(tier), tiers[0]), tiers[-1])
        return self.radius_by_tier[tier]

    def plan_cells(self, region: Region) -> List[Cell]:
        """Lattice of cells covering the region, ordered south to north, west to east."""
        radius = self.cell_radius_for(region.priority_tier)
        spacing = radius * (1 - self.overlap)
        limit = region.search_radius_m * self.geofence_factor
        steps = max(0, math.ceil(region.search_radius_m / spacing))

        cells: List[Cell] = []
        for row in range(-steps, steps + 1):
            for col in range(-steps, steps + 1):
                lat, lng = offset_point(
                    region.center_lat, region.center_lng, row * spacing, col * spacing
                )
                if haversine_m(region.center_lat, region.center_lng, lat, lng) > limit:
                    continue
                cells.append(Cell(lat=lat, lng=lng, radius_m=radius))
        logger.debug(
            "Planned %s cells for %s (radius=%sm spacing=%.0fm)",
            len(cells),
            region.name,
            radius,
            spacing,
        )
        return cells

    def subdivide(self, cell: Cell) -> List[Cell]:
        half = cell.radius_m / 2
        children = []
        for north, east in ((half, -half), (half, half), (-half, -half), (-half, half)):
            lat, lng = offset_point(cell.lat, cell.lng, north, east)
            children.append(Cell(lat=lat, lng=lng, radius_m=half, depth=cell.depth + 1))
        return children

    def can_subdivide(self, cell: Cell) -> bool:
        return cell.depth < self.max_depth and cell.radius_m / 2 >= self.min_radius_m

    def search_adaptive(
        self, cell: Cell, fetch: Callable[[Cell], List[Dict[str, Any]]]
    ) -> AdaptiveSearchResult:
        """Search a cell, splitting it into quadrants while results hit the cap.

        Results are de-duplicated by ``place_id``; entries without one are kept.
        """
        out = AdaptiveSearchResult()
        seen: Dict[str, int] = {}
        queue: Deque[Cell] = deque([cell])
        while queue:
            current = queue.popleft()
            results = fetch(current) or []
            out.cells_searched += 1
            for item in results:
                place_id = item.get("place_id")
                if place_id is None:
                    out.results.append(item)
                elif place_id in seen:
                    out.results[seen[place_id]] = item
                else:
                    seen[place_id] = len(out.results)
                    out.results.append(item)

            if len(results) < self.result_cap:
                continue
            if self.can_subdivide(current):
                logger.debug(
                    "Cell %.5f,%.5f r=%sm returned %s results, subdividing (depth %s)",
                    current.lat,
                    current.lng,
                    current.radius_m,
                    len(results),
                    current.depth + 1,
                )
                queue.extend(self.subdivide(current))
            else:
                logger.warning(
                    "Cell %.5f,%.5f r=%sm saturated at depth %s; results may be truncated",
                    current.lat,
                    current.lng,
                    current.radius_m,
                    current.depth,
                )
                out.saturated_cells.append(current)
        return out
