"""Connection registry and region-keyed fan-out."""
from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from typing import Any, Iterable, Protocol

from common.config import MAX_REGION_CELLS, REGION_CELL_DEGREES
from common.geo import region_cell
from schemas import BoundingBox

logger = logging.getLogger(__name__)

Cell = tuple[int, int]


class RegionTooLargeError(ValueError):
    """Raised when a bounding box spans more region cells than allowed."""


class Listener(Protocol):
    connection_id: str

    async def send(self, payload: dict[str, Any]) -> None: ...


class Relay(Protocol):
    async def publish(self, cell: Cell, payload: dict[str, Any]) -> bool: ...


def _column_span(west: float, east: float, cell_degrees: float) -> list[int]:
    if west <= east:
        return list(range(math.floor(west / cell_degrees), math.floor(east / cell_degrees) + 1))
    # Crosses the antimeridian
    return list(range(math.floor(west / cell_degrees), math.floor(180 / cell_degrees) + 1)) + list(
        range(math.floor(-180 / cell_degrees), math.floor(east / cell_degrees) + 1)
    )


def cells_for_bbox(
    bounds: BoundingBox,
    cell_degrees: float = REGION_CELL_DEGREES,
    max_cells: int = MAX_REGION_CELLS,
) -> set[Cell]:
    """Every grid cell the bounding box touches."""
    rows = range(math.floor(bounds.south / cell_degrees), math.floor(bounds.north / cell_degrees) + 1)
    cols = _column_span(bounds.west, bounds.east, cell_degrees)
    if len(rows) * len(cols) > max_cells:
        raise RegionTooLargeError(
            f"Region spans {len(rows) * len(cols)} cells; zoom in (max {max_cells})"
        )
    return {(row, col) for row in rows for col in cols}


class RegionHub:
    def __init__(
        self,
        cell_degrees: float = REGION_CELL_DEGREES,
        max_cells: int = MAX_REGION_CELLS,
    ):
        self.cell_degrees = cell_degrees
        self.max_cells = max_cells
        self._listeners: dict[str, Listener] = {}
        self._members: dict[Cell, set[str]] = {}
        self._regions: dict[str, Counter[Cell]] = {}
        self._relay: Relay | None = None

    @property
    def connection_count(self) -> int:
        return len(self._listeners)

    def attach_relay(self, relay: Relay) -> None:
        self._relay = relay

    def detach_relay(self) -> None:
        self._relay = None

    def register(self, listener: Listener) -> None:
        self._listeners[listener.connection_id] = listener
        self._regions.setdefault(listener.connection_id, Counter())

    def unregister(self, listener: Listener) -> None:
        connection_id = listener.connection_id
        for cell in self._regions.pop(connection_id, Counter()):
            self._leave(cell, connection_id)
        self._listeners.pop(connection_id, None)

    def cell_for(self, latitude: float, longitude: float) -> Cell:
        return region_cell(latitude, longitude, self.cell_degrees)

    def regions_of(self, listener: Listener) -> set[Cell]:
        return set(self._regions.get(listener.connection_id, ()))

    def subscribers(self, cell: Cell) -> set[str]:
        return set(self._members.get(cell, ()))

    def subscribe(self, listener: Listener, bounds: BoundingBox) -> set[Cell]:
        cells = cells_for_bbox(bounds, self.cell_degrees, self.max_cells)
        joined = self._regions.setdefault(listener.connection_id, Counter())
        for cell in cells:
            self._members.setdefault(cell, set()).add(listener.connection_id)
        joined.update(cells)
        return cells

    def unsubscribe(self, listener: Listener, bounds: BoundingBox) -> set[Cell]:
        """Drop one subscription; cells still covered by another box stay joined."""
        cells = cells_for_bbox(bounds, self.cell_degrees, self.max_cells)
        joined = self._regions.get(listener.connection_id, Counter())
        for cell in cells & set(joined):
            joined[cell] -= 1
            if joined[cell] <= 0:
                del joined[cell]
                self._leave(cell, listener.connection_id)
        return cells

    def _leave(self, cell: Cell, connection_id: str) -> None:
        members = self._members.get(cell)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._members[cell]

    async def publish(self, latitude: float, longitude: float, payload: dict[str, Any]) -> None:
        """Send to subscribers of the cell containing the point, across instances when relayed."""
        cell = self.cell_for(latitude, longitude)
        if self._relay is not None and await self._relay.publish(cell, payload):
            return
        await self.deliver_region(cell, payload)

    async def deliver_region(self, cell: Cell, payload: dict[str, Any]) -> int:
        targets = [
            self._listeners[cid] for cid in self._members.get(cell, ()) if cid in self._listeners
        ]
        await self._fanout(targets, payload)
        return len(targets)

    async def broadcast_all(self, payload: dict[str, Any]) -> int:
        targets = list(self._listeners.values())
        await self._fanout(targets, payload)
        return len(targets)

    @staticmethod
    async def _fanout(targets: Iterable[Listener], payload: dict[str, Any]) -> None:
        targets = list(targets)
        if not targets:
            return
        results = await asyncio.gather(*(t.send(payload) for t in targets), return_exceptions=True)
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("[hub] Send to %s failed: %s", target.connection_id, result)
