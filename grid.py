from __future__ import annotations

import logging
import math
import numbers
from typing import Dict, Sequence, Tuple

import numpy as np

LOGGER = logging.getLogger("gridcast.grid")
NODE_SNAP_TOLERANCE = 1e-9
FULL_CIRCLE = 360.0


class GridOutOfRangeError(IndexError):
    """Raised when a grid is read outside of its extent."""


class Grid:
    """Cell-centred lon/lat raster.

    ``origin`` is the north-west corner of cell (0, 0); the sample of cell
    (col, row) sits at its centre. Rows run from north to south and ``data``
    is stored row-major. Latitude is clamped. Longitude is periodic when the
    bounds span the whole circle; a regional grid clamps a longitude to its
    nearest edge, measured around the circle.
    """

    def __init__(
        self,
        bounds: Sequence[float],
        origin: Sequence[float],
        size: Sequence[int],
        resolution: Sequence[float],
        data,
    ) -> None:
        self.bounds: Tuple[float, float, float, float] = tuple(float(v) for v in bounds)
        self.origin: Tuple[float, float] = (float(origin[0]), float(origin[1]))
        self.size: Tuple[int, int] = (int(size[0]), int(size[1]))
        self.resolution: Tuple[float, float] = (float(resolution[0]), float(resolution[1]))
        if self.size[0] < 1 or self.size[1] < 1:
            raise ValueError(f"Grid size must be at least 1x1, got {self.size}")
        if self.resolution[0] <= 0 or self.resolution[1] <= 0:
            raise ValueError(f"Grid resolution must be positive, got {self.resolution}")

        values = np.asarray(data, dtype=np.float64).reshape(-1)
        columns, rows = self.size
        if values.size != columns * rows:
            raise ValueError(f"Grid data has {values.size} samples, expected {columns} x {rows}")
        self.data = values.reshape(rows, columns)

    @classmethod
    def from_forecast(cls, forecast, data) -> "Grid":
        return cls(
            bounds=forecast.bounds,
            origin=forecast.origin,
            size=forecast.size,
            resolution=forecast.resolution,
            data=data,
        )

    @property
    def is_periodic(self) -> bool:
        return self.bounds[2] - self.bounds[0] >= FULL_CIRCLE - NODE_SNAP_TOLERANCE

    def get_value(self, col: int, row: int) -> float:
        columns, rows = self.size
        for index in (col, row):
            if (
                isinstance(index, bool)
                or not isinstance(index, numbers.Real)
                or not math.isfinite(index)
                or int(index) != index
            ):
                raise GridOutOfRangeError(f"Grid indices must be integers, got ({col!r}, {row!r})")
        if not (0 <= col < columns and 0 <= row < rows):
            raise GridOutOfRangeError(f"Cell ({col}, {row}) outside grid of size {columns}x{rows}")
        return float(self.data[int(row), int(col)])

    def interpolate(self, lon: float, lat: float) -> float:
        return float(self._interpolate_many(np.array([lon], dtype=np.float64), np.array([lat], dtype=np.float64))[0])

    def resample(self, origin: Sequence[float], size: Sequence[int], step: Sequence[float]) -> np.ndarray:
        columns, rows = int(size[0]), int(size[1])
        if columns < 1 or rows < 1:
            raise ValueError(f"Resample size must be at least 1x1, got {tuple(size)}")
        lons = float(origin[0]) + (np.arange(columns, dtype=np.float64) + 0.5) * float(step[0])
        lats = float(origin[1]) - (np.arange(rows, dtype=np.float64) + 0.5) * float(step[1])
        if not (np.all(np.isfinite(lons)) and np.all(np.isfinite(lats))):
            raise ValueError(
                f"Resample window origin={tuple(origin)} size={tuple(size)} step={tuple(step)} overflows coordinates"
            )
        lon_grid, lat_grid = np.meshgrid(lons, lats)
        values = self._interpolate_many(lon_grid.reshape(-1), lat_grid.reshape(-1))
        LOGGER.debug(
            "Resampled grid size=%s to size=%s origin=%s step=%s",
            self.size,
            (columns, rows),
            tuple(origin),
            tuple(step),
        )
        return values

    @staticmethod
    def get_min_max(data) -> Dict[str, float | None]:
        values = np.asarray(data, dtype=np.float64).reshape(-1)
        finite = values[np.isfinite(values)]
        if finite.size == 0:
            return {"min": None, "max": None}
        return {"min": float(finite.min()), "max": float(finite.max())}

    def normalize_longitude(self, lon):
        lon = np.asarray(lon, dtype=np.float64)
        if self.is_periodic:
            start = self.origin[0]
        else:
            # Half a circle either side of the grid centre: the nearest edge stays nearest.
            start = (self.bounds[0] + self.bounds[2]) / 2 - FULL_CIRCLE / 2
        # Rounding keeps lon and lon +/- 360 on the same float.
        offset = np.round(np.mod(lon - start, FULL_CIRCLE), 9)
        return start + np.mod(offset, FULL_CIRCLE)

    def _interpolate_many(self, lons: np.ndarray, lats: np.ndarray) -> np.ndarray:
        if not (np.all(np.isfinite(lons)) and np.all(np.isfinite(lats))):
            raise GridOutOfRangeError("Cannot interpolate at non-finite coordinates")
        columns, rows = self.size
        lons = self.normalize_longitude(lons)

        x = (lons - self.origin[0]) / self.resolution[0] - 0.5
        y = (self.origin[1] - lats) / self.resolution[1] - 0.5
        x = self._snap_to_nodes(x)
        y = self._snap_to_nodes(y)
        x = np.clip(x, 0.0, columns - 1)
        y = np.clip(y, 0.0, rows - 1)

        c0 = np.floor(x).astype(np.intp)
        r0 = np.floor(y).astype(np.intp)
        fx = x - c0
        fy = y - r0
        # Zero-weight neighbours are never read so a missing neighbour cannot leak into a node.
        c1 = np.where(fx > 0, np.minimum(c0 + 1, columns - 1), c0)
        r1 = np.where(fy > 0, np.minimum(r0 + 1, rows - 1), r0)

        v00 = self.data[r0, c0]
        v10 = self.data[r0, c1]
        v01 = self.data[r1, c0]
        v11 = self.data[r1, c1]
        return (
            v00 * (1 - fx) * (1 - fy)
            + v10 * fx * (1 - fy)
            + v01 * (1 - fx) * fy
            + v11 * fx * fy
        )

    @staticmethod
    def _snap_to_nodes(coords: np.ndarray) -> np.ndarray:
        nearest = np.round(coords)
        return np.where(np.abs(coords - nearest) < NODE_SNAP_TOLERANCE, nearest, coords)


def interpolate(grid: Grid, lon: float, lat: float) -> float:
    return grid.interpolate(lon, lat)


def resample(grid: Grid, origin: Sequence[float], size: Sequence[int], step: Sequence[float]) -> np.ndarray:
    return grid.resample(origin, size, step)
