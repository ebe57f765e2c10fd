"""
HEX Cartogram Aligner

A single-file Python CLI tool that aligns a hexagonal tessellation with a
published hex layout (HexJSON or CSV), estimates per-area crash risk ratios
with bootstrap percentile intervals, and writes the joined geometry, the
estimate tables and a hexagon cartogram PNG with uncertainty spokes.

Usage:
    python main.py --layout lads.hexjson --debug
    python main.py --layout lads.hexjson --crashes crashes.csv --geojson lads.geojson --table rr.csv
    python main.py --layout lads.hexjson --crashes crashes.csv --exposure population.csv --n_boot 2000 --seed 7
    python main.py --import_settings settings.json
    python main.py --export_settings settings.json
"""

import argparse
import json
import math
import os
import re
import sys
from collections import Counter
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from PIL import Image, ImageColor, ImageDraw, ImageFont
from shapely.geometry import Polygon, mapping, shape


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------
def map_scale(value, min1: float, max1: float, min2: float, max2: float):
    """Linearly rescale value from [min1, max1] onto [min2, max2].

    Evaluated as an interpolation between the target endpoints, so that
    min1 maps exactly to min2 and max1 exactly to max2. Works element-wise
    on numpy arrays.

    Args:
        value: Scalar or array to rescale.
        min1: Lower bound of the source range.
        max1: Upper bound of the source range.
        min2: Lower bound of the target range.
        max2: Upper bound of the target range.

    Returns:
        The rescaled value (same shape as value).

    Raises:
        ValueError: If the source range is degenerate (min1 == max1).
    """
    if max1 == min1:
        raise ValueError(f"Cannot rescale from a degenerate range [{min1}, {max1}]")
    t = (value - min1) / (max1 - min1)
    return (1 - t) * min2 + t * max2


def get_radians(degrees: float) -> float:
    """Convert degrees to radians."""
    return (degrees * math.pi) / 180.0


def spoke_end(x: float, y: float, angle: float, radius: float) -> Tuple[float, float]:
    """Return the end point of a spoke of given length leaving (x, y) at angle degrees."""
    a = get_radians(angle)
    return (x + radius * math.cos(a), y + radius * math.sin(a))


def center_spoke(
    x: float, y: float, xend: float, yend: float, radius: float
) -> Tuple[float, float, float, float, float]:
    """Move a spoke so that it is centred on its origin instead of starting there.

    The start point is reflected through the origin and the radius doubles;
    the end point is unchanged.

    Returns:
        (x, y, xend, yend, radius) of the centred spoke.
    """
    return (2 * x - xend, 2 * y - yend, xend, yend, 2 * radius)


def row_is_shifted(row: int, offset: str) -> bool:
    """Whether a row is shoved right by half a cell under an odd-r/even-r offset."""
    parity = 1 if offset == "odd-r" else 0
    return row % 2 == parity


def snap_column(value: float, row: int, offset: str = "odd-r", precision: int = 6) -> int:
    """Snap a column-space east value to an integer column.

    Shifted rows sit on whole columns and round to the nearest integer (half to
    even); unshifted rows sit half a column to their left and round up.

    Args:
        value: East position expressed in layout column units.
        row: Final integer row of the cell.
        offset: Layout row-offset convention ('odd-r' or 'even-r').
        precision: Decimal places kept before snapping.

    Returns:
        The integer column.
    """
    value = round(float(value), precision)
    if row_is_shifted(row, offset):
        return int(round(value))
    return int(math.ceil(value))


def _optional_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Expected a number, got {value!r}")
    return None if math.isnan(f) else f


# ---------------------------------------------------------------------------
# GridIndex
# ---------------------------------------------------------------------------
class GridIndex(NamedTuple):
    """Discrete (column, row) position on a hexagonal grid."""

    q: int
    r: int

    @classmethod
    def snap(cls, col: float, row: float, precision: int = 6) -> "GridIndex":
        """Build an index from numbers that must already be whole.

        Args:
            col: Column value (int or float).
            row: Row value (int or float).
            precision: Decimal places kept before the whole-number check.

        Returns:
            The GridIndex.

        Raises:
            ValueError: If either coordinate is not a whole number.
        """
        try:
            q = round(float(col), precision)
            r = round(float(row), precision)
        except (TypeError, ValueError):
            raise ValueError(f"Grid coordinates must be numeric, got ({col!r}, {row!r})")
        if not (q.is_integer() and r.is_integer()):
            raise ValueError(f"Grid coordinates must be whole numbers, got ({col}, {row})")
        return cls(int(q), int(r))


# ---------------------------------------------------------------------------
# NamedHexLayout
# ---------------------------------------------------------------------------
class HexUnit(NamedTuple):
    """One named unit of a hex layout."""

    unit_id: str
    name: str
    q: int
    r: int
    lat: Optional[float] = None
    lon: Optional[float] = None

    @property
    def grid_index(self) -> GridIndex:
        return GridIndex(self.q, self.r)


class NamedHexLayout:
    """A published hex layout: named units placed at integer (q, r) positions.

    Unit ids and (q, r) pairs are unique. Rows of the parity named by the
    offset convention are shoved right by half a cell.

    Attributes:
        units: The layout units in file order.
        offset: Row-offset convention, 'odd-r' or 'even-r'.
    """

    OFFSETS: Tuple[str, ...] = ("odd-r", "even-r")

    def __init__(self, units: Iterable[HexUnit], offset: str = "odd-r") -> None:
        """Validate and store the layout.

        Args:
            units: The layout units.
            offset: Row-offset convention.

        Raises:
            ValueError: On an unknown offset, an empty layout, or duplicate
                unit ids or (q, r) positions.
        """
        if offset not in self.OFFSETS:
            raise ValueError(
                f"Unsupported hex layout '{offset}'. Must be one of: {', '.join(self.OFFSETS)}"
            )
        self._units: List[HexUnit] = list(units)
        self._offset: str = offset
        if not self._units:
            raise ValueError("Hex layout has no units")

        ids = Counter(u.unit_id for u in self._units)
        dup_ids = sorted(i for i, n in ids.items() if n > 1)
        if dup_ids:
            raise ValueError(f"Duplicate unit ids in hex layout: {', '.join(dup_ids)}")

        self._index: Dict[GridIndex, HexUnit] = {}
        clashes: List[str] = []
        for unit in self._units:
            if unit.grid_index in self._index:
                other = self._index[unit.grid_index]
                clashes.append(f"{other.unit_id}/{unit.unit_id} at ({unit.q}, {unit.r})")
            else:
                self._index[unit.grid_index] = unit
        if clashes:
            raise ValueError(f"Duplicate (q, r) positions in hex layout: {'; '.join(clashes)}")

    def __len__(self) -> int:
        return len(self._units)

    @property
    def units(self) -> List[HexUnit]:
        return list(self._units)

    @property
    def offset(self) -> str:
        return self._offset

    @property
    def rows(self) -> List[int]:
        """Sorted distinct row values."""
        return sorted({u.r for u in self._units})

    @property
    def columns(self) -> List[int]:
        """Sorted distinct column values."""
        return sorted({u.q for u in self._units})

    @property
    def min_row(self) -> int:
        return self.rows[0]

    @property
    def max_row(self) -> int:
        return self.rows[-1]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def min_col(self) -> int:
        return self.columns[0]

    @property
    def max_col(self) -> int:
        return self.columns[-1]

    def is_shifted(self, row: int) -> bool:
        """Whether the given row is shoved right under this layout's convention."""
        return row_is_shifted(row, self._offset)

    def index(self) -> Dict[GridIndex, HexUnit]:
        """Return a mapping of GridIndex to unit."""
        return dict(self._index)

    def bounds(self) -> Optional[Tuple[float, float, float, float]]:
        """Return (min lon, min lat, max lon, max lat) of the unit centroids.

        Returns:
            The bounds, or None when any unit lacks a centroid.
        """
        if any(u.lat is None or u.lon is None for u in self._units):
            return None
        lons = [u.lon for u in self._units]
        lats = [u.lat for u in self._units]
        return (min(lons), min(lats), max(lons), max(lats))

    def extent(self) -> Tuple[float, float, float, float]:
        """Return bounds() when every unit has a centroid, else the index extent.

        The index extent places shifted rows half a column to the right, so
        its east edge is max_col + 0.5.
        """
        bounds = self.bounds()
        if bounds is None:
            bounds = (self.min_col, self.min_row, self.max_col + 0.5, self.max_row)
        return bounds

    @classmethod
    def from_hexjson(cls, path: str) -> "NamedHexLayout":
        """Load a HexJSON file.

        Each entry of the 'hexes' object needs 'q' and 'r'; 'n' (name),
        'lat' and 'lon' are optional.

        Args:
            path: Path to the HexJSON file.

        Returns:
            The loaded layout.

        Raises:
            FileNotFoundError: If the file does not exist.
            json.JSONDecodeError: If the file is not valid JSON.
            ValueError: If the content is not a usable hex layout.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict) or not isinstance(data.get("hexes"), dict):
            raise ValueError(f"HexJSON file has no 'hexes' object: '{path}'")

        units: List[HexUnit] = []
        for unit_id, props in data["hexes"].items():
            if "q" not in props or "r" not in props:
                raise ValueError(f"Hex '{unit_id}' is missing 'q' or 'r'")
            idx = GridIndex.snap(props["q"], props["r"])
            units.append(HexUnit(
                unit_id=str(unit_id),
                name=str(props.get("n", unit_id)),
                q=idx.q,
                r=idx.r,
                lat=_optional_float(props.get("lat")),
                lon=_optional_float(props.get("lon")),
            ))
        return cls(units, offset=data.get("layout", "odd-r"))

    @classmethod
    def from_csv(cls, path: str, offset: str = "odd-r") -> "NamedHexLayout":
        """Load a layout table with columns unit_id, q, r and optional name, lat, lon."""
        frame = pd.read_csv(path, dtype={"unit_id": str})
        missing = [c for c in ("unit_id", "q", "r") if c not in frame.columns]
        if missing:
            raise ValueError(f"Layout table is missing columns: {', '.join(missing)}")

        units: List[HexUnit] = []
        for row in frame.to_dict(orient="records"):
            idx = GridIndex.snap(row["q"], row["r"])
            name = row.get("name")
            units.append(HexUnit(
                unit_id=row["unit_id"],
                name=str(name) if pd.notna(name) else row["unit_id"],
                q=idx.q,
                r=idx.r,
                lat=_optional_float(row.get("lat")),
                lon=_optional_float(row.get("lon")),
            ))
        return cls(units, offset=offset)


# ---------------------------------------------------------------------------
# HexagonGeometry
# ---------------------------------------------------------------------------
class HexagonGeometry:
    """Vertex computation for pointy-top hexagons.

    The first vertex sits 30 degrees above the rightmost direction. An aspect
    factor scales the vertical extent so a stretched grid still tiles.

    Attributes:
        circumradius: The circumradius (centre-to-vertex distance).
        aspect: Vertical scale factor applied to every vertex offset.
    """

    def __init__(self, circumradius: float, aspect: float = 1.0) -> None:
        """Initialise hexagon geometry.

        Args:
            circumradius: The circumradius R of the hexagon.
            aspect: Vertical scale factor (1.0 for a regular hexagon).

        Raises:
            ValueError: If the circumradius or aspect is not positive.
        """
        if circumradius <= 0 or aspect <= 0:
            raise ValueError(
                f"Hexagon circumradius and aspect must be positive, got {circumradius} and {aspect}"
            )
        self._circumradius: float = circumradius
        self._aspect: float = aspect

    @property
    def circumradius(self) -> float:
        """Return the circumradius R."""
        return self._circumradius

    @property
    def aspect(self) -> float:
        return self._aspect

    def vertices(self, cx: float, cy: float) -> List[Tuple[float, float]]:
        """Compute the 6 vertices of a hexagon centred at (cx, cy).

        Vertices proceed counter-clockwise at 60-degree intervals.

        Args:
            cx: X coordinate of the hexagon centre.
            cy: Y coordinate of the hexagon centre.

        Returns:
            A list of 6 (x, y) tuples.
        """
        R = self._circumradius
        start = math.pi / 6.0
        return [
            (cx + R * math.cos(start + math.pi * k / 3.0),
             cy + self._aspect * R * math.sin(start + math.pi * k / 3.0))
            for k in range(6)
        ]


# ---------------------------------------------------------------------------
# HexTessellation
# ---------------------------------------------------------------------------
class HexCell(NamedTuple):
    """One blank cell of a tessellation."""

    cell_id: int
    east: float
    north: float
    polygon: Polygon


class HexTessellation:
    """An ordered sequence of pointy-top hexagon cells over a planar rectangle.

    Cells are generated row by row from the south-west corner; every other
    generated row is shoved right by half a cell.
    """

    def __init__(self, cells: Iterable[HexCell]) -> None:
        """Store the cells.

        Raises:
            ValueError: If there are no cells or a cell id repeats.
        """
        self._cells: List[HexCell] = list(cells)
        if not self._cells:
            raise ValueError("Tessellation has no cells")

        ids = Counter(c.cell_id for c in self._cells)
        dup_ids = sorted(i for i, n in ids.items() if n > 1)
        if dup_ids:
            raise ValueError(f"Duplicate cell ids in tessellation: {', '.join(str(i) for i in dup_ids)}")

    def __len__(self) -> int:
        return len(self._cells)

    def __iter__(self):
        return iter(self._cells)

    @property
    def cells(self) -> List[HexCell]:
        return list(self._cells)

    def bounds(self) -> Tuple[float, float, float, float]:
        """Return (minx, miny, maxx, maxy) over all cell polygons."""
        boxes = [c.polygon.bounds for c in self._cells]
        return (
            min(b[0] for b in boxes), min(b[1] for b in boxes),
            max(b[2] for b in boxes), max(b[3] for b in boxes),
        )

    def row_ranks(self, precision: int = 6) -> List[int]:
        """Dense 1-based rank of each cell's north coordinate, in cell order.

        North values are rounded to precision decimals first, so cells on
        the same row share a rank.
        """
        north = np.round(np.array([c.north for c in self._cells], dtype=float), precision)
        _, inverse = np.unique(north, return_inverse=True)
        return [int(i) + 1 for i in inverse.ravel()]

    @classmethod
    def covering(
        cls,
        xmin: float,
        ymin: float,
        xmax: float,
        ymax: float,
        cellsize: float,
        first_row_shifted: bool = False,
    ) -> "HexTessellation":
        """Cover a rectangle with regular hexagons of width cellsize.

        Args:
            xmin: West edge.
            ymin: South edge.
            xmax: East edge.
            ymax: North edge.
            cellsize: Flat-to-flat hexagon width (centre spacing within a row).
            first_row_shifted: Whether the southern-most row is shoved right.

        Returns:
            The tessellation.

        Raises:
            ValueError: If cellsize is not positive or the rectangle is inverted.
        """
        if cellsize <= 0:
            raise ValueError(f"Cell size must be positive, got {cellsize}")
        if xmax < xmin or ymax < ymin:
            raise ValueError("Tessellation bounds are inverted")
        R = cellsize / math.sqrt(3)
        dy = 1.5 * R
        columns = int(math.ceil((xmax - xmin) / cellsize)) + 1
        rows = int(math.ceil((ymax - ymin) / dy)) + 1
        return cls._build(xmin, ymin, cellsize, dy, columns, rows, R, 1.0, first_row_shifted)

    @classmethod
    def fitted(
        cls,
        xmin: float,
        ymin: float,
        xmax: float,
        ymax: float,
        columns: int,
        rows: int,
        first_row_shifted: bool = False,
    ) -> "HexTessellation":
        """Build exactly columns x rows cells whose centres span the rectangle.

        The shifted rows reach xmax; unshifted rows start at xmin. Hexagons
        are stretched vertically so they still tile.

        Raises:
            ValueError: If the counts are not positive or the rectangle has no width.
        """
        if columns < 1 or rows < 1:
            raise ValueError(f"Tessellation needs at least one column and row, got {columns}x{rows}")
        half = 0.5 if rows > 1 else 0.0
        span = columns - 1 + half
        if span > 0 and xmax <= xmin:
            raise ValueError("Tessellation bounds have no width")
        dx = (xmax - xmin) / span if span > 0 else 1.0
        R = dx / math.sqrt(3)
        if rows > 1:
            if ymax <= ymin:
                raise ValueError("Tessellation bounds have no height")
            dy = (ymax - ymin) / (rows - 1)
        else:
            dy = 1.5 * R
        return cls._build(xmin, ymin, dx, dy, columns, rows, R, dy / (1.5 * R), first_row_shifted)

    @classmethod
    def for_layout(
        cls,
        layout: NamedHexLayout,
        bounds: Optional[Sequence[float]] = None,
    ) -> "HexTessellation":
        """Build the tessellation that spans exactly the layout's columns and rows.

        Args:
            layout: The named layout to cover.
            bounds: (xmin, ymin, xmax, ymax) of the cell centres. Defaults to
                the layout's centroid bounds, else its index extent.

        Returns:
            The tessellation.
        """
        xmin, ymin, xmax, ymax = bounds if bounds is not None else layout.extent()
        return cls.fitted(
            xmin, ymin, xmax, ymax,
            columns=layout.max_col - layout.min_col + 1,
            rows=layout.max_row - layout.min_row + 1,
            first_row_shifted=layout.is_shifted(layout.min_row),
        )

    @classmethod
    def from_geojson(cls, path: str) -> "HexTessellation":
        """Load polygon cells from a GeoJSON FeatureCollection.

        Cell ids come from a 'cell_id' property when present, else from
        feature order (1-based).

        Raises:
            ValueError: If a feature is not a polygon or a cell id repeats.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        cells: List[HexCell] = []
        for i, feature in enumerate(data.get("features", []), start=1):
            geom = shape(feature["geometry"])
            if geom.geom_type != "Polygon":
                raise ValueError(f"Tessellation feature {i} is a {geom.geom_type}, not a Polygon")
            props = feature.get("properties") or {}
            centroid = geom.centroid
            cells.append(HexCell(int(props.get("cell_id", i)), centroid.x, centroid.y, geom))
        return cls(cells)

    @classmethod
    def _build(
        cls,
        xmin: float,
        ymin: float,
        dx: float,
        dy: float,
        columns: int,
        rows: int,
        circumradius: float,
        aspect: float,
        first_row_shifted: bool,
    ) -> "HexTessellation":
        geom = HexagonGeometry(circumradius, aspect=aspect)
        cells: List[HexCell] = []
        for row in range(rows):
            shifted = (row % 2 == 1) != first_row_shifted
            y = ymin + row * dy
            for col in range(columns):
                x = xmin + (col + (0.5 if shifted else 0.0)) * dx
                cells.append(HexCell(len(cells) + 1, x, y, Polygon(geom.vertices(x, y))))
        return cls(cells)


# ---------------------------------------------------------------------------
# HexGridAligner
# ---------------------------------------------------------------------------
class AlignmentResult:
    """Outcome of aligning a tessellation with a named layout.

    Attributes:
        matches: unit_id -> cell_id for every matched unit, in cell order.
        cell_index: cell_id -> GridIndex for every cell inside the row band.
        unmatched_units: Layout unit ids that found no cell.
        unmatched_cells: Cells inside the band whose index is not in the layout.
        excluded_cells: Cells dropped because their row fell outside the band.
        collisions: Cells whose index repeats an earlier cell's.
        row_band: The (low, high) band that was applied.
    """

    def __init__(self, row_band: Tuple[float, float]) -> None:
        self.row_band: Tuple[float, float] = row_band
        self.matches: Dict[str, int] = {}
        self.cell_index: Dict[int, GridIndex] = {}
        self.unmatched_units: List[str] = []
        self.unmatched_cells: List[int] = []
        self.excluded_cells: List[int] = []
        self.collisions: List[int] = []

    def summary(self) -> Dict[str, int]:
        """Return counts of each outcome."""
        return {
            "matched": len(self.matches),
            "unmatched_units": len(self.unmatched_units),
            "aligned_cells": len(self.cell_index),
            "unmatched_cells": len(self.unmatched_cells),
            "excluded_cells": len(self.excluded_cells),
            "collisions": len(self.collisions),
        }


class HexGridAligner:
    """Re-index a tessellation's cells onto a named layout's (q, r) grid.

    Rows: cells are ranked by north, ranks are rescaled onto the layout's
    rows, cells outside the row band are excluded, and the survivors are
    rescaled onto [min_row, max_row] and rounded. Columns: east values are
    rescaled onto column units anchored on the shifted rows, then snapped
    with snap_column. Cells and units are joined on equal GridIndex.

    Attributes:
        row_band: Explicit (low, high) band of valid rescaled rows, or None
            to use the layout's own (min_row, max_row).
        precision: Decimal places kept before any rounding or comparison.
    """

    def __init__(self, row_band: Optional[Sequence[float]] = None, precision: int = 6) -> None:
        """Configure the aligner.

        Raises:
            ValueError: If row_band is not a (low, high) pair with low <= high.
        """
        if row_band is not None:
            if len(row_band) != 2 or row_band[0] > row_band[1]:
                raise ValueError(f"Row band must be (low, high) with low <= high, got {row_band}")
            row_band = (float(row_band[0]), float(row_band[1]))
        self._row_band: Optional[Tuple[float, float]] = row_band
        self._precision: int = precision

    @property
    def row_band(self) -> Optional[Tuple[float, float]]:
        return self._row_band

    def align(self, layout: NamedHexLayout, tessellation: HexTessellation) -> AlignmentResult:
        """Associate layout units with tessellation cells.

        Args:
            layout: The named hex layout.
            tessellation: Blank cells covering the same extent.

        Returns:
            An AlignmentResult. Unmatched units and cells are reported in it,
            never raised.

        Raises:
            ValueError: If the layout spans fewer than two rows or columns,
                the tessellation spans fewer than two rows or columns, or
                the rows surviving the band collapse onto one row.
        """
        if len(layout.rows) < 2 or len(layout.columns) < 2:
            raise ValueError("Hex layout must span at least two rows and two columns")
        p = self._precision
        min_row, max_row = layout.min_row, layout.max_row
        band = self._row_band if self._row_band is not None else (float(min_row), float(max_row))
        result = AlignmentResult(band)

        # Rows
        ranks = tessellation.row_ranks(p)
        max_rank = max(ranks)
        if max_rank < 2:
            raise ValueError("Tessellation must span at least two rows")
        kept: List[Tuple[HexCell, float]] = []
        for cell, rank in zip(tessellation.cells, ranks):
            row = round(map_scale(rank, 1, max_rank, min_row, min_row + layout.row_count - 1), p)
            if band[0] <= row <= band[1]:
                kept.append((cell, row))
            else:
                result.excluded_cells.append(cell.cell_id)

        if not kept:
            result.unmatched_units = [u.unit_id for u in layout.units]
            return result
        lo = min(row for _, row in kept)
        hi = max(row for _, row in kept)
        if lo == hi:
            raise ValueError("Rows inside the band collapse onto a single row")
        final_rows = [int(round(round(map_scale(row, lo, hi, min_row, max_row), p))) for _, row in kept]

        # Columns
        anchors = [cell.east for (cell, _), row in zip(kept, final_rows) if layout.is_shifted(row)]
        if not anchors:
            anchors = [cell.east for cell, _ in kept]
        anchor_east = sorted({round(e, p) for e in anchors})
        if len(anchor_east) < 2:
            raise ValueError("Tessellation must span at least two columns")
        col_lo = layout.min_col
        col_hi = layout.min_col + len(anchor_east) - 1

        # Join
        units = layout.index()
        seen = set()
        for (cell, _), row in zip(kept, final_rows):
            col_value = map_scale(cell.east, anchor_east[0], anchor_east[-1], col_lo, col_hi)
            idx = GridIndex(snap_column(col_value, row, layout.offset, p), row)
            if idx in seen:
                result.collisions.append(cell.cell_id)
                continue
            seen.add(idx)
            result.cell_index[cell.cell_id] = idx
            unit = units.get(idx)
            if unit is None:
                result.unmatched_cells.append(cell.cell_id)
            else:
                result.matches[unit.unit_id] = cell.cell_id

        result.unmatched_units = [u.unit_id for u in layout.units if u.unit_id not in result.matches]
        return result


# ---------------------------------------------------------------------------
# GeoJSONWriter
# ---------------------------------------------------------------------------
def _json_value(value):
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


class GeoJSONWriter:
    """Write the unit-to-polygon association as a GeoJSON FeatureCollection."""

    def features(
        self,
        layout: NamedHexLayout,
        tessellation: HexTessellation,
        result: AlignmentResult,
        attributes: Optional[pd.DataFrame] = None,
        key: str = "area_code",
    ) -> List[Dict]:
        """Build one feature per matched unit.

        Args:
            layout: The named layout.
            tessellation: The aligned tessellation.
            result: The alignment outcome.
            attributes: Optional per-unit table joined on key.
            key: Column of attributes holding the unit id.

        Returns:
            A list of GeoJSON feature dicts.
        """
        cells = {c.cell_id: c for c in tessellation.cells}
        units = {u.unit_id: u for u in layout.units}
        attrs: Dict[str, Dict] = {}
        if attributes is not None:
            attrs = attributes.set_index(key).to_dict(orient="index")

        features: List[Dict] = []
        for unit_id, cell_id in result.matches.items():
            unit = units[unit_id]
            props = {
                "unit_id": unit.unit_id,
                "name": unit.name,
                "q": unit.q,
                "r": unit.r,
                "cell_id": cell_id,
            }
            for name, value in attrs.get(unit_id, {}).items():
                props[name] = _json_value(value)
            features.append({
                "type": "Feature",
                "properties": props,
                "geometry": mapping(cells[cell_id].polygon),
            })
        return features

    def write(self, path: str, features: List[Dict]) -> None:
        """Write features to path.

        Raises:
            IOError: If the file cannot be written.
        """
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"type": "FeatureCollection", "features": features}, f, indent=2)


# ---------------------------------------------------------------------------
# CrashRecords
# ---------------------------------------------------------------------------
class CrashRecords:
    """A crash-record table: one row per crash with an area code and a severity.

    Attributes:
        frame: The underlying DataFrame.
    """

    KSI_CLASSES: Tuple[str, ...] = ("fatal", "serious")

    def __init__(
        self,
        frame: pd.DataFrame,
        area_column: str = "area_code",
        severity_column: str = "severity",
    ) -> None:
        """Wrap a crash table.

        Raises:
            ValueError: If the area or severity column is missing.
        """
        missing = [c for c in (area_column, severity_column) if c not in frame.columns]
        if missing:
            raise ValueError(f"Crash table is missing columns: {', '.join(missing)}")
        self._frame: pd.DataFrame = frame.copy()
        self._area_column: str = area_column
        self._severity_column: str = severity_column

    @classmethod
    def from_csv(
        cls,
        path: str,
        area_column: str = "area_code",
        severity_column: str = "severity",
    ) -> "CrashRecords":
        frame = pd.read_csv(path, dtype={area_column: str})
        return cls(frame, area_column, severity_column)

    def __len__(self) -> int:
        return len(self._frame)

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def recode(self, codes: Dict[str, str]) -> int:
        """Replace renamed area codes.

        Args:
            codes: Mapping of old area code to current area code.

        Returns:
            Number of records whose code changed.
        """
        area = self._frame[self._area_column]
        changed = int(area.isin(list(codes)).sum())
        self._frame[self._area_column] = area.map(lambda c: codes.get(c, c))
        return changed

    def dropna(self) -> int:
        """Drop records without an area or severity and return how many were dropped."""
        before = len(self._frame)
        self._frame = self._frame.dropna(
            subset=[self._area_column, self._severity_column]
        ).reset_index(drop=True)
        return before - len(self._frame)

    def with_ksi(self) -> pd.DataFrame:
        """Return a copy of the table with a boolean 'is_ksi' column."""
        frame = self._frame.copy()
        severity = frame[self._severity_column].astype(str).str.strip().str.lower()
        frame["is_ksi"] = severity.isin(self.KSI_CLASSES)
        return frame

    def counts(self) -> pd.DataFrame:
        """Records and KSI records per area, indexed by area_code."""
        grouped = self.with_ksi().groupby(self._area_column)["is_ksi"]
        counts = pd.DataFrame({
            "records": grouped.size().astype(int),
            "ksi": grouped.sum().astype(int),
        })
        counts.index.name = "area_code"
        return counts


# ---------------------------------------------------------------------------
# RiskRatioEstimator
# ---------------------------------------------------------------------------
class RiskRatioEstimator:
    """Per-area risk ratios with bootstrap percentile intervals.

    Without exposure the rate is the KSI share of an area's crashes and each
    replicate resamples every area's records (binomial draws). With exposure
    the rate is crashes per unit of exposure and each replicate resamples the
    whole crash table (a multinomial draw over areas). In both modes the
    reference rate is the pooled rate over the retained areas, recomputed per
    replicate.

    Attributes:
        n_boot: Number of bootstrap replicates.
        confidence: Interval coverage in (0, 1).
        seed: Seed for numpy's random generator; None draws fresh entropy.
    """

    def __init__(self, n_boot: int = 1000, confidence: float = 0.95, seed: Optional[int] = None) -> None:
        """Configure the estimator.

        Raises:
            ValueError: If n_boot < 1 or confidence is outside (0, 1).
        """
        if n_boot < 1:
            raise ValueError(f"Number of bootstrap replicates must be >= 1, got {n_boot}")
        if not 0.0 < confidence < 1.0:
            raise ValueError(f"Confidence must be in (0, 1), got {confidence}")
        self._n_boot: int = int(n_boot)
        self._confidence: float = float(confidence)
        self._seed: Optional[int] = seed

    @property
    def n_boot(self) -> int:
        return self._n_boot

    @property
    def confidence(self) -> float:
        return self._confidence

    @staticmethod
    def read_exposure(path: str, area_column: str = "area_code", value_column: str = "exposure") -> pd.Series:
        """Load an exposure table (e.g. resident or workplace population) as a Series by area."""
        frame = pd.read_csv(path, dtype={area_column: str})
        missing = [c for c in (area_column, value_column) if c not in frame.columns]
        if missing:
            raise ValueError(f"Exposure table is missing columns: {', '.join(missing)}")
        exposure = frame.groupby(area_column)[value_column].sum().astype(float)
        exposure.index.name = "area_code"
        return exposure

    def unexposed_areas(self, records: CrashRecords, exposure: pd.Series) -> List[str]:
        """Area codes that have crashes but no exposure value."""
        return sorted(set(records.counts().index) - set(exposure.index))

    def estimate(self, records: CrashRecords, exposure: Optional[pd.Series] = None) -> pd.DataFrame:
        """Estimate risk ratios.

        Args:
            records: The crash records.
            exposure: Optional exposure per area_code.

        Returns:
            DataFrame with columns area_code, events, denominator, rate, rr,
            rr_lower, rr_upper, significant.

        Raises:
            ValueError: If no area has a positive denominator.
        """
        table = self._table(records, exposure)
        events = table["events"].to_numpy(dtype=float)
        denominator = table["denominator"].to_numpy(dtype=float)
        rate = events / denominator
        with np.errstate(divide="ignore", invalid="ignore"):
            rr = rate / (events.sum() / denominator.sum())

        boot = self._replicates(table, proportion=exposure is None)
        alpha = 1.0 - self._confidence
        lower = np.nanpercentile(boot, 100 * alpha / 2, axis=0)
        upper = np.nanpercentile(boot, 100 * (1 - alpha / 2), axis=0)

        out = pd.DataFrame({
            "area_code": table.index.to_numpy(),
            "events": table["events"].to_numpy(),
            "denominator": table["denominator"].to_numpy(),
            "rate": rate,
            "rr": rr,
            "rr_lower": lower,
            "rr_upper": upper,
        })
        out["significant"] = (out["rr_lower"] > 1.0) | (out["rr_upper"] < 1.0)
        return out

    def samples(self, records: CrashRecords, exposure: Optional[pd.Series] = None) -> pd.DataFrame:
        """Return the bootstrap replicates as a long table (area_code, sample, rr)."""
        table = self._table(records, exposure)
        boot = self._replicates(table, proportion=exposure is None)
        n_boot, n_areas = boot.shape
        return pd.DataFrame({
            "area_code": np.tile(table.index.to_numpy(), n_boot),
            "sample": np.repeat(np.arange(1, n_boot + 1), n_areas),
            "rr": boot.ravel(),
        })

    def _table(self, records: CrashRecords, exposure: Optional[pd.Series]) -> pd.DataFrame:
        counts = records.counts()
        if exposure is None:
            table = pd.DataFrame({"events": counts["ksi"], "denominator": counts["records"]})
        else:
            table = pd.DataFrame({
                "events": counts["records"].reindex(exposure.index, fill_value=0).astype(int),
                "denominator": exposure.astype(float),
            })
        table = table[table["denominator"] > 0]
        table.index.name = "area_code"
        if table.empty:
            raise ValueError("No areas with a positive denominator to estimate rates for")
        return table

    def _replicates(self, table: pd.DataFrame, proportion: bool) -> np.ndarray:
        rng = np.random.default_rng(self._seed)
        events = table["events"].to_numpy(dtype=np.int64)
        denominator = table["denominator"].to_numpy(dtype=float)
        if proportion:
            n = denominator.astype(np.int64)
            boot_events = rng.binomial(n, events / denominator, size=(self._n_boot, len(n)))
        else:
            total = int(events.sum())
            if total > 0:
                shares = events / total
            else:
                shares = np.full(len(events), 1.0 / len(events))
            boot_events = rng.multinomial(total, shares, size=self._n_boot)
        rates = boot_events / denominator
        reference = boot_events.sum(axis=1) / denominator.sum()
        with np.errstate(divide="ignore", invalid="ignore"):
            return rates / reference[:, None]


# ---------------------------------------------------------------------------
# ColorParser
# ---------------------------------------------------------------------------
class ColorParser:
    """Parses color specifications from multiple string formats into RGB tuples.

    Supports CSS named colours, hex codes (#RGB, #RRGGBB), and RGB
    comma-separated tuples (e.g. '255,128,0'). Palettes are lists of such
    colours, or one string separated by semicolons.
    """

    def parse(self, color_str: str) -> Tuple[int, int, int]:
        """Parse a color string into an (R, G, B) tuple.

        Args:
            color_str: The color specification string.

        Returns:
            An (R, G, B) tuple of integers in [0, 255].

        Raises:
            ValueError: If the color string cannot be parsed.
        """
        s = str(color_str).strip()

        if "," in s:
            return self._parse_rgb_tuple(s)

        try:
            rgb = ImageColor.getrgb(s)
            return (rgb[0], rgb[1], rgb[2])
        except (ValueError, AttributeError):
            raise ValueError(f"Invalid color specification: '{color_str}'")

    def parse_palette(self, palette) -> List[Tuple[int, int, int]]:
        """Parse a list of colour strings or a 'c1;c2;c3' string.

        Raises:
            ValueError: If any colour is invalid or the palette is empty.
        """
        if isinstance(palette, str):
            palette = [p for p in palette.split(";") if p.strip()]
        colors = [self.parse(p) for p in palette]
        if not colors:
            raise ValueError("Palette has no colours")
        return colors

    def _parse_rgb_tuple(self, s: str) -> Tuple[int, int, int]:
        """Parse a comma-separated RGB string like '255,128,0'.

        Raises:
            ValueError: If parsing fails or values are out of range.
        """
        parts = [p.strip() for p in s.split(",")]
        if len(parts) != 3:
            raise ValueError(f"RGB tuple must have 3 components, got {len(parts)}: '{s}'")
        try:
            values = tuple(int(p) for p in parts)
        except ValueError:
            raise ValueError(f"RGB components must be integers: '{s}'")
        for v in values:
            if v < 0 or v > 255:
                raise ValueError(f"RGB values must be in [0, 255], got {v}: '{s}'")
        return (values[0], values[1], values[2])


# ---------------------------------------------------------------------------
# StyleConfig
# ---------------------------------------------------------------------------
class StyleConfig:
    """Explicit chart style passed to every render call.

    Attributes:
        base_font_size: Body text size in points.
        font_family: TrueType font file name or path.
        title_scale: Title size relative to base_font_size.
        subtitle_scale: Subtitle size relative to base_font_size.
        caption_scale: Caption and legend size relative to base_font_size.
        caption_color: Caption and non-significant spoke colour.
        background: Canvas colour.
        outline_color: Hexagon outline colour.
        missing_color: Fill of hexagons without an estimate.
        spoke_color: Colour of significant spokes.
        accent_palette: (low, neutral, high) colours of the diverging ramp.
        legend_position: 'bottom' or 'none'.
    """

    DEFAULTS: Dict = {
        "base_font_size": 11,
        "font_family": "DejaVuSans.ttf",
        "title_scale": 1.4,
        "subtitle_scale": 1.0,
        "caption_scale": 0.8,
        "caption_color": "#7f7f7f",
        "background": "#ffffff",
        "outline_color": "#ffffff",
        "missing_color": "#d9d9d9",
        "spoke_color": "#1a1a1a",
        "accent_palette": ["#2166ac", "#f7f7f7", "#b2182b"],
        "legend_position": "bottom",
    }

    LEGEND_POSITIONS: Tuple[str, ...] = ("bottom", "none")

    def __init__(self, **options) -> None:
        """Build a style from DEFAULTS overridden by options.

        Raises:
            ValueError: On unknown options, invalid colours, a palette without
                exactly three colours, a non-positive font size or an unknown
                legend position.
        """
        unknown = sorted(set(options) - set(self.DEFAULTS))
        if unknown:
            raise ValueError(f"Unknown style options: {', '.join(unknown)}")
        values = dict(self.DEFAULTS)
        values.update({k: v for k, v in options.items() if v is not None})
        parser = ColorParser()

        self.base_font_size: int = int(values["base_font_size"])
        if self.base_font_size <= 0:
            raise ValueError(f"Font size must be positive, got {self.base_font_size}")
        self.font_family: str = str(values["font_family"])
        self.title_scale: float = float(values["title_scale"])
        self.subtitle_scale: float = float(values["subtitle_scale"])
        self.caption_scale: float = float(values["caption_scale"])
        self.caption_color = parser.parse(values["caption_color"])
        self.background = parser.parse(values["background"])
        self.outline_color = parser.parse(values["outline_color"])
        self.missing_color = parser.parse(values["missing_color"])
        self.spoke_color = parser.parse(values["spoke_color"])
        self.accent_palette = parser.parse_palette(values["accent_palette"])
        if len(self.accent_palette) != 3:
            raise ValueError(
                f"Accent palette needs 3 colours (low, neutral, high), got {len(self.accent_palette)}"
            )
        self.legend_position: str = values["legend_position"]
        if self.legend_position not in self.LEGEND_POSITIONS:
            raise ValueError(f"Unknown legend position '{self.legend_position}'")
        if isinstance(values["accent_palette"], str):
            values["accent_palette"] = [p.strip() for p in values["accent_palette"].split(";") if p.strip()]
        self._values: Dict = values

    @classmethod
    def from_dict(cls, data: Dict) -> "StyleConfig":
        return cls(**data)

    def to_dict(self) -> Dict:
        """Return the style options as given (colours in their original notation)."""
        data = dict(self._values)
        data["accent_palette"] = list(data["accent_palette"])
        return data

    def font(self, scale: float = 1.0, k: int = 1):
        """Load the style font at base_font_size * scale, supersampled by k.

        Falls back to Pillow's bundled font when font_family cannot be found.
        """
        size = max(1, int(round(self.base_font_size * scale * k)))
        try:
            return ImageFont.truetype(self.font_family, size)
        except OSError:
            return ImageFont.load_default(size=size)


# ---------------------------------------------------------------------------
# CartogramRenderer
# ---------------------------------------------------------------------------
class CartogramEntry(NamedTuple):
    """A cell to draw, with its estimate (rr is None when there is none)."""

    polygon: Polygon
    rr: Optional[float] = None
    rr_lower: Optional[float] = None
    rr_upper: Optional[float] = None
    significant: bool = False


class CartogramRenderer:
    """Renders a hexagon cartogram of risk ratios with uncertainty spokes.

    Hexagons are filled along a diverging ramp of log2(RR). Each hexagon
    carries a spoke centred on it: the angle encodes log2(RR), the length
    shrinks as the interval widens, and significant estimates are drawn in
    the spoke colour.
    """

    # Anti-alias scale factors.
    _AA_SCALES: Dict[str, int] = {
        "off": 1,
        "low": 2,
        "medium": 4,
        "high": 8,
    }

    # Spoke angle at the clamp limits, in degrees from horizontal.
    _MAX_ANGLE: float = 60.0

    def __init__(self, rr_limit: float = 4.0) -> None:
        """Initialise the renderer.

        Args:
            rr_limit: RR at which the colour ramp and spoke angle saturate
                (1 / rr_limit saturates the low end).
        """
        if rr_limit <= 1.0:
            raise ValueError(f"RR limit must be greater than 1, got {rr_limit}")
        self._log_limit: float = math.log2(rr_limit)

    def render(
        self,
        entries: Sequence[CartogramEntry],
        style: StyleConfig,
        width: int,
        height: int,
        antialias: str = "high",
        title: str = "",
        subtitle: str = "",
        caption: str = "",
    ) -> Tuple[Image.Image, int]:
        """Render the cartogram.

        Args:
            entries: Cells to draw.
            style: The chart style.
            width: Target image width in pixels.
            height: Target image height in pixels.
            antialias: Anti-alias level ('off', 'low', 'medium', 'high').
            title: Title text (omitted when empty).
            subtitle: Subtitle text (omitted when empty).
            caption: Caption text (omitted when empty).

        Returns:
            A tuple of (PIL Image at target resolution, polygon count drawn).

        Raises:
            ValueError: If the antialias level is unknown or the canvas leaves
                no room for the map.
        """
        if antialias not in self._AA_SCALES:
            raise ValueError(f"Invalid antialias level '{antialias}'")
        k = self._AA_SCALES[antialias]
        sw, sh = width * k, height * k
        pad = 12 * k

        img = Image.new("RGB", (sw, sh), style.background)
        draw = ImageDraw.Draw(img)

        # Header
        y = pad
        for text, scale, color in (
            (title, style.title_scale, (0, 0, 0)),
            (subtitle, style.subtitle_scale, (0, 0, 0)),
        ):
            if text:
                font = style.font(scale, k)
                draw.text((pad, y), text, fill=color, font=font)
                y += self._text_height(draw, text, font) + pad // 2
        top = y + pad // 2

        # Footer
        small = style.font(style.caption_scale, k)
        bottom = sh - pad
        if caption:
            bottom -= self._text_height(draw, caption, small)
            draw.text((pad, bottom), caption, fill=style.caption_color, font=small)
            bottom -= pad
        if style.legend_position == "bottom":
            bottom = self._draw_legend(draw, style, small, pad, bottom, sw, k)
        if bottom - top <= 2 * pad:
            raise ValueError(f"Canvas {width}x{height} leaves no room for the map")

        polygon_count = 0
        if entries:
            project = self._projector(self._bounds(entries), (pad, top, sw - pad, bottom))
            for entry in entries:
                points = [project(x, y) for x, y in entry.polygon.exterior.coords]
                draw.polygon(points, fill=self._fill(entry, style), outline=style.outline_color, width=k)
                polygon_count += 1
            for entry in entries:
                if entry.rr is not None and not math.isnan(entry.rr):
                    self._draw_spoke(draw, entry, project, style, k)

        if k > 1:
            img = img.resize((width, height), Image.LANCZOS)

        return img, polygon_count

    def _log_rr(self, rr: Optional[float]) -> Optional[float]:
        """Clamp log2(rr) to the ramp limits; None for missing values."""
        if rr is None or math.isnan(rr):
            return None
        if rr <= 0:
            return -self._log_limit
        return max(-self._log_limit, min(self._log_limit, math.log2(rr)))

    def _ramp(self, style: StyleConfig, t: float) -> Tuple[int, int, int]:
        low, mid, high = style.accent_palette
        if t <= 0.5:
            a, b, u = low, mid, map_scale(t, 0.0, 0.5, 0.0, 1.0)
        else:
            a, b, u = mid, high, map_scale(t, 0.5, 1.0, 0.0, 1.0)
        return tuple(int(round(map_scale(u, 0.0, 1.0, ca, cb))) for ca, cb in zip(a, b))

    def _fill(self, entry: CartogramEntry, style: StyleConfig) -> Tuple[int, int, int]:
        v = self._log_rr(entry.rr)
        if v is None:
            return style.missing_color
        return self._ramp(style, map_scale(v, -self._log_limit, self._log_limit, 0.0, 1.0))

    def _draw_spoke(self, draw, entry: CartogramEntry, project, style: StyleConfig, k: int) -> None:
        centroid = entry.polygon.centroid
        cx, cy = project(centroid.x, centroid.y)
        minx, miny, maxx, maxy = entry.polygon.bounds
        x0, y0 = project(minx, miny)
        x1, y1 = project(maxx, maxy)
        reach = 0.45 * min(abs(x1 - x0), abs(y1 - y0))

        v = self._log_rr(entry.rr)
        angle = map_scale(v, -self._log_limit, self._log_limit, -self._MAX_ANGLE, self._MAX_ANGLE)
        lo, hi = self._log_rr(entry.rr_lower), self._log_rr(entry.rr_upper)
        if lo is None or hi is None:
            length = 0.25 * reach
        else:
            length = map_scale(hi - lo, 0.0, 2 * self._log_limit, reach, 0.25 * reach)

        # Pixel rows grow downward, so a rising spoke takes a negative angle.
        xend, yend = spoke_end(cx, cy, -angle, length / 2.0)
        xs, ys, xend, yend, _ = center_spoke(cx, cy, xend, yend, length / 2.0)
        color = style.spoke_color if entry.significant else style.caption_color
        draw.line([(xs, ys), (xend, yend)], fill=color, width=max(1, 2 * k))

    def _draw_legend(self, draw, style: StyleConfig, font, pad: int, bottom: int, sw: int, k: int) -> int:
        """Draw the colour ramp legend above bottom and return the new bottom edge."""
        low = 2 ** -self._log_limit
        high = 2 ** self._log_limit
        labels = [f"{low:g}", "1", f"{high:g}"]
        label_h = max(self._text_height(draw, t, font) for t in labels)
        bar_h = 8 * k
        bar_w = min(sw - 2 * pad, 240 * k)
        x0 = pad
        label_y = bottom - label_h
        bar_y = label_y - pad // 3 - bar_h

        steps = 64
        for i in range(steps):
            t = map_scale(i, 0, steps - 1, 0.0, 1.0)
            left = map_scale(i, 0, steps, x0, x0 + bar_w)
            right = map_scale(i + 1, 0, steps, x0, x0 + bar_w)
            draw.rectangle([left, bar_y, right, bar_y + bar_h], fill=self._ramp(style, t))
        for t, text in zip((0.0, 0.5, 1.0), labels):
            tw = draw.textlength(text, font=font)
            x = map_scale(t, 0.0, 1.0, x0, x0 + bar_w - tw)
            draw.text((x, label_y), text, fill=style.caption_color, font=font)
        title = "Risk ratio"
        draw.text((x0 + bar_w + pad, bar_y - k), title, fill=style.caption_color, font=font)
        return bar_y - pad

    def _bounds(self, entries: Sequence[CartogramEntry]) -> Tuple[float, float, float, float]:
        boxes = [e.polygon.bounds for e in entries]
        return (
            min(b[0] for b in boxes), min(b[1] for b in boxes),
            max(b[2] for b in boxes), max(b[3] for b in boxes),
        )

    def _projector(self, bounds, box):
        """Return a function mapping planar (x, y) into box, aspect kept and north up."""
        minx, miny, maxx, maxy = bounds
        left, top, right, bottom = box
        scale = min((right - left) / (maxx - minx), (bottom - top) / (maxy - miny))
        w = (maxx - minx) * scale
        h = (maxy - miny) * scale
        x0 = left + ((right - left) - w) / 2.0
        y0 = top + ((bottom - top) - h) / 2.0

        def project(x: float, y: float) -> Tuple[float, float]:
            return (map_scale(x, minx, maxx, x0, x0 + w), map_scale(y, miny, maxy, y0 + h, y0))

        return project

    @staticmethod
    def _text_height(draw, text: str, font) -> int:
        box = draw.textbbox((0, 0), text, font=font)
        return box[3] - box[1]


# ---------------------------------------------------------------------------
# SettingsManager
# ---------------------------------------------------------------------------
class SettingsManager:
    """JSON import/export of parameter sets with CLI-precedence logic.

    Handles serialisation of settings to JSON files and loading them back
    with proper precedence: JSON overrides defaults, explicit CLI args
    override JSON.
    """

    # Keys that are persisted to JSON.
    _PERSISTED_KEYS: List[str] = [
        "layout", "offset", "crashes", "exposure", "recode", "tessellation",
        "cellsize", "extent", "row_band", "n_boot", "confidence", "seed",
        "width", "height", "antialias", "font_size", "palette", "title",
        "file", "geojson", "table", "samples", "debug",
    ]

    def export_settings(self, params: argparse.Namespace, path: str) -> None:
        """Export current parameters to a JSON file.

        Args:
            params: The resolved argparse Namespace.
            path: Output JSON file path.

        Raises:
            IOError: If the file cannot be written.
        """
        data: Dict = {}
        for key in self._PERSISTED_KEYS:
            data[key] = getattr(params, key, None)
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def import_settings(self, path: str) -> Dict:
        """Import settings from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist.
            json.JSONDecodeError: If the file is not valid JSON.
        """
        with open(path, "r") as f:
            data = json.load(f)
        return data

    def merge_settings(
        self,
        defaults: argparse.Namespace,
        json_settings: Dict,
        explicit_keys: set,
    ) -> argparse.Namespace:
        """Merge JSON settings with CLI args, respecting precedence.

        Args:
            defaults: The argparse Namespace with default/CLI values.
            json_settings: Dictionary loaded from JSON.
            explicit_keys: Set of parameter names explicitly provided on CLI.

        Returns:
            A merged argparse Namespace.
        """
        for key in self._PERSISTED_KEYS:
            if key in json_settings and key not in explicit_keys:
                setattr(defaults, key, json_settings[key])
        return defaults


# ---------------------------------------------------------------------------
# Version helper
# ---------------------------------------------------------------------------
def _changelog_version(fallback: str = "0.0.0") -> str:
    """Read the highest version from CHANGELOG.md next to this script.

    Scans for ``## [X.Y.Z]`` headings (skipping ``[Unreleased]``) and returns
    the first match, which is the highest version. Returns *fallback* when the
    file is missing or contains no versioned headings.
    """
    changelog = os.path.join(os.path.dirname(os.path.abspath(__file__)), "CHANGELOG.md")
    try:
        with open(changelog, "r", encoding="utf-8") as fh:
            for line in fh:
                m = re.match(r"^##\s+\[(\d+\.\d+\.\d+)\]", line)
                if m:
                    return m.group(1)
    except OSError:
        pass
    return fallback


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
class Application:
    """Top-level entry point for the HEX Cartogram Aligner.

    Orchestrates CLI argument parsing, settings loading, alignment, risk
    ratio estimation, file output, and reporting.
    """

    VERSION:      str = _changelog_version("1.0.0")
    BUILD_DATE:   str = "2026-10-19"
    TITLE:        str = "HEX Cartogram Aligner"
    BANNER_WIDTH: int = 60

    def run(self) -> None:
        """Execute the full application pipeline.

        Exits with status 1 and a message on stderr when an input cannot be
        read or is invalid.
        """
        # Step 1: Parse CLI arguments and detect explicit keys
        args, explicit_keys = self._parse_args()

        # Step 2: Import settings if requested
        if args.import_settings:
            if not args.import_settings.lower().endswith(".json"):
                args.import_settings += ".json"
            try:
                manager = SettingsManager()
                json_data = manager.import_settings(args.import_settings)
                args = manager.merge_settings(args, json_data, explicit_keys)
            except FileNotFoundError:
                self._fail(f"Settings file not found: '{args.import_settings}'")
            except json.JSONDecodeError as e:
                self._fail(f"Malformed JSON in settings file: {e}")

        # Step 3: Export settings if requested
        if args.export_settings:
            if not args.export_settings.lower().endswith(".json"):
                args.export_settings += ".json"
            try:
                SettingsManager().export_settings(args, args.export_settings)
            except IOError as e:
                self._fail(f"Cannot write settings file: {e}")

        if not args.layout:
            self._fail("A hex layout is required (--layout)")
        valid_aa = {"off", "low", "medium", "high"}
        if args.antialias not in valid_aa:
            self._fail(f"Invalid antialias level '{args.antialias}'. "
                       f"Must be one of: {', '.join(sorted(valid_aa))}")

        # Step 4: Style
        try:
            style = StyleConfig(base_font_size=args.font_size, accent_palette=args.palette)
        except ValueError as e:
            self._fail(str(e))

        # Step 5: Layout and tessellation
        try:
            if args.layout.lower().endswith(".csv"):
                layout = NamedHexLayout.from_csv(args.layout, offset=args.offset)
            else:
                layout = NamedHexLayout.from_hexjson(args.layout)
            if args.tessellation:
                tessellation = HexTessellation.from_geojson(args.tessellation)
            elif args.cellsize is not None:
                tessellation = HexTessellation.covering(
                    *(args.extent or layout.extent()), cellsize=args.cellsize,
                    first_row_shifted=layout.is_shifted(layout.min_row),
                )
            else:
                tessellation = HexTessellation.for_layout(layout, bounds=args.extent)
        except FileNotFoundError as e:
            self._fail(f"Input file not found: '{e.filename}'")
        except json.JSONDecodeError as e:
            self._fail(f"Malformed JSON in input file: {e}")
        except (ValueError, KeyError) as e:
            self._fail(f"Invalid layout or tessellation: {e}")

        # Step 6: Align
        try:
            result = HexGridAligner(row_band=args.row_band).align(layout, tessellation)
        except ValueError as e:
            self._fail(f"Alignment failed: {e}")

        # Step 7: Risk ratios
        report: Dict[str, object] = {}
        table = None
        samples = None
        if args.crashes:
            try:
                table, samples = self._estimate(args, layout, report)
            except FileNotFoundError as e:
                self._fail(f"Input file not found: '{e.filename}'")
            except json.JSONDecodeError as e:
                self._fail(f"Malformed JSON in recode file: {e}")
            except ValueError as e:
                self._fail(str(e))

        # Step 8: Render
        entries = self._entries(tessellation, result, table)
        caption = ""
        if table is not None:
            caption = (f"Risk ratio against the pooled rate. Spokes span "
                       f"{args.confidence:.0%} bootstrap intervals ({args.n_boot} resamples).")
        try:
            img, polygon_count = CartogramRenderer().render(
                entries,
                style,
                width=args.width,
                height=args.height,
                antialias=args.antialias,
                title=args.title or "",
                subtitle=f"{len(result.matches)} of {len(layout)} areas",
                caption=caption,
            )
        except ValueError as e:
            self._fail(str(e))

        # Step 9: Write outputs
        out_file = args.file
        if not out_file.lower().endswith(".png"):
            out_file += ".png"
        saved: List[str] = []
        try:
            img.save(out_file, "PNG")
            saved.append(out_file)
            if args.geojson:
                writer = GeoJSONWriter()
                writer.write(args.geojson, writer.features(layout, tessellation, result, table))
                saved.append(args.geojson)
            if args.table and table is not None:
                table.to_csv(args.table, index=False)
                saved.append(args.table)
            if args.samples and samples is not None:
                samples.to_csv(args.samples, index=False)
                saved.append(args.samples)
        except OSError as e:
            self._fail(f"Cannot write output: {e}")

        # Banner (always shown)
        self._print_banner()
        for path in saved:
            print(f"  Saved: {path} ({self._format_file_size(os.path.getsize(path))})")
        if args.export_settings:
            size_str = self._format_file_size(os.path.getsize(args.export_settings))
            print(f"  Saved: {args.export_settings} ({size_str})")

        self._print_report(layout, tessellation, result, report)

        if args.debug:
            self._print_debug(args, layout, result, report, polygon_count)
        print()

    def _estimate(self, args: argparse.Namespace, layout: NamedHexLayout, report: Dict):
        """Load crash records and compute the risk-ratio table and replicates."""
        records = CrashRecords.from_csv(args.crashes)
        report["records"] = len(records)
        if args.recode:
            with open(args.recode, "r", encoding="utf-8") as f:
                codes = json.load(f)
            if not isinstance(codes, dict):
                raise ValueError(
                    f"Recode file must hold a JSON object of old -> new area codes: '{args.recode}'"
                )
            report["recoded"] = records.recode({str(k): str(v) for k, v in codes.items()})
        report["dropped"] = records.dropna()

        exposure = None
        if args.exposure:
            exposure = RiskRatioEstimator.read_exposure(args.exposure)

        estimator = RiskRatioEstimator(n_boot=args.n_boot, confidence=args.confidence, seed=args.seed)
        if exposure is not None:
            report["unexposed"] = estimator.unexposed_areas(records, exposure)
        table = estimator.estimate(records, exposure)
        samples = estimator.samples(records, exposure) if args.samples else None

        unit_ids = {u.unit_id for u in layout.units}
        report["outside_layout"] = sorted(set(table["area_code"]) - unit_ids)
        return table, samples

    def _entries(
        self,
        tessellation: HexTessellation,
        result: AlignmentResult,
        table: Optional[pd.DataFrame],
    ) -> List[CartogramEntry]:
        cells = {c.cell_id: c for c in tessellation.cells}
        rows: Dict[str, Dict] = {}
        if table is not None:
            rows = table.set_index("area_code").to_dict(orient="index")
        entries: List[CartogramEntry] = []
        for unit_id, cell_id in result.matches.items():
            row = rows.get(unit_id)
            if row is None:
                entries.append(CartogramEntry(cells[cell_id].polygon))
            else:
                entries.append(CartogramEntry(
                    cells[cell_id].polygon,
                    rr=float(row["rr"]),
                    rr_lower=float(row["rr_lower"]),
                    rr_upper=float(row["rr_upper"]),
                    significant=bool(row["significant"]),
                ))
        return entries

    def _fail(self, message: str) -> None:
        print(f"Error: {message}", file=sys.stderr)
        sys.exit(1)

    def _parse_args(self) -> Tuple[argparse.Namespace, set]:
        """Parse CLI arguments and detect which were explicitly provided.

        Returns:
            A tuple of (parsed Namespace, set of explicitly-provided key names).
        """
        parser = self._build_parser()
        args = parser.parse_args()

        # Second parse with SUPPRESS defaults to detect explicit keys
        suppress_parser = self._build_parser(suppress_defaults=True)
        explicit_args = suppress_parser.parse_args()
        explicit_keys = set(vars(explicit_args).keys())

        return args, explicit_keys

    def _build_parser(self, suppress_defaults: bool = False) -> argparse.ArgumentParser:
        """Build the argparse ArgumentParser.

        Args:
            suppress_defaults: If True, set all defaults to SUPPRESS to
                detect explicitly-provided CLI args.

        Returns:
            A configured ArgumentParser.
        """
        S = argparse.SUPPRESS if suppress_defaults else None

        banner = self._banner_text()

        class _BannerParser(argparse.ArgumentParser):
            """ArgumentParser that prints the banner before help text."""

            def print_help(self, file=None):
                if file is None:
                    file = sys.stdout
                file.write(banner + "\n\n")
                super().print_help(file)

        parser = _BannerParser(
            description="HEX Cartogram Aligner: align a hex layout with a tessellation "
                        "and map crash risk ratios with their uncertainty.",
        )
        d = S  # shorthand

        parser.add_argument("--layout", type=str, default=d if d else None,
                            help="Hex layout file, HexJSON or CSV (required)")
        parser.add_argument("--offset", type=str, default=d if d else "odd-r",
                            choices=list(NamedHexLayout.OFFSETS),
                            help="Row offset of a CSV layout (default: odd-r)")
        parser.add_argument("--crashes", type=str, default=d if d else None,
                            help="Crash table CSV with area_code and severity columns")
        parser.add_argument("--exposure", type=str, default=d if d else None,
                            help="Exposure table CSV with area_code and exposure columns")
        parser.add_argument("--recode", type=str, default=d if d else None,
                            help="JSON mapping of renamed area codes (old -> new)")
        parser.add_argument("--tessellation", type=str, default=d if d else None,
                            help="Tessellation GeoJSON (default: generated over the layout extent)")
        parser.add_argument("--cellsize", type=float, default=d if d else None,
                            help="Cover the extent with regular hexagons of this width "
                                 "instead of fitting one cell per layout position")
        parser.add_argument("--extent", type=float, nargs=4, default=d if d else None,
                            metavar=("XMIN", "YMIN", "XMAX", "YMAX"),
                            help="Extent of generated cells (default: layout centroids)")
        parser.add_argument("--row_band", type=float, nargs=2, default=d if d else None,
                            metavar=("LOW", "HIGH"),
                            help="Band of valid rescaled rows (default: layout row extent)")
        parser.add_argument("--n_boot", type=int, default=d if d else 1000,
                            help="Bootstrap replicates (default: 1000)")
        parser.add_argument("--confidence", type=float, default=d if d else 0.95,
                            help="Interval coverage (default: 0.95)")
        parser.add_argument("--seed", type=int, default=d if d else None,
                            help="Random seed for the bootstrap (default: none)")
        parser.add_argument("--width", type=int, default=d if d else 1024,
                            help="Image width in pixels (default: 1024)")
        parser.add_argument("--height", type=int, default=d if d else 768,
                            help="Image height in pixels (default: 768)")
        parser.add_argument("--antialias", type=str, default=d if d else "high",
                            help="Anti-alias level: off, low, medium, high (default: high)")
        parser.add_argument("--font_size", type=int, default=d if d else 11,
                            help="Base font size (default: 11)")
        parser.add_argument("--palette", type=str, default=d if d else None,
                            help="Diverging palette 'low;neutral;high' (default: blue-white-red)")
        parser.add_argument("--title", type=str, default=d if d else "",
                            help="Chart title")
        parser.add_argument("--file", type=str, default=d if d else "cartogram.png",
                            help="Output PNG filename (default: cartogram.png)")
        parser.add_argument("--geojson", type=str, default=d if d else None,
                            help="Output GeoJSON of the joined geometry")
        parser.add_argument("--table", type=str, default=d if d else None,
                            help="Output CSV of risk ratios, one row per area")
        parser.add_argument("--samples", type=str, default=d if d else None,
                            help="Output CSV of bootstrap replicates, one row per area and sample")
        parser.add_argument("--debug", nargs="?", const=True, default=d if d else False,
                            type=self._parse_bool_flag,
                            help="Enable debug output")
        parser.add_argument("--export_settings", type=str, default=None,
                            help="Export parameters to a JSON file")
        parser.add_argument("--import_settings", type=str, default=None,
                            help="Import parameters from a JSON file")

        return parser

    def _parse_bool_flag(self, value: str) -> bool:
        """Parse a boolean flag value ('true'/'false' or bare flag)."""
        if isinstance(value, bool):
            return value
        if value.lower() in ("true", "1", "yes"):
            return True
        if value.lower() in ("false", "0", "no"):
            return False
        raise argparse.ArgumentTypeError(f"Boolean value expected, got '{value}'")

    def _banner_text(self) -> str:
        """Build the application banner as a string."""
        w = self.BANNER_WIDTH
        inner = w - 2
        lines = [
            "┌" + "─" * inner + "┐",
            f"│{'  Program:    ' + self.TITLE:<{inner}}│",
            f"│{'  Version:    ' + self.VERSION:<{inner}}│",
            f"│{'  Build Date: ' + self.BUILD_DATE:<{inner}}│",
            "└" + "─" * inner + "┘",
        ]
        return "\n".join(lines)

    def _print_banner(self) -> None:
        """Print the application banner to stdout."""
        print(self._banner_text())

    def _print_report(
        self,
        layout: NamedHexLayout,
        tessellation: HexTessellation,
        result: AlignmentResult,
        report: Dict,
    ) -> None:
        """Print counts of everything matched, dropped or left unmatched."""
        counts = result.summary()
        low, high = result.row_band
        print(f"\n  Layout units:     {len(layout)} ({layout.offset})")
        print(f"  Tessellation:     {len(tessellation)} cells")
        print(f"  Matched units:    {counts['matched']}")
        print(f"  Unmatched units:  {counts['unmatched_units']}")
        print(f"  Excluded cells:   {counts['excluded_cells']} (row band {low:g} to {high:g})")
        print(f"  Unmatched cells:  {counts['unmatched_cells']}")
        print(f"  Collisions:       {counts['collisions']}")
        if "records" in report:
            print(f"  Crash records:    {report['records']}")
            if "recoded" in report:
                print(f"  Recoded records:  {report['recoded']}")
            print(f"  Dropped records:  {report['dropped']} (missing area or severity)")
            if "unexposed" in report:
                print(f"  Unexposed areas:  {len(report['unexposed'])}")
            print(f"  Outside layout:   {len(report['outside_layout'])} areas")

    def _print_debug(
        self,
        args: argparse.Namespace,
        layout: NamedHexLayout,
        result: AlignmentResult,
        report: Dict,
        polygon_count: int,
    ) -> None:
        """Print resolved parameters and the ids behind every reported count."""
        print(f"\n  Layout file:      {args.layout}")
        print(f"  Rows:             {layout.min_row} to {layout.max_row} ({layout.row_count} distinct)")
        print(f"  Columns:          {layout.min_col} to {layout.max_col}")
        if args.tessellation:
            print(f"  Tessellation:     {args.tessellation}")
        elif args.cellsize is not None:
            print(f"  Tessellation:     covering, cell size {args.cellsize:g}")
        else:
            print("  Tessellation:     fitted to layout")
        print(f"  Row band:         {args.row_band if args.row_band else 'layout extent'}")
        print(f"  Image size:       {args.width} x {args.height}")
        print(f"  Anti-alias:       {args.antialias}")
        print(f"  Polygons drawn:   {polygon_count}")
        if args.crashes:
            print(f"  Bootstrap:        {args.n_boot} replicates, {args.confidence:g} coverage, seed {args.seed}")
        self._print_ids("Unmatched units", result.unmatched_units)
        self._print_ids("Excluded cells", result.excluded_cells)
        self._print_ids("Unmatched cells", result.unmatched_cells)
        self._print_ids("Collisions", result.collisions)
        self._print_ids("Unexposed areas", report.get("unexposed", []))
        self._print_ids("Outside layout", report.get("outside_layout", []))

    @staticmethod
    def _print_ids(label: str, ids: Sequence) -> None:
        if ids:
            print(f"  {label + ':':<18}{', '.join(str(i) for i in ids)}")

    def _format_file_size(self, size_bytes: int) -> str:
        """Format a file size in human-readable form (e.g. '1.23 MB')."""
        if size_bytes < 1024:
            return f"{size_bytes} B"
        elif size_bytes < 1024 * 1024:
            return f"{size_bytes / 1024:.2f} KB"
        else:
            return f"{size_bytes / (1024 * 1024):.2f} MB"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main() -> None:
    """Main entry point for the HEX Cartogram Aligner."""
    if sys.stdout and hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    app = Application()
    app.run()


if __name__ == "__main__":
    main()
