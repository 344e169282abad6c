"""
Canopy Gap Detector — Raster Artifacts & I/O
=============================================
Immutable georeferenced grid values passed between pipeline stages, plus
the thin rasterio / geopandas read-write layer around them.

Classes:
    RasterGrid      CRS + affine transform + shape of a pixel grid.
    GeoRaster       A 2-D array on a :class:`RasterGrid` with a no-data value.

Functions:
    read_grid       Read only the grid definition of a raster file.
    read_raster     Read one band as a float32 :class:`GeoRaster`.
    write_raster    Write a :class:`GeoRaster` as a single-band GeoTIFF.
    read_vector     Read a vector layer into a GeoDataFrame.
    write_vector    Write a GeoDataFrame to a vector file.
    crop_window     Integer pixel window covering a bounding box.
    iter_row_tiles  Row ranges for tiled processing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import geopandas as gpd
import numpy as np
import numpy.typing as npt
import rasterio
import rasterio.errors
from rasterio.coords import BoundingBox
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds
from rasterio.windows import Window, from_bounds

from shared.python.exceptions import InputReadError, OutputWriteError, RasterError
from shared.python.validators import Validators

logger = logging.getLogger("canopygaps.raster")


def _is_nan(value: float | int | None) -> bool:
    return isinstance(value, float) and math.isnan(value)


# ---------------------------------------------------------------------------
# Grid + raster value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RasterGrid:
    """Definition of a pixel grid: CRS, transform, and dimensions.

    Attributes:
        transform: Affine transform mapping (col, row) to map coordinates.
        crs: Coordinate reference system, or ``None`` if undefined.
        height: Number of rows.
        width: Number of columns.
    """

    transform: Affine
    crs: CRS | None
    height: int
    width: int

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def res(self) -> tuple[float, float]:
        """Cell size ``(x, y)`` in map units."""
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> BoundingBox:
        return BoundingBox(*array_bounds(self.height, self.width, self.transform))

    def matches(self, other: RasterGrid) -> bool:
        """``True`` when both grids share CRS, cell size, extent, and shape."""
        return (
            self.shape == other.shape
            and self.crs == other.crs
            and self.transform.almost_equals(other.transform)
        )


@dataclass(frozen=True, eq=False)
class GeoRaster:
    """Immutable single-band raster artifact.

    ``data`` holds a read-only view of the wrapped array so no stage can
    modify an artifact it received; every stage allocates its own output.

    Attributes:
        data: 2-D numpy array of cell values.
        transform: Affine transform of the grid.
        crs: Coordinate reference system, or ``None`` if undefined.
        nodata: No-data sentinel.  Float rasters use ``NaN``; the gap mask
                and patch labels use ``0``.
        name: Artifact identity used in logs and error messages.
    """

    data: npt.NDArray
    transform: Affine
    crs: CRS | None
    nodata: float | int | None = float("nan")
    name: str = "raster"

    def __post_init__(self) -> None:
        if self.data.ndim != 2:
            raise RasterError(
                f"Raster '{self.name}' must be 2-D, got shape {self.data.shape}."
            )
        view = self.data.view()
        view.setflags(write=False)
        object.__setattr__(self, "data", view)

    # -- grid helpers ----------------------------------------------------

    @property
    def grid(self) -> RasterGrid:
        return RasterGrid(self.transform, self.crs, self.height, self.width)

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape  # type: ignore[return-value]

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def res(self) -> tuple[float, float]:
        return self.grid.res

    @property
    def bounds(self) -> BoundingBox:
        return self.grid.bounds

    def is_aligned_with(self, other: GeoRaster | RasterGrid) -> bool:
        """``True`` when cell-wise arithmetic with *other* is allowed."""
        other_grid = other.grid if isinstance(other, GeoRaster) else other
        return self.grid.matches(other_grid)

    # -- value helpers ---------------------------------------------------

    @property
    def valid_mask(self) -> npt.NDArray[np.bool_]:
        """Boolean array, ``True`` where the cell holds data."""
        if np.issubdtype(self.data.dtype, np.floating):
            valid = np.isfinite(self.data)
            if self.nodata is not None and not _is_nan(self.nodata):
                valid &= self.data != self.nodata
            return valid
        if self.nodata is None:
            return np.ones(self.shape, dtype=bool)
        return self.data != self.nodata

    def as_float(self) -> npt.NDArray[np.float32]:
        """Return a new float32 array with no-data cells set to ``NaN``."""
        return np.where(self.valid_mask, self.data, np.nan).astype(np.float32)

    def derive(
        self,
        data: npt.NDArray,
        name: str,
        nodata: float | int | None = float("nan"),
    ) -> GeoRaster:
        """Create a new artifact on the same grid as this one."""
        return GeoRaster(data, self.transform, self.crs, nodata, name)

    def __repr__(self) -> str:
        return (
            f"<GeoRaster '{self.name}' {self.height}x{self.width} "
            f"res={self.res[0]:g} crs={self.crs}>"
        )


# ---------------------------------------------------------------------------
# Windows & tiles
# ---------------------------------------------------------------------------


def crop_window(
    transform: Affine,
    height: int,
    width: int,
    bounds: tuple[float, float, float, float],
) -> Window | None:
    """Return the integer window of a grid covering *bounds*.

    Fractional edges are expanded outward to whole cells and the result is
    clamped to the grid.  ``None`` means the bounds miss the grid entirely.

    Args:
        transform: Grid transform.
        height: Grid rows.
        width: Grid columns.
        bounds: ``(minx, miny, maxx, maxy)`` in the grid's CRS.
    """
    win = from_bounds(*bounds, transform=transform)
    col_start = max(0, math.floor(win.col_off))
    row_start = max(0, math.floor(win.row_off))
    col_stop = min(width, math.ceil(win.col_off + win.width))
    row_stop = min(height, math.ceil(win.row_off + win.height))
    if col_stop <= col_start or row_stop <= row_start:
        return None
    return Window(col_start, row_start, col_stop - col_start, row_stop - row_start)


def iter_row_tiles(height: int, tile_rows: int | None) -> Iterator[tuple[int, int]]:
    """Yield ``(start, stop)`` row ranges covering ``range(height)``.

    ``tile_rows=None`` yields a single tile spanning every row.
    """
    step = height if not tile_rows else tile_rows
    for start in range(0, height, max(step, 1)):
        yield start, min(start + step, height)


# ---------------------------------------------------------------------------
# Raster I/O
# ---------------------------------------------------------------------------


def read_grid(path: Path) -> RasterGrid:
    """Read only the grid definition of a raster (no pixel data).

    Raises:
        InputReadError: If rasterio cannot open *path*.
    """
    try:
        with rasterio.open(path) as src:
            return RasterGrid(src.transform, src.crs, src.height, src.width)
    except rasterio.errors.RasterioIOError as exc:
        raise InputReadError("RasterIO", str(path), str(exc)) from exc


def read_raster(path: Path, *, band: int = 1, name: str | None = None) -> GeoRaster:
    """Read one band of *path* as a float32 raster with ``NaN`` no-data.

    Args:
        path: Any GDAL-readable raster.
        band: 1-based band index.
        name: Artifact name; defaults to the file stem.

    Raises:
        InputReadError: If the file cannot be opened or decoded.
        BandIndexError: If *band* does not exist.
    """
    artifact = name or Path(path).stem
    try:
        with rasterio.open(path) as src:
            Validators.assert_band_index_valid(band, src.count)
            band_array = src.read(band, masked=True)
            transform, crs = src.transform, src.crs
    except rasterio.errors.RasterioIOError as exc:
        raise InputReadError("RasterIO", artifact, str(exc)) from exc

    data = np.ma.filled(band_array.astype(np.float32), np.nan)
    logger.debug("Read %s: %dx%d from %s", artifact, data.shape[0], data.shape[1], path)
    return GeoRaster(data, transform, crs, float("nan"), artifact)


def write_raster(raster: GeoRaster, output_path: Path) -> Path:
    """Write *raster* as a single-band, LZW-compressed GeoTIFF.

    Raises:
        OutputWriteError: If the file cannot be written.
    """
    profile = {
        "driver": "GTiff",
        "height": raster.height,
        "width": raster.width,
        "count": 1,
        "dtype": str(raster.data.dtype),
        "crs": raster.crs,
        "transform": raster.transform,
        "nodata": raster.nodata,
        "compress": "lzw",
    }
    try:
        with rasterio.open(output_path, "w", **profile) as dst:
            dst.write(raster.data, 1)
    except (OSError, rasterio.errors.RasterioError) as exc:
        raise OutputWriteError(str(output_path), str(exc)) from exc
    logger.debug("Wrote %s → %s", raster.name, output_path)
    return Path(output_path)


# ---------------------------------------------------------------------------
# Vector I/O
# ---------------------------------------------------------------------------


def read_vector(path: Path, name: str | None = None) -> gpd.GeoDataFrame:
    """Read a vector layer (Shapefile, GeoPackage, GeoJSON, FileGDB ...).

    Raises:
        InputReadError: If the source cannot be opened or parsed.
    """
    artifact = name or Path(path).stem
    try:
        return gpd.read_file(path)
    except Exception as exc:
        raise InputReadError("VectorIO", artifact, str(exc)) from exc


def write_vector(layer: gpd.GeoDataFrame, output_path: Path) -> Path | None:
    """Write *layer* to *output_path*; the driver follows the extension.

    Empty layers are not written; ``None`` is returned instead.

    Raises:
        OutputWriteError: If the file cannot be written.
    """
    if layer.empty:
        logger.warning("Layer for '%s' has no features — not written.", Path(output_path).name)
        return None
    try:
        layer.to_file(output_path)
    except Exception as exc:
        raise OutputWriteError(str(output_path), str(exc)) from exc
    logger.debug("Wrote %d feature(s) → %s", len(layer), output_path)
    return Path(output_path)
