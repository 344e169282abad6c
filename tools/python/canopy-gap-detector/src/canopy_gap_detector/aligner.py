"""
Canopy Gap Detector — GeoAligner
=================================
Places rasters of any CRS and resolution onto one reference pixel grid.

Steps for each source raster:

  1.  Plot boundary   reproject to the reference CRS, union, make valid,
                      buffer outward (``buffer_distance``).
  2.  Clip            bounding-box crop, then exact polygon mask
                      (cells whose centre falls outside become no-data).
  3.  Resample        reproject if the CRS differs and resample bilinearly
                      onto the reference grid, tile by tile.

CRS handling is an explicit precondition: a source or reference without a
CRS raises :class:`AlignmentError` instead of being assigned one.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path

import geopandas as gpd
import numpy as np
import numpy.typing as npt
import rasterio
import rasterio.errors
from pyproj import CRS as ProjCRS
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine
from rasterio.warp import Resampling, reproject
from rasterio.windows import Window
from rasterio.windows import transform as window_transform
from shapely import make_valid
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from shared.python.exceptions import AlignmentError, InputReadError
from shared.python.validators import Validators

from .config import GapDetectionConfig
from .raster import GeoRaster, RasterGrid, crop_window, iter_row_tiles

logger = logging.getLogger("canopygaps.aligner")

STAGE = "GeoAligner"

# Tolerance (in cells) for treating two grids as sharing one cell lattice.
_LATTICE_TOLERANCE = 1e-6


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlotBoundary:
    """Buffered, validity-repaired plot polygon in a known CRS."""

    geometry: BaseGeometry
    crs: CRS

    def in_crs(self, crs: CRS) -> BaseGeometry:
        """Return the boundary geometry expressed in *crs*."""
        if crs == self.crs:
            return self.geometry
        series = gpd.GeoSeries([self.geometry], crs=self.crs.to_wkt())
        return series.to_crs(crs.to_wkt()).iloc[0]

    @property
    def area(self) -> float:
        return float(self.geometry.area)


@dataclass(frozen=True)
class AlignmentResult:
    """Both artifacts produced while aligning one source raster."""

    clipped: GeoRaster
    aligned: GeoRaster


# ---------------------------------------------------------------------------
# Aligner
# ---------------------------------------------------------------------------


class GeoAligner:
    """Clip, reproject, and resample rasters onto a reference grid.

    Args:
        config: Pipeline configuration (``buffer_distance``, ``tile_rows``
                and ``band`` are used here).

    Example::

        aligner = GeoAligner(GapDetectionConfig())
        boundary = aligner.prepare_boundary(plots, reference.crs)
        result = aligner.align(older_dsm, reference, boundary)
        result.aligned.is_aligned_with(reference)   # True
    """

    def __init__(self, config: GapDetectionConfig | None = None) -> None:
        self.config = config or GapDetectionConfig()

    # ------------------------------------------------------------------
    # Plot boundary
    # ------------------------------------------------------------------

    def prepare_boundary(self, plots: gpd.GeoDataFrame, target_crs: CRS | None) -> PlotBoundary:
        """Union, repair, and buffer the plot features in *target_crs*.

        Args:
            plots: One or more plot polygons in any CRS.
            target_crs: CRS of the reference raster.

        Raises:
            InputReadError: If the layer holds no usable geometry.
            AlignmentError: If the layer or the target has no CRS.
        """
        if target_crs is None:
            raise AlignmentError(STAGE, "reference", "reference raster has no CRS")
        geometries = plots.geometry.dropna()
        geometries = geometries[~geometries.is_empty]
        if geometries.empty:
            raise InputReadError(STAGE, "plot_boundary", "layer holds no geometries")
        if plots.crs is None:
            raise AlignmentError(
                STAGE, "plot_boundary",
                "layer has no CRS; cannot reproject it to the reference frame",
            )

        target = ProjCRS.from_user_input(target_crs.to_wkt())
        if not plots.crs.equals(target):
            logger.info("Reprojecting plot boundary from %s to %s", plots.crs.name, target.name)
            geometries = geometries.to_crs(target)

        merged = unary_union([make_valid(geom) for geom in geometries])
        buffered = merged.buffer(self.config.buffer_distance)
        if buffered.is_empty:
            raise InputReadError(STAGE, "plot_boundary", "boundary is empty after repair")

        logger.info(
            "Plot boundary: %d feature(s), %.1f m² after %.1f m buffer",
            len(geometries), buffered.area, self.config.buffer_distance,
        )
        return PlotBoundary(buffered, target_crs)

    # ------------------------------------------------------------------
    # Clip
    # ------------------------------------------------------------------

    def clip(self, raster: GeoRaster, boundary: PlotBoundary) -> GeoRaster:
        """Crop *raster* to the boundary's bounding box and mask outside cells.

        Raises:
            AlignmentError: If the raster has no CRS or misses the boundary.
        """
        self._require_crs(raster.crs, raster.name)
        geometry = boundary.in_crs(raster.crs)
        window = crop_window(raster.transform, raster.height, raster.width, geometry.bounds)
        if window is None:
            raise AlignmentError(STAGE, raster.name, "does not overlap the buffered plot boundary")

        rows, cols = window.toslices()
        cropped = raster.data[rows, cols]
        valid = raster.valid_mask[rows, cols]
        return self._mask_outside(
            np.where(valid, cropped, np.nan).astype(np.float32),
            window_transform(window, raster.transform),
            raster.crs,
            geometry,
            raster.name,
        )

    def clip_file(
        self,
        path: Path,
        boundary: PlotBoundary,
        *,
        name: str | None = None,
    ) -> GeoRaster:
        """Clip a raster on disk, reading only the crop window.

        Raises:
            InputReadError: If rasterio cannot open *path*.
            BandIndexError: If the configured band does not exist.
            AlignmentError: If the raster has no CRS or misses the boundary.
        """
        artifact = name or Path(path).stem
        try:
            with rasterio.open(path) as src:
                Validators.assert_band_index_valid(self.config.band, src.count)
                self._require_crs(src.crs, artifact)
                geometry = boundary.in_crs(src.crs)
                window = crop_window(src.transform, src.height, src.width, geometry.bounds)
                if window is None:
                    raise AlignmentError(STAGE, artifact, "does not overlap the buffered plot boundary")
                logger.debug("Reading %s window %s of %dx%d", artifact, window, src.height, src.width)
                band_array = src.read(self.config.band, window=window, masked=True)
                transform = src.window_transform(window)
                crs = src.crs
        except rasterio.errors.RasterioIOError as exc:
            raise InputReadError(STAGE, artifact, str(exc)) from exc

        data = np.ma.filled(band_array.astype(np.float32), np.nan)
        return self._mask_outside(data, transform, crs, geometry, artifact)

    @staticmethod
    def _mask_outside(
        data: npt.NDArray[np.float32],
        transform: Affine,
        crs: CRS,
        geometry: BaseGeometry,
        name: str,
    ) -> GeoRaster:
        outside = geometry_mask([geometry], out_shape=data.shape, transform=transform)
        masked = np.where(outside, np.nan, data).astype(np.float32)
        if not np.isfinite(masked).any():
            raise AlignmentError(STAGE, name, "no valid cells inside the buffered plot boundary")
        logger.info("Clipped %s to %dx%d cells", name, masked.shape[0], masked.shape[1])
        return GeoRaster(masked, transform, crs, float("nan"), f"{name}_clipped")

    # ------------------------------------------------------------------
    # Resample
    # ------------------------------------------------------------------

    def resample(self, raster: GeoRaster, grid: RasterGrid) -> GeoRaster:
        """Place *raster* on *grid*, reprojecting and resampling as needed.

        Rasters that already share the grid's CRS, cell size, and cell
        lattice are copied cell for cell; everything else goes through a
        bilinear :func:`rasterio.warp.reproject`, one row tile at a time.

        Raises:
            AlignmentError: On a missing CRS, or when no cell of *grid* is
                covered by *raster* (an all no-data output).
        """
        self._require_crs(grid.crs, "reference")
        self._require_crs(raster.crs, raster.name)

        if raster.is_aligned_with(grid):
            data = raster.as_float()
        elif self._shares_lattice(raster.grid, grid):
            logger.debug("%s shares the reference lattice — copying cells", raster.name)
            data = self._paste(raster, grid)
        else:
            if raster.crs != grid.crs:
                logger.info("Reprojecting %s from %s to %s", raster.name, raster.crs, grid.crs)
            data = self._warp(raster, grid)

        if not np.isfinite(data).any():
            raise AlignmentError(
                STAGE, raster.name,
                "does not overlap the reference grid (output would be 100% no-data)",
            )
        name = raster.name.removesuffix("_clipped")
        logger.info(
            "Aligned %s to %dx%d grid at %gm (%.1f%% valid)",
            name, grid.height, grid.width, grid.res[0],
            100.0 * np.isfinite(data).mean(),
        )
        return GeoRaster(data, grid.transform, grid.crs, float("nan"), f"{name}_aligned")

    def align(self, raster: GeoRaster, grid: RasterGrid, boundary: PlotBoundary) -> AlignmentResult:
        """Clip then resample an in-memory raster."""
        clipped = self.clip(raster, boundary)
        return AlignmentResult(clipped, self.resample(clipped, grid))

    def align_file(
        self,
        path: Path,
        grid: RasterGrid,
        boundary: PlotBoundary,
        *,
        name: str | None = None,
    ) -> AlignmentResult:
        """Clip (windowed read) then resample a raster on disk."""
        clipped = self.clip_file(path, boundary, name=name)
        return AlignmentResult(clipped, self.resample(clipped, grid))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_crs(crs: CRS | None, name: str) -> None:
        if crs is None:
            raise AlignmentError(STAGE, name, "raster has no CRS")

    @staticmethod
    def _shares_lattice(source: RasterGrid, target: RasterGrid) -> bool:
        """``True`` when *source* cells coincide with *target* cells."""
        s, t = source.transform, target.transform
        if source.crs != target.crs or s.b or s.d or t.b or t.d:
            return False
        if not (math.isclose(s.a, t.a) and math.isclose(s.e, t.e)):
            return False
        col_shift = (s.c - t.c) / t.a
        row_shift = (s.f - t.f) / t.e
        return (
            abs(col_shift - round(col_shift)) < _LATTICE_TOLERANCE
            and abs(row_shift - round(row_shift)) < _LATTICE_TOLERANCE
        )

    @staticmethod
    def _paste(raster: GeoRaster, grid: RasterGrid) -> npt.NDArray[np.float32]:
        """Copy cells of a lattice-sharing raster into a new grid array."""
        s, t = raster.transform, grid.transform
        col_shift = round((s.c - t.c) / t.a)
        row_shift = round((s.f - t.f) / t.e)

        out = np.full(grid.shape, np.nan, dtype=np.float32)
        dst_r0, dst_c0 = max(row_shift, 0), max(col_shift, 0)
        dst_r1 = min(row_shift + raster.height, grid.height)
        dst_c1 = min(col_shift + raster.width, grid.width)
        if dst_r1 <= dst_r0 or dst_c1 <= dst_c0:
            return out

        source = raster.as_float()
        out[dst_r0:dst_r1, dst_c0:dst_c1] = source[
            dst_r0 - row_shift:dst_r1 - row_shift,
            dst_c0 - col_shift:dst_c1 - col_shift,
        ]
        return out

    def _warp(self, raster: GeoRaster, grid: RasterGrid) -> npt.NDArray[np.float32]:
        """Bilinear reprojection onto *grid*, one destination row tile at a time."""
        source = raster.as_float()
        out = np.full(grid.shape, np.nan, dtype=np.float32)
        for r0, r1 in iter_row_tiles(grid.height, self.config.tile_rows):
            tile = np.full((r1 - r0, grid.width), np.nan, dtype=np.float32)
            reproject(
                source=source,
                destination=tile,
                src_transform=raster.transform,
                src_crs=raster.crs,
                src_nodata=np.nan,
                dst_transform=window_transform(Window(0, r0, grid.width, r1 - r0), grid.transform),
                dst_crs=grid.crs,
                dst_nodata=np.nan,
                resampling=Resampling.bilinear,
            )
            out[r0:r1] = tile
            logger.debug("Resampled %s rows %d-%d", raster.name, r0, r1)
        return out
