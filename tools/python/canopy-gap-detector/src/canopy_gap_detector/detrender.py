"""
Canopy Gap Detector — Detrender
================================
Removes slowly varying vertical bias (sensor / georeferencing drift) from
the difference of two aligned surface models.

    diff      = newer - older
    median_W  = focal median of diff over a W x W window (no-data ignored)
    diff_flat = diff - median_W

True canopy loss is spatially local; systematic warping is smooth at the
scale of W, so subtracting the W-window median keeps only the local signal.

The focal median is exact and tile-invariant: row tiles carry a halo of
W // 2 rows, so tiled (and threaded) results equal the single-pass result.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass

import numpy as np
import numpy.typing as npt
from numpy.lib.stride_tricks import sliding_window_view
from scipy.ndimage import median_filter, uniform_filter

from shared.python.exceptions import AlignmentError, InsufficientDataError

from .aligner import GeoAligner
from .config import GapDetectionConfig
from .raster import GeoRaster, iter_row_tiles

logger = logging.getLogger("canopygaps.detrender")

STAGE = "Detrender"

# Cells gathered per numpy.nanmedian call on the slow path.
_GATHER_CHUNK = 1024


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DifferenceStats:
    """Distribution of the raw elevation difference (valid cells only).

    Attributes:
        min: Smallest difference.
        q1: 25th percentile.
        median: 50th percentile.
        mean: Arithmetic mean.
        q3: 75th percentile.
        max: Largest difference.
        valid_cells: Number of cells with data in both surfaces.
    """

    min: float
    q1: float
    median: float
    mean: float
    q3: float
    max: float
    valid_cells: int

    @classmethod
    def from_raster(cls, raster: GeoRaster) -> DifferenceStats:
        values = raster.data[raster.valid_mask].astype(np.float64)
        if values.size == 0:
            raise InsufficientDataError(STAGE, raster.name, "no valid cells to summarise")
        q1, median, q3 = np.percentile(values, [25, 50, 75])
        return cls(
            min=float(values.min()),
            q1=float(q1),
            median=float(median),
            mean=float(values.mean()),
            q3=float(q3),
            max=float(values.max()),
            valid_cells=int(values.size),
        )

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)

    def __str__(self) -> str:
        return (
            f"min={self.min:.2f} | q1={self.q1:.2f} | median={self.median:.2f} | "
            f"mean={self.mean:.2f} | q3={self.q3:.2f} | max={self.max:.2f} "
            f"({self.valid_cells:,} cells)"
        )


@dataclass(frozen=True)
class DetrendResult:
    """Artifacts of the detrending stage, all on the older surface's grid."""

    difference: GeoRaster
    focal_median: GeoRaster
    flat: GeoRaster
    stats: DifferenceStats


# ---------------------------------------------------------------------------
# Focal median
# ---------------------------------------------------------------------------


def focal_nanmedian(
    array: npt.NDArray,
    window: int,
    *,
    min_valid: int = 1,
    tile_rows: int | None = None,
    workers: int = 1,
) -> npt.NDArray[np.float32]:
    """Median of each cell's W x W neighbourhood, ignoring ``NaN`` cells.

    Neighbours beyond the array edge count as no-data.  A cell whose
    window holds fewer than *min_valid* finite values is ``NaN``.  The
    centre cell itself may be ``NaN`` and still receive a median.

    Args:
        array: 2-D array with ``NaN`` marking no-data.
        window: Odd window side length in cells.
        min_valid: Finite cells required in a window.
        tile_rows: Rows per tile (``None`` = whole array at once).
        workers: Threads used to process tiles.

    Returns:
        float32 array with the same shape as *array*.
    """
    array = np.asarray(array, dtype=np.float32)
    height = array.shape[0]
    half = window // 2

    if not tile_rows or tile_rows >= height:
        return _focal_block(array, window, min_valid)

    def _run_tile(r0: int, r1: int) -> tuple[int, int, npt.NDArray[np.float32]]:
        h0, h1 = max(0, r0 - half), min(height, r1 + half)
        block = _focal_block(array[h0:h1], window, min_valid)
        logger.debug("Focal median rows %d-%d (halo %d-%d)", r0, r1, h0, h1)
        return r0, r1, block[r0 - h0:r1 - h0]

    out = np.empty(array.shape, dtype=np.float32)
    tiles = list(iter_row_tiles(height, tile_rows))
    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_run_tile, r0, r1) for r0, r1 in tiles]
            for future in as_completed(futures):
                r0, r1, values = future.result()
                out[r0:r1] = values
    else:
        for r0, r1 in tiles:
            _, _, values = _run_tile(r0, r1)
            out[r0:r1] = values
    return out


def _focal_block(
    block: npt.NDArray[np.float32],
    window: int,
    min_valid: int,
) -> npt.NDArray[np.float32]:
    """Focal median of one block, treating everything outside it as no-data."""
    valid = np.isfinite(block)
    full = window * window
    counts = np.rint(
        uniform_filter(valid.astype(np.float64), size=window, mode="constant", cval=0.0) * full
    ).astype(np.int64)

    out = np.full(block.shape, np.nan, dtype=np.float32)

    # Fully valid windows: plain median filter.  Any NaN elsewhere in the
    # block cannot reach these windows.
    fast = counts == full
    if fast.any():
        filtered = median_filter(block, size=window, mode="nearest")
        out[fast] = filtered[fast]

    # Partial windows (grid edge or no-data neighbours): gather and nanmedian.
    slow_rows, slow_cols = np.nonzero((counts >= min_valid) & ~fast)
    if slow_rows.size:
        half = window // 2
        padded = np.pad(block, half, mode="constant", constant_values=np.nan)
        views = sliding_window_view(padded, (window, window))
        for start in range(0, slow_rows.size, _GATHER_CHUNK):
            rows = slow_rows[start:start + _GATHER_CHUNK]
            cols = slow_cols[start:start + _GATHER_CHUNK]
            gathered = views[rows, cols].reshape(rows.size, full)
            out[rows, cols] = np.nanmedian(gathered, axis=1)
    return out


# ---------------------------------------------------------------------------
# Detrender
# ---------------------------------------------------------------------------


class Detrender:
    """Compute the detrended difference of two surface models.

    Args:
        config: Pipeline configuration (``focal_window``,
                ``focal_min_valid``, ``tile_rows``, ``workers``).
        aligner: Used to resample the newer surface onto the older grid
                 when they are not already aligned.
    """

    def __init__(
        self,
        config: GapDetectionConfig | None = None,
        aligner: GeoAligner | None = None,
    ) -> None:
        self.config = config or GapDetectionConfig()
        self.aligner = aligner or GeoAligner(self.config)

    def difference(self, newer: GeoRaster, older: GeoRaster) -> GeoRaster:
        """Cell-wise ``newer - older``; no-data in either input stays no-data.

        Raises:
            AlignmentError: If the rasters are not on the same grid.
            InsufficientDataError: If no cell holds data in both rasters.
        """
        if not newer.is_aligned_with(older):
            raise AlignmentError(
                STAGE, f"{newer.name} - {older.name}",
                "rasters must share CRS, cell size, extent, and shape",
            )
        valid = newer.valid_mask & older.valid_mask
        if not valid.any():
            raise InsufficientDataError(STAGE, "dem_difference", "no cell holds data in both surfaces")

        with np.errstate(invalid="ignore"):
            diff = newer.data.astype(np.float32) - older.data.astype(np.float32)
        return older.derive(np.where(valid, diff, np.nan).astype(np.float32), "dem_difference")

    def focal_median(self, raster: GeoRaster) -> GeoRaster:
        """Focal median of *raster* over the configured window.

        Raises:
            InsufficientDataError: If every window lacks enough valid cells.
        """
        cfg = self.config
        logger.info(
            "Focal median %dx%d over %dx%d cells ...",
            cfg.focal_window, cfg.focal_window, raster.height, raster.width,
        )
        median = focal_nanmedian(
            raster.as_float(),
            cfg.focal_window,
            min_valid=cfg.focal_min_valid,
            tile_rows=cfg.tile_rows,
            workers=cfg.workers,
        )
        if not np.isfinite(median).any():
            raise InsufficientDataError(
                STAGE, "focal_median",
                f"no {cfg.focal_window}x{cfg.focal_window} window holds "
                f"{cfg.focal_min_valid} valid cell(s)",
            )
        return raster.derive(median, "focal_median")

    def detrend(self, newer: GeoRaster, older: GeoRaster) -> DetrendResult:
        """Run difference, focal median, and bias removal.

        *newer* is resampled onto *older*'s grid first if needed.
        """
        if not newer.is_aligned_with(older):
            logger.info("Resampling %s onto the %s grid", newer.name, older.name)
            newer = self.aligner.resample(newer, older.grid)

        diff = self.difference(newer, older)
        stats = DifferenceStats.from_raster(diff)
        logger.info("Difference stats: %s", stats)

        median = self.focal_median(diff)
        with np.errstate(invalid="ignore"):
            flat = (diff.data - median.data).astype(np.float32)
        flat_raster = diff.derive(flat, "flat_difference")
        logger.info(
            "Detrended difference: %d valid cell(s)", int(np.isfinite(flat).sum())
        )
        return DetrendResult(diff, median, flat_raster, stats)
