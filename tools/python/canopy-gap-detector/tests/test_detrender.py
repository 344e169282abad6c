"""
Tests — Detrender
==================
Surface difference, focal median, and bias removal.
"""

from __future__ import annotations

import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_origin

from canopy_gap_detector.config import GapDetectionConfig
from canopy_gap_detector.detrender import DifferenceStats, Detrender, focal_nanmedian
from canopy_gap_detector.raster import GeoRaster
from shared.python.exceptions import AlignmentError, InsufficientDataError

CRS_UTM = CRS.from_epsg(32617)


def _raster(data: np.ndarray, name: str = "dsm", x0: float = 500_000.0) -> GeoRaster:
    return GeoRaster(
        np.asarray(data, dtype=np.float32), from_origin(x0, 4_000_000, 1, 1), CRS_UTM, float("nan"), name
    )


def _terrain(shape=(60, 60), seed: int = 3) -> np.ndarray:
    rng = np.random.default_rng(seed)
    rows, cols = np.mgrid[0:shape[0], 0:shape[1]]
    return (200 + 0.3 * rows - 0.2 * cols + rng.normal(0, 0.5, shape)).astype(np.float32)


def _brute_nanmedian(array: np.ndarray, window: int, min_valid: int = 1) -> np.ndarray:
    half = window // 2
    padded = np.pad(array.astype(np.float64), half, constant_values=np.nan)
    out = np.full(array.shape, np.nan)
    for r in range(array.shape[0]):
        for c in range(array.shape[1]):
            block = padded[r:r + window, c:c + window]
            if np.isfinite(block).sum() >= min_valid:
                out[r, c] = np.nanmedian(block)
    return out


# ---------------------------------------------------------------------------
# focal_nanmedian
# ---------------------------------------------------------------------------


class TestFocalNanmedian:
    def test_matches_brute_force_with_gaps(self) -> None:
        data = _terrain((25, 30))
        data[5:9, 10:14] = np.nan
        data[0, :] = np.nan
        result = focal_nanmedian(data, 5)
        np.testing.assert_allclose(result, _brute_nanmedian(data, 5), rtol=1e-6, equal_nan=True)

    def test_nan_centre_still_gets_median(self) -> None:
        data = np.ones((7, 7), dtype=np.float32)
        data[3, 3] = np.nan
        assert focal_nanmedian(data, 3)[3, 3] == 1.0

    def test_min_valid_leaves_sparse_windows_empty(self) -> None:
        data = np.full((9, 9), np.nan, dtype=np.float32)
        data[0, 0] = 2.0
        result = focal_nanmedian(data, 3, min_valid=2)
        assert np.isnan(result).all()
        assert focal_nanmedian(data, 3, min_valid=1)[1, 1] == 2.0

    @pytest.mark.parametrize("tile_rows, workers", [(4, 1), (7, 3), (1, 2), (100, 1)])
    def test_tiling_does_not_change_result(self, tile_rows: int, workers: int) -> None:
        data = _terrain((31, 20))
        data[10:13, 3:8] = np.nan
        whole = focal_nanmedian(data, 7)
        tiled = focal_nanmedian(data, 7, tile_rows=tile_rows, workers=workers)
        np.testing.assert_array_equal(tiled, whole)

    def test_output_dtype_and_shape(self) -> None:
        out = focal_nanmedian(np.zeros((5, 6)), 3)
        assert out.dtype == np.float32
        assert out.shape == (5, 6)


# ---------------------------------------------------------------------------
# DifferenceStats
# ---------------------------------------------------------------------------


class TestDifferenceStats:
    def test_quartiles(self) -> None:
        stats = DifferenceStats.from_raster(_raster(np.array([[1, 2, 3, 4, 5]]), "diff"))
        assert (stats.min, stats.q1, stats.median, stats.q3, stats.max) == (1, 2, 3, 4, 5)
        assert stats.mean == 3.0
        assert stats.valid_cells == 5
        assert "median=3.00" in str(stats)

    def test_ignores_nodata(self) -> None:
        stats = DifferenceStats.from_raster(_raster(np.array([[np.nan, 10.0]]), "diff"))
        assert stats.valid_cells == 1
        assert stats.max == 10.0

    def test_empty_raises(self) -> None:
        with pytest.raises(InsufficientDataError):
            DifferenceStats.from_raster(_raster(np.full((2, 2), np.nan), "diff"))


# ---------------------------------------------------------------------------
# Detrender
# ---------------------------------------------------------------------------


class TestDetrender:
    def test_difference_propagates_nodata(self) -> None:
        older = np.full((4, 4), 10.0)
        newer = np.full((4, 4), 12.0)
        older[0, 0] = np.nan
        newer[3, 3] = np.nan
        diff = Detrender().difference(_raster(newer, "newer"), _raster(older, "older"))

        assert np.isnan(diff.data[0, 0]) and np.isnan(diff.data[3, 3])
        assert diff.valid_mask.sum() == 14
        assert np.all(diff.data[diff.valid_mask] == 2.0)
        assert diff.name == "dem_difference"

    def test_misaligned_difference_raises(self) -> None:
        older = _raster(np.zeros((4, 4)), "older")
        newer = _raster(np.zeros((4, 4)), "newer", x0=500_010.0)
        with pytest.raises(AlignmentError):
            Detrender().difference(newer, older)

    def test_no_common_cells_raises(self) -> None:
        older = np.full((2, 2), np.nan)
        older[0, 0] = 1.0
        newer = np.full((2, 2), 1.0)
        newer[0, 0] = np.nan
        with pytest.raises(InsufficientDataError):
            Detrender().difference(_raster(newer), _raster(older))

    def test_constant_bias_is_removed(self) -> None:
        older = _terrain()
        newer = older + np.float32(3.7)
        result = Detrender(GapDetectionConfig(focal_window=11)).detrend(
            _raster(newer, "newer"), _raster(older, "older")
        )
        flat = result.flat.data
        assert np.isfinite(flat).all()
        assert np.nanmax(np.abs(flat)) < 1e-3
        assert result.stats.median == pytest.approx(3.7, abs=1e-3)

    def test_nodata_stays_nodata(self) -> None:
        older = _terrain()
        older[20:25, 20:25] = np.nan
        newer = older + np.float32(1.0)
        result = Detrender(GapDetectionConfig(focal_window=11)).detrend(
            _raster(newer), _raster(older)
        )
        assert np.isnan(result.flat.data[20:25, 20:25]).all()
        assert np.isfinite(result.focal_median.data[22, 22])

    def test_local_drop_survives_detrending(self) -> None:
        older = _terrain()
        newer = older + np.float32(2.0)
        newer[30:34, 30:34] -= 8.0
        result = Detrender(GapDetectionConfig(focal_window=15)).detrend(
            _raster(newer), _raster(older)
        )
        patch = result.flat.data[30:34, 30:34]
        assert np.all(patch < -7.0)
        assert abs(result.flat.data[5, 5]) < 1e-3

    def test_newer_resampled_onto_older_grid(self) -> None:
        older = _raster(_terrain((20, 20)), "older")
        wider = np.full((30, 30), 0.0, dtype=np.float32)
        wider[5:25, 5:25] = older.data + 1.0
        newer = GeoRaster(wider, from_origin(499_995, 4_000_005, 1, 1), CRS_UTM, float("nan"), "newer")
        result = Detrender(GapDetectionConfig(focal_window=5)).detrend(newer, older)
        assert result.difference.is_aligned_with(older)
        np.testing.assert_allclose(result.difference.data, 1.0, atol=1e-4)

    def test_all_windows_too_sparse_raises(self) -> None:
        data = np.full((5, 5), np.nan)
        data[2, 2] = 1.0
        cfg = GapDetectionConfig(focal_window=3, focal_min_valid=2)
        with pytest.raises(InsufficientDataError, match="focal_median"):
            Detrender(cfg).focal_median(_raster(data))
