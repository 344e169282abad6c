"""
Tests — GeoAligner
===================
Boundary preparation, clipping, and resampling onto a reference grid.
"""

from __future__ import annotations

from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from rasterio.crs import CRS
from rasterio.transform import from_origin
from shapely.geometry import box

from canopy_gap_detector.aligner import GeoAligner
from canopy_gap_detector.config import GapDetectionConfig
from canopy_gap_detector.raster import GeoRaster, RasterGrid
from shared.python.exceptions import AlignmentError, InputReadError

CRS_UTM = CRS.from_epsg(32617)
X0, Y0 = 500_000.0, 4_000_000.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _grid(height: int = 40, width: int = 40, res: float = 1.0, x0: float = X0, y0: float = Y0) -> RasterGrid:
    return RasterGrid(from_origin(x0, y0, res, res), CRS_UTM, height, width)


def _ramp(grid: RasterGrid, name: str = "dsm") -> GeoRaster:
    """Smooth planar surface z = 0.1*col + 0.05*row on *grid*."""
    rows, cols = np.mgrid[0:grid.height, 0:grid.width]
    data = (0.1 * cols + 0.05 * rows + 100.0).astype(np.float32)
    return GeoRaster(data, grid.transform, grid.crs, float("nan"), name)


def _plots(geom, crs: str = "EPSG:32617") -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame({"plot": [1]}, geometry=[geom], crs=crs)


def _full_plot(grid: RasterGrid) -> gpd.GeoDataFrame:
    return _plots(box(*grid.bounds))


# ---------------------------------------------------------------------------
# Plot boundary
# ---------------------------------------------------------------------------


class TestPrepareBoundary:
    def test_buffer_applied(self) -> None:
        aligner = GeoAligner(GapDetectionConfig(buffer_distance=5.0))
        boundary = aligner.prepare_boundary(_plots(box(0, 0, 10, 10)), CRS_UTM)
        minx, miny, maxx, maxy = boundary.geometry.bounds
        assert (minx, miny, maxx, maxy) == pytest.approx((-5, -5, 15, 15))

    def test_multiple_features_unioned(self) -> None:
        aligner = GeoAligner(GapDetectionConfig(buffer_distance=0.0))
        plots = gpd.GeoDataFrame(
            geometry=[box(0, 0, 10, 10), box(5, 0, 15, 10)], crs="EPSG:32617"
        )
        boundary = aligner.prepare_boundary(plots, CRS_UTM)
        assert boundary.area == pytest.approx(150.0)

    def test_reprojected_to_target_crs(self) -> None:
        aligner = GeoAligner(GapDetectionConfig(buffer_distance=0.0))
        utm = _plots(box(X0, Y0 - 100, X0 + 100, Y0))
        geographic = utm.to_crs("EPSG:4326")
        boundary = aligner.prepare_boundary(geographic, CRS_UTM)
        minx, miny, maxx, maxy = boundary.geometry.bounds
        assert minx == pytest.approx(X0, abs=0.5)
        assert maxy == pytest.approx(Y0, abs=0.5)
        assert boundary.crs == CRS_UTM

    def test_self_intersecting_plot_repaired(self) -> None:
        from shapely.geometry import Polygon

        bowtie = Polygon([(0, 0), (10, 10), (10, 0), (0, 10)])
        aligner = GeoAligner(GapDetectionConfig(buffer_distance=0.0))
        boundary = aligner.prepare_boundary(_plots(bowtie), CRS_UTM)
        assert boundary.geometry.is_valid
        assert boundary.area == pytest.approx(50.0)

    def test_missing_layer_crs_raises(self) -> None:
        plots = gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1)])
        with pytest.raises(AlignmentError, match="no CRS"):
            GeoAligner().prepare_boundary(plots, CRS_UTM)

    def test_missing_target_crs_raises(self) -> None:
        with pytest.raises(AlignmentError):
            GeoAligner().prepare_boundary(_plots(box(0, 0, 1, 1)), None)

    def test_empty_layer_raises(self) -> None:
        empty = gpd.GeoDataFrame(geometry=gpd.GeoSeries([], crs="EPSG:32617"))
        with pytest.raises(InputReadError):
            GeoAligner().prepare_boundary(empty, CRS_UTM)


# ---------------------------------------------------------------------------
# Clip
# ---------------------------------------------------------------------------


class TestClip:
    def test_clip_crops_and_masks(self) -> None:
        grid = _grid()
        aligner = GeoAligner(GapDetectionConfig(buffer_distance=0.0))
        # Triangle in the upper-left 20x20 block.
        from shapely.geometry import Polygon

        tri = Polygon([(X0, Y0), (X0 + 20, Y0), (X0, Y0 - 20)])
        boundary = aligner.prepare_boundary(_plots(tri), CRS_UTM)
        clipped = aligner.clip(_ramp(grid), boundary)

        assert clipped.shape == (20, 20)
        assert clipped.name == "dsm_clipped"
        valid = clipped.valid_mask
        assert valid[0, 0] and not valid[19, 19]

    def test_no_overlap_raises(self) -> None:
        grid = _grid()
        aligner = GeoAligner(GapDetectionConfig(buffer_distance=0.0))
        far = aligner.prepare_boundary(_plots(box(0, 0, 10, 10)), CRS_UTM)
        with pytest.raises(AlignmentError, match="does not overlap"):
            aligner.clip(_ramp(grid), far)

    def test_raster_without_crs_raises(self) -> None:
        grid = _grid()
        raster = GeoRaster(np.zeros(grid.shape, dtype=np.float32), grid.transform, None)
        boundary = GeoAligner().prepare_boundary(_full_plot(grid), CRS_UTM)
        with pytest.raises(AlignmentError, match="no CRS"):
            GeoAligner().clip(raster, boundary)

    def test_clip_file_reads_window(self, tmp_path: Path) -> None:
        grid = _grid(height=60, width=60)
        source = _ramp(grid)
        path = tmp_path / "dsm.tif"
        with rasterio.open(
            path, "w", driver="GTiff", height=60, width=60, count=1,
            dtype="float32", crs=CRS_UTM, transform=grid.transform,
        ) as dst:
            dst.write(source.data, 1)

        aligner = GeoAligner(GapDetectionConfig(buffer_distance=0.0))
        boundary = aligner.prepare_boundary(
            _plots(box(X0 + 10, Y0 - 30, X0 + 30, Y0 - 10)), CRS_UTM
        )
        clipped = aligner.clip_file(path, boundary, name="older_dem")
        assert clipped.shape == (20, 20)
        assert clipped.name == "older_dem_clipped"
        assert clipped.data[0, 0] == pytest.approx(source.data[10, 10])


# ---------------------------------------------------------------------------
# Resample / align
# ---------------------------------------------------------------------------


class TestResample:
    def test_alignment_invariant(self) -> None:
        """Any input grid ends up on exactly the reference grid."""
        reference = _grid(height=30, width=30, res=1.0)
        coarse = _grid(height=20, width=20, res=2.0, x0=X0 - 3.3, y0=Y0 + 2.7)
        aligner = GeoAligner(GapDetectionConfig(buffer_distance=0.0))
        boundary = aligner.prepare_boundary(_full_plot(reference), CRS_UTM)

        result = aligner.align(_ramp(coarse, "older_dem"), reference, boundary)
        assert result.aligned.is_aligned_with(reference)
        assert result.aligned.shape == reference.shape
        assert result.aligned.name == "older_dem_aligned"
        assert result.aligned.valid_mask.mean() > 0.8

    def test_bilinear_preserves_plane(self) -> None:
        reference = _grid(height=20, width=20, res=1.0)
        fine = _grid(height=80, width=80, res=0.5, x0=X0 - 10, y0=Y0 + 10)
        _, cols = np.mgrid[0:80, 0:80]
        x = X0 - 10 + 0.5 * (cols + 0.5)
        plane = GeoRaster((0.2 * (x - X0)).astype(np.float32), fine.transform, CRS_UTM)

        out = GeoAligner().resample(plane, reference)
        centres = 0.2 * (np.arange(20) + 0.5)
        np.testing.assert_allclose(out.data[10], centres, atol=1e-3)

    def test_shared_lattice_copies_cells(self) -> None:
        reference = _grid(height=30, width=30)
        offset = _grid(height=10, width=10, x0=X0 + 5, y0=Y0 - 7)
        source = _ramp(offset)
        out = GeoAligner().resample(source, reference)

        np.testing.assert_array_equal(out.data[7:17, 5:15], source.data)
        assert np.isnan(out.data[0, 0])
        assert out.valid_mask.sum() == 100

    def test_crs_reprojection(self) -> None:
        geo_transform = from_origin(-81.0, 36.2, 0.001, 0.001)
        geo = GeoRaster(
            np.full((1000, 1000), 5.0, dtype=np.float32), geo_transform, CRS.from_epsg(4326)
        )
        # Reference placed inside the geographic raster's footprint.
        inside = gpd.GeoSeries.from_xy([-80.5], [35.7], crs="EPSG:4326").to_crs(CRS_UTM.to_wkt())
        ref = RasterGrid(
            from_origin(round(inside.x.iloc[0]), round(inside.y.iloc[0]), 1, 1), CRS_UTM, 20, 20
        )
        out = GeoAligner().resample(geo, ref)
        assert out.is_aligned_with(ref)
        assert np.allclose(out.data, 5.0)

    def test_tiled_equals_untiled(self) -> None:
        reference = _grid(height=37, width=25)
        coarse = _grid(height=25, width=20, res=1.7, x0=X0 - 2.1, y0=Y0 + 1.3)
        source = _ramp(coarse)
        whole = GeoAligner(GapDetectionConfig(tile_rows=None)).resample(source, reference)
        tiled = GeoAligner(GapDetectionConfig(tile_rows=8)).resample(source, reference)
        np.testing.assert_allclose(tiled.data, whole.data, atol=1e-4, equal_nan=True)

    def test_disjoint_source_raises(self) -> None:
        reference = _grid()
        far = _grid(x0=X0 + 10_000)
        with pytest.raises(AlignmentError, match="no-data"):
            GeoAligner().resample(_ramp(far), reference)

    def test_already_aligned_is_copied(self) -> None:
        reference = _grid()
        source = _ramp(reference)
        out = GeoAligner().resample(source, reference)
        np.testing.assert_array_equal(out.data, source.data)
        assert out.data is not source.data
