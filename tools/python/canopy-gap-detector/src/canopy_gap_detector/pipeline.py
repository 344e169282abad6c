"""
Canopy Gap Detector — Pipeline Orchestrator
============================================
Runs the six detection stages in order and writes every intermediate
artifact.

    GeoAligner → Detrender → Thresholder → PatchLabeler → Polygonizer → GeometricFilter

Classes:
    DetectionResult     Every artifact of one detection run.
    GapDetector         In-memory stage runner (rasters or paths in).
    CanopyGapPipeline   File-based tool (inherits GeoTool).

Usage::

    from pathlib import Path
    from canopy_gap_detector.pipeline import CanopyGapPipeline

    tool = CanopyGapPipeline(
        older_path=Path("data/dsm_2021-08-31.tif"),
        newer_path=Path("data/dsm_2021-09-28.tif"),
        plot_path=Path("data/plot.gpkg"),
        reference_path=Path("data/reference_1m.tif"),
        output_dir=Path("output"),
    )
    tool.run()
    print(tool.result.summary)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import geopandas as gpd

from shared.python.base_tool import GeoTool
from shared.python.exceptions import OutputWriteError
from shared.python.validators import Validators

from .aligner import AlignmentResult, GeoAligner, PlotBoundary
from .config import GapDetectionConfig, OutputPaths
from .detrender import DetrendResult, Detrender
from .geometric_filter import FilterResult, GapSummary, GeometricFilter
from .labeler import LabelResult, PatchLabeler
from .polygonizer import Polygonizer
from .raster import GeoRaster, RasterGrid, read_grid, read_vector, write_raster, write_vector
from .thresholder import Thresholder

logger = logging.getLogger("canopygaps.pipeline")

RasterSource = Union[GeoRaster, Path]

RASTER_EXTENSIONS = [".tif", ".tiff", ".img", ".vrt", ".asc"]
VECTOR_EXTENSIONS = [".shp", ".gpkg", ".geojson", ".json", ".gdb"]


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectionResult:
    """Every artifact produced by one detection run, in stage order."""

    boundary: PlotBoundary
    older: AlignmentResult
    newer: AlignmentResult
    detrend: DetrendResult
    mask: GeoRaster
    labels: LabelResult
    filtered: FilterResult

    @property
    def summary(self) -> GapSummary:
        return self.filtered.summary

    @property
    def gaps(self) -> gpd.GeoDataFrame:
        """Retained gap polygons."""
        return self.filtered.retained


# ---------------------------------------------------------------------------
# Stage runner
# ---------------------------------------------------------------------------


class GapDetector:
    """Run all detection stages with one configuration.

    Args:
        config: Shared pipeline configuration.

    Example::

        detector = GapDetector(GapDetectionConfig(focal_window=51))
        result = detector.detect(older, newer, plots, reference_grid)
        result.summary.retained_count
    """

    def __init__(self, config: GapDetectionConfig | None = None) -> None:
        self.config = config or GapDetectionConfig()
        self.aligner = GeoAligner(self.config)
        self.detrender = Detrender(self.config, self.aligner)
        self.thresholder = Thresholder(self.config)
        self.labeler = PatchLabeler()
        self.polygonizer = Polygonizer()
        self.filter = GeometricFilter(self.config)

    def align(
        self,
        source: RasterSource,
        grid: RasterGrid,
        boundary: PlotBoundary,
        name: str,
    ) -> AlignmentResult:
        """Clip and resample an in-memory raster or a raster file."""
        if isinstance(source, GeoRaster):
            return self.aligner.align(source, grid, boundary)
        return self.aligner.align_file(Path(source), grid, boundary, name=name)

    def detect(
        self,
        older: RasterSource,
        newer: RasterSource,
        plots: gpd.GeoDataFrame,
        grid: RasterGrid,
    ) -> DetectionResult:
        """Run GeoAligner → … → GeometricFilter and return all artifacts.

        Args:
            older: Older surface model (raster or path).
            newer: Newer surface model (raster or path).
            plots: Plot boundary features.
            grid: Reference grid defining output CRS, resolution, and cells.
        """
        logger.info("[1/6] Aligning surfaces to the reference grid ...")
        boundary = self.aligner.prepare_boundary(plots, grid.crs)
        older_aligned = self.align(older, grid, boundary, "older_dem")
        newer_aligned = self.align(newer, grid, boundary, "newer_dem")

        logger.info("[2/6] Detrending the surface difference ...")
        detrend = self.detrender.detrend(newer_aligned.aligned, older_aligned.aligned)

        logger.info("[3/6] Thresholding at %.2f m ...", self.config.height_threshold)
        mask = self.thresholder.apply(detrend.flat)

        logger.info("[4/6] Labelling 8-connected patches ...")
        labels = self.labeler.label(mask)

        logger.info("[5/6] Polygonizing patches ...")
        polygons = self.polygonizer.polygonize(labels.patches, crs=grid.crs)

        logger.info("[6/6] Filtering gaps by area and shape ...")
        filtered = self.filter.apply(polygons)

        return DetectionResult(
            boundary=boundary,
            older=older_aligned,
            newer=newer_aligned,
            detrend=detrend,
            mask=mask,
            labels=labels,
            filtered=filtered,
        )


# ---------------------------------------------------------------------------
# File-based tool
# ---------------------------------------------------------------------------


class CanopyGapPipeline(GeoTool):
    """Detect canopy gaps between two surface model files.

    Inherits the Template Method pipeline from :class:`~shared.python.GeoTool`.
    Every intermediate artifact is written to ``output_dir`` under the
    names in :class:`OutputPaths`, plus a ``summary.json``.

    Args:
        older_path: Older DSM raster.
        newer_path: Newer DSM raster.
        plot_path: Plot boundary vector file.
        reference_path: Raster defining the output CRS and pixel grid.
        output_dir: Directory for all artifacts (created if absent).
        config: Detection parameters; defaults to :class:`GapDetectionConfig`.
        verbose: Enable DEBUG-level logging.

    Note:
        The ``input_path`` inherited from ``GeoTool`` is the older DSM.
    """

    def __init__(
        self,
        older_path: Path,
        newer_path: Path,
        plot_path: Path,
        reference_path: Path,
        output_dir: Path,
        config: GapDetectionConfig | None = None,
        *,
        verbose: bool = False,
    ) -> None:
        super().__init__(Path(older_path), Path(output_dir), verbose=verbose)
        self.older_path = Path(older_path)
        self.newer_path = Path(newer_path)
        self.plot_path = Path(plot_path)
        self.reference_path = Path(reference_path)
        self.output_dir = Path(output_dir)
        self.config = config or GapDetectionConfig()
        self.paths = OutputPaths.under(self.output_dir, self.config.height_threshold)
        self._result: DetectionResult | None = None

    # ------------------------------------------------------------------
    # GeoTool abstract method implementations
    # ------------------------------------------------------------------

    def validate_inputs(self) -> None:
        """Check that every input exists with a supported extension.

        Raises:
            InputValidationError: If a file is missing or has an
                unsupported extension.
            OutputWriteError: If the output directory cannot be created.
        """
        for path in (self.older_path, self.newer_path, self.reference_path):
            Validators.assert_file_exists(path)
            Validators.assert_supported_extension(path, RASTER_EXTENSIONS)
        Validators.assert_file_exists(self.plot_path)
        Validators.assert_supported_extension(self.plot_path, VECTOR_EXTENSIONS)
        Validators.assert_output_dir_writable(self.output_dir)
        logger.debug("Inputs validated; config=%s", self.config)

    def process(self) -> None:
        """Run detection and write every artifact.

        Raises:
            StageError: If any stage fails (see the stage's documentation).
            OutputWriteError: If an artifact cannot be written.
        """
        grid = read_grid(self.reference_path)
        plots = read_vector(self.plot_path, "plot_boundary")

        result = GapDetector(self.config).detect(self.older_path, self.newer_path, plots, grid)
        self._write_artifacts(result)
        self._result = result

        logger.info("%s", result.summary)
        logger.info("Final selected gaps: %s", self.paths.selected_gaps)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _write_artifacts(self, result: DetectionResult) -> None:
        p = self.paths
        rasters = [
            (result.older.clipped, p.clipped_older),
            (result.newer.clipped, p.clipped_newer),
            (result.older.aligned, p.aligned_older),
            (result.newer.aligned, p.aligned_newer),
            (result.detrend.difference, p.difference),
            (result.detrend.focal_median, p.focal_median),
            (result.detrend.flat, p.flat_difference),
            (result.mask, p.threshold_mask),
            (result.labels.patches, p.patches),
        ]
        for raster, path in rasters:
            write_raster(raster, path)

        raw_written = write_vector(result.filtered.candidates, p.raw_gaps)
        selected_written = write_vector(result.filtered.retained, p.selected_gaps)
        self._write_summary(result, raw_written, selected_written)

    def _write_summary(
        self,
        result: DetectionResult,
        raw_written: Path | None,
        selected_written: Path | None,
    ) -> None:
        artifacts = {name: str(path) for name, path in self.paths.items()}
        artifacts["raw_gaps"] = str(raw_written) if raw_written else None
        artifacts["selected_gaps"] = str(selected_written) if selected_written else None

        document = {
            "inputs": {
                "older": str(self.older_path),
                "newer": str(self.newer_path),
                "plot": str(self.plot_path),
                "reference": str(self.reference_path),
            },
            "config": self.config.to_dict(),
            "difference_stats": result.detrend.stats.to_dict(),
            "patch_count": result.labels.count,
            "gaps": result.summary.to_dict(),
            "artifacts": artifacts,
        }
        try:
            with open(self.paths.summary, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2, default=str)
        except OSError as exc:
            raise OutputWriteError(str(self.paths.summary), str(exc)) from exc

    @property
    def result(self) -> DetectionResult | None:
        """:class:`DetectionResult` from the last run, or ``None``."""
        return self._result
