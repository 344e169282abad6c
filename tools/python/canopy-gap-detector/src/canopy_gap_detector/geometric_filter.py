"""
Canopy Gap Detector — GeometricFilter
======================================
Measures each candidate gap polygon and keeps only plausible gap shapes.

Per feature:

    area_m2           planar area in CRS units²
    perimeter_m       length of the polygon boundary (exterior + interior
                      rings, measured as lines)
    area_perim_ratio  area_m2 / perimeter_m — compact blobs score high,
                      thin slivers score low

A feature is retained when ``area_m2 >= min_gap_area`` and
``area_perim_ratio >= min_area_perimeter_ratio`` (both inclusive).  Small
patches are usually sensor noise; slivers are usually misalignment.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

import geopandas as gpd
import numpy as np

from .config import GapDetectionConfig

logger = logging.getLogger("canopygaps.geometric_filter")


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GapSummary:
    """Counts and area of one filtering run.

    ``candidate_count`` is taken before filtering and ``retained_count``
    after it, each from its own layer.

    Attributes:
        candidate_count: Polygons entering the filter.
        retained_count: Polygons passing both thresholds.
        retained_area_m2: Total area of retained polygons.
        min_area: Area threshold used.
        min_ratio: Area/perimeter threshold used.
    """

    candidate_count: int
    retained_count: int
    retained_area_m2: float
    min_area: float
    min_ratio: float

    @property
    def rejected_count(self) -> int:
        return self.candidate_count - self.retained_count

    def to_dict(self) -> dict[str, float | int]:
        return {**asdict(self), "rejected_count": self.rejected_count}

    def __str__(self) -> str:
        return (
            f"Candidate gaps: {self.candidate_count:,} | "
            f"Selected (area >= {self.min_area:g} m², ratio >= {self.min_ratio:g}): "
            f"{self.retained_count:,} | Rejected: {self.rejected_count:,} | "
            f"Total gap area: {self.retained_area_m2:,.1f} m²"
        )


@dataclass(frozen=True)
class FilterResult:
    """Measured candidates, the retained subset, and the summary."""

    candidates: gpd.GeoDataFrame
    retained: gpd.GeoDataFrame
    summary: GapSummary


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class GeometricFilter:
    """Filter gap polygons by minimum area and compactness.

    Args:
        config: Pipeline configuration (``min_gap_area`` and
                ``min_area_perimeter_ratio``).
    """

    def __init__(self, config: GapDetectionConfig | None = None) -> None:
        self.config = config or GapDetectionConfig()

    @staticmethod
    def measure(layer: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Return a copy of *layer* with area, perimeter, and ratio columns."""
        if layer.crs is not None and layer.crs.is_geographic:
            logger.warning(
                "Layer CRS %s is geographic — areas and perimeters are in degrees, "
                "not metres. Use a projected reference raster.",
                layer.crs.name,
            )
        measured = layer.copy()
        area = layer.geometry.area.to_numpy(dtype=np.float64)
        perimeter = layer.geometry.boundary.length.to_numpy(dtype=np.float64)
        with np.errstate(invalid="ignore", divide="ignore"):
            ratio = np.where(perimeter > 0, area / perimeter, 0.0)
        measured["area_m2"] = area
        measured["perimeter_m"] = perimeter
        measured["area_perim_ratio"] = ratio
        return measured

    def apply(self, layer: gpd.GeoDataFrame) -> FilterResult:
        """Measure *layer* and keep features meeting both thresholds."""
        cfg = self.config
        candidates = self.measure(layer)
        candidate_count = len(layer)

        keep = (candidates["area_m2"] >= cfg.min_gap_area) & (
            candidates["area_perim_ratio"] >= cfg.min_area_perimeter_ratio
        )
        retained = candidates.loc[keep].reset_index(drop=True)

        summary = GapSummary(
            candidate_count=candidate_count,
            retained_count=len(retained),
            retained_area_m2=float(retained["area_m2"].sum()) if len(retained) else 0.0,
            min_area=cfg.min_gap_area,
            min_ratio=cfg.min_area_perimeter_ratio,
        )
        logger.info("%s", summary)
        return FilterResult(candidates, retained, summary)
