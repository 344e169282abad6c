"""
Canopy Gap Detector — Polygonizer
==================================
Converts labelled patches into a polygon layer with one (multi)polygon
per patch label.

``rasterio.features.shapes`` traces 4-connected runs of equal labels, so
an 8-connected patch that touches itself only at a corner arrives as
several shapes; these are dissolved by label.  Dissolved geometries that
come out invalid are repaired with ``shapely.make_valid`` before the
layer is emitted.
"""

from __future__ import annotations

import logging

import geopandas as gpd
import numpy as np
import numpy.typing as npt
from rasterio.crs import CRS
from rasterio.features import rasterize, shapes
from shapely import make_valid
from shapely.geometry import MultiPolygon, Polygon, shape
from shapely.geometry.base import BaseGeometry

from shared.python.exceptions import AlignmentError, GeometryRepairFailure

from .raster import GeoRaster, RasterGrid

logger = logging.getLogger("canopygaps.polygonizer")

STAGE = "Polygonizer"

LABEL_COLUMN = "patch_id"


def _polygonal_part(geom: BaseGeometry) -> BaseGeometry:
    """Drop any point / line debris that ``make_valid`` may leave behind."""
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    polygons: list[Polygon] = []
    for part in getattr(geom, "geoms", []):
        if isinstance(part, Polygon):
            polygons.append(part)
        elif isinstance(part, MultiPolygon):
            polygons.extend(part.geoms)
    return MultiPolygon(polygons) if polygons else Polygon()


class Polygonizer:
    """Vectorise a labelled patch raster into dissolved, valid polygons."""

    def polygonize(self, patches: GeoRaster, crs: CRS | None = None) -> gpd.GeoDataFrame:
        """Return one feature per patch label.

        Args:
            patches: int32 patch raster (``0`` = no label).
            crs: CRS assigned to the layer.  Defaults to the raster's CRS;
                 coordinates are never transformed.

        Returns:
            GeoDataFrame with columns ``patch_id`` and ``geometry``, sorted
            by ``patch_id``.

        Raises:
            AlignmentError: If no CRS is available to assign.
            GeometryRepairFailure: If a dissolved polygon cannot be made valid.
        """
        target_crs = crs or patches.crs
        if target_crs is None:
            raise AlignmentError(STAGE, patches.name, "no CRS to assign to the polygon layer")
        crs_wkt = target_crs.to_wkt()

        labels = np.array(patches.data, dtype=np.int32)
        valid = patches.valid_mask
        traced = [
            (int(value), shape(geom))
            for geom, value in shapes(labels, mask=valid, transform=patches.transform)
        ]
        if not traced:
            logger.info("No patches to polygonize")
            return gpd.GeoDataFrame(
                columns=[LABEL_COLUMN, "geometry"], geometry="geometry",
            ).set_crs(crs_wkt)

        pieces = gpd.GeoDataFrame(
            {LABEL_COLUMN: [label for label, _ in traced]},
            geometry=[geom for _, geom in traced],
            crs=crs_wkt,
        )
        dissolved = pieces.dissolve(by=LABEL_COLUMN, as_index=False).sort_values(LABEL_COLUMN)
        dissolved = dissolved.reset_index(drop=True)
        dissolved["geometry"] = [
            self._repair(geom, label)
            for geom, label in zip(dissolved.geometry, dissolved[LABEL_COLUMN])
        ]
        dissolved[LABEL_COLUMN] = dissolved[LABEL_COLUMN].astype(np.int32)

        logger.info(
            "Polygonized %d patch(es) from %d traced shape(s)", len(dissolved), len(pieces)
        )
        return dissolved.set_crs(crs_wkt, allow_override=True)

    @staticmethod
    def _repair(geom: BaseGeometry, label: int) -> BaseGeometry:
        if geom.is_valid and not geom.is_empty:
            return geom
        repaired = _polygonal_part(make_valid(geom))
        if repaired.is_empty or not repaired.is_valid:
            raise GeometryRepairFailure(
                STAGE, f"patch {label}", "dissolved polygon could not be made valid"
            )
        logger.debug("Repaired invalid geometry for patch %d", label)
        return repaired


def rasterize_layer(
    layer: gpd.GeoDataFrame,
    grid: RasterGrid,
    column: str = LABEL_COLUMN,
) -> npt.NDArray[np.int32]:
    """Burn *layer* onto *grid*, writing *column* values (``0`` elsewhere).

    Cells are assigned by centre point, matching how :func:`shapes`
    traced them, so polygonize → rasterize reproduces the patch raster.
    """
    if layer.empty:
        return np.zeros(grid.shape, dtype=np.int32)
    return rasterize(
        ((geom, int(value)) for geom, value in zip(layer.geometry, layer[column])),
        out_shape=grid.shape,
        transform=grid.transform,
        fill=0,
        dtype="int32",
    )
