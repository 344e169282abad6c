"""
Canopy Gap Detector — Thresholder
==================================
Turns the detrended difference into a binary gap-candidate mask.

Cells below the (negative) height threshold become ``1``; every other
cell is no-data (``0`` declared as the mask's no-data value), including
no-data input cells, which are never classified as gap or non-gap.
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt

from .config import GapDetectionConfig
from .raster import GeoRaster

logger = logging.getLogger("canopygaps.thresholder")

GAP = 1
MASK_NODATA = 0


def threshold_mask(values: npt.NDArray, valid: npt.NDArray[np.bool_], threshold: float) -> npt.NDArray[np.uint8]:
    """Return a uint8 array, ``GAP`` where valid and ``values < threshold``."""
    with np.errstate(invalid="ignore"):
        selected = valid & (values < threshold)
    return np.where(selected, GAP, MASK_NODATA).astype(np.uint8)


class Thresholder:
    """Select cells whose detrended height change is below the threshold.

    Args:
        config: Pipeline configuration (``height_threshold`` is used).
    """

    def __init__(self, config: GapDetectionConfig | None = None) -> None:
        self.config = config or GapDetectionConfig()

    def apply(self, flat: GeoRaster) -> GeoRaster:
        """Build the gap mask for *flat*.

        An empty mask is a legal result (no loss below the threshold); it
        is logged as a warning rather than raised.
        """
        threshold = self.config.height_threshold
        mask = threshold_mask(flat.data, flat.valid_mask, threshold)
        selected = int(np.count_nonzero(mask))
        if selected:
            logger.info("Threshold %.2f m selected %d cell(s)", threshold, selected)
        else:
            logger.warning("Threshold %.2f m selected no cells — mask is empty", threshold)
        return flat.derive(mask, f"mask_lt_{abs(threshold):g}m", nodata=MASK_NODATA)
