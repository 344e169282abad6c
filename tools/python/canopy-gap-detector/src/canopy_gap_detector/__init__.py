"""
canopy_gap_detector
===================
Detects canopy gaps (localised loss of canopy height) between two
digital surface models of the same forest plot.

Six stages run in order, each producing an immutable artifact:

    GeoAligner → Detrender → Thresholder → PatchLabeler → Polygonizer → GeometricFilter

Submodules
----------
raster            -- GeoRaster / RasterGrid values and rasterio I/O
config            -- GapDetectionConfig, JSON loader, output file names
aligner           -- Clip to the buffered plot and resample onto the reference grid
detrender         -- Surface difference minus its focal median
thresholder       -- Binary gap mask below the height threshold
labeler           -- 8-connected patch labelling (union-find)
polygonizer       -- Patch raster → dissolved, valid polygons
geometric_filter  -- Area and area/perimeter filtering
pipeline          -- GapDetector (in memory) and CanopyGapPipeline (files)
cli               -- ``geo-canopy-gaps`` command
"""

from .aligner import GeoAligner
from .config import GapDetectionConfig, load_config
from .detrender import Detrender
from .geometric_filter import GeometricFilter
from .labeler import PatchLabeler
from .pipeline import CanopyGapPipeline, GapDetector
from .polygonizer import Polygonizer
from .raster import GeoRaster, RasterGrid
from .thresholder import Thresholder

__version__ = "1.0.0"
__all__ = [
    "GeoRaster",
    "RasterGrid",
    "GapDetectionConfig",
    "load_config",
    "GeoAligner",
    "Detrender",
    "Thresholder",
    "PatchLabeler",
    "Polygonizer",
    "GeometricFilter",
    "GapDetector",
    "CanopyGapPipeline",
]
