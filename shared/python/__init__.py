"""
Canopy Gaps — Shared Python Package
====================================
Re-exports the shared base class, exception hierarchy, and validator
utilities so individual tools can import from a single location::

    from shared.python import GeoTool, Validators
    from shared.python.exceptions import AlignmentError
"""

from shared.python.base_tool import GeoTool
from shared.python.exceptions import (
    AlignmentError,
    BandIndexError,
    CanopyGapError,
    GeometryRepairFailure,
    InputReadError,
    InputValidationError,
    InsufficientDataError,
    OutputWriteError,
    RasterError,
    StageError,
)
from shared.python.validators import Validators

__all__ = [
    "GeoTool",
    "Validators",
    "CanopyGapError",
    "InputValidationError",
    "RasterError",
    "BandIndexError",
    "OutputWriteError",
    "StageError",
    "AlignmentError",
    "InputReadError",
    "GeometryRepairFailure",
    "InsufficientDataError",
]
