"""
Canopy Gaps — Custom Exception Hierarchy
=========================================
Every canopy gap tool raises exceptions from this module so callers can
catch them at the right level of granularity.

Hierarchy::

    CanopyGapError                       ← catch-all base
    ├── InputValidationError             ← bad files, bad config values
    ├── RasterError                      ← rasterio / numpy raster issues
    │   └── BandIndexError               ← requested band does not exist
    ├── OutputWriteError                 ← cannot write to output path
    └── StageError                       ← a pipeline stage failed
        ├── AlignmentError               ← no overlap / irreconcilable grids
        ├── InputReadError               ← malformed or unreadable source
        ├── GeometryRepairFailure        ← dissolved polygon stays invalid
        └── InsufficientDataError        ← statistic has no valid cells

Usage::

    from shared.python.exceptions import AlignmentError

    raise AlignmentError("GeoAligner", "older_dem", "no overlap with plot")
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class CanopyGapError(Exception):
    """Base exception for all canopy gap tools.

    Catch this to handle any tool-specific error without caring about
    the exact subtype.

    Args:
        message: Human-readable description of the error.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InputValidationError(CanopyGapError):
    """Raised when a tool's inputs or configuration fail validation."""


# ---------------------------------------------------------------------------
# Raster
# ---------------------------------------------------------------------------


class RasterError(CanopyGapError):
    """Raised for general raster processing failures (rasterio / numpy).

    Subclass this for more specific raster errors.
    """


class BandIndexError(RasterError):
    """Raised when a requested raster band index does not exist.

    Args:
        band_index: The 1-based band number that was requested.
        total_bands: Total number of bands in the raster file.

    Example::

        raise BandIndexError(band_index=2, total_bands=1)
    """

    def __init__(self, band_index: int, total_bands: int) -> None:
        super().__init__(
            f"Band {band_index} does not exist. "
            f"This raster has {total_bands} band(s) (1-indexed)."
        )
        self.band_index: int = band_index
        self.total_bands: int = total_bands


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class OutputWriteError(CanopyGapError):
    """Raised when the tool cannot write an artifact to disk.

    Args:
        output_path: String representation of the path that failed.
        reason: Underlying OS or library error message.

    Example::

        raise OutputWriteError("/read-only/dir/gaps.gpkg", "Permission denied")
    """

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to write output to '{output_path}': {reason}"
        )
        self.output_path: str = output_path
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


class StageError(CanopyGapError):
    """Raised when a detection pipeline stage cannot produce its artifact.

    Every stage error names the stage that failed and the artifact it was
    working on, so a failed run can be traced without a debugger.

    Args:
        stage: Name of the failing stage (e.g. ``"GeoAligner"``).
        artifact: Identity of the artifact being produced or consumed
                  (e.g. ``"older_dem"`` or a file path).
        reason: Short explanation of the failure.

    Example::

        raise InsufficientDataError("Detrender", "focal_median", "no valid cells")
    """

    def __init__(self, stage: str, artifact: str, reason: str) -> None:
        super().__init__(f"[{stage}] {artifact}: {reason}")
        self.stage: str = stage
        self.artifact: str = artifact
        self.reason: str = reason


class AlignmentError(StageError):
    """Raised when a raster cannot be placed on the reference grid.

    Common causes: no spatial overlap with the target extent, a missing
    CRS, or an aligned output that is entirely no-data.
    """


class InputReadError(StageError):
    """Raised when a raster or vector source is malformed or unreadable."""


class GeometryRepairFailure(StageError):
    """Raised when a dissolved polygon cannot be made valid."""


class InsufficientDataError(StageError):
    """Raised when a statistic has no valid input cells anywhere.

    For example a focal median whose every window is empty, which would
    otherwise yield an entirely no-data raster.
    """
