"""
Canopy Gaps — Shared Input Validators
======================================
Static utility methods used across the canopy gap tools to validate common
preconditions before processing begins.

All methods raise an appropriate exception from
:mod:`shared.python.exceptions` rather than returning booleans — this
makes ``validate_inputs`` implementations in each tool simple and
readable::

    class MyTool(GeoTool):
        def validate_inputs(self) -> None:
            Validators.assert_file_exists(self.input_path)
            Validators.assert_supported_extension(self.input_path, [".tif"])
            Validators.assert_output_dir_writable(self.output_path)
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from shared.python.exceptions import (
    BandIndexError,
    InputValidationError,
    OutputWriteError,
)


class Validators:
    """Collection of static precondition checks shared across all tools.

    All methods are ``@staticmethod`` — this class is never instantiated.
    It exists purely as a logical namespace.
    """

    # ------------------------------------------------------------------
    # File-system checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_file_exists(path: Path) -> None:
        """Assert that *path* points to an existing file or dataset.

        Directory-based datasets (an Esri FileGDB ``.gdb`` folder) are
        accepted because GDAL/OGR open them as a single source.

        Args:
            path: Path object to check.

        Raises:
            InputValidationError: If *path* does not exist, or is a plain
                directory rather than a file-like dataset.

        Example::

            Validators.assert_file_exists(Path("data/older_dsm.tif"))
        """
        path = Path(path)
        if not path.exists():
            raise InputValidationError(
                f"Input file not found: '{path}'. "
                "Check that the path is correct and the file exists."
            )
        if path.is_dir() and path.suffix.lower() != ".gdb":
            raise InputValidationError(
                f"Expected a file but got a directory: '{path}'."
            )

    @staticmethod
    def assert_output_dir_writable(output_dir: Path) -> None:
        """Assert that *output_dir* exists (creating it if needed).

        Creates the directory (and any missing parents) so authors never
        have to pre-create output dirs.

        Args:
            output_dir: Directory that will receive the run's artifacts.

        Raises:
            OutputWriteError: If the directory cannot be created.
        """
        output_dir = Path(output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(str(output_dir), str(exc)) from exc

    @staticmethod
    def assert_supported_extension(path: Path, extensions: Sequence[str]) -> None:
        """Assert that *path* has one of the allowed file extensions.

        Args:
            path: File path to check.
            extensions: Sequence of allowed extensions, each starting with
                        a dot (e.g. ``[".shp", ".geojson", ".gpkg"]``).

        Raises:
            InputValidationError: If the file extension is not in
                *extensions*.

        Example::

            Validators.assert_supported_extension(
                Path("data/plot.gpkg"),
                [".shp", ".geojson", ".gpkg"],
            )
        """
        path = Path(path)
        suffix = path.suffix.lower()
        allowed = [ext.lower() for ext in extensions]
        if suffix not in allowed:
            raise InputValidationError(
                f"Unsupported file extension '{suffix}' for '{path.name}'. "
                f"Accepted extensions: {', '.join(allowed)}"
            )

    # ------------------------------------------------------------------
    # Raster checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_band_index_valid(band_index: int, total_bands: int) -> None:
        """Assert that *band_index* is within the valid range for a raster.

        Args:
            band_index: 1-based band index requested by the user.
            total_bands: Total number of bands in the raster file.

        Raises:
            BandIndexError: If *band_index* is less than 1 or exceeds
                *total_bands*.

        Example::

            Validators.assert_band_index_valid(band_index=1, total_bands=1)
        """
        if band_index < 1 or band_index > total_bands:
            raise BandIndexError(band_index, total_bands)

    # ------------------------------------------------------------------
    # Numeric parameter checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_odd_window(size: int, name: str = "window") -> None:
        """Assert that *size* is a positive odd integer.

        Square focal windows must be centred on a cell, which requires an
        odd side length.

        Raises:
            InputValidationError: If *size* is even, zero, or negative.
        """
        if not isinstance(size, int) or isinstance(size, bool) or size < 1 or size % 2 == 0:
            raise InputValidationError(
                f"'{name}' must be a positive odd integer, got {size!r}."
            )
