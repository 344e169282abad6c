"""
Canopy Gap Detector — Configuration
====================================
One immutable configuration object shared by every pipeline stage, the
JSON loader that builds it, and the table of artifact paths written by a
run.

Example JSON config::

    {
        "buffer_distance": 25,
        "focal_window": 99,
        "height_threshold": -5,
        "min_gap_area": 5,
        "min_area_perimeter_ratio": 0.6,
        "tile_rows": 512,
        "workers": 4
    }
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Iterator

from shared.python.exceptions import InputValidationError
from shared.python.validators import Validators


# ---------------------------------------------------------------------------
# Detection parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GapDetectionConfig:
    """Scalar parameters of the gap detection pipeline.

    Values are checked on construction, so an instance is always usable.

    Attributes:
        buffer_distance: Outward buffer applied to the plot boundary, in
                         map units of the reference CRS.
        focal_window: Side length W (cells, odd) of the focal median
                      window used for detrending.
        height_threshold: Height change T (negative, metres).  Cells with
                          a detrended difference below T are gap candidates.
        min_gap_area: Minimum retained gap area (m²), inclusive.
        min_area_perimeter_ratio: Minimum retained area/perimeter ratio
                                  (m), inclusive.
        focal_min_valid: Valid cells a focal window must contain for the
                         median to be defined.
        tile_rows: Row-tile height for resampling and focal filtering.
                   ``None`` processes the whole grid at once.
        workers: Threads used for focal median tiles.
        band: 1-based band read from both DSM rasters.
    """

    buffer_distance: float = 25.0
    focal_window: int = 99
    height_threshold: float = -5.0
    min_gap_area: float = 5.0
    min_area_perimeter_ratio: float = 0.6
    focal_min_valid: int = 1
    tile_rows: int | None = None
    workers: int = 1
    band: int = 1

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check every parameter.

        Raises:
            InputValidationError: On the first invalid value.
        """
        Validators.assert_odd_window(self.focal_window, "focal_window")
        for name in ("focal_min_valid", "workers", "band"):
            _require_int(name, getattr(self, name))
        if self.tile_rows is not None:
            _require_int("tile_rows", self.tile_rows)

        _require(self.buffer_distance >= 0, "buffer_distance", self.buffer_distance, ">= 0")
        _require(self.height_threshold < 0, "height_threshold", self.height_threshold, "< 0 (a height loss)")
        _require(self.min_gap_area >= 0, "min_gap_area", self.min_gap_area, ">= 0")
        _require(
            self.min_area_perimeter_ratio >= 0,
            "min_area_perimeter_ratio", self.min_area_perimeter_ratio, ">= 0",
        )
        _require(
            1 <= self.focal_min_valid <= self.focal_window ** 2,
            "focal_min_valid", self.focal_min_valid, f"between 1 and {self.focal_window ** 2}",
        )
        _require(self.tile_rows is None or self.tile_rows >= 1, "tile_rows", self.tile_rows, ">= 1 or null")
        _require(self.workers >= 1, "workers", self.workers, ">= 1")
        _require(self.band >= 1, "band", self.band, ">= 1")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _require(condition: bool, name: str, value: object, expectation: str) -> None:
    if not condition:
        raise InputValidationError(f"'{name}' must be {expectation}, got {value!r}.")


def _require_int(name: str, value: object) -> None:
    # bool is an int subclass; JSON true/false must not pass as 1/0.
    _require(isinstance(value, int) and not isinstance(value, bool), name, value, "an integer")


# ---------------------------------------------------------------------------
# Config parser
# ---------------------------------------------------------------------------


def load_config(config_path: Path) -> GapDetectionConfig:
    """Parse a JSON configuration file into a :class:`GapDetectionConfig`.

    Keys that are absent keep their defaults.

    Args:
        config_path: Path to the JSON config file.

    Returns:
        A validated ``GapDetectionConfig``.

    Raises:
        InputValidationError: If the file cannot be read or parsed, holds
            unknown keys, or any value is invalid.
    """
    try:
        raw = json.loads(Path(config_path).read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise InputValidationError(
            f"Failed to read config file '{config_path}': {exc}"
        ) from exc

    if not isinstance(raw, dict):
        raise InputValidationError(
            f"Config file '{config_path}' must contain a JSON object."
        )

    known = {f.name for f in fields(GapDetectionConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise InputValidationError(
            f"Unknown config key(s) in '{config_path}': {', '.join(unknown)}. "
            f"Valid keys: {', '.join(sorted(known))}"
        )

    try:
        return GapDetectionConfig(**raw)
    except TypeError as exc:
        raise InputValidationError(f"Invalid config value in '{config_path}': {exc}") from exc


# ---------------------------------------------------------------------------
# Output artifact table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputPaths:
    """File paths of every artifact written by one pipeline run.

    Build with :meth:`under` rather than directly.
    """

    clipped_older: Path
    clipped_newer: Path
    aligned_older: Path
    aligned_newer: Path
    difference: Path
    focal_median: Path
    flat_difference: Path
    threshold_mask: Path
    patches: Path
    raw_gaps: Path
    selected_gaps: Path
    summary: Path

    @classmethod
    def under(cls, output_dir: Path, height_threshold: float) -> OutputPaths:
        """Return the standard artifact names inside *output_dir*."""
        out = Path(output_dir)
        return cls(
            clipped_older=out / "01_older_dem_clipped.tif",
            clipped_newer=out / "01b_newer_dem_clipped.tif",
            aligned_older=out / "02_older_dem_aligned.tif",
            aligned_newer=out / "02b_newer_dem_aligned.tif",
            difference=out / "03_dem_diff_newer_minus_older.tif",
            focal_median=out / "04_diff_median_focal.tif",
            flat_difference=out / "05_flat_difference.tif",
            threshold_mask=out / f"06_mask_lt_{abs(height_threshold):g}m.tif",
            patches=out / "06b_patches.tif",
            raw_gaps=out / "07_raw_gaps.gpkg",
            selected_gaps=out / "08_selected_gaps.gpkg",
            summary=out / "summary.json",
        )

    def items(self) -> Iterator[tuple[str, Path]]:
        for f in fields(self):
            yield f.name, getattr(self, f.name)
