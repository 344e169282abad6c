"""
Canopy Gap Detector — CLI Entry Point
======================================
Installed as the ``geo-canopy-gaps`` command via ``pyproject.toml``.

Usage:
    geo-canopy-gaps --older dsm_0831.tif --newer dsm_0928.tif \\
        --plot plot.gpkg --reference ref_1m.tif --output output/

    geo-canopy-gaps --older a.tif --newer b.tif --plot plot.shp \\
        --reference ref.tif --output out/ --config gaps.json --threshold -4 --workers 4
"""

from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import click

from shared.python.exceptions import CanopyGapError

from .config import GapDetectionConfig, load_config
from .pipeline import CanopyGapPipeline

_existing = click.Path(exists=True, path_type=Path)


@click.command(
    name="geo-canopy-gaps",
    help="Detect canopy gaps from two surface models of the same forest plot.",
)
@click.option("--older", "older_path", required=True, type=_existing,
              help="Older DSM raster (before).")
@click.option("--newer", "newer_path", required=True, type=_existing,
              help="Newer DSM raster (after).")
@click.option("--plot", "plot_path", required=True, type=_existing,
              help="Plot boundary vector (Shapefile, GeoPackage, GeoJSON, .gdb).")
@click.option("--reference", "reference_path", required=True, type=_existing,
              help="Raster whose CRS and pixel grid every output uses.")
@click.option("--output", "-o", "output_dir", required=True,
              type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
              help="Directory for all intermediate and final outputs.")
@click.option("--config", "config_path", default=None,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="JSON config file.  Flags below override its values.")
@click.option("--window", type=int, default=None,
              help="Focal median window size in cells (odd).  [default: 99]")
@click.option("--threshold", type=float, default=None,
              help="Height change threshold in metres (negative).  [default: -5]")
@click.option("--min-area", type=float, default=None,
              help="Minimum gap area in m².  [default: 5]")
@click.option("--min-ratio", type=float, default=None,
              help="Minimum area/perimeter ratio.  [default: 0.6]")
@click.option("--buffer", type=float, default=None,
              help="Plot boundary buffer in map units.  [default: 25]")
@click.option("--tile-rows", type=int, default=None,
              help="Rows per processing tile (default: whole grid).")
@click.option("--workers", type=int, default=None,
              help="Threads for focal median tiles.  [default: 1]")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def main(
    older_path: Path,
    newer_path: Path,
    plot_path: Path,
    reference_path: Path,
    output_dir: Path,
    config_path: Path | None,
    window: int | None,
    threshold: float | None,
    min_area: float | None,
    min_ratio: float | None,
    buffer: float | None,
    tile_rows: int | None,
    workers: int | None,
    verbose: bool,
) -> None:
    """CLI entry point — wires Click options into CanopyGapPipeline."""
    overrides = {
        "focal_window": window,
        "height_threshold": threshold,
        "min_gap_area": min_area,
        "min_area_perimeter_ratio": min_ratio,
        "buffer_distance": buffer,
        "tile_rows": tile_rows,
        "workers": workers,
    }

    try:
        config = load_config(config_path) if config_path else GapDetectionConfig()
        config = dataclasses.replace(
            config, **{k: v for k, v in overrides.items() if v is not None}
        )

        tool = CanopyGapPipeline(
            older_path, newer_path, plot_path, reference_path, output_dir,
            config, verbose=verbose,
        )
        tool.run()
    except CanopyGapError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)

    result = tool.result
    click.echo(f"\nOutputs written to: {output_dir}")
    click.echo(f"  Difference: {result.detrend.stats}")
    click.echo(f"  Patches:    {result.labels.count:,}")
    click.echo(f"  {result.summary}")


if __name__ == "__main__":
    main()
