"""
Canopy Gaps — Shared Base Tool
===============================
Abstract base class for file-driven canopy gap tools.

Design Pattern:
    Template Method — :meth:`GeoTool.run` fixes the order
    validate → process → report; subclasses supply ``validate_inputs``
    and ``process``.

Usage::

    from shared.python.base_tool import GeoTool

    class MyTool(GeoTool):
        def validate_inputs(self) -> None:
            ...
        def process(self) -> None:
            ...
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

from shared.python.exceptions import CanopyGapError

# Root logger for every tool; modules log to "canopygaps.<module>".
logger = logging.getLogger("canopygaps")

_LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s — %(message)s"


class GeoTool(ABC):
    """Base class for tools that read geodata files and write artifacts.

    Attributes:
        input_path: Primary input file.
        output_path: File or directory receiving the output.
        verbose: Log DEBUG messages when ``True``.

    Example::

        tool = CanopyGapPipeline(
            older_path=Path("dsm_2021-08-31.tif"),
            newer_path=Path("dsm_2021-09-28.tif"),
            plot_path=Path("plot.gpkg"),
            reference_path=Path("reference_1m.tif"),
            output_dir=Path("output"),
        )
        tool.run()
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        *,
        verbose: bool = False,
    ) -> None:
        self.input_path: Path = Path(input_path)
        self.output_path: Path = Path(output_path)
        self.verbose: bool = verbose
        self.elapsed: float | None = None

        self._configure_logging()

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    def validate_inputs(self) -> None:
        """Check preconditions; raise ``InputValidationError`` on failure."""

    @abstractmethod
    def process(self) -> None:
        """Do the work.  Called only after :meth:`validate_inputs` passed."""

    # ------------------------------------------------------------------
    # Template method
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Validate, process, and report.

        A :class:`~shared.python.exceptions.CanopyGapError` is logged at
        ERROR level with the tool name and then re-raised unchanged.

        Raises:
            CanopyGapError: From ``validate_inputs`` or ``process``.
        """
        name = self.__class__.__name__
        logger.info("Starting %s", name)
        start = time.perf_counter()

        try:
            self.validate_inputs()
            self.process()
        except CanopyGapError as exc:
            logger.error("%s failed after %.2fs: %s", name, time.perf_counter() - start, exc.message)
            raise

        self.elapsed = time.perf_counter() - start
        self._report_success(self.elapsed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _report_success(self, elapsed: float) -> None:
        logger.info(
            "%s completed in %.2fs → %s",
            self.__class__.__name__,
            elapsed,
            self.output_path,
        )

    def _configure_logging(self) -> None:
        """Attach one console handler to ``canopygaps`` and set the level."""
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt="%H:%M:%S"))
            logger.addHandler(handler)

        logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"input_path={self.input_path!r}, "
            f"output_path={self.output_path!r})"
        )
