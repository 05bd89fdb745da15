"""
Canopy LSM — Tool Base Class
============================
Both runnable tools (the production metric run and the calibration fit)
share one life cycle: check everything that can be checked up front, do the
work, then report.  :class:`GeoTool` fixes that order in :meth:`run`;
subclasses supply :meth:`validate_inputs` and :meth:`process`.

A tool whose configuration is invalid therefore fails before any window is
computed or any stand simulated::

    from shared.python.base_tool import GeoTool

    class FitTool(GeoTool):
        def validate_inputs(self) -> None:
            self.config.validate()
        def process(self) -> None:
            ...
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

from shared.python.exceptions import CanopyLSMError

# Parent of every "canopylsm.<module>" logger in the package.
logger = logging.getLogger("canopylsm")

_LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


class GeoTool(ABC):
    """Validate-then-process base class.

    Attributes:
        input_path: Primary input file, or ``None`` for tools that generate
            their own input (such as the calibration fit).
        output_path: File or directory the tool writes.
        verbose: Log at DEBUG instead of INFO.
        timings: Seconds spent in each phase of the last :meth:`run`,
            keyed ``"validate"`` and ``"process"``.
    """

    def __init__(
        self,
        input_path: Path | None,
        output_path: Path,
        *,
        verbose: bool = False,
    ) -> None:
        self.input_path: Path | None = Path(input_path) if input_path is not None else None
        self.output_path: Path = Path(output_path)
        self.verbose: bool = verbose
        self.timings: dict[str, float] = {}

        self._configure_logging()

    @abstractmethod
    def validate_inputs(self) -> None:
        """Raise a :class:`~shared.python.exceptions.CanopyLSMError` subclass
        if any input or option is unusable."""

    @abstractmethod
    def process(self) -> None:
        """Do the work.  Only called after :meth:`validate_inputs` passed."""

    def run(self) -> None:
        """Validate, process, report.

        Project errors are logged with the failing phase and re-raised
        unchanged.
        """
        name = self.__class__.__name__
        logger.info("Starting %s", name)
        self.timings = {}
        for phase, step in (("validate", self.validate_inputs), ("process", self.process)):
            start = time.perf_counter()
            try:
                step()
            except CanopyLSMError as exc:
                logger.error("%s failed during %s: %s", name, phase, exc.message)
                raise
            finally:
                self.timings[phase] = time.perf_counter() - start
        self._report_success(sum(self.timings.values()))

    def _report_success(self, elapsed: float) -> None:
        logger.info(
            "%s completed in %.2fs (validate %.2fs) -> %s",
            self.__class__.__name__,
            elapsed,
            self.timings.get("validate", 0.0),
            self.output_path,
        )

    def _configure_logging(self) -> None:
        """Attach one console handler to the package logger and set its level."""
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
