"""
Dashboard session state and the single-flight model fitter.

The fitter runs at most one fit at a time on a dedicated worker thread; a
request that arrives while a fit is in flight is refused rather than queued.
"""

import logging
import threading
from dataclasses import replace
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Union

try:
    from .csv_processor import MICROBE, MICROBE_LOG, IngestReport, Row, read_csv_file
    from .data_analysis import DataSummary, get_data_summary, transform_log
    from .main import (
        FitInProgressError,
        FitParams,
        FitResult,
        ModelKind,
        fit_model,
    )
except ImportError:
    from csv_processor import MICROBE, MICROBE_LOG, IngestReport, Row, read_csv_file  # type: ignore
    from data_analysis import DataSummary, get_data_summary, transform_log  # type: ignore
    from main import (  # type: ignore
        FitInProgressError,
        FitParams,
        FitResult,
        ModelKind,
        fit_model,
    )

logger = logging.getLogger(__name__)


class ModelFitter:
    """Runs fit_model() on a single worker thread, one fit at a time."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="model-fitter"
        )
        self._lock = threading.Lock()
        self._in_flight: Optional[Future] = None

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._in_flight is not None and not self._in_flight.done()

    def submit(
        self,
        rows: List[Row],
        kind: Union[str, ModelKind],
        params: Optional[FitParams] = None,
    ) -> Future:
        """
        Schedule a fit and return its Future.

        Raises:
            FitInProgressError: a previously submitted fit has not finished yet.
        """
        with self._lock:
            if self._in_flight is not None and not self._in_flight.done():
                raise FitInProgressError("A model fit is already in progress")
            future = self._executor.submit(fit_model, rows, kind, params)
            self._in_flight = future
        return future

    def fit(
        self,
        rows: List[Row],
        kind: Union[str, ModelKind],
        params: Optional[FitParams] = None,
        timeout: Optional[float] = None,
    ) -> FitResult:
        """Blocking form of submit(); re-raises the fit's exception."""
        return self.submit(rows, kind, params).result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class DashboardSession:
    """
    In-memory state behind one dashboard: the loaded rows, the log-transform
    toggle and the latest fit. Nothing is persisted.
    """

    def __init__(self, fitter: Optional[ModelFitter] = None) -> None:
        self.fitter = fitter or ModelFitter()
        self.rows: List[Row] = []
        self.file_name: Optional[str] = None
        self.ingest_report: Optional[IngestReport] = None
        self.use_log: bool = False
        self.fit_result: Optional[FitResult] = None

    def load_csv(self, path: Union[str, Path], strict: bool = False) -> IngestReport:
        """Replace the current data with the rows of `path` and clear any fit."""
        rows, report = read_csv_file(path, strict=strict)
        self.rows = rows
        self.file_name = Path(path).name
        self.ingest_report = report
        self.fit_result = None
        logger.info(f"Session loaded {len(rows)} rows from {self.file_name}")
        return report

    def reset(self) -> None:
        self.rows = []
        self.file_name = None
        self.ingest_report = None
        self.use_log = False
        self.fit_result = None

    @property
    def has_data(self) -> bool:
        return bool(self.rows)

    def processed_rows(self) -> List[Row]:
        """Rows as fitted: log-transformed copies when the toggle is on."""
        return transform_log(self.rows) if self.use_log else self.rows

    def raw_summary(self) -> Optional[DataSummary]:
        return get_data_summary(self.rows)

    def processed_summary(self) -> Optional[DataSummary]:
        return get_data_summary(self.processed_rows())

    def run_fit(
        self, kind: Union[str, ModelKind], params: Optional[FitParams] = None
    ) -> FitResult:
        """
        Fit the processed rows. The previous fit is cleared first and stays
        cleared when the new fit fails.
        """
        self.fit_result = None
        if params is None:
            params = FitParams(model=ModelKind.parse(kind))
        params = replace(params, response=MICROBE_LOG if self.use_log else MICROBE)
        result = self.fitter.fit(self.processed_rows(), kind, params)
        self.fit_result = result
        return result
