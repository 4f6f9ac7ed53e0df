#!/usr/bin/env python3
"""
Microbe Modeler - per-temperature survival-curve fitting.

This module exposes the core pipeline as pure functions:
- group_by_temperature()
- fit_model()
- render_survival_plot()
- build_fit_report()

Each function takes explicit inputs and returns explicit outputs, avoiding prints and
global state mutation. Logging kept for internal diagnostics but functions are pure by contract.
"""

import logging
import math
import os
import time
import warnings
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

# Ensure a non-interactive Matplotlib backend is selected early to prevent GUI-backend
# selection/hangs in headless environments. We set the backend here before importing
# pyplot so that any later imports of matplotlib.pyplot will pick up the enforced backend.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import OptimizeWarning, curve_fit
from sklearn.compose import TransformedTargetRegressor
from sklearn.exceptions import ConvergenceWarning
from sklearn.gaussian_process import GaussianProcessRegressor
from sklearn.gaussian_process.kernels import RBF, ConstantKernel, WhiteKernel
from sklearn.neighbors import KNeighborsRegressor
from sklearn.neural_network import MLPRegressor
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVR
from sklearn.tree import DecisionTreeRegressor

# Support both package and script execution modes
try:
    # When run as a package: python -m microbe_modeler.main
    from .csv_processor import (
        MICROBE,
        MICROBE_FITTED,
        MICROBE_LOG,
        TEMPERATURE,
        TIME,
        FormatError,
        Row,
        read_csv_file,
        rows_to_frame,
        to_finite_float,
    )
    from .data_analysis import DataSummary, get_data_summary, transform_log
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        sanitize_for_json,
        write_text_report,
    )
except ImportError:
    # When run directly: python microbe_modeler/main.py
    from csv_processor import (
        MICROBE,
        MICROBE_FITTED,
        MICROBE_LOG,
        TEMPERATURE,
        TIME,
        FormatError,
        Row,
        read_csv_file,
        rows_to_frame,
        to_finite_float,
    )
    from data_analysis import DataSummary, get_data_summary, transform_log
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        sanitize_for_json,
        write_text_report,
    )

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MIN_VALID_ROWS = 2
DEFAULT_WEIBULL_SHAPE = 1.2
DEFAULT_WEIBULL_DELTA_FRACTION = 0.8


class FitError(Exception):
    """Base exception for model fitting errors."""

    pass


class InsufficientDataError(FitError):
    """Raised when no temperature group has enough valid rows to fit."""

    pass


class DegenerateFitError(FitError):
    """Raised when the data cannot determine the model (e.g. all times identical)."""

    pass


class FitInProgressError(FitError):
    """Raised when a fit is requested while another one is still running."""

    pass


class UnknownModelError(ValueError):
    pass


class ModelKind(Enum):
    """
    Model families available per temperature group.

    - LINEAR:        ordinary least squares on (time, response)
    - WEIBULL:       closed-form heuristic curve derived from the data extremes
    - WEIBULL_NLS:   same curve family fitted by nonlinear least squares
    - ANN / SVR / GPR / KNN / DECISION_TREE: scikit-learn regressors on time
    """

    LINEAR = "linear"
    WEIBULL = "weibull"
    WEIBULL_NLS = "weibull_nls"
    ANN = "ann"
    SVR = "svr"
    GPR = "gpr"
    KNN = "knn"
    DECISION_TREE = "decision_tree"

    @classmethod
    def parse(cls, value: Union[str, "ModelKind"]) -> "ModelKind":
        if isinstance(value, cls):
            return value
        token = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        for kind in cls:
            if kind.value == token or kind.name.lower() == token:
                return kind
        raise UnknownModelError(
            f"Unknown model kind {value!r}; expected one of {[k.value for k in cls]}"
        )


model_label_map = {
    ModelKind.LINEAR: "Linear Regression",
    ModelKind.WEIBULL: "Weibull Model",
    ModelKind.WEIBULL_NLS: "Weibull Model (least squares)",
    ModelKind.ANN: "Neural Network (MLP)",
    ModelKind.SVR: "Support Vector Regression",
    ModelKind.GPR: "Gaussian Process Regression",
    ModelKind.KNN: "K-Nearest Neighbors",
    ModelKind.DECISION_TREE: "Decision Tree",
}

@dataclass
class LoadParams:
    """
    Parameters used when loading a CSV.

    Attributes:
        csv_path: Path to the CSV file to read.
        strict: Raise on the first line whose field count differs from the header
            instead of rejecting it with a diagnostic.
        log_transform: Add a `microbe_log` column and fit on it.
    """

    csv_path: Optional[Path]
    strict: bool = False
    log_transform: bool = False


@dataclass
class FitParams:
    model: ModelKind = ModelKind.LINEAR
    response: str = MICROBE
    weibull_shape: float = DEFAULT_WEIBULL_SHAPE
    weibull_delta_fraction: float = DEFAULT_WEIBULL_DELTA_FRACTION
    random_state: int = 0
    # Simulated processing latency before fitting; 0 disables it
    delay_seconds: float = 0.0


@dataclass
class TemperatureGroup:
    temperature: float
    rows: List[Row] = field(default_factory=list)


@dataclass
class GroupFit:
    temperature: float
    parameters: Dict[str, Any]
    metrics: Dict[str, float]
    n_valid: int
    n_rows: int
    fit_message: str = "fit_ok"


@dataclass
class FitResult:
    model: str
    label: str
    parameters: Dict[float, Dict[str, Any]]
    metrics: Dict[str, float]
    fitted_data: List[Row]
    group_fits: List[GroupFit] = field(default_factory=list)
    skipped_groups: Dict[float, str] = field(default_factory=dict)
    response: str = MICROBE

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready payload (temperature keys stringified, non-finite -> None)."""
        payload = {
            "model": self.model,
            "modelName": self.label,
            "response": self.response,
            "parameters": {
                format_temperature(t): p for t, p in self.parameters.items()
            },
            "metrics": self.metrics,
            "rSquared": self.metrics.get("r2"),
            "groups": [
                {
                    "temperature": g.temperature,
                    "parameters": g.parameters,
                    "metrics": g.metrics,
                    "n_valid": g.n_valid,
                    "n_rows": g.n_rows,
                    "fit_message": g.fit_message,
                }
                for g in self.group_fits
            ],
            "skippedGroups": {
                format_temperature(t): reason
                for t, reason in self.skipped_groups.items()
            },
            "fittedData": self.fitted_data,
        }
        return sanitize_for_json(payload)


def format_temperature(temperature: float) -> str:
    """Stable string key for a temperature (20.0 -> '20', 20.5 -> '20.5')."""
    t = float(temperature)
    if t.is_integer():
        return str(int(t))
    return repr(t)


# -------------------------
# Grouping
# -------------------------
def group_by_temperature(rows: List[Row]) -> List[TemperatureGroup]:
    """
    Partition rows by exact numeric temperature, ascending by temperature.

    Rows whose temperature is absent or not a finite number are left out. Within a
    group rows keep their source order. Rows are not copied or mutated.
    """
    groups: Dict[float, List[Row]] = {}
    for row in rows:
        t = to_finite_float(row.get(TEMPERATURE))
        if t is None:
            continue
        groups.setdefault(t, []).append(row)
    return [
        TemperatureGroup(temperature=t, rows=groups[t]) for t in sorted(groups.keys())
    ]


# -------------------------
# Metrics
# -------------------------
def compute_metrics(observed: np.ndarray, predicted: np.ndarray) -> Dict[str, float]:
    """
    rmse, mae and r2 of predictions against observations.
    r2 uses the observations' own mean; identical observations give r2 = 1.
    """
    y = np.asarray(observed, dtype=float)
    yhat = np.asarray(predicted, dtype=float)
    resid = y - yhat
    ss_res = float(np.sum(resid**2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    return {
        "rmse": float(np.sqrt(np.mean(resid**2))),
        "mae": float(np.mean(np.abs(resid))),
        "r2": 1.0 if np.ptp(y) == 0 else 1.0 - ss_res / ss_tot,
    }


# -------------------------
# Model families
# -------------------------
Predictor = Callable[[np.ndarray], np.ndarray]


def fit_linear(time_values: np.ndarray, response: np.ndarray) -> Tuple[Predictor, dict]:
    """
    Ordinary least squares of response on time via statsmodels.

    Equivalent to the closed form slope = (nΣxy − ΣxΣy) / (nΣx² − (Σx)²),
    intercept = (Σy − slope·Σx) / n.

    Raises:
        DegenerateFitError: all times identical (nΣx² = (Σx)²).
    """
    x = np.asarray(time_values, dtype=float)
    y = np.asarray(response, dtype=float)
    if np.ptp(x) <= 1e-12 * max(1.0, float(np.max(np.abs(x)))):
        raise DegenerateFitError(
            f"all {len(x)} time values are identical ({x[0]}); slope is undefined"
        )

    X = sm.add_constant(pd.DataFrame({TIME: x}), has_constant="add")
    res = sm.OLS(y, X).fit()
    intercept = float(res.params["const"])
    slope = float(res.params[TIME])

    def predict(t: np.ndarray) -> np.ndarray:
        return intercept + slope * np.asarray(t, dtype=float)

    return predict, {"intercept": intercept, "slope": slope}


def weibull_curve(
    t: np.ndarray, delta: float, p: float, n_max: float, n_min: float
) -> np.ndarray:
    """
    N_min + (N_max − N_min)·(1 − S(t)) with S(t) = exp(−(t/δ)^p).
    Negative times are clamped to zero.
    """
    ratio = np.clip(np.asarray(t, dtype=float) / delta, 0.0, None)
    survival = np.exp(-np.power(ratio, p))
    return n_min + (n_max - n_min) * (1.0 - survival)


def fit_weibull(
    time_values: np.ndarray,
    response: np.ndarray,
    shape: float = DEFAULT_WEIBULL_SHAPE,
    delta_fraction: float = DEFAULT_WEIBULL_DELTA_FRACTION,
) -> Tuple[Predictor, dict]:
    """
    Heuristic Weibull curve from the data extremes; no optimizer involved.
    delta = delta_fraction · max(time), p = shape.

    Raises:
        DegenerateFitError: delta is not a positive finite number.
    """
    x = np.asarray(time_values, dtype=float)
    y = np.asarray(response, dtype=float)
    n_max = float(np.max(y))
    n_min = float(np.min(y))
    delta = float(delta_fraction * np.max(x))
    if not math.isfinite(delta) or delta <= 0:
        raise DegenerateFitError(
            f"Weibull scale delta={delta} must be positive (max time {np.max(x)})"
        )
    p = float(shape)

    def predict(t: np.ndarray) -> np.ndarray:
        return weibull_curve(t, delta, p, n_max, n_min)

    return predict, {"delta": delta, "p": p, "n_max": n_max, "n_min": n_min}


def fit_weibull_nls(
    time_values: np.ndarray,
    response: np.ndarray,
    shape: float = DEFAULT_WEIBULL_SHAPE,
    delta_fraction: float = DEFAULT_WEIBULL_DELTA_FRACTION,
    max_evaluations: int = 5000,
) -> Tuple[Predictor, dict, str]:
    """
    Least-squares fit of delta and p for the Weibull curve (scipy curve_fit),
    starting from the heuristic guess. N_max/N_min stay at the data extremes.

    Returns (predict, parameters, fit_message). When the optimizer fails the
    heuristic parameters are returned with fit_message 'heuristic_fallback: ...'.
    """
    _, guess = fit_weibull(time_values, response, shape, delta_fraction)
    x = np.asarray(time_values, dtype=float)
    y = np.asarray(response, dtype=float)
    n_max, n_min = guess["n_max"], guess["n_min"]

    def model(t, delta, p):
        return weibull_curve(t, delta, p, n_max, n_min)

    lower = [1e-9 * guess["delta"], 0.05]
    upper = [100.0 * guess["delta"], 10.0]
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            popt, _ = curve_fit(
                model,
                x,
                y,
                p0=[guess["delta"], guess["p"]],
                bounds=(lower, upper),
                maxfev=max_evaluations,
            )
        delta, p = float(popt[0]), float(popt[1])
        message = "fit_ok"
    except (RuntimeError, ValueError) as e:
        logger.warning(f"Weibull least-squares fit failed, using heuristic: {e}")
        delta, p = guess["delta"], guess["p"]
        message = f"heuristic_fallback: {e}"

    def predict(t: np.ndarray) -> np.ndarray:
        return weibull_curve(t, delta, p, n_max, n_min)

    return predict, {"delta": delta, "p": p, "n_max": n_max, "n_min": n_min}, message


def _build_estimator(kind: ModelKind, n_train: int, random_state: int):
    if kind is ModelKind.ANN:
        return MLPRegressor(
            hidden_layer_sizes=(16, 16),
            max_iter=2000,
            random_state=random_state,
        ), {"hidden_layer_sizes": "16x16", "max_iter": 2000}
    if kind is ModelKind.SVR:
        return SVR(kernel="rbf", C=10.0, epsilon=0.05), {
            "kernel": "rbf",
            "C": 10.0,
            "epsilon": 0.05,
        }
    if kind is ModelKind.GPR:
        kernel = ConstantKernel(1.0) * RBF(length_scale=1.0) + WhiteKernel(1e-2)
        return GaussianProcessRegressor(
            kernel=kernel, random_state=random_state
        ), {"kernel": str(kernel)}
    if kind is ModelKind.KNN:
        k = min(5, n_train)
        return KNeighborsRegressor(n_neighbors=k), {"n_neighbors": k}
    if kind is ModelKind.DECISION_TREE:
        return DecisionTreeRegressor(max_depth=4, random_state=random_state), {
            "max_depth": 4
        }
    raise UnknownModelError(f"{kind} is not an estimator model")


def fit_estimator(
    kind: ModelKind,
    time_values: np.ndarray,
    response: np.ndarray,
    random_state: int = 0,
) -> Tuple[Predictor, dict]:
    """
    Fit a scikit-learn regressor on time -> response.
    Both time and response are standardized around the estimator.
    """
    x = np.asarray(time_values, dtype=float).reshape(-1, 1)
    y = np.asarray(response, dtype=float)
    estimator, settings = _build_estimator(kind, len(y), random_state)
    model = TransformedTargetRegressor(
        regressor=make_pipeline(StandardScaler(), estimator),
        transformer=StandardScaler(),
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        model.fit(x, y)

    def predict(t: np.ndarray) -> np.ndarray:
        arr = np.asarray(t, dtype=float).reshape(-1, 1)
        return np.asarray(model.predict(arr), dtype=float).ravel()

    params = {"estimator": type(estimator).__name__, "n_train": int(len(y))}
    params.update(settings)
    return predict, params


# -------------------------
# Per-group fitting
# -------------------------
def _time_sort_key(row: Row) -> Tuple[int, float]:
    t = to_finite_float(row.get(TIME))
    return (1, 0.0) if t is None else (0, t)


def _fit_group(
    group: TemperatureGroup, kind: ModelKind, params: FitParams
) -> Tuple[GroupFit, List[Row]]:
    """
    Fit one temperature group and return (GroupFit, fitted rows sorted by time).

    Raises:
        InsufficientDataError: fewer than MIN_VALID_ROWS rows with finite time and response.
        DegenerateFitError: the model cannot be determined from the valid rows.
    """
    valid_t: List[float] = []
    valid_y: List[float] = []
    for row in group.rows:
        t = to_finite_float(row.get(TIME))
        y = to_finite_float(row.get(params.response))
        if t is not None and y is not None:
            valid_t.append(t)
            valid_y.append(y)

    if len(valid_t) < MIN_VALID_ROWS:
        raise InsufficientDataError(
            f"{len(valid_t)} valid row(s) at {format_temperature(group.temperature)}°C; "
            f"need at least {MIN_VALID_ROWS}"
        )

    x = np.asarray(valid_t, dtype=float)
    y = np.asarray(valid_y, dtype=float)
    message = "fit_ok"
    if kind is ModelKind.LINEAR:
        predict, fitted_params = fit_linear(x, y)
    elif kind is ModelKind.WEIBULL:
        predict, fitted_params = fit_weibull(
            x, y, params.weibull_shape, params.weibull_delta_fraction
        )
    elif kind is ModelKind.WEIBULL_NLS:
        predict, fitted_params, message = fit_weibull_nls(
            x, y, params.weibull_shape, params.weibull_delta_fraction
        )
    else:
        predict, fitted_params = fit_estimator(kind, x, y, params.random_state)

    metrics = compute_metrics(y, predict(x))

    ordered = sorted(group.rows, key=_time_sort_key)
    times = [to_finite_float(r.get(TIME)) for r in ordered]
    finite_idx = [i for i, t in enumerate(times) if t is not None]
    preds: List[Optional[float]] = [None] * len(ordered)
    if finite_idx:
        values = predict(np.asarray([times[i] for i in finite_idx], dtype=float))
        for i, v in zip(finite_idx, values):
            preds[i] = float(v)
    fitted_rows = [{**row, MICROBE_FITTED: pred} for row, pred in zip(ordered, preds)]

    group_fit = GroupFit(
        temperature=group.temperature,
        parameters=fitted_params,
        metrics=metrics,
        n_valid=len(valid_t),
        n_rows=len(group.rows),
        fit_message=message,
    )
    return group_fit, fitted_rows


def fit_model(
    rows: List[Row],
    kind: Union[str, ModelKind] = ModelKind.LINEAR,
    params: Optional[FitParams] = None,
) -> FitResult:
    """
    Fit the chosen model separately for each temperature group.

    Behavior:
    - Groups come from group_by_temperature(); rows without a finite temperature
      take no part in the fit.
    - A group is fitted when it has at least MIN_VALID_ROWS rows with finite time and
      response. Groups that are short or degenerate are listed in skipped_groups and
      contribute nothing to the aggregate metrics.
    - microbe_fitted is predicted for every row of a group with a finite time,
      including rows without a usable response; other rows get None.
    - fitted_data is ordered by ascending temperature, then ascending time.
    - Aggregate rmse/mae/r2 are arithmetic means over the fitted groups.

    Raises:
        UnknownModelError: kind is not a ModelKind.
        InsufficientDataError: no group has enough valid rows.
        DegenerateFitError: every group with enough rows was degenerate.
    """
    kind = ModelKind.parse(kind)
    if params is None:
        params = FitParams(model=kind)
    if params.delay_seconds > 0:
        time.sleep(params.delay_seconds)

    t0 = time.perf_counter()
    groups = group_by_temperature(rows)

    group_fits: List[GroupFit] = []
    skipped: Dict[float, str] = {}
    fitted_data: List[Row] = []
    degenerate = 0
    for group in groups:
        try:
            group_fit, fitted_rows = _fit_group(group, kind, params)
        except InsufficientDataError as e:
            logger.warning(f"Skipping temperature group: {e}")
            skipped[group.temperature] = "insufficient_data"
            fitted_rows = [
                {**row, MICROBE_FITTED: None}
                for row in sorted(group.rows, key=_time_sort_key)
            ]
        except DegenerateFitError as e:
            logger.warning(
                f"Skipping degenerate group at {format_temperature(group.temperature)}°C: {e}"
            )
            skipped[group.temperature] = f"degenerate: {e}"
            degenerate += 1
            fitted_rows = [
                {**row, MICROBE_FITTED: None}
                for row in sorted(group.rows, key=_time_sort_key)
            ]
        else:
            group_fits.append(group_fit)
            logger.info(
                f"Temperature {format_temperature(group.temperature)}°C - {kind.value} fit: "
                f"{group_fit.parameters} R²={group_fit.metrics['r2']:.4f}"
            )
        fitted_data.extend(fitted_rows)

    if not group_fits:
        if degenerate:
            raise DegenerateFitError(
                f"All {degenerate} temperature group(s) with enough data were degenerate "
                "(for example every time value identical)."
            )
        raise InsufficientDataError(
            "No temperature group has at least "
            f"{MIN_VALID_ROWS} rows with numeric time and {params.response}."
        )

    metrics = {
        name: float(np.mean([g.metrics[name] for g in group_fits]))
        for name in ("rmse", "mae", "r2")
    }
    logger.info(
        f"fit_model {kind.value}: {len(group_fits)} group(s) fitted, "
        f"{len(skipped)} skipped, elapsed_ms={(time.perf_counter() - t0) * 1000.0:.1f}"
    )
    return FitResult(
        model=kind.value,
        label=model_label_map[kind],
        parameters={g.temperature: g.parameters for g in group_fits},
        metrics=metrics,
        fitted_data=fitted_data,
        group_fits=group_fits,
        skipped_groups=skipped,
        response=params.response,
    )


# -------------------------
# Rendering
# -------------------------
def render_survival_plot(
    rows: List[Row],
    fit_result: Optional[FitResult] = None,
    response: str = MICROBE,
    title: Optional[str] = None,
):
    """
    Build a time vs. response chart with one series per temperature.

    Observed points are drawn as markers; fitted curves (when fit_result is given) are
    drawn dashed in the same color, ordered by time. Returns the matplotlib Figure;
    the caller is responsible for closing it.
    """
    plt.style.use("dark_background")
    fig, ax = plt.subplots(figsize=(10, 6))
    colors = plt.rcParams["axes.prop_cycle"].by_key()["color"]

    observed = group_by_temperature(rows)
    fitted_by_temp: Dict[float, List[Row]] = {}
    if fit_result is not None:
        for g in group_by_temperature(fit_result.fitted_data):
            fitted_by_temp[g.temperature] = g.rows

    for idx, group in enumerate(observed):
        color = colors[idx % len(colors)]
        label = f"{format_temperature(group.temperature)}°C"
        points = [
            (to_finite_float(r.get(TIME)), to_finite_float(r.get(response)))
            for r in group.rows
        ]
        points = sorted((t, y) for t, y in points if t is not None and y is not None)
        if points:
            ax.scatter(
                [p[0] for p in points],
                [p[1] for p in points],
                s=24,
                color=color,
                alpha=0.8,
                label=label,
            )

        fitted_rows = fitted_by_temp.get(group.temperature, [])
        curve = [
            (to_finite_float(r.get(TIME)), to_finite_float(r.get(MICROBE_FITTED)))
            for r in fitted_rows
        ]
        curve = sorted((t, y) for t, y in curve if t is not None and y is not None)
        if curve:
            ax.plot(
                [c[0] for c in curve],
                [c[1] for c in curve],
                linestyle="--",
                linewidth=2.0,
                color=color,
                label=f"{label} fit",
            )

    ax.set_xlabel("Time")
    ax.set_ylabel(response)
    if title is None:
        title = "Survival Curves"
        if fit_result is not None:
            title += f" - {fit_result.label} (R² = {fit_result.metrics['r2']:.4f})"
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    if observed:
        ax.legend(loc="best", fontsize="small")
    fig.tight_layout()
    return fig


def save_survival_plot(
    rows: List[Row],
    fit_result: Optional[FitResult],
    output_svg: Union[str, Path],
    response: str = MICROBE,
) -> str:
    """Render the survival chart to an SVG file and return its path."""
    fig = render_survival_plot(rows, fit_result, response=response)
    try:
        fig.savefig(str(output_svg), format="svg")
    finally:
        plt.close(fig)
    return str(output_svg)


# -------------------------
# Reporting & export
# -------------------------
def _fmt_fixed(x: Optional[float], width: int, decimals: int) -> str:
    """
    Format a number in fixed notation with specified width and decimals.
    Returns '-' centered in the field if x is None or not finite.
    """
    if x is None or isinstance(x, bool):
        s = "-"
    else:
        try:
            xf = float(x)
            s = f"{xf:.{decimals}f}" if math.isfinite(xf) else "-"
        except (TypeError, ValueError):
            s = "-"
    if s == "-":
        return s.center(width)
    return s.rjust(width)


def build_fit_report(
    fit_result: FitResult, summary: Optional[DataSummary] = None
) -> str:
    """
    Assemble a plain-text report of a fit: per-temperature parameters and metrics,
    the aggregate metrics, skipped groups and (optionally) column statistics.
    """
    lines: List[str] = []
    lines.append(f"Model: {fit_result.label} [{fit_result.model}]")
    lines.append(f"Response: {fit_result.response}")
    lines.append("")

    param_names: List[str] = []
    for g in fit_result.group_fits:
        for k, v in g.parameters.items():
            if k not in param_names and isinstance(v, (int, float)) and not isinstance(v, bool):
                param_names.append(k)

    headers = ["Temp", "n", *param_names, "RMSE", "MAE", "R²"]
    widths = [8, 5] + [12] * len(param_names) + [12, 12, 10]
    header_line = "  ".join(f"{h:>{w}}" for h, w in zip(headers, widths))
    lines.append("Per-temperature fits")
    lines.append(header_line)
    lines.append("-" * len(header_line))
    for g in fit_result.group_fits:
        cells = [
            f"{format_temperature(g.temperature):>8}",
            f"{g.n_valid:>5}",
            *[_fmt_fixed(g.parameters.get(name), 12, 4) for name in param_names],
            _fmt_fixed(g.metrics["rmse"], 12, 5),
            _fmt_fixed(g.metrics["mae"], 12, 5),
            _fmt_fixed(g.metrics["r2"], 10, 5),
        ]
        lines.append("  ".join(cells))
    lines.append("")
    lines.append(
        "Aggregate (mean over fitted groups): "
        f"RMSE={_fmt_fixed(fit_result.metrics['rmse'], 0, 5).strip()} "
        f"MAE={_fmt_fixed(fit_result.metrics['mae'], 0, 5).strip()} "
        f"R²={_fmt_fixed(fit_result.metrics['r2'], 0, 5).strip()}"
    )

    if fit_result.skipped_groups:
        lines.append("")
        lines.append("Skipped temperature groups")
        for t, reason in fit_result.skipped_groups.items():
            lines.append(f"  {format_temperature(t)}°C: {reason}")

    if summary is not None and summary.column_stats:
        lines.append("")
        lines.append(f"Column statistics (rows={summary.total_rows})")
        stat_header = f"{'Column':<16}  {'Mean':>12}  {'Std':>12}  {'Min':>12}  {'Max':>12}"
        lines.append(stat_header)
        lines.append("-" * len(stat_header))
        for col, st in summary.column_stats.items():
            lines.append(
                f"{col:<16}  {_fmt_fixed(st.mean, 12, 3)}  {_fmt_fixed(st.std, 12, 3)}  "
                f"{_fmt_fixed(st.min, 12, 3)}  {_fmt_fixed(st.max, 12, 3)}"
            )

    return "\n".join(lines) + "\n"


def fitted_frame(fit_result: FitResult) -> pd.DataFrame:
    return rows_to_frame(fit_result.fitted_data)


def export_fitted_csv(
    fit_result: FitResult, run_dir: Union[str, Path], short_hash: Optional[str] = None
) -> Path:
    """Write the fitted rows to run_dir/fitted-<model>[-<short_hash>].csv."""
    suffix = f"-{short_hash}" if short_hash else ""
    target = Path(run_dir) / f"fitted-{fit_result.model}{suffix}.csv"
    fitted_frame(fit_result).to_csv(target, index=False)
    logger.debug("Wrote fitted data to %s", str(target))
    return target


def build_run_identity(load: LoadParams, fit: FitParams) -> tuple[str, str, dict]:
    """
    Returns (short_hash, full_hash, effective_params) for naming run artifacts.
    """
    effective_params = build_effective_parameters(load, fit)
    short_hash, full_hash = canonical_json_hash(
        {"effective_parameters": effective_params}
    )
    return short_hash, full_hash, effective_params


def get_default_params() -> tuple[LoadParams, FitParams]:
    """Policy-level defaults shared by the CLI and the Gradio UI."""
    load = LoadParams(csv_path=None, strict=False, log_transform=False)
    fit = FitParams(
        model=ModelKind.LINEAR,
        response=MICROBE,
        weibull_shape=DEFAULT_WEIBULL_SHAPE,
        weibull_delta_fraction=DEFAULT_WEIBULL_DELTA_FRACTION,
        random_state=0,
        delay_seconds=0.0,
    )
    return load, fit


# -------------------------
# CLI
# -------------------------
def _orchestrate(
    params_load: LoadParams,
    params_fit: FitParams,
    output_dir: Optional[Path] = None,
) -> str:
    """
    Run load -> (log transform) -> fit -> report, writing artifacts when output_dir is given.
    Returns the text report.
    """
    rows, ingest = read_csv_file(params_load.csv_path, strict=params_load.strict)
    logger.info(ingest.summarize())
    if params_load.log_transform:
        rows = transform_log(rows)
        params_fit = replace(params_fit, response=MICROBE_LOG)

    fit_result = fit_model(rows, params_fit.model, params_fit)
    summary = get_data_summary(rows)
    report = build_fit_report(fit_result, summary)
    if ingest.rejected:
        report += "\nRejected lines\n" + "\n".join(
            f"  line {d.line_number}: {d.reason}" for d in ingest.rejected
        ) + "\n"

    if output_dir is not None:
        short_hash, _, _ = build_run_identity(params_load, params_fit)
        run_dir = ensure_run_dir(output_dir, prefix="runs")
        export_fitted_csv(fit_result, run_dir, short_hash)
        save_survival_plot(
            rows,
            fit_result,
            run_dir / f"plot-{fit_result.model}-{short_hash}.svg",
            response=params_fit.response,
        )
        write_text_report(report, run_dir, short_hash)
        logger.info("Wrote run artifacts to %s", str(run_dir))

    return report


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="microbe-modeler",
        description="Microbial survival modeler (load -> group -> fit -> report).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also MICROBE_MODELER_DEBUG=1).",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument("--csv", type=str, help="Path to the CSV file (required).")
    g_load.add_argument(
        "--strict",
        action="store_true",
        help="Fail on lines whose field count differs from the header.",
    )
    g_load.add_argument(
        "--log",
        action="store_true",
        help="Fit on ln(microbe) (adds a microbe_log column).",
    )

    g_fit = parser.add_argument_group("FitParams")
    g_fit.add_argument(
        "--model",
        type=str,
        default=ModelKind.LINEAR.value,
        choices=[k.value for k in ModelKind],
        help="Model fitted per temperature.",
    )
    g_fit.add_argument(
        "--weibull-shape",
        type=float,
        default=DEFAULT_WEIBULL_SHAPE,
        help="Shape p of the heuristic Weibull curve.",
    )
    g_fit.add_argument(
        "--seed", type=int, default=0, help="Random state for estimator models."
    )

    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory for fitted CSV, SVG plot and report (omit to print only).",
    )
    return parser


def _args_to_params(args) -> tuple[LoadParams, FitParams]:
    d_load, d_fit = get_default_params()
    load = LoadParams(
        csv_path=Path(args.csv) if args.csv else d_load.csv_path,
        strict=bool(args.strict),
        log_transform=bool(args.log),
    )
    fit = FitParams(
        model=ModelKind.parse(args.model),
        response=d_fit.response,
        weibull_shape=args.weibull_shape,
        weibull_delta_fraction=d_fit.weibull_delta_fraction,
        random_state=args.seed,
        delay_seconds=d_fit.delay_seconds,
    )
    return load, fit


def main() -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import json
    import sys

    parser = _build_cli_parser()
    args = parser.parse_args(sys.argv[1:])

    if args.print_defaults:
        d_load, d_fit = get_default_params()
        payload = {
            "LoadParams": sanitize_for_json(d_load),
            "FitParams": sanitize_for_json(d_fit),
        }
        print(json.dumps(payload, indent=2))
        return

    if not args.csv:
        parser.error("--csv is required")

    debug_mode = bool(args.debug or os.getenv("MICROBE_MODELER_DEBUG", "") == "1")
    if debug_mode:
        logger.setLevel(logging.DEBUG)

    try:
        params_load, params_fit = _args_to_params(args)
        output_dir = Path(args.output_dir) if args.output_dir else None
        print(_orchestrate(params_load, params_fit, output_dir))
    except (
        FileNotFoundError,
        FormatError,
        InsufficientDataError,
        DegenerateFitError,
        ValueError,
    ) as e:
        # Concise, user-facing errors for common/user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set MICROBE_MODELER_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
