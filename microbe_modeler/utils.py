from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import math
import time
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)


# -------------------------
# Path utilities
# -------------------------
def normalize_abs_posix(path: str | Path) -> str:
    """
    Return an absolute POSIX-style path string for the given input.
    Ensures deterministic representation across platforms.
    """
    return Path(path).resolve().as_posix()


# -------------------------
# Hashing utilities
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """
    Deterministic JSON string for hashing and storage:
    - separators=(',', ':')
    - sort_keys=True
    - ensure_ascii=False
    """
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """
    Return (short_hash8, full_hash_hex) computed over canonical JSON bytes (UTF-8).
    """
    h = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return h[:8], h


# -------------------------
# JSON sanitization
# -------------------------
def sanitize_for_json(obj: Any) -> Any:
    """
    Recursively convert arbitrary objects into strict-JSON Python primitives.

    Conversions performed:
    - float NaN/inf -> None (payloads are sent with allow_nan=False)
    - pathlib.Path -> normalized POSIX string via normalize_abs_posix()
    - Enums -> .name string
    - dataclasses -> dict via dataclasses.asdict() then sanitized recursively
    - numpy scalars -> Python int/float via .item(); numpy arrays -> lists
    - dicts -> sanitized dict with stringified keys
    - lists/tuples/sets -> lists with sanitized elements
    - datetime.datetime -> ISO-8601 string
    - None/str/int/bool left unchanged
    """
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None

    if isinstance(obj, Path):
        return normalize_abs_posix(obj)

    if isinstance(obj, _dt.datetime):
        return obj.isoformat()

    if isinstance(obj, np.generic):
        return sanitize_for_json(obj.item())
    if isinstance(obj, np.ndarray):
        return [sanitize_for_json(x) for x in obj.tolist()]

    if isinstance(obj, Enum):
        return obj.name

    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return sanitize_for_json(dataclasses.asdict(obj))

    if isinstance(obj, dict):
        return {
            (k if isinstance(k, str) else str(k)): sanitize_for_json(v)
            for k, v in obj.items()
        }

    if isinstance(obj, (list, tuple, set)):
        return [sanitize_for_json(x) for x in obj]

    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")

    return str(obj)


def build_effective_parameters(load: Any, fit: Any) -> dict[str, Any]:
    """
    Build a JSON-serializable mapping of effective parameters derived from the
    provided LoadParams and FitParams dataclass instances.

    The input path is reduced to its file name so the same data under different
    directories yields the same run identity.
    """
    load_map = dataclasses.asdict(load) if dataclasses.is_dataclass(load) else vars(load)
    fit_map = dataclasses.asdict(fit) if dataclasses.is_dataclass(fit) else vars(fit)
    csv_path = load_map.get("csv_path")
    if csv_path is not None:
        load_map["csv_path"] = Path(csv_path).name
    return {
        "load": sanitize_for_json(load_map),
        "fit": sanitize_for_json(fit_map),
    }


# -------------------------
# Small orchestration helpers (shared by CLI and Gradio UI)
# -------------------------
def ensure_run_dir(base: Path | str = ".", prefix: str = "output_gradio") -> Path:
    """
    Ensure and return a per-run directory under `base`/`prefix`/<timestamp>.

    The timestamp format is time.strftime("%Y%m%dT%H%M%S", time.localtime()),
    which sorts lexicographically in creation order.
    """
    run_ts = time.strftime("%Y%m%dT%H%M%S", time.localtime())
    run_dir = Path(base) / prefix / run_ts
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured run_dir=%s", str(run_dir))
    return run_dir


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Write the textual report into run_dir/report-<short_hash>.txt using UTF-8.
    """
    target = Path(run_dir) / f"report-{short_hash}.txt"
    target.write_text(report_text, encoding="utf-8")
    logger.debug("Wrote textual report to %s", str(target))
    return target

