import json
import math
from pathlib import Path

import numpy as np

from microbe_modeler.main import FitParams, LoadParams, ModelKind, build_run_identity
from microbe_modeler.utils import (
    canonical_json_hash,
    ensure_run_dir,
    sanitize_for_json,
    write_text_report,
)


def test_sanitize_replaces_non_finite_and_converts_numpy():
    payload = {
        1.5: [np.float64(2.0), float("nan"), math.inf],
        "arr": np.array([1, 2]),
        "kind": ModelKind.WEIBULL,
        "params": FitParams(),
    }
    out = sanitize_for_json(payload)
    assert out["1.5"] == [2.0, None, None]
    assert out["arr"] == [1, 2]
    assert out["kind"] == "WEIBULL"
    assert out["params"]["model"] == "LINEAR"
    json.dumps(out, allow_nan=False)


def test_canonical_hash_ignores_key_order():
    a = canonical_json_hash({"x": 1, "y": [1, 2]})
    b = canonical_json_hash({"y": [1, 2], "x": 1})
    assert a == b
    assert len(a[0]) == 8 and a[1].startswith(a[0])


def test_run_identity_depends_on_file_name_and_fit_settings(tmp_path):
    fit = FitParams(model=ModelKind.LINEAR)
    h1, _, eff = build_run_identity(LoadParams(csv_path=tmp_path / "a" / "data.csv"), fit)
    h2, _, _ = build_run_identity(LoadParams(csv_path=tmp_path / "b" / "data.csv"), fit)
    h3, _, _ = build_run_identity(
        LoadParams(csv_path=tmp_path / "a" / "data.csv"), FitParams(model=ModelKind.WEIBULL)
    )
    assert h1 == h2
    assert h1 != h3
    assert eff["load"]["csv_path"] == "data.csv"


def test_run_dir_and_report(tmp_path):
    run_dir = ensure_run_dir(tmp_path, prefix="runs")
    assert run_dir.parent == Path(tmp_path) / "runs"
    target = write_text_report("hello\n", run_dir, "abc12345")
    assert target.read_text(encoding="utf-8") == "hello\n"
