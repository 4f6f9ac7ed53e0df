import threading
from pathlib import Path

import pytest

import microbe_modeler.session as session_mod
from microbe_modeler.main import (
    FitInProgressError,
    FitParams,
    InsufficientDataError,
    ModelKind,
    fit_model,
)
from microbe_modeler.session import DashboardSession, ModelFitter


def write_csv(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "survival.csv"
    path.write_text(text, encoding="utf-8")
    return path


GOOD_CSV = "time,temp,cfu\n0,20,1000\n1,20,500\n2,20,250\n0,30,1000\n1,30,100\n2,30,10\n"


def test_second_submit_while_fit_in_flight_is_rejected(monkeypatch):
    started = threading.Event()
    release = threading.Event()

    def slow_fit(rows, kind, params=None):
        started.set()
        release.wait(timeout=5)
        return fit_model(rows, kind, params)

    monkeypatch.setattr(session_mod, "fit_model", slow_fit)
    rows = [{"time": float(t), "temperature": 20.0, "microbe": 2.0 * t} for t in range(3)]

    fitter = ModelFitter()
    try:
        first = fitter.submit(rows, "linear")
        assert started.wait(timeout=5)
        assert fitter.busy
        with pytest.raises(FitInProgressError):
            fitter.submit(rows, "linear")
        release.set()
        assert first.result(timeout=10).parameters[20.0]["slope"] == pytest.approx(2.0)
        # Once the first fit finishes a new one is accepted
        assert fitter.fit(rows, "linear", timeout=10).model == "linear"
    finally:
        release.set()
        fitter.shutdown()


def test_session_load_fit_and_reset(tmp_path):
    session = DashboardSession()
    report = session.load_csv(write_csv(tmp_path, GOOD_CSV))
    assert report.accepted_rows == 6
    assert session.file_name == "survival.csv"

    result = session.run_fit("weibull")
    assert session.fit_result is result
    assert set(result.parameters) == {20.0, 30.0}

    session.load_csv(write_csv(tmp_path, GOOD_CSV))
    assert session.fit_result is None

    session.reset()
    assert not session.has_data and session.file_name is None
    session.fitter.shutdown()


def test_log_toggle_fits_log_response(tmp_path):
    session = DashboardSession()
    session.load_csv(write_csv(tmp_path, GOOD_CSV))
    session.use_log = True
    assert "microbe_log" in session.processed_rows()[0]
    assert "microbe_log" not in session.rows[0]

    result = session.run_fit("linear")
    assert result.response == "microbe_log"
    assert "microbe_log" in session.processed_summary().column_stats
    assert "microbe_log" not in session.raw_summary().column_stats
    session.fitter.shutdown()


def test_failed_fit_leaves_result_cleared(tmp_path):
    session = DashboardSession()
    session.load_csv(write_csv(tmp_path, GOOD_CSV))
    session.run_fit("linear")
    session.rows = [{"time": 0.0, "temperature": 20.0, "microbe": 1.0}]
    with pytest.raises(InsufficientDataError):
        session.run_fit("linear")
    assert session.fit_result is None
    session.fitter.shutdown()


def test_run_fit_leaves_caller_params_untouched(tmp_path):
    session = DashboardSession()
    session.load_csv(write_csv(tmp_path, GOOD_CSV))
    session.use_log = True
    params = FitParams(model=ModelKind.LINEAR)

    result = session.run_fit("linear", params)
    assert result.response == "microbe_log"
    assert params.response == "microbe"

    session.use_log = False
    assert session.run_fit("linear", params).response == "microbe"
    session.fitter.shutdown()
