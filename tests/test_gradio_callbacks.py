from pathlib import Path

import microbe_modeler.gradio_ui as ui
from microbe_modeler.chat_client import ChatClient


CSV = "time,temp,cfu\n0,20,1000\n1,20,500\n2,20,250\n0,30,1000\n1,30,100\n2,30,10\n"


def write_csv(tmp_path: Path) -> str:
    path = tmp_path / "survival.csv"
    path.write_text(CSV, encoding="utf-8")
    return str(path)


def test_load_then_fit_produces_report_plot_and_csv(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    status, preview, raw, processed, insights, state = ui._load_data(
        write_csv(tmp_path), False, False, None
    )
    assert status.startswith("Loaded 6 rows from survival.csv")
    assert len(preview) == 6
    assert list(raw["Column"]) == ["time", "temperature", "microbe"]
    assert "Dataset Overview" in insights

    report, html, csv_path, state = ui._run_fit("linear", state)
    assert "Linear Regression" in report
    assert "<svg" in html
    assert Path(csv_path).exists()
    assert state["session"].fit_result is not None
    state["session"].fitter.shutdown()


def test_errors_become_messages(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    bad = tmp_path / "bad.csv"
    bad.write_text("a,b\n1,2\n", encoding="utf-8")
    status, *_, state = ui._load_data(str(bad), False, False, None)
    assert status.startswith("Error:")

    report, html, csv_path, state = ui._run_fit("linear", state)
    assert report.startswith("Error:")
    assert csv_path is None
    state["session"].fitter.shutdown()


def test_log_toggle_updates_processed_summary(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    *_, state = ui._load_data(write_csv(tmp_path), False, False, None)
    preview, processed, state = ui._toggle_log(True, state)
    assert "microbe_log" in preview.columns
    assert "microbe_log" in list(processed["Column"])
    state["session"].fitter.shutdown()


def test_chat_sends_fit_context(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    sent = {}

    def fake_ask(self, text, data=None, fit_result=None):
        sent.update(text=text, data=data, fit_result=fit_result)
        return "Looks like first-order decay."

    monkeypatch.setattr(ChatClient, "ask", fake_ask)
    *_, state = ui._load_data(write_csv(tmp_path), False, False, None)
    _, _, _, state = ui._run_fit("weibull", state)
    transcript, cleared, state = ui._send_chat("What happened?", state)

    assert cleared == ""
    assert "Assistant: Looks like first-order decay." in transcript
    assert sent["fit_result"]["model"] == "weibull"
    assert len(sent["data"]) == 6
    state["session"].fitter.shutdown()


def test_sessions_fitting_same_file_write_separate_artifacts(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = write_csv(tmp_path)
    *_, first = ui._load_data(path, False, False, None)
    *_, second = ui._load_data(path, False, False, None)
    assert first["chat"].session_id != second["chat"].session_id

    _, _, csv_a, first = ui._run_fit("linear", first)
    _, _, csv_b, second = ui._run_fit("linear", second)
    assert csv_a != csv_b
    assert Path(csv_a).exists() and Path(csv_b).exists()
    assert first["chat"].session_id[:8] in Path(csv_a).name
    first["session"].fitter.shutdown()
    second["session"].fitter.shutdown()
