"""Gradio UI wrapper for the microbe modeler.

Upload a CSV, inspect summary statistics, fit a model per temperature, download
the fitted data and ask the AI assistant about the results.
"""

import os
import shutil
import time
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

# Backend selection is enforced centrally in microbe_modeler.main at import-time.
# Do NOT set or override MPLBACKEND here.

try:
    from .chat_client import ChatClient
    from .csv_processor import CSVProcessingError, rows_to_frame
    from .data_analysis import DataSummary, generate_data_insights
    from .main import (
        FitError,
        ModelKind,
        build_fit_report,
        build_run_identity,
        export_fitted_csv,
        get_default_params,
        model_label_map,
        save_survival_plot,
    )
    from .session import DashboardSession
    from .utils import ensure_run_dir, sanitize_for_json, write_text_report
except ImportError:
    from chat_client import ChatClient  # type: ignore
    from csv_processor import CSVProcessingError, rows_to_frame  # type: ignore
    from data_analysis import DataSummary, generate_data_insights  # type: ignore
    from main import (  # type: ignore
        FitError,
        ModelKind,
        build_fit_report,
        build_run_identity,
        export_fitted_csv,
        get_default_params,
        model_label_map,
        save_survival_plot,
    )
    from session import DashboardSession  # type: ignore
    from utils import ensure_run_dir, sanitize_for_json, write_text_report  # type: ignore

import logging

import gradio as gr
import pandas as pd

logger = logging.getLogger(__name__)

RUN_ROOT = Path("output_gradio")
PREVIEW_ROWS = 20
USER_ERRORS = (CSVProcessingError, FileNotFoundError, FitError, ValueError)


def _summary_frame(summary: Optional[DataSummary]) -> pd.DataFrame:
    columns = ["Column", "Mean", "Std", "Min", "Max", "Count"]
    if summary is None:
        return pd.DataFrame(columns=columns)
    records = [
        [col, st.mean, st.std, st.min, st.max, st.count]
        for col, st in summary.column_stats.items()
    ]
    return pd.DataFrame(records, columns=columns).round(4)


def _file_path(file_obj: Any) -> Optional[str]:
    # gr.File returns a path string, a dict or a tempfile wrapper depending on version
    if file_obj is None:
        return None
    if isinstance(file_obj, str):
        return file_obj
    if isinstance(file_obj, dict):
        return file_obj.get("name") or file_obj.get("path")
    return getattr(file_obj, "name", None)


def _ensure_state(state: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not state:
        state = {"session": DashboardSession(), "chat": ChatClient(), "transcript": []}
    return state


def _prune_old_runs(run_root: Path, keep: Optional[int] = None) -> None:
    """
    Retention helper: keep only the newest `keep` subdirectories under `run_root`.

    Timestamped run directories (YYYYmmddTHHMMSS) are ordered by name, anything
    else by mtime. Symlinks and paths resolving outside run_root are never removed.
    Deletion failures are logged at WARNING and retried on a later run.
    """
    if keep is None:
        try:
            keep = int(os.getenv("MICROBE_GRADIO_RETENTION_KEEP", "10"))
        except ValueError:
            keep = 10
    if keep <= 0:
        logger.debug(f"retention keep <=0 ({keep}) -> skipping prune")
        return

    if not run_root.exists() or not run_root.is_dir():
        return

    subdirs = [p for p in run_root.iterdir() if p.is_dir()]
    if not subdirs:
        return

    def _looks_like_run_ts(name: str) -> bool:
        return (
            len(name) >= 15
            and name[0:8].isdigit()
            and name[8] == "T"
            and name[9:15].isdigit()
        )

    if all(_looks_like_run_ts(p.name) for p in subdirs):
        subdirs_sorted = sorted(subdirs, key=lambda p: p.name, reverse=True)
    else:
        subdirs_sorted = sorted(subdirs, key=lambda p: p.stat().st_mtime, reverse=True)

    root_resolved = run_root.resolve()
    for d in subdirs_sorted[keep:]:
        if d.is_symlink():
            logger.warning(f"Skipping symlink during prune: {d}")
            continue
        if os.path.commonpath([str(root_resolved), str(d.resolve())]) != str(
            root_resolved
        ):
            logger.warning(f"Skipping prune of {d} - resolved outside run_root")
            continue
        try:
            shutil.rmtree(d)
            logger.info(f"Pruned old run dir: {d}")
        except OSError as e:
            logger.warning(f"Failed to prune {d}: {e}")


def _load_data(file_obj: Any, use_log: bool, strict: bool, state):
    """
    Load an uploaded CSV into the session.
    Returns (status, preview_df, raw_summary_df, processed_summary_df, insights, state).
    """
    state = _ensure_state(state)
    session: DashboardSession = state["session"]
    empty = pd.DataFrame()

    path = _file_path(file_obj)
    if not path:
        session.reset()
        msg = "No CSV file uploaded. Please upload a CSV file."
        return msg, empty, _summary_frame(None), _summary_frame(None), "", state

    try:
        report = session.load_csv(path, strict=bool(strict))
    except USER_ERRORS as e:
        session.reset()
        logger.info(f"CSV load rejected: {e}")
        return f"Error: {e}", empty, _summary_frame(None), _summary_frame(None), "", state

    session.use_log = bool(use_log)
    status = (
        f"Loaded {report.accepted_rows} rows from {session.file_name}"
        f" ({report.rejected_rows} malformed line(s) rejected)."
    )
    if report.warnings:
        status += "\n" + "\n".join(report.warnings)
    insights = "\n".join(
        f"- {i.title}: {i.description}" for i in generate_data_insights(session.rows)
    )
    return (
        status,
        rows_to_frame(session.processed_rows()[:PREVIEW_ROWS]),
        _summary_frame(session.raw_summary()),
        _summary_frame(session.processed_summary()),
        insights,
        state,
    )


def _toggle_log(use_log: bool, state):
    """Recompute the preview and processed summary when the log toggle changes."""
    state = _ensure_state(state)
    session: DashboardSession = state["session"]
    session.use_log = bool(use_log)
    session.fit_result = None
    return (
        rows_to_frame(session.processed_rows()[:PREVIEW_ROWS]),
        _summary_frame(session.processed_summary()),
        state,
    )


def _run_fit(model_value: str, state):
    """
    Fit the session's data. Returns (report_text, plot_html, csv_path, state);
    on failure the report carries the error and the other outputs are empty.
    """
    t0 = time.time()
    state = _ensure_state(state)
    session: DashboardSession = state["session"]
    if not session.has_data:
        return "Error: upload a CSV file before fitting a model.", "", None, state

    d_load, d_fit = get_default_params()
    d_load.csv_path = Path(session.file_name) if session.file_name else None
    d_load.log_transform = session.use_log
    try:
        d_fit.model = ModelKind.parse(model_value)
        result = session.run_fit(d_fit.model, d_fit)
    except USER_ERRORS as e:
        logger.info(f"Fit rejected: {e}")
        return f"Error: {e}", "", None, state
    except Exception as e:
        tb = traceback.format_exc()
        logger.error(f"_run_fit EXCEPTION: {e}\n{tb}")
        return f"Error running fit\n{e}", "", None, state

    report_text = build_fit_report(result, session.processed_summary())

    short_hash, _, _ = build_run_identity(d_load, d_fit)
    # Run directories are shared across sessions
    file_tag = f"{short_hash}-{state['chat'].session_id[:8]}"
    run_dir = ensure_run_dir(".", prefix=str(RUN_ROOT))
    csv_path = export_fitted_csv(result, run_dir, file_tag)
    write_text_report(report_text, run_dir, file_tag)
    svg_path = Path(
        save_survival_plot(
            session.processed_rows(),
            result,
            run_dir / f"plot-{result.model}-{file_tag}.svg",
            response=result.response,
        )
    )
    html = f"<div>{svg_path.read_text(encoding='utf-8')}</div>"

    _prune_old_runs(RUN_ROOT)
    logger.info(f"_run_fit COMPLETE (duration_ms={(time.time() - t0) * 1000:.1f})")
    return report_text, html, str(csv_path), state


def _format_transcript(transcript: List[tuple]) -> str:
    return "\n\n".join(f"{who}: {text}" for who, text in transcript)


def _send_chat(message: str, state):
    """Send a chat message with the current data sample and fit; returns (transcript, input, state)."""
    state = _ensure_state(state)
    text = (message or "").strip()
    if not text:
        return _format_transcript(state["transcript"]), "", state

    session: DashboardSession = state["session"]
    client: ChatClient = state["chat"]
    fit_payload = session.fit_result.to_dict() if session.fit_result else None
    data_sample = sanitize_for_json(session.processed_rows()[:10]) if session.has_data else None
    reply = client.ask_with_fallback(text, data_sample, fit_payload)
    state["transcript"].append(("You", text))
    state["transcript"].append(("Assistant", reply))
    return _format_transcript(state["transcript"]), "", state


def _build_ui():
    with gr.Blocks() as demo:
        d_load, d_fit = get_default_params()
        gr.Markdown("### Microbial Survival Modeler")
        gr.HTML("""
<style>
  #report_box textarea {
    font-family: "SF Mono", "Menlo", "Monaco", "Consolas", "Liberation Mono", "Courier New", monospace;
    font-size: 13px;
    line-height: 1.3;
    resize: vertical;
    min-height: 200px;
  }
</style>
""")
        state = gr.State(None)

        with gr.Row():
            file_input = gr.File(label="Upload CSV file", file_types=[".csv"])
            with gr.Column():
                use_log = gr.Checkbox(
                    label="Fit on ln(microbe)", value=d_load.log_transform
                )
                strict = gr.Checkbox(
                    label="Strict parsing (fail on malformed lines)",
                    value=d_load.strict,
                )
                status = gr.Textbox(label="Status", lines=3, interactive=False)

        with gr.Tab("Data"):
            preview = gr.Dataframe(label=f"Preview (first {PREVIEW_ROWS} rows)")
            with gr.Row():
                raw_summary = gr.Dataframe(label="Summary (raw)")
                processed_summary = gr.Dataframe(label="Summary (processed)")
            insights = gr.Markdown()

        with gr.Tab("Model"):
            with gr.Row():
                model = gr.Dropdown(
                    label="Model",
                    choices=[(model_label_map[k], k.value) for k in ModelKind],
                    value=d_fit.model.value,
                )
                fit_button = gr.Button("Fit model")
            report_box = gr.Textbox(
                value="",
                lines=16,
                interactive=False,
                elem_id="report_box",
                label="Fit summary",
            )
            plot_html = gr.HTML(label="Survival curves")
            fitted_csv = gr.File(label="Download fitted data (CSV)")

        with gr.Tab("Assistant"):
            transcript = gr.Textbox(label="Conversation", lines=14, interactive=False)
            with gr.Row():
                chat_input = gr.Textbox(
                    label="Ask about your data or fit",
                    placeholder="Which temperature inactivates fastest?",
                    scale=4,
                )
                send_button = gr.Button("Send", scale=1)

        file_input.change(
            _load_data,
            inputs=[file_input, use_log, strict, state],
            outputs=[status, preview, raw_summary, processed_summary, insights, state],
        )
        use_log.change(
            _toggle_log,
            inputs=[use_log, state],
            outputs=[preview, processed_summary, state],
        )
        fit_button.click(
            _run_fit,
            inputs=[model, state],
            outputs=[report_box, plot_html, fitted_csv, state],
        )
        send_button.click(
            _send_chat,
            inputs=[chat_input, state],
            outputs=[transcript, chat_input, state],
        )
        chat_input.submit(
            _send_chat,
            inputs=[chat_input, state],
            outputs=[transcript, chat_input, state],
        )

    return demo


if __name__ == "__main__":
    demo = _build_ui()
    demo.launch()
