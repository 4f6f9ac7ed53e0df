import math

import pytest

from microbe_modeler.data_analysis import (
    MAX_INSIGHTS,
    calculate_statistics,
    generate_data_insights,
    get_column_values,
    get_data_summary,
    get_numeric_columns,
    is_numeric_value,
    transform_log,
)


def test_summary_uses_population_std_and_skips_non_numeric_columns():
    rows = [
        {"time": 0.0, "microbe": 2.0, "label": "a"},
        {"time": 1.0, "microbe": 4.0, "label": "b"},
        {"time": 2.0, "microbe": None, "label": ""},
    ]
    summary = get_data_summary(rows)
    assert summary.total_rows == 3
    assert set(summary.column_stats) == {"time", "microbe"}
    micro = summary.column_stats["microbe"]
    assert (micro.mean, micro.std, micro.min, micro.max, micro.count) == (3.0, 1.0, 2.0, 4.0, 2)
    assert summary.to_dict()["columnStats"]["time"]["count"] == 3


def test_summary_threshold_drops_mostly_text_columns():
    rows = [{"mixed": 1.0}, {"mixed": "x"}, {"mixed": "y"}]
    assert "mixed" in get_data_summary(rows).column_stats
    assert "mixed" not in get_data_summary(rows, min_numeric_fraction=0.5).column_stats


def test_summary_of_empty_input_is_none():
    assert get_data_summary([]) is None
    assert get_numeric_columns([]) == []


def test_is_numeric_value_excludes_bools_and_non_finite():
    assert is_numeric_value(3)
    assert is_numeric_value(2.5)
    assert not is_numeric_value(True)
    assert not is_numeric_value(float("inf"))
    assert not is_numeric_value("3")


def test_calculate_statistics():
    stats = calculate_statistics([1.0, 2.0, 2.0, 5.0])
    assert stats["mean"] == pytest.approx(2.5)
    assert stats["median"] == pytest.approx(2.0)
    assert stats["mode"] == 2.0
    assert stats["range"] == 4.0
    assert stats["variance"] == pytest.approx(2.25)
    assert stats["std"] == pytest.approx(1.5)
    assert calculate_statistics([]) is None


def test_column_values_and_insights():
    rows = [{"time": float(i), "flag": True, **{f"c{j}": float(j) for j in range(12)}} for i in range(3)]
    assert get_column_values(rows, "flag") == []
    assert get_column_values(rows, "time") == [0.0, 1.0, 2.0]

    insights = generate_data_insights(rows)
    assert len(insights) == MAX_INSIGHTS
    assert insights[0].title == "Dataset Overview"
    assert insights[1].column == "time"


def test_transform_log_copies_rows():
    rows = [{"microbe": math.e}, {"microbe": 0.0}, {"microbe": None}, {"microbe": "n/a"}]
    out = transform_log(rows)
    assert out[0]["microbe_log"] == pytest.approx(1.0)
    assert [r["microbe_log"] for r in out[1:]] == [None, None, None]
    assert out[0]["microbe"] == math.e
    assert "microbe_log" not in rows[0]
