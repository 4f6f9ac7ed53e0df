from microbe_modeler.main import group_by_temperature


def test_groups_partition_rows_with_finite_temperature():
    rows = [
        {"time": 0.0, "temperature": 20.0, "microbe": 1.0},
        {"time": 0.0, "temperature": 10.0, "microbe": 2.0},
        {"time": 1.0, "temperature": 20.0, "microbe": 3.0},
        {"time": 1.0, "temperature": None, "microbe": 4.0},
        {"time": 2.0, "temperature": "warm", "microbe": 5.0},
        {"time": 3.0, "temperature": True, "microbe": 6.0},
        {"time": 4.0, "temperature": float("nan"), "microbe": 7.0},
        {"time": 2.0, "temperature": 10.0, "microbe": 8.0},
    ]
    groups = group_by_temperature(rows)

    assert [g.temperature for g in groups] == [10.0, 20.0]
    assert [r["microbe"] for r in groups[0].rows] == [2.0, 8.0]
    assert [r["microbe"] for r in groups[1].rows] == [1.0, 3.0]

    grouped_ids = [id(r) for g in groups for r in g.rows]
    assert len(grouped_ids) == len(set(grouped_ids)) == 4
    # Rows are shared, not copied
    assert groups[1].rows[0] is rows[0]


def test_numeric_string_temperatures_group_with_floats():
    rows = [{"temperature": "20"}, {"temperature": 20.0}, {"temperature": 20.5}]
    groups = group_by_temperature(rows)
    assert [(g.temperature, len(g.rows)) for g in groups] == [(20.0, 2), (20.5, 1)]


def test_empty_input_gives_no_groups():
    assert group_by_temperature([]) == []
