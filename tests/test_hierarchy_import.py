import threading

import pytest

from comm_tracker.errors import OperationCancelled, ParseError
from comm_tracker.hierarchy_import import hierarchy_template, import_hierarchy
from workbooks import make_sheets


def rows(con, table):
    return [dict(r) for r in con.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()]


def test_clamps_out_of_range_values(con, actor):
    content = make_sheets({
        "Proyectos": [
            {"name": "Alto", "progress": 150, "status": "complete"},
            {"name": "Bajo", "progress": -10},
        ],
        "Sistemas": [{"name": "S1", "project_name": "Alto", "completion_rate": 150}],
        "Subsistemas": [{"name": "SS1", "system_name": "S1", "completion_rate": -10}],
        "ITRs": [{"name": "I1", "subsystem_name": "SS1", "progress": "150", "quantity": 0}],
    })
    result = import_hierarchy(con, content, actor)
    assert result["rows_skipped"] == 0
    assert [p["progress"] for p in rows(con, "projects")] == [100, 0]
    assert rows(con, "systems")[0]["completion_rate"] == 100
    assert rows(con, "subsystems")[0]["completion_rate"] == 0
    itr = rows(con, "itrs")[0]
    assert (itr["progress"], itr["quantity"]) == (100, 1)


def test_parents_resolve_by_id_and_name(con, actor):
    con.execute("INSERT INTO projects(name) VALUES ('Existente')")
    con.commit()
    content = make_sheets({
        "Sistemas": [
            {"name": "Por id", "project_id": 1},
            {"name": "Por nombre", "project_name": "Existente"},
        ],
    })
    result = import_hierarchy(con, content, actor)
    assert result["systems"] == 2
    assert {s["project_id"] for s in rows(con, "systems")} == {1}


def test_unresolved_parents_are_skipped(con, actor):
    content = make_sheets({
        "Proyectos": [{"name": "P1"}],
        "Sistemas": [
            {"name": "OK", "project_name": "P1"},
            {"name": "Sin padre", "project_name": "No existe"},
            {"name": "Id malo", "project_id": 77},
        ],
        "Subsistemas": [{"name": "Colgado", "system_name": "Sin padre"}],
    })
    result = import_hierarchy(con, content, actor)
    assert (result["projects"], result["systems"], result["subsystems"]) == (1, 1, 0)
    assert result["rows_skipped"] == 3
    assert {e["sheet"] for e in result["errors"]} == {"sistemas", "subsistemas"}


def test_rows_without_name_are_reported(con, actor):
    content = make_sheets({"Proyectos": [{"name": "P1"}, {"location": "sin nombre"}]})
    result = import_hierarchy(con, content, actor)
    assert result["projects"] == 1
    assert result["errors"] == [{"sheet": "proyectos", "row": 3, "field": "name", "message": "name es requerido"}]


def test_one_activity_entry_per_sheet(con, actor):
    import_hierarchy(con, hierarchy_template(), actor)
    logged = [tuple(r) for r in con.execute("SELECT table_name, action FROM db_activity_log ORDER BY id")]
    assert logged == [
        ("projects", "INSERT"), ("systems", "INSERT"), ("subsystems", "INSERT"), ("itrs", "INSERT"),
    ]


def test_workbook_without_known_sheets(con, actor):
    with pytest.raises(ParseError):
        import_hierarchy(con, make_sheets({"Otra": [{"a": 1}]}), actor)


def test_cancelled_import(con, actor):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(OperationCancelled):
        import_hierarchy(con, hierarchy_template(), actor, cancel=cancel)
    assert rows(con, "projects") == []
