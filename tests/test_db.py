import pytest

from comm_tracker import db


def test_connect_rolls_back_on_error(tmp_path):
    path = tmp_path / "t.sqlite"
    with db.connect(path) as con:
        db.init_schema(con)

    with pytest.raises(RuntimeError):
        with db.connect(path) as con:
            con.execute("INSERT INTO projects(name) VALUES ('a medias')")
            raise RuntimeError("boom")

    with db.connect(path) as con:
        assert con.execute("SELECT COUNT(*) FROM projects").fetchone()[0] == 0
        con.execute("INSERT INTO projects(name) VALUES ('Planta')")
        con.commit()
    with db.connect(path) as con:
        assert con.execute("SELECT name FROM projects").fetchone()[0] == "Planta"
