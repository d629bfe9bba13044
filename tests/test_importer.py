import sqlite3
import threading

import pytest

from comm_tracker import importer
from comm_tracker.errors import OperationCancelled, ParseError, WriteError
from workbooks import TODAY, make_workbook, pack_row, tag_row


def two_pack_workbook():
    return make_workbook([
        pack_row("PACK-A"),
        pack_row("PACK-B", sistema="Sistema 2"),
        tag_row("TAG-1", 0),
        tag_row("TAG-2", 0),
        tag_row("TAG-3", 0),
        tag_row("TAG-4", 1),
        tag_row("TAG-5", 1),
    ])


def count(con, table):
    return con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class TestRowParser:
    def test_reads_first_sheet_only(self):
        content = make_workbook(
            [pack_row("PACK-A")],
            extra_sheets={"Otra": [{"nombre_paquete": "IGNORED"}]},
        )
        rows = importer.parse_workbook(content)
        assert len(rows) == 1
        assert rows[0].get("nombre_paquete") == "PACK-A"
        assert rows[0].row_number == 2

    def test_headers_are_normalized(self):
        content = make_workbook(
            [{"Test Pack": "PACK-A", "Sistema": "S1", "ITR": "E19A", "Columna Extra": "x"}],
            columns=["Test Pack", "Sistema", "ITR", "Columna Extra"],
        )
        row = importer.parse_workbook(content)[0]
        assert row.values == {"nombre_paquete": "PACK-A", "sistema": "S1", "itr_asociado": "E19A"}

    def test_blank_rows_are_dropped(self):
        content = make_workbook([pack_row("PACK-A"), {}, pack_row("PACK-B")])
        rows = importer.parse_workbook(content)
        assert [r.get("nombre_paquete") for r in rows] == ["PACK-A", "PACK-B"]
        assert rows[0].row_number == 2
        assert rows[1].row_number > rows[0].row_number

    @pytest.mark.parametrize("content", [b"", b"not a workbook"])
    def test_unreadable_content(self, content):
        with pytest.raises(ParseError):
            importer.parse_workbook(content)

    def test_sheet_without_rows(self):
        with pytest.raises(ParseError):
            importer.parse_workbook(make_workbook([]))


class TestValidator:
    def test_kinds_and_positional_index(self):
        raw = importer.parse_workbook(make_workbook([
            pack_row("PACK-A"),
            {"sistema": "sin nombre"},
            pack_row("PACK-C"),
            tag_row("TAG-1", 2),
        ]))
        rows = importer.classify_rows(raw, TODAY)
        assert isinstance(rows[0], importer.TestPackRow) and rows[0].pack_index == 0
        assert isinstance(rows[1], importer.InvalidRow) and rows[1].pack_index == 1
        assert rows[1].error.field == "nombre_paquete"
        assert isinstance(rows[2], importer.TestPackRow) and rows[2].pack_index == 2
        assert isinstance(rows[3], importer.TagRow) and rows[3].test_pack_index == 2

    def test_released_tag_without_date_gets_import_date(self):
        raw = importer.parse_workbook(make_workbook([
            pack_row("PACK-A"),
            tag_row("TAG-1", 0, estado="Liberado"),
            tag_row("TAG-2", 0, estado="liberado", fecha_liberacion="2024-01-15"),
        ]))
        _, t1, t2 = importer.classify_rows(raw, TODAY)
        assert (t1.estado, t1.fecha_liberacion) == ("liberado", "2024-06-01")
        assert (t2.estado, t2.fecha_liberacion) == ("liberado", "2024-01-15")

    def test_invalid_states_are_rejected(self):
        raw = importer.parse_workbook(make_workbook([
            pack_row("PACK-A", estado="cerrado"),
            tag_row("TAG-1", 0, estado="roto"),
        ]))
        rows = importer.classify_rows(raw, TODAY)
        assert all(isinstance(r, importer.InvalidRow) for r in rows)
        assert [r.kind for r in rows] == ["test_pack", "tag"]

    def test_non_numeric_index(self):
        raw = importer.parse_workbook(make_workbook([pack_row("PACK-A"), tag_row("TAG-1", "primero")]))
        rows = importer.classify_rows(raw, TODAY)
        assert isinstance(rows[1], importer.InvalidRow)
        assert rows[1].error.field == "test_pack_index"


class TestLinker:
    def link(self, rows):
        return importer.link_rows(importer.classify_rows(importer.parse_workbook(make_workbook(rows)), TODAY))

    def test_groups_tags_under_their_pack(self):
        result = importer.link_rows(importer.classify_rows(importer.parse_workbook(two_pack_workbook()), TODAY))
        assert [g.pack.nombre_paquete for g in result.groups] == ["PACK-A", "PACK-B"]
        assert [[t.tag_name for t in g.tags] for g in result.groups] == [
            ["TAG-1", "TAG-2", "TAG-3"], ["TAG-4", "TAG-5"],
        ]
        assert result.rows_skipped == 0

    @pytest.mark.parametrize("index", [-1, 2, 9])
    def test_out_of_range_index_is_skipped(self, index):
        result = self.link([pack_row("PACK-A"), pack_row("PACK-B"), tag_row("TAG-1", 0), tag_row("TAG-X", index)])
        assert result.tags_skipped == 1
        assert result.tags_linked == 1
        assert len(result.groups) == 2
        assert result.errors[0]["field"] == "test_pack"

    def test_index_of_invalid_pack_is_skipped(self):
        result = self.link([pack_row("PACK-A"), {"sistema": "sin nombre"}, tag_row("TAG-1", 1)])
        assert result.test_packs_skipped == 1
        assert result.tags_skipped == 1
        assert result.rows_skipped == 2

    def test_reference_by_name(self):
        result = self.link([
            pack_row("PACK-A"),
            {"tag_name": "TAG-1", "test_pack_nombre": "PACK-A"},
            {"tag_name": "TAG-2", "test_pack_nombre": "NO-EXISTE"},
        ])
        assert [t.tag_name for t in result.groups[0].tags] == ["TAG-1"]
        assert result.tags_skipped == 1


class TestImport:
    def test_two_packs_five_tags(self, con, actor):
        summary = importer.import_test_packs(con, two_pack_workbook(), actor, today=TODAY)
        assert summary.test_packs_created == 2
        assert summary.tags_created == 5
        assert summary.tags_skipped == 0
        assert summary.rows_skipped == 0
        counts = dict(con.execute(
            "SELECT tp.nombre_paquete, COUNT(t.id) FROM test_packs tp JOIN tags t ON t.test_pack_id = tp.id GROUP BY tp.id"
        ).fetchall())
        assert counts == {"PACK-A": 3, "PACK-B": 2}

    def test_index_nine_is_skipped_others_import(self, con, actor):
        content = make_workbook([
            pack_row("PACK-A"), pack_row("PACK-B"),
            tag_row("TAG-1", 0), tag_row("TAG-2", 1), tag_row("TAG-9", 9),
        ])
        summary = importer.import_test_packs(con, content, actor, today=TODAY)
        assert summary.tags_skipped == 1
        assert summary.tags_created == 2
        assert summary.test_packs_created == 2

    def test_negative_index_does_not_affect_packs(self, con, actor):
        content = make_workbook([pack_row("PACK-A"), tag_row("TAG-1", -1)])
        summary = importer.import_test_packs(con, content, actor, today=TODAY)
        assert summary.test_packs_created == 1
        assert summary.tags_created == 0
        assert summary.tags_skipped == 1

    def test_created_tags_belong_to_created_packs(self, con, actor):
        con.execute("INSERT INTO test_packs(nombre_paquete) VALUES ('EXISTENTE')")
        con.commit()
        summary = importer.import_test_packs(con, two_pack_workbook(), actor, today=TODAY)
        pack_ids = {r[0] for r in con.execute("SELECT DISTINCT test_pack_id FROM tags").fetchall()}
        assert pack_ids <= set(summary.test_pack_ids)
        assert count(con, "tags") <= 5

    def test_pack_estado_follows_tags(self, con, actor):
        content = make_workbook([
            pack_row("PACK-A", estado="pendiente"),
            pack_row("PACK-B", estado="listo"),
            tag_row("TAG-1", 0, estado="liberado", fecha_liberacion="2024-01-02"),
            tag_row("TAG-2", 1),
        ])
        importer.import_test_packs(con, content, actor, today=TODAY)
        estados = dict(con.execute("SELECT nombre_paquete, estado FROM test_packs").fetchall())
        assert estados == {"PACK-A": "listo", "PACK-B": "pendiente"}

    def test_one_activity_entry_per_batch(self, con, actor):
        importer.import_test_packs(con, two_pack_workbook(), actor, today=TODAY)
        rows = con.execute("SELECT table_name, action, user_id FROM db_activity_log ORDER BY id").fetchall()
        assert [tuple(r) for r in rows] == [
            ("test_packs", "INSERT", actor["id"]),
            ("tags", "INSERT", actor["id"]),
        ]


class TestBulkWriterFailures:
    def test_pack_phase_failure_writes_nothing(self, con, actor):
        con.executescript("""
            CREATE TRIGGER reject_pack BEFORE INSERT ON test_packs
            WHEN NEW.nombre_paquete = 'PACK-B'
            BEGIN SELECT RAISE(ABORT, 'rechazado'); END;
        """)
        with pytest.raises(WriteError) as exc:
            importer.import_test_packs(con, two_pack_workbook(), actor, today=TODAY)
        assert exc.value.phase == "test_packs"
        assert count(con, "test_packs") == 0
        assert count(con, "tags") == 0
        assert count(con, "db_activity_log") == 0

    def test_tag_phase_failure_keeps_packs(self, con, actor):
        con.executescript("""
            CREATE TRIGGER reject_tag BEFORE INSERT ON tags
            WHEN NEW.tag_name = 'TAG-5'
            BEGIN SELECT RAISE(ABORT, 'rechazado'); END;
        """)
        with pytest.raises(WriteError) as exc:
            importer.import_test_packs(con, two_pack_workbook(), actor, today=TODAY)
        assert exc.value.phase == "tags"
        assert exc.value.test_packs_created == 2
        assert count(con, "test_packs") == 2
        assert count(con, "tags") == 0

    def test_cancelled_before_first_phase(self, con, actor):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            importer.import_test_packs(con, two_pack_workbook(), actor, cancel=cancel, today=TODAY)
        assert count(con, "test_packs") == 0

    def test_cancelled_between_phases(self, con, actor):
        cancel = threading.Event()

        class CancellingConnection:
            # sets the token once the pack batch commits
            def __init__(self, inner):
                self.inner = inner
                self.commits = 0

            def cursor(self):
                return self.inner.cursor()

            def rollback(self):
                self.inner.rollback()

            def commit(self):
                self.inner.commit()
                self.commits += 1
                cancel.set()

        wrapped = CancellingConnection(con)
        with pytest.raises(OperationCancelled):
            importer.import_test_packs(wrapped, two_pack_workbook(), actor, cancel=cancel, today=TODAY)
        assert wrapped.commits == 1
        assert count(con, "test_packs") == 2
        assert count(con, "tags") == 0

    def test_tag_requires_existing_pack(self, con):
        with pytest.raises(sqlite3.IntegrityError):
            con.execute("INSERT INTO tags(tag_name, test_pack_id) VALUES ('T', 999)")
