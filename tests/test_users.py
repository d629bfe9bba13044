import sqlite3

import pytest

from comm_tracker import users
from comm_tracker.auth import create_session, create_user, ensure_default_users, verify_password
from comm_tracker.errors import NotFoundError, ParseError
from workbooks import make_sheets


def password_ok(con, user_id, password):
    r = con.execute("SELECT password_hash, password_salt FROM users WHERE id=?", (user_id,)).fetchone()
    return verify_password(password, r["password_salt"], r["password_hash"])


def test_default_admin_is_created_once(con, monkeypatch):
    monkeypatch.setenv("ADMIN_DEFAULT_PASSWORD", "secreto1")
    ensure_default_users(con.cursor())
    ensure_default_users(con.cursor())
    rows = users.list_users(con)
    assert [(u["username"], u["role"]) for u in rows] == [("admin", "admin")]
    assert password_ok(con, rows[0]["id"], "secreto1")


@pytest.mark.parametrize("username,password,role", [
    ("", "secreto1", "user"),
    ("ana", "corta", "user"),
    ("ana", "secreto1", "superuser"),
])
def test_create_user_validation(con, username, password, role):
    with pytest.raises(ValueError):
        create_user(con.cursor(), username, password, role)


def test_update_and_password_change(con):
    uid = create_user(con.cursor(), "Ana", "secreto1", "user", "Ana P")
    con.commit()
    create_session(con.cursor(), uid)
    con.commit()
    updated = users.update_user(con, uid, role="tecnico")
    assert (updated["username"], updated["role"], updated["full_name"]) == ("ana", "tecnico", "Ana P")

    users.change_password(con, uid, "otraclave")
    assert password_ok(con, uid, "otraclave")
    assert con.execute("SELECT COUNT(*) FROM user_session WHERE user_id=?", (uid,)).fetchone()[0] == 0

    with pytest.raises(ValueError):
        users.update_user(con, uid)


def test_delete_user(con):
    uid = create_user(con.cursor(), "ana", "secreto1")
    con.commit()
    users.delete_user(con, uid)
    with pytest.raises(NotFoundError):
        users.get_user(con, uid)


def test_bulk_creation_reports_failures(con):
    create_user(con.cursor(), "existente", "secreto1")
    con.commit()
    result = users.bulk_create_users(con, [
        {"username": "nuevo", "password": "secreto1", "role": "tecnico"},
        {"email": "Sin.Clave@obra.com"},
        {"username": "existente", "password": "secreto1"},
        {"username": "malo", "role": "jefe"},
    ])
    created = {u["username"]: u for u in result["created"]}
    assert set(created) == {"nuevo", "sin.clave@obra.com"}
    assert "password" not in created["nuevo"]
    generated = created["sin.clave@obra.com"]["password"]
    assert len(generated) == 12
    assert password_ok(con, created["sin.clave@obra.com"]["id"], generated)
    assert [e["username"] for e in result["errors"]] == ["existente", "malo"]


def test_read_user_rows():
    content = make_sheets({"Usuarios": [
        {"Email": "a@obra.com", "Nombre Completo": "A", "Rol": "admin"},
        {"Email": "b@obra.com", "Nombre Completo": None, "Rol": None},
    ]})
    rows = users.read_user_rows(content)
    assert rows[0] == {"username": "a@obra.com", "full_name": "A", "role": "admin"}
    assert rows[1]["full_name"] is None


def test_read_user_rows_needs_username_column():
    with pytest.raises(ParseError):
        users.read_user_rows(make_sheets({"Hoja": [{"nombre": "x"}]}))


def user_activity(con):
    return con.execute(
        "SELECT action, user_id, record_id, details FROM db_activity_log WHERE table_name='users' ORDER BY id"
    ).fetchall()


def test_user_changes_are_logged(con, actor):
    user = users.add_user(con, "Ana", "secreto1", "user", None, actor)
    users.update_user(con, user["id"], role="tecnico", actor=actor)
    users.change_password(con, user["id"], "otraclave", actor)
    users.delete_user(con, user["id"], actor)

    rows = user_activity(con)
    assert [r["action"] for r in rows] == ["INSERT", "UPDATE", "UPDATE", "DELETE"]
    assert {r["record_id"] for r in rows} == {user["id"]}
    assert {r["user_id"] for r in rows} == {actor["id"]}
    assert '"to": "tecnico"' in rows[1]["details"]
    assert all("otraclave" not in r["details"] for r in rows)


def test_bulk_creation_logs_each_created_user(con, actor):
    result = users.bulk_create_users(con, [
        {"username": "uno", "password": "secreto1"},
        {"username": "dos", "role": "jefe"},
        {"username": "tres", "role": "Tecnico"},
    ], actor)
    rows = user_activity(con)
    assert [r["record_id"] for r in rows] == [u["id"] for u in result["created"]]
    assert '"role": "tecnico"' in rows[1]["details"]


def test_add_user_duplicate_leaves_connection_usable(con, actor):
    users.add_user(con, "ana", "secreto1", actor=actor)
    with pytest.raises(sqlite3.IntegrityError):
        users.add_user(con, "ANA", "secreto1", actor=actor)
    assert not con.in_transaction
    assert len(user_activity(con)) == 1
