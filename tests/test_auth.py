import pytest
from fastapi import HTTPException

from comm_tracker.auth import (
    bearer_token,
    create_session,
    create_user,
    lookup_session,
    purge_expired_sessions,
)


@pytest.fixture
def user_id(con):
    uid = create_user(con.cursor(), "ana", "secreto1", "tecnico", "Ana P")
    con.commit()
    return uid


def expire(con, token):
    con.execute("UPDATE user_session SET expires_at='2000-01-01T00:00:00' WHERE token=?", (token,))
    con.commit()


class TestBearerToken:
    @pytest.mark.parametrize("header,expected", [
        (None, None),
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Bearer ", None),
    ])
    def test_parses_header(self, header, expected):
        assert bearer_token(header) == expected

    def test_other_schemes_are_rejected(self):
        with pytest.raises(HTTPException) as exc:
            bearer_token("Basic YWRtaW46eA==")
        assert exc.value.status_code == 401


class TestLookupSession:
    def test_returns_actor(self, con, user_id):
        session = create_session(con.cursor(), user_id)
        actor = lookup_session(con.cursor(), session["token"])
        assert (actor["id"], actor["username"], actor["full_name"], actor["role"]) == (user_id, "ana", "Ana P", "tecnico")

    @pytest.mark.parametrize("token,detail", [(None, "Token requerido"), ("nope", "Sesión no válida")])
    def test_missing_or_unknown(self, con, token, detail):
        with pytest.raises(HTTPException) as exc:
            lookup_session(con.cursor(), token)
        assert exc.value.detail == detail

    def test_expired_session_is_deleted(self, con, user_id):
        token = create_session(con.cursor(), user_id)["token"]
        expire(con, token)
        with pytest.raises(HTTPException) as exc:
            lookup_session(con.cursor(), token)
        assert exc.value.detail == "Sesión expirada"
        assert con.execute("SELECT COUNT(*) FROM user_session").fetchone()[0] == 0


def test_purge_removes_only_expired(con, user_id):
    cur = con.cursor()
    old = create_session(cur, user_id)["token"]
    live = create_session(cur, user_id)["token"]
    expire(con, old)
    assert purge_expired_sessions(con.cursor()) == 1
    assert [r[0] for r in con.execute("SELECT token FROM user_session").fetchall()] == [live]
