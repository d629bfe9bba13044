import io
import logging
import secrets
import sqlite3
import string
from typing import Any, Dict, List, Optional

import pandas as pd

from .activity import log_activity
from .auth import check_role, create_user, hash_password
from .errors import NotFoundError, ParseError
from .utils import diff_rows, fold_text, strip_or_none

logger = logging.getLogger(__name__)

USER_FIELDS = "id, username, full_name, role, created_at"

USER_COLUMNS = {
    "username": "username", "usuario": "username", "email": "username", "correo": "username",
    "full_name": "full_name", "nombre": "full_name", "nombre_completo": "full_name",
    "role": "role", "rol": "role",
    "password": "password", "contrasena": "password",
}


def generate_random_password(length: int = 12) -> str:
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*"
    return "".join(secrets.choice(alphabet) for _ in range(length))


def list_users(con) -> List[Dict[str, Any]]:
    return [dict(r) for r in con.execute(f"SELECT {USER_FIELDS} FROM users ORDER BY id").fetchall()]


def get_user(con, user_id: int) -> Dict[str, Any]:
    r = con.execute(f"SELECT {USER_FIELDS} FROM users WHERE id=?", (user_id,)).fetchone()
    if not r:
        raise NotFoundError("users", user_id)
    return dict(r)


def add_user(con, username: str, password: str, role: str = "user", full_name: Optional[str] = None,
             actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    cur = con.cursor()
    try:
        user_id = create_user(cur, username, password, role, full_name)
    except (ValueError, sqlite3.IntegrityError):
        con.rollback()
        raise
    user = get_user(con, user_id)
    log_activity(cur, "users", "INSERT", user_id, {"username": user["username"], "role": user["role"]}, actor)
    con.commit()
    return user


def update_user(con, user_id: int, full_name: Optional[str] = None, role: Optional[str] = None,
                actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    before = get_user(con, user_id)
    fields: Dict[str, Any] = {}
    if full_name is not None:
        fields["full_name"] = full_name.strip() or None
    if role is not None:
        fields["role"] = check_role(role)
    if not fields:
        raise ValueError("Sin cambios")
    sets = ", ".join(f"{k}=:{k}" for k in fields)
    cur = con.cursor()
    cur.execute(f"UPDATE users SET {sets} WHERE id=:id", {**fields, "id": user_id})
    log_activity(cur, "users", "UPDATE", user_id, diff_rows({k: before[k] for k in fields}, fields), actor)
    con.commit()
    return get_user(con, user_id)


def change_password(con, user_id: int, new_password: str, actor: Optional[Dict[str, Any]] = None) -> None:
    get_user(con, user_id)
    if not new_password or len(new_password) < 6:
        raise ValueError("La contraseña debe tener al menos 6 caracteres")
    salt = secrets.token_hex(16)
    cur = con.cursor()
    cur.execute(
        "UPDATE users SET password_hash=?, password_salt=? WHERE id=?",
        (hash_password(new_password, salt), salt, user_id),
    )
    # sessions opened with the old password end here
    cur.execute("DELETE FROM user_session WHERE user_id=?", (user_id,))
    log_activity(cur, "users", "UPDATE", user_id, {"password": "changed"}, actor)
    con.commit()


def delete_user(con, user_id: int, actor: Optional[Dict[str, Any]] = None) -> None:
    user = get_user(con, user_id)
    cur = con.cursor()
    cur.execute("DELETE FROM users WHERE id=?", (user_id,))
    log_activity(cur, "users", "DELETE", user_id, {"username": user["username"], "role": user["role"]}, actor)
    con.commit()


def read_user_rows(content: bytes) -> List[Dict[str, Any]]:
    """Rows of the first sheet as dicts keyed username / full_name / role / password."""
    if not content:
        raise ParseError("El archivo está vacío")
    try:
        df = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=object, engine="openpyxl")
    except Exception as e:
        raise ParseError(f"No se pudo leer el libro Excel: {e}") from e
    df = df.dropna(how="all")
    columns = {}
    for c in df.columns:
        key = USER_COLUMNS.get(fold_text(c).replace(" ", "_"))
        if key and key not in columns.values():
            columns[c] = key
    if "username" not in columns.values():
        raise ParseError("La hoja debe tener una columna username o email")
    rows = []
    for _, rec in df.iterrows():
        rows.append({key: strip_or_none(rec[c]) for c, key in columns.items()})
    return rows


def bulk_create_users(con, users: List[Dict[str, Any]], actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Create each user on its own; a failing row is reported and the rest go on."""
    created = []
    errors = []
    cur = con.cursor()
    for i, u in enumerate(users):
        username = (u.get("username") or u.get("email") or "").strip().lower()
        password = u.get("password") or generate_random_password()
        try:
            user_id = create_user(cur, username, password, u.get("role") or "user", u.get("full_name"))
        except (ValueError, sqlite3.IntegrityError) as e:
            errors.append({"row": i, "username": username, "message": str(e)})
            continue
        log_activity(cur, "users", "INSERT", user_id,
                     {"username": username, "role": check_role(u.get("role") or "user"), "source": "bulk"}, actor)
        entry = {"id": user_id, "username": username}
        if not u.get("password"):
            entry["password"] = password
        created.append(entry)
    con.commit()
    logger.info("bulk user creation: %d created, %d failed", len(created), len(errors))
    return {"created": created, "errors": errors}
