import os
import secrets
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Callable

from fastapi import HTTPException, Header, Depends, Cookie

from .db import connect

logger = logging.getLogger(__name__)

SESSION_DURATION_SECONDS = int(os.getenv("SESSION_DURATION_SECONDS", "28800"))

# role -> label shown in the user administration screens
ROLE_LABELS = {"admin": "Administrador", "tecnico": "Técnico", "user": "Usuario"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256((salt + password).encode("utf-8")).hexdigest()


def verify_password(password: str, salt: str, password_hash: str) -> bool:
    return secrets.compare_digest(hash_password(password, salt), password_hash)


def check_role(role: str) -> str:
    role = (role or "user").strip().lower()
    if role not in ROLE_LABELS:
        raise ValueError("Rol inválido")
    return role


def create_user(cur, username: str, password: str, role: str = "user", full_name: Optional[str] = None) -> int:
    username = (username or "").strip().lower()
    if not username:
        raise ValueError("Usuario requerido")
    if not password or len(password) < 6:
        raise ValueError("La contraseña debe tener al menos 6 caracteres")
    role = check_role(role)
    salt = secrets.token_hex(16)
    cur.execute(
        "INSERT INTO users(username, full_name, password_hash, password_salt, role) VALUES (?,?,?,?,?)",
        (username, (full_name or "").strip() or None, hash_password(password, salt), salt, role),
    )
    return cur.lastrowid


def ensure_default_users(cur) -> None:
    """First start only: an admin account, so someone can create the rest."""
    if cur.execute("SELECT 1 FROM users LIMIT 1").fetchone():
        return
    create_user(cur, "admin", os.getenv("ADMIN_DEFAULT_PASSWORD", "admin123"), "admin", ROLE_LABELS["admin"])
    logger.info("default admin user created")


# ---------------------- Sessions ----------------------

def create_session(cur, user_id: int) -> Dict[str, str]:
    token = secrets.token_hex(32)
    expires_at = (_utcnow() + timedelta(seconds=SESSION_DURATION_SECONDS)).isoformat()
    cur.execute(
        "INSERT INTO user_session(token, user_id, expires_at) VALUES (?,?,?)",
        (token, user_id, expires_at),
    )
    return {"token": token, "expires_at": expires_at}


def delete_session(cur, token: str) -> None:
    cur.execute("DELETE FROM user_session WHERE token=?", (token,))


def purge_expired_sessions(cur) -> int:
    cur.execute("DELETE FROM user_session WHERE expires_at < ?", (_utcnow().isoformat(),))
    if cur.rowcount:
        logger.info("purged %d expired sessions", cur.rowcount)
    return cur.rowcount


def lookup_session(cur, token: Optional[str]) -> Dict[str, Any]:
    """The user behind ``token``, as the ``actor`` dict services receive.

    Raises 401 for a missing, unknown or expired token; an expired session is
    deleted on the way out (the caller commits).
    """
    if not token:
        raise HTTPException(status_code=401, detail="Token requerido")
    row = cur.execute(
        """
        SELECT s.token, s.expires_at, u.id AS user_id, u.username, u.full_name, u.role
        FROM user_session s
        JOIN users u ON u.id = s.user_id
        WHERE s.token=?
        """,
        (token,),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=401, detail="Sesión no válida")
    try:
        expired = datetime.fromisoformat(row["expires_at"]) < _utcnow()
    except ValueError:
        expired = True
    if expired:
        delete_session(cur, token)
        raise HTTPException(status_code=401, detail="Sesión expirada")
    return {
        "id": row["user_id"],
        "username": row["username"],
        "full_name": row["full_name"],
        "role": row["role"],
        "session_token": row["token"],
        "session_expires_at": row["expires_at"],
    }


def authenticate(token: Optional[str]) -> Dict[str, Any]:
    with connect() as con:
        cur = con.cursor()
        try:
            return lookup_session(cur, token)
        finally:
            # keeps the delete of an expired session
            con.commit()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Formato de token inválido")
    return token.strip() or None


# ---------------------- Dependencies ----------------------

def get_current_user(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(default=None),
) -> Dict[str, Any]:
    """Bearer header first, then the ``session`` cookie set by /auth/login."""
    return authenticate(bearer_token(authorization) or session)


def require_user(user=Depends(get_current_user)) -> Dict[str, Any]:
    return user


def require_role(*roles: str) -> Callable:
    allowed = {r.lower() for r in roles if r}

    def dependency(user=Depends(get_current_user)) -> Dict[str, Any]:
        if allowed and user["role"].lower() not in allowed:
            raise HTTPException(status_code=403, detail="No tienes permisos para esta operación")
        return user

    return dependency
