import os
import re
import time
import logging
from typing import Any, Dict, List, Optional

from .activity import log_activity
from .errors import NotFoundError, ValidationError
from .utils import sha256_bytes

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.path.dirname(__file__), "..", "uploads"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

_SAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_part(value: str) -> str:
    return _SAFE.sub("_", value).strip("._")


def _folder(folder: Optional[str]) -> str:
    parts = [_safe_part(p) for p in (folder or "").replace("\\", "/").split("/")]
    return "/".join(p for p in parts if p)


def save_file(con, file_name: str, content: bytes, folder: str = "", content_type: Optional[str] = None,
              actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Store ``content`` under UPLOAD_DIR/<folder>/<timestamp>-<name> and record it."""
    if not content:
        raise ValidationError("file", "El archivo está vacío")
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError("file", f"El archivo supera el máximo de {MAX_UPLOAD_BYTES} bytes")
    base, ext = os.path.splitext(os.path.basename(file_name or ""))
    base = _safe_part(base) or "archivo"
    folder = _folder(folder)
    stored_name = f"{int(time.time() * 1000)}-{base}{_safe_part(ext) and '.' + _safe_part(ext)}"
    stored_path = os.path.join(folder, stored_name) if folder else stored_name

    target = os.path.join(UPLOAD_DIR, stored_path)
    os.makedirs(os.path.dirname(target), exist_ok=True)
    with open(target, "wb") as f:
        f.write(content)

    cur = con.cursor()
    try:
        cur.execute(
            """
            INSERT INTO uploaded_files(folder, file_name, stored_path, content_type, size_bytes, file_sha256, uploaded_by)
            VALUES (?,?,?,?,?,?,?)
            """,
            (folder, file_name, stored_path, content_type, len(content), sha256_bytes(content),
             actor.get("id") if actor else None),
        )
        file_id = cur.lastrowid
        log_activity(cur, "uploaded_files", "INSERT", file_id,
                     {"file_name": file_name, "folder": folder, "size_bytes": len(content)}, actor)
        con.commit()
    except Exception:
        con.rollback()
        os.remove(target)
        raise
    logger.info("stored %s (%d bytes) as %s", file_name, len(content), stored_path)
    return get_file(con, file_id)


def get_file(con, file_id: int) -> Dict[str, Any]:
    row = con.execute("SELECT * FROM uploaded_files WHERE id=?", (file_id,)).fetchone()
    if not row:
        raise NotFoundError("uploaded_files", file_id)
    return dict(row)


def file_path(record: Dict[str, Any]) -> str:
    return os.path.join(UPLOAD_DIR, record["stored_path"])


def list_files(con, folder: Optional[str] = None) -> List[Dict[str, Any]]:
    if folder is None:
        rows = con.execute("SELECT * FROM uploaded_files ORDER BY id DESC").fetchall()
    else:
        rows = con.execute("SELECT * FROM uploaded_files WHERE folder=? ORDER BY id DESC", (_folder(folder),)).fetchall()
    return [dict(r) for r in rows]


def delete_file(con, file_id: int, actor: Optional[Dict[str, Any]] = None) -> None:
    record = get_file(con, file_id)
    cur = con.cursor()
    cur.execute("DELETE FROM uploaded_files WHERE id=?", (file_id,))
    log_activity(cur, "uploaded_files", "DELETE", file_id,
                 {"file_name": record["file_name"], "folder": record["folder"]}, actor)
    con.commit()
    path = file_path(record)
    if os.path.exists(path):
        os.remove(path)
    else:
        logger.warning("stored file missing on disk: %s", path)
