import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .activity import log_activity
from .errors import NotFoundError, ValidationError
from .tags import check_tag_values, refresh_pack_status
from .utils import normalize_payload, diff_rows

logger = logging.getLogger(__name__)

# table -> (required fields, parent fk, parent table, label used in activity details)
TABLES = {
    "projects": (("name",), None, None, "name"),
    "systems": (("name", "project_id"), "project_id", "projects", "name"),
    "subsystems": (("name", "system_id"), "system_id", "systems", "name"),
    "itrs": (("name", "subsystem_id"), "subsystem_id", "subsystems", "name"),
    "test_packs": (("nombre_paquete",), None, None, "nombre_paquete"),
    "tags": (("tag_name", "test_pack_id"), "test_pack_id", "test_packs", "tag_name"),
}

ORDER_BY = {
    "projects": "id DESC",
    "systems": "id",
    "subsystems": "id",
    "itrs": "id",
    "test_packs": "id DESC",
    "tags": "id",
}


def _check_table(table: str) -> None:
    if table not in TABLES:
        raise ValueError(f"Tabla desconocida: {table}")


def select_rows(con, table: str, filters: Optional[Dict[str, Any]] = None, search: Optional[str] = None,
                limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    _check_table(table)
    label = TABLES[table][3]
    q = f"SELECT * FROM {table} WHERE 1=1"
    params: Dict[str, Any] = {}
    for k, v in (filters or {}).items():
        if v is None:
            continue
        q += f" AND {k} = :{k}"
        params[k] = v
    if search:
        q += f" AND {label} LIKE :kw"
        params["kw"] = f"%{search}%"
    q += f" ORDER BY {ORDER_BY[table]}"
    if limit is not None:
        q += " LIMIT :limit OFFSET :offset"
        params.update({"limit": limit, "offset": offset})
    return [dict(r) for r in con.execute(q, params).fetchall()]


def get_row(con, table: str, record_id: int) -> Dict[str, Any]:
    _check_table(table)
    r = con.execute(f"SELECT * FROM {table} WHERE id=?", (record_id,)).fetchone()
    if not r:
        raise NotFoundError(table, record_id)
    return dict(r)


def _ensure_parent(cur, table: str, values: Dict[str, Any]) -> None:
    _, fk, parent, _ = TABLES[table]
    if not fk or fk not in values:
        return
    if values[fk] is None:
        raise ValidationError(fk, f"{fk} es requerido")
    if not cur.execute(f"SELECT id FROM {parent} WHERE id=?", (values[fk],)).fetchone():
        raise NotFoundError(parent, values[fk])


def insert_row(con, table: str, payload: Dict[str, Any], actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    _check_table(table)
    required, fk, _, label = TABLES[table]
    data = normalize_payload(table, payload)
    for field in required:
        if data.get(field) in (None, ""):
            raise ValidationError(field, f"{field} es requerido")
    if table == "tags":
        data = check_tag_values(None, data)
    cur = con.cursor()
    _ensure_parent(cur, table, data)
    cols = ",".join(data.keys())
    vals = ":" + ",:".join(data.keys())
    cur.execute(f"INSERT INTO {table}({cols}) VALUES ({vals})", data)
    record_id = cur.lastrowid
    log_activity(cur, table, "INSERT", record_id, {label: data.get(label), "values": data}, actor)
    if table == "tags":
        refresh_pack_status(cur, data["test_pack_id"])
    con.commit()
    logger.info("%s %s created", table, record_id)
    return get_row(con, table, record_id)


def update_row(con, table: str, record_id: int, payload: Dict[str, Any],
               actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    _check_table(table)
    required, _, _, label = TABLES[table]
    update = normalize_payload(table, payload)
    if not update:
        raise ValidationError("payload", "Sin cambios")
    for field in required:
        if field in update and update[field] in (None, ""):
            raise ValidationError(field, f"{field} es requerido")
    cur = con.cursor()
    current = get_row(con, table, record_id)
    if table == "tags":
        merged = check_tag_values(current, update)
        update["estado"] = merged["estado"]
        update["fecha_liberacion"] = merged["fecha_liberacion"]
    _ensure_parent(cur, table, update)
    sets = ", ".join(f"{k}=:{k}" for k in update.keys())
    cur.execute(f"UPDATE {table} SET {sets}, updated_at=datetime('now') WHERE id=:id", {**update, "id": record_id})
    after = get_row(con, table, record_id)
    changed = diff_rows(current, after)
    changed.pop("updated_at", None)
    if changed:
        log_activity(cur, table, "UPDATE", record_id, {label: after.get(label), "diff": changed}, actor)
    if table == "tags":
        refresh_pack_status(cur, after["test_pack_id"])
        if current["test_pack_id"] != after["test_pack_id"]:
            refresh_pack_status(cur, current["test_pack_id"])
    con.commit()
    return get_row(con, table, record_id)


def delete_row(con, table: str, record_id: int, actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    _check_table(table)
    label = TABLES[table][3]
    cur = con.cursor()
    current = get_row(con, table, record_id)
    try:
        cur.execute(f"DELETE FROM {table} WHERE id=?", (record_id,))
    except sqlite3.IntegrityError:
        con.rollback()
        raise
    log_activity(cur, table, "DELETE", record_id, {label: current.get(label)}, actor)
    if table == "tags":
        refresh_pack_status(cur, current["test_pack_id"])
    con.commit()
    logger.info("%s %s deleted", table, record_id)
    return current
