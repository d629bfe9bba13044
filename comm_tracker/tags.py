import logging
from datetime import date
from typing import Any, Dict, Optional

from .activity import log_activity
from .errors import NotFoundError, ValidationError
from .utils import to_date_iso

logger = logging.getLogger(__name__)

PENDIENTE = "pendiente"
LIBERADO = "liberado"


def check_tag_values(current: Optional[Dict[str, Any]], update: Dict[str, Any],
                     today: Optional[date] = None) -> Dict[str, Any]:
    """Apply ``update`` over ``current`` and enforce the tag state machine.

    pendiente -> liberado needs a fecha_liberacion that is not in the future;
    liberado is terminal.
    fecha_liberacion is set if and only if estado is liberado.
    """
    merged = dict(current or {})
    merged.update(update)
    estado = merged.get("estado") or PENDIENTE
    merged["estado"] = estado
    if current and current.get("estado") == LIBERADO and estado != LIBERADO:
        raise ValidationError("estado", "Un TAG liberado no puede volver a pendiente")
    if estado == LIBERADO:
        fecha = to_date_iso(merged.get("fecha_liberacion"))
        if not fecha:
            raise ValidationError("fecha_liberacion", "fecha_liberacion es requerida para liberar el TAG")
        if update.get("fecha_liberacion") and fecha > (today or date.today()).isoformat():
            raise ValidationError("fecha_liberacion", "fecha_liberacion no puede ser futura")
        merged["fecha_liberacion"] = fecha
    else:
        if update.get("fecha_liberacion"):
            raise ValidationError("fecha_liberacion", "Solo un TAG liberado puede tener fecha_liberacion")
        merged["fecha_liberacion"] = None
    return merged


def refresh_pack_status(cur, test_pack_id: int) -> Optional[str]:
    """Set the pack to 'listo' when all its tags are released, 'pendiente' otherwise."""
    r = cur.execute(
        "SELECT COUNT(*) AS total, SUM(CASE WHEN estado='liberado' THEN 1 ELSE 0 END) AS released FROM tags WHERE test_pack_id=?",
        (test_pack_id,),
    ).fetchone()
    total = r["total"] or 0
    released = r["released"] or 0
    estado = "listo" if total > 0 and released == total else PENDIENTE
    pack = cur.execute("SELECT estado FROM test_packs WHERE id=?", (test_pack_id,)).fetchone()
    if not pack or pack["estado"] == estado:
        return None
    cur.execute("UPDATE test_packs SET estado=?, updated_at=datetime('now') WHERE id=?", (estado, test_pack_id))
    log_activity(cur, "test_packs", "UPDATE", test_pack_id,
                 {"estado": {"from": pack["estado"], "to": estado}, "source": "tags"})
    logger.info("test pack %s -> %s", test_pack_id, estado)
    return estado


def release_tag(con, tag_id: int, fecha_liberacion, actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    fecha = to_date_iso(fecha_liberacion)
    if not fecha:
        raise ValidationError("fecha_liberacion", "fecha_liberacion es requerida en formato YYYY-MM-DD")
    cur = con.cursor()
    row = cur.execute("SELECT * FROM tags WHERE id=?", (tag_id,)).fetchone()
    if not row:
        raise NotFoundError("tags", tag_id)
    current = dict(row)
    if current["estado"] == LIBERADO:
        raise ValidationError("estado", "El TAG ya está liberado")
    values = check_tag_values(current, {"estado": LIBERADO, "fecha_liberacion": fecha})
    cur.execute(
        "UPDATE tags SET estado=:estado, fecha_liberacion=:fecha_liberacion, updated_at=datetime('now') WHERE id=:id",
        {"estado": values["estado"], "fecha_liberacion": values["fecha_liberacion"], "id": tag_id},
    )
    log_activity(cur, "tags", "UPDATE", tag_id,
                 {"action": "RELEASE", "tag_name": current["tag_name"], "fecha_liberacion": fecha}, actor)
    refresh_pack_status(cur, current["test_pack_id"])
    con.commit()
    return dict(cur.execute("SELECT * FROM tags WHERE id=?", (tag_id,)).fetchone())
