import io
from typing import Any, Dict, List, Optional

import pandas as pd

EXPORT_COLUMNS = [
    "id_paquete", "nombre_paquete", "sistema", "subsistema", "itr_asociado", "estado_paquete",
    "tag_name", "estado_tag", "fecha_liberacion",
]

SUMMARY_COLUMNS = [
    "id", "nombre_paquete", "sistema", "subsistema", "itr_asociado", "estado",
    "tags_liberados", "tags_total", "progreso", "created_at", "updated_at",
]


def load_test_packs(con, search: Optional[str] = None, estado: Optional[str] = None,
                    sistema: Optional[str] = None, ids: Optional[List[int]] = None) -> List[Dict[str, Any]]:
    """Test packs of the current view, each with its ``tags`` list."""
    q = "SELECT * FROM test_packs WHERE 1=1"
    params: Dict[str, Any] = {}
    if search:
        q += " AND (nombre_paquete LIKE :kw OR itr_asociado LIKE :kw OR EXISTS (SELECT 1 FROM tags t WHERE t.test_pack_id = test_packs.id AND t.tag_name LIKE :kw))"
        params["kw"] = f"%{search}%"
    if estado:
        q += " AND estado = :estado"
        params["estado"] = estado
    if sistema:
        q += " AND sistema = :sistema"
        params["sistema"] = sistema
    if ids:
        q += " AND id IN (%s)" % ",".join(str(int(i)) for i in ids)
    q += " ORDER BY id"
    packs = [dict(r) for r in con.execute(q, params).fetchall()]
    if not packs:
        return packs
    by_id = {p["id"]: p for p in packs}
    for p in packs:
        p["tags"] = []
    rows = con.execute(
        "SELECT * FROM tags WHERE test_pack_id IN (%s) ORDER BY id" % ",".join(str(i) for i in by_id)
    ).fetchall()
    for r in rows:
        by_id[r["test_pack_id"]]["tags"].append(dict(r))
    return packs


def pack_progress(pack: Dict[str, Any]) -> int:
    tags = pack.get("tags") or []
    if not tags:
        return 0
    released = sum(1 for t in tags if t.get("estado") == "liberado")
    return round(released * 100 / len(tags))


def export_rows(packs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for p in packs:
        for t in p.get("tags") or []:
            rows.append({
                "id_paquete": p.get("id"),
                "nombre_paquete": p.get("nombre_paquete"),
                "sistema": p.get("sistema"),
                "subsistema": p.get("subsistema"),
                "itr_asociado": p.get("itr_asociado"),
                "estado_paquete": p.get("estado"),
                "tag_name": t.get("tag_name"),
                "estado_tag": t.get("estado"),
                "fecha_liberacion": t.get("fecha_liberacion"),
            })
    return rows


def export_workbook(packs: List[Dict[str, Any]]) -> bytes:
    """One row per tag with its pack's fields; the tag sheet goes first so the file re-imports."""
    tags_df = pd.DataFrame(export_rows(packs), columns=EXPORT_COLUMNS)
    summary = []
    for p in packs:
        tags = p.get("tags") or []
        summary.append({
            "id": p.get("id"),
            "nombre_paquete": p.get("nombre_paquete"),
            "sistema": p.get("sistema"),
            "subsistema": p.get("subsistema"),
            "itr_asociado": p.get("itr_asociado"),
            "estado": p.get("estado"),
            "tags_liberados": sum(1 for t in tags if t.get("estado") == "liberado"),
            "tags_total": len(tags),
            "progreso": f"{pack_progress(p)}%",
            "created_at": p.get("created_at"),
            "updated_at": p.get("updated_at"),
        })
    packs_df = pd.DataFrame(summary, columns=SUMMARY_COLUMNS)
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        tags_df.to_excel(writer, sheet_name="TAGs", index=False)
        packs_df.to_excel(writer, sheet_name="Test Packs", index=False)
    return buf.getvalue()


TEMPLATE_ROWS = [
    {"nombre_paquete": "PACKAGE_LL-SLS-LE-C", "sistema": "Sistema 1", "subsistema": "Subsistema 1",
     "itr_asociado": "E19A", "estado": "pendiente"},
    {"nombre_paquete": "PACKAGE_LL-SLS-LE-D", "sistema": "Sistema 2", "subsistema": "Subsistema 2",
     "itr_asociado": "T09A", "estado": "pendiente"},
    {"tag_name": "TAG-001", "test_pack_index": 0, "estado": "pendiente"},
    {"tag_name": "TAG-002", "test_pack_index": 0, "estado": "pendiente"},
    {"tag_name": "TAG-003", "test_pack_index": 1, "estado": "liberado", "fecha_liberacion": "2024-01-15"},
]

TEMPLATE_INSTRUCTIONS = [
    "Instrucciones para importar Test Packs y TAGs",
    "",
    "Solo se lee la primera hoja del libro.",
    "Filas de Test Pack: complete nombre_paquete (obligatorio), sistema, subsistema, itr_asociado y estado ('pendiente' o 'listo').",
    "Filas de TAG: complete tag_name (obligatorio) y test_pack_index o test_pack_nombre.",
    "   - test_pack_index: posición (desde 0) del Test Pack entre las filas de Test Pack de la hoja.",
    "   - test_pack_nombre: nombre_paquete del Test Pack al que pertenece el TAG.",
    "   - estado: 'pendiente' o 'liberado'; un TAG liberado usa fecha_liberacion o la fecha de importación.",
    "Las filas con errores o con referencias inexistentes se omiten y se informan en el resumen.",
    "Un archivo exportado desde el sistema puede volver a importarse: cada importación crea registros nuevos.",
    "   - En un archivo exportado, id_paquete agrupa los TAGs de cada Test Pack aunque dos paquetes compartan nombre.",
]


def import_template() -> bytes:
    cols = ["nombre_paquete", "sistema", "subsistema", "itr_asociado", "estado",
            "tag_name", "test_pack_index", "test_pack_nombre", "fecha_liberacion"]
    df = pd.DataFrame(TEMPLATE_ROWS, columns=cols)
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="Test Packs y TAGs", index=False)
        pd.DataFrame({"Instrucciones": TEMPLATE_INSTRUCTIONS}).to_excel(
            writer, sheet_name="Instrucciones", index=False)
    return buf.getvalue()
