import io
import logging
import sqlite3
from typing import Any, Dict, List, Optional

import pandas as pd

from .activity import log_activity
from .errors import OperationCancelled, ParseError, ValidationError
from .utils import fold_text, is_blank, normalize_payload, strip_or_none, to_int_or_none

logger = logging.getLogger(__name__)

# sheet -> table, and how a row points at its parent: (fk column, name column, parent table)
SHEETS = [
    ("proyectos", "projects", None),
    ("sistemas", "systems", ("project_id", "project_name", "projects")),
    ("subsistemas", "subsystems", ("system_id", "system_name", "systems")),
    ("itrs", "itrs", ("subsystem_id", "subsystem_name", "subsystems")),
]

SHEET_ALIASES = {
    "projects": "proyectos",
    "systems": "sistemas",
    "subsystems": "subsistemas",
    "itr": "itrs",
}


def read_sheets(content: bytes) -> Dict[str, pd.DataFrame]:
    if not content:
        raise ParseError("El archivo está vacío")
    try:
        sheets = pd.read_excel(io.BytesIO(content), sheet_name=None, dtype=object, engine="openpyxl")
    except Exception as e:
        raise ParseError(f"No se pudo leer el libro Excel: {e}") from e
    out = {}
    for name, df in sheets.items():
        key = fold_text(name)
        key = SHEET_ALIASES.get(key, key)
        df = df.dropna(how="all")
        df.columns = [fold_text(c).replace(" ", "_") for c in df.columns]
        out[key] = df
    if not any(key in out and not out[key].empty for key, _, _ in SHEETS):
        raise ParseError("El libro no contiene hojas Proyectos, Sistemas, Subsistemas o ITRs con datos")
    return out


def _clean(rec: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (None if is_blank(v) else v) for k, v in rec.items()}


def _lookup_by_name(cur, table: str, name: str) -> Optional[int]:
    r = cur.execute(f"SELECT id FROM {table} WHERE name=? ORDER BY id LIMIT 1", (name,)).fetchone()
    return r["id"] if r else None


def _resolve_parent(cur, rec: Dict[str, Any], parent, created: Dict[str, Dict[str, int]]) -> int:
    fk, name_col, parent_table = parent
    ref_id = to_int_or_none(rec.get(fk))
    if ref_id is not None:
        if cur.execute(f"SELECT id FROM {parent_table} WHERE id=?", (ref_id,)).fetchone():
            return ref_id
        raise ValidationError(fk, f"{fk} {ref_id} no existe")
    name = strip_or_none(rec.get(name_col))
    if not name:
        raise ValidationError(name_col, f"Se requiere {name_col} o {fk}")
    parent_id = created[parent_table].get(name) or _lookup_by_name(cur, parent_table, name)
    if parent_id is None:
        raise ValidationError(name_col, f"No se encontró '{name}' en {parent_table}")
    return parent_id


def import_hierarchy(con, content: bytes, actor: Optional[Dict[str, Any]] = None, cancel=None) -> Dict[str, Any]:
    """Create projects, systems, subsystems and ITRs from their sheets, parents first.

    Rows reference their parent by id or by name (rows of the same file win
    over existing records with that name). Bad rows are skipped and reported.
    """
    sheets = read_sheets(content)
    cur = con.cursor()
    created: Dict[str, Dict[str, int]] = {table: {} for _, table, _ in SHEETS}
    counts: Dict[str, int] = {table: 0 for _, table, _ in SHEETS}
    errors: List[Dict[str, Any]] = []

    for sheet, table, parent in SHEETS:
        df = sheets.get(sheet)
        if df is None or df.empty:
            continue
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"Importación cancelada antes de la hoja {sheet}")
        ids = []
        for i, rec in df.iterrows():
            row_number = int(i) + 2
            rec = _clean(rec.to_dict())
            try:
                data = normalize_payload(table, rec)
                if not data.get("name"):
                    raise ValidationError("name", "name es requerido")
                if parent:
                    data[parent[0]] = _resolve_parent(cur, rec, parent, created)
                cols = ",".join(data.keys())
                vals = ":" + ",:".join(data.keys())
                cur.execute(f"INSERT INTO {table}({cols}) VALUES ({vals})", data)
            except ValidationError as e:
                errors.append({"sheet": sheet, "row": row_number, "field": e.field, "message": e.message})
                continue
            except sqlite3.IntegrityError as e:
                errors.append({"sheet": sheet, "row": row_number, "field": "INSERT", "message": str(e)})
                continue
            ids.append(cur.lastrowid)
            created[table].setdefault(data["name"], cur.lastrowid)
        if ids:
            log_activity(cur, table, "INSERT", None, {"source": "import", "count": len(ids), "ids": ids}, actor)
        con.commit()
        counts[table] = len(ids)

    logger.info("hierarchy import: %s, %d rows skipped", counts, len(errors))
    return {**counts, "rows_skipped": len(errors), "errors": errors}


def hierarchy_template() -> bytes:
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        pd.DataFrame([{
            "name": "Proyecto Ejemplo", "location": "Ubicación ejemplo", "status": "inprogress",
            "progress": 50, "start_date": "2024-01-01", "end_date": "2024-12-31",
        }]).to_excel(writer, sheet_name="Proyectos", index=False)
        pd.DataFrame([{
            "name": "Sistema Ejemplo", "project_name": "Proyecto Ejemplo", "completion_rate": 40,
            "start_date": "2024-01-15", "end_date": "2024-11-30",
        }]).to_excel(writer, sheet_name="Sistemas", index=False)
        pd.DataFrame([{
            "name": "Subsistema Ejemplo", "system_name": "Sistema Ejemplo", "completion_rate": 30,
            "start_date": "2024-02-01", "end_date": "2024-10-31",
        }]).to_excel(writer, sheet_name="Subsistemas", index=False)
        pd.DataFrame([{
            "name": "ITR Ejemplo", "subsystem_name": "Subsistema Ejemplo", "status": "inprogress",
            "progress": 25, "quantity": 1, "assigned_to": "Técnico ejemplo",
            "start_date": "2024-03-01", "end_date": "2024-09-30",
        }]).to_excel(writer, sheet_name="ITRs", index=False)
    return buf.getvalue()
