import hashlib
import json
import unicodedata
from datetime import date, datetime
from typing import Optional, Dict, Any

import pandas as pd

from .errors import ValidationError

def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()

def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)

def is_blank(x) -> bool:
    if x is None:
        return True
    try:
        if pd.isna(x):
            return True
    except (TypeError, ValueError):
        return False
    return isinstance(x, str) and x.strip() == ""

def strip_or_none(x):
    if is_blank(x):
        return None
    if isinstance(x, float) and x.is_integer():
        x = int(x)
    s = str(x).strip().replace("\t", "")
    return s if s else None

def to_int_or_none(x):
    if is_blank(x):
        return None
    if isinstance(x, bool):
        return int(x)
    try:
        if isinstance(x, str):
            x = x.replace(",", "").replace("%", "").strip()
        return int(float(x))
    except (TypeError, ValueError):
        return None

def to_date_iso(x):
    if is_blank(x):
        return None
    if isinstance(x, datetime):
        return x.date().isoformat()
    if isinstance(x, date):
        return x.isoformat()
    if isinstance(x, str):
        # plain ISO dates parse without the Timestamp range limit
        try:
            return date.fromisoformat(x.strip()[:10]).isoformat()
        except ValueError:
            pass
    ts = pd.to_datetime(x, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date().isoformat()

def clamp_percent(x) -> int:
    # out-of-range values are pulled into 0..100, never rejected
    v = to_int_or_none(x)
    if v is None:
        return 0
    return max(0, min(100, v))

def fold_text(s: str) -> str:
    s = unicodedata.normalize("NFKD", str(s))
    s = "".join(c for c in s if not unicodedata.combining(c))
    return s.strip().lower()

STATUS_ALIASES = {
    "complete": "complete", "completado": "complete", "completo": "complete",
    "inprogress": "inprogress", "in progress": "inprogress", "en progreso": "inprogress",
    "delayed": "delayed", "retrasado": "delayed",
}
PACK_STATES = {"pendiente": "pendiente", "listo": "listo"}
TAG_STATES = {"pendiente": "pendiente", "liberado": "liberado"}

def normalize_choice(value, aliases: Dict[str, str], field: str) -> Optional[str]:
    s = strip_or_none(value)
    if s is None:
        return None
    key = fold_text(s)
    if key not in aliases:
        raise ValidationError(field, f"Valor inválido para {field}: '{s}'")
    return aliases[key]

TEXT_FIELDS = {
    "name", "description", "location", "assigned_to",
    "nombre_paquete", "itr_asociado", "sistema", "subsistema", "tag_name",
}
INT_FIELDS = {"project_id", "system_id", "subsystem_id", "test_pack_id"}
PERCENT_FIELDS = {"progress", "completion_rate"}
DATE_FIELDS = {"start_date", "end_date", "fecha_liberacion"}

ALLOWED_FIELDS = {
    "projects": {"name", "description", "location", "status", "progress", "start_date", "end_date"},
    "systems": {"name", "project_id", "completion_rate", "start_date", "end_date"},
    "subsystems": {"name", "system_id", "completion_rate", "start_date", "end_date"},
    "itrs": {"name", "subsystem_id", "status", "progress", "quantity", "assigned_to", "start_date", "end_date"},
    "test_packs": {"nombre_paquete", "itr_asociado", "sistema", "subsistema", "estado"},
    "tags": {"tag_name", "test_pack_id", "estado", "fecha_liberacion"},
}

def normalize_payload(table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    # keep only known fields of the table, normalize types
    allowed = ALLOWED_FIELDS[table]
    out = {}
    for k, v in payload.items():
        if k not in allowed:
            continue
        if k in TEXT_FIELDS:
            out[k] = strip_or_none(v)
        elif k in INT_FIELDS:
            out[k] = to_int_or_none(v)
        elif k in PERCENT_FIELDS:
            out[k] = clamp_percent(v)
        elif k == "quantity":
            q = to_int_or_none(v)
            out[k] = q if q and q >= 1 else 1
        elif k in DATE_FIELDS:
            out[k] = to_date_iso(v)
        elif k == "status":
            out[k] = normalize_choice(v, STATUS_ALIASES, k) or "inprogress"
        elif k == "estado":
            states = TAG_STATES if table == "tags" else PACK_STATES
            out[k] = normalize_choice(v, states, k) or "pendiente"
        else:
            out[k] = v
    return out

def diff_rows(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    changed = {}
    keys = set(before.keys()) | set(after.keys())
    for k in keys:
        if before.get(k) != after.get(k):
            changed[k] = {"from": before.get(k), "to": after.get(k)}
    return changed
