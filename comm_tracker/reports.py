import copy
import html
import json
import logging
import re
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from .activity import log_activity
from .errors import NotFoundError, ValidationError
from .stats import translate_status
from .utils import diff_rows, json_dumps

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "daily": {"enabled": False, "time": "07:00"},
    "weekly": {"enabled": False, "time": "07:00", "day": "monday"},
    "monthly": {"enabled": False, "time": "07:00", "day": "1"},
}

WEEKDAYS = {"monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"}
REPORT_TYPES = ("project_status", "itrs", "test_packs")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ---------------------- Schedule settings ----------------------

def get_settings(con) -> Dict[str, Any]:
    row = con.execute("SELECT settings FROM report_settings WHERE id=1").fetchone()
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    if row:
        stored = json.loads(row["settings"])
        for period, values in stored.items():
            if period in settings and isinstance(values, dict):
                settings[period].update(values)
    return settings


def _check_period(period: str, values: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(DEFAULT_SETTINGS[period])
    out.update({k: v for k, v in values.items() if k in out})
    out["enabled"] = bool(out["enabled"])
    if not _TIME_RE.match(str(out["time"])):
        raise ValidationError(f"{period}.time", "Hora inválida, use HH:MM")
    if period == "weekly":
        out["day"] = str(out["day"]).strip().lower()
        if out["day"] not in WEEKDAYS:
            raise ValidationError("weekly.day", "Día de la semana inválido")
    if period == "monthly":
        day = str(out["day"]).strip()
        if not day.isdigit() or not 1 <= int(day) <= 28:
            raise ValidationError("monthly.day", "El día del mes debe estar entre 1 y 28")
        out["day"] = day
    return out


def save_settings(con, payload: Dict[str, Any], actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    settings = get_settings(con)
    before = copy.deepcopy(settings)
    for period, values in (payload or {}).items():
        if period not in DEFAULT_SETTINGS:
            raise ValidationError(period, f"Periodo desconocido: {period}")
        if not isinstance(values, dict):
            raise ValidationError(period, "Formato inválido")
        settings[period] = _check_period(period, {**settings[period], **values})
    cur = con.cursor()
    cur.execute(
        """
        INSERT INTO report_settings(id, settings) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET settings=excluded.settings, updated_at=datetime('now')
        """,
        (json_dumps(settings),),
    )
    log_activity(cur, "report_settings", "UPDATE", 1, diff_rows(before, settings), actor)
    con.commit()
    return settings


# ---------------------- Recipients ----------------------

def list_recipients(con) -> List[Dict[str, Any]]:
    return [dict(r) for r in con.execute("SELECT * FROM email_recipients ORDER BY id").fetchall()]


def add_recipient(con, email: str, actor: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise ValidationError("email", "Correo electrónico inválido")
    cur = con.cursor()
    try:
        cur.execute("INSERT INTO email_recipients(email) VALUES (?)", (email,))
    except sqlite3.IntegrityError:
        con.rollback()
        raise
    recipient_id = cur.lastrowid
    log_activity(cur, "email_recipients", "INSERT", recipient_id, {"email": email}, actor)
    con.commit()
    return dict(con.execute("SELECT * FROM email_recipients WHERE id=?", (recipient_id,)).fetchone())


def delete_recipient(con, recipient_id: int, actor: Optional[Dict[str, Any]] = None) -> None:
    row = con.execute("SELECT email FROM email_recipients WHERE id=?", (recipient_id,)).fetchone()
    if not row:
        raise NotFoundError("email_recipients", recipient_id)
    cur = con.cursor()
    cur.execute("DELETE FROM email_recipients WHERE id=?", (recipient_id,))
    log_activity(cur, "email_recipients", "DELETE", recipient_id, {"email": row["email"]}, actor)
    con.commit()


def dispatch_plan(con, period: str) -> Dict[str, Any]:
    """What a scheduled job for ``period`` would send; nothing is sent from here."""
    if period not in DEFAULT_SETTINGS:
        raise ValidationError("period", f"Periodo desconocido: {period}")
    settings = get_settings(con)
    emails = [r["email"] for r in list_recipients(con)]
    if not settings[period]["enabled"]:
        return {"success": False, "message": f"Reportes {period} deshabilitados"}
    if not emails:
        return {"success": False, "message": "No hay destinatarios configurados"}
    return {"success": True, "recipients": emails, "settings": settings[period]}


# ---------------------- Report body ----------------------

def _itrs_for(con, project_id: Optional[int]) -> List[Dict[str, Any]]:
    q = """
        SELECT i.*, ss.name AS subsystem_name, s.name AS system_name, p.name AS project_name
        FROM itrs i
        JOIN subsystems ss ON ss.id = i.subsystem_id
        JOIN systems s ON s.id = ss.system_id
        JOIN projects p ON p.id = s.project_id
    """
    params: tuple = ()
    if project_id is not None:
        q += " WHERE p.id = ?"
        params = (project_id,)
    return [dict(r) for r in con.execute(q + " ORDER BY i.id", params).fetchall()]


def _itr_summary(itrs: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "total": len(itrs),
        "complete": sum(1 for i in itrs if i["status"] == "complete"),
        "inprogress": sum(1 for i in itrs if i["status"] == "inprogress"),
        "delayed": sum(1 for i in itrs if i["status"] == "delayed"),
    }


def _table(headers: List[str], rows: List[List[Any]]) -> str:
    head = "".join(f"<th>{html.escape(h)}</th>" for h in headers)
    body = "".join(
        "<tr>" + "".join(f"<td>{html.escape('' if v is None else str(v))}</td>" for v in r) + "</tr>"
        for r in rows
    )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def build_report(con, report_type: str, project_id: Optional[int] = None) -> Dict[str, Any]:
    """Report data plus the HTML body used by the email job."""
    if report_type not in REPORT_TYPES:
        raise ValidationError("report_type", f"Tipo de reporte desconocido: {report_type}")
    title = "Reporte General"
    project = None
    if project_id is not None:
        row = con.execute("SELECT * FROM projects WHERE id=?", (project_id,)).fetchone()
        if not row:
            raise NotFoundError("projects", project_id)
        project = dict(row)
        title = f"Reporte: {project['name']}"

    sections = []
    data: Dict[str, Any] = {"project": project}
    if report_type == "project_status":
        q = "SELECT * FROM systems"
        params: tuple = ()
        if project_id is not None:
            q += " WHERE project_id=?"
            params = (project_id,)
        systems = [dict(r) for r in con.execute(q + " ORDER BY id", params).fetchall()]
        itrs = _itrs_for(con, project_id)
        data.update(systems=systems, summary={"total_systems": len(systems), **_itr_summary(itrs)})
        sections.append("<h2>Sistemas</h2>" + _table(
            ["Sistema", "Avance", "Inicio", "Fin"],
            [[s["name"], f"{s['completion_rate']}%", s["start_date"], s["end_date"]] for s in systems],
        ))
    elif report_type == "itrs":
        itrs = _itrs_for(con, project_id)
        data.update(itrs=itrs, summary=_itr_summary(itrs))
        sections.append("<h2>ITRs</h2>" + _table(
            ["ITR", "Proyecto", "Sistema", "Subsistema", "Estado", "Avance", "Asignado a"],
            [[i["name"], i["project_name"], i["system_name"], i["subsystem_name"],
              translate_status(i["status"]), f"{i['progress']}%", i["assigned_to"]] for i in itrs],
        ))
    else:
        packs = [dict(r) for r in con.execute("SELECT * FROM v_test_pack_list ORDER BY id").fetchall()]
        data.update(test_packs=packs, summary={
            "total": len(packs),
            "listo": sum(1 for p in packs if p["estado"] == "listo"),
            "tags_total": sum(p["total_tags"] for p in packs),
            "tags_liberados": sum(p["released_tags"] for p in packs),
        })
        sections.append("<h2>Test Packs</h2>" + _table(
            ["Test Pack", "Sistema", "Subsistema", "ITR", "Estado", "TAGs liberados"],
            [[p["nombre_paquete"], p["sistema"], p["subsistema"], p["itr_asociado"], p["estado"],
              f"{p['released_tags']}/{p['total_tags']}"] for p in packs],
        ))

    summary_rows = [[k, v] for k, v in data["summary"].items()]
    generated = datetime.now().strftime("%Y-%m-%d %H:%M")
    body = (
        f"<html><body><h1>{html.escape(title)}</h1>"
        f"<p>Generado: {generated}</p>"
        + "<h2>Resumen</h2>" + _table(["Indicador", "Valor"], summary_rows)
        + "".join(sections)
        + "</body></html>"
    )
    logger.info("report %s built for project %s", report_type, project_id or "todos")
    return {"title": title, "report_type": report_type, "data": data, "html": body}
