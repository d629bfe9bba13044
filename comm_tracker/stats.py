from collections import Counter, OrderedDict
from datetime import date
from typing import Any, Dict, Optional

STATUS_LABELS = {"complete": "Completado", "inprogress": "En Progreso", "delayed": "Retrasado"}
MONTH_NAMES = ["Ene", "Feb", "Mar", "Abr", "May", "Jun", "Jul", "Ago", "Sep", "Oct", "Nov", "Dic"]


def translate_status(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def dashboard_stats(con, project_id: Optional[int] = None, today: Optional[date] = None) -> Dict[str, Any]:
    """KPIs and chart series for the dashboard, optionally scoped to one project."""
    params: Dict[str, Any] = {"pid": project_id}
    scope = "" if project_id is None else " WHERE p.id = :pid"
    projects = [dict(r) for r in con.execute(f"SELECT p.* FROM projects p{scope} ORDER BY p.id", params).fetchall()]
    systems = [dict(r) for r in con.execute(
        f"SELECT s.* FROM systems s JOIN projects p ON p.id = s.project_id{scope} ORDER BY s.id", params
    ).fetchall()]
    itrs = [dict(r) for r in con.execute(
        f"""
        SELECT i.* FROM itrs i
        JOIN subsystems ss ON ss.id = i.subsystem_id
        JOIN systems s ON s.id = ss.system_id
        JOIN projects p ON p.id = s.project_id{scope}
        ORDER BY i.id
        """,
        params,
    ).fetchall()]

    completion_rate = round(sum(p["progress"] or 0 for p in projects) / len(projects)) if projects else 0

    projects_data = [
        {
            "title": p["name"],
            "value": p["progress"] or 0,
            "description": f"{p['location'] or 'Sin ubicación'} - {translate_status(p['status'])}",
            "variant": "success" if p["status"] == "complete" else "danger" if p["status"] == "delayed" else "warning",
        }
        for p in projects
    ]
    chart_data = [
        {"name": s["name"] if len(s["name"]) <= 20 else s["name"][:20] + "...", "value": s["completion_rate"] or 0}
        for s in systems
    ]

    # ITR activity per month of creation, oldest first
    by_month: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
    for itr in sorted(itrs, key=lambda r: r["created_at"] or ""):
        key = (itr["created_at"] or "")[:7]
        if not key:
            continue
        bucket = by_month.setdefault(key, {"inspections": 0, "completions": 0, "issues": 0})
        bucket["inspections"] += 1
        if itr["status"] == "complete":
            bucket["completions"] += 1
        elif itr["status"] == "delayed":
            bucket["issues"] += 1
    area_chart = [
        {"name": MONTH_NAMES[int(k[5:7]) - 1], "period": k, **v} for k, v in by_month.items()
    ]
    if not area_chart:
        today = today or date.today()
        for back in range(5, -1, -1):
            m = (today.month - 1 - back) % 12
            area_chart.append({"name": MONTH_NAMES[m], "period": None, "inspections": 0, "completions": 0, "issues": 0})

    return {
        "total_projects": len(projects),
        "total_systems": len(systems),
        "total_itrs": len(itrs),
        "completion_rate": completion_rate,
        "projects_data": projects_data,
        "chart_data": chart_data,
        "area_chart_data": area_chart,
        "itr_status": dict(Counter(i["status"] for i in itrs)),
    }


def _pct(part: int, total: int) -> int:
    return round(part * 100 / total) if total else 0


def pack_stats(con) -> Dict[str, Any]:
    packs = [dict(r) for r in con.execute("SELECT * FROM v_test_pack_list").fetchall()]
    total = len(packs)
    completed = sum(1 for p in packs if p["estado"] == "listo")
    total_tags = sum(p["total_tags"] for p in packs)
    released = sum(p["released_tags"] for p in packs)

    def distribution(key):
        counts = Counter(p[key] or "Sin asignar" for p in packs)
        return [{"name": k, "value": v} for k, v in counts.most_common()]

    return {
        "test_packs": {"total": total, "completed": completed, "progress": _pct(completed, total)},
        "tags": {"total": total_tags, "released": released, "progress": _pct(released, total_tags)},
        "systems": distribution("sistema"),
        "subsystems": distribution("subsistema"),
        "itrs": distribution("itr_asociado"),
    }
