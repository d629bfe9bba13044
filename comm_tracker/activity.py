import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from .utils import json_dumps

logger = logging.getLogger(__name__)

ACTIONS = {"INSERT", "UPDATE", "DELETE"}


def log_activity(
    cur,
    table_name: str,
    action: str,
    record_id: Optional[int],
    details: Optional[Dict[str, Any]] = None,
    actor: Optional[Dict[str, Any]] = None,
) -> int:
    """Append one entry to ``db_activity_log``. Entries are never updated or deleted."""
    if action not in ACTIONS:
        raise ValueError(f"Acción inválida: {action}")
    user_id = None
    if actor:
        try:
            user_id = int(actor.get("id"))
        except (TypeError, ValueError):
            user_id = None
    cur.execute(
        "INSERT INTO db_activity_log(table_name, action, user_id, record_id, details) VALUES (?,?,?,?,?)",
        (table_name, action, user_id, record_id, json_dumps(details) if details is not None else None),
    )
    return cur.lastrowid


def _decode(row) -> Dict[str, Any]:
    d = dict(row)
    try:
        d["details"] = json.loads(d["details"]) if d["details"] else {}
    except ValueError:
        d["details"] = {"raw": d["details"]}
    return d


def list_activity(con, limit: int = 50, offset: int = 0, table_name: Optional[str] = None, after_id: Optional[int] = None):
    """Newest-first page of the log; with ``after_id`` the entries come oldest-first."""
    q = """
        SELECT l.id, l.table_name, l.action, l.user_id, u.username, l.record_id, l.created_at, l.details
        FROM db_activity_log l
        LEFT JOIN users u ON u.id = l.user_id
        WHERE 1=1
    """
    params: Dict[str, Any] = {"limit": limit, "offset": offset}
    if table_name:
        q += " AND l.table_name = :table_name"
        params["table_name"] = table_name
    if after_id is not None:
        q += " AND l.id > :after_id"
        params["after_id"] = after_id
    q += " ORDER BY l.id %s LIMIT :limit OFFSET :offset" % ("ASC" if after_id is not None else "DESC")
    return [_decode(r) for r in con.execute(q, params).fetchall()]


def activity_since(con, after_id: int, page_size: int = 100) -> List[Dict[str, Any]]:
    """Every entry written after ``after_id``, read forward one page at a time."""
    entries: List[Dict[str, Any]] = []
    while True:
        page = list_activity(con, limit=page_size, after_id=after_id)
        entries.extend(page)
        if len(page) < page_size:
            return entries
        after_id = page[-1]["id"]


class ActivityStream:
    """Local view of the activity timeline fed by push notifications.

    Pushed batches may overlap or arrive out of order; entries are merged by
    id so each one is delivered once and the timeline stays newest-first.
    """

    def __init__(self, max_entries: int = 200):
        self.max_entries = max_entries
        self._entries: Dict[int, Dict[str, Any]] = {}

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return [self._entries[k] for k in sorted(self._entries, reverse=True)]

    @property
    def last_id(self) -> Optional[int]:
        return max(self._entries) if self._entries else None

    def merge(self, incoming: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Merge ``incoming`` and return only the entries not seen before."""
        fresh = []
        for entry in incoming:
            entry_id = entry.get("id")
            if entry_id is None or entry_id in self._entries:
                continue
            self._entries[entry_id] = entry
            fresh.append(entry)
        if len(self._entries) > self.max_entries:
            for k in sorted(self._entries)[: len(self._entries) - self.max_entries]:
                del self._entries[k]
        fresh.sort(key=lambda e: e["id"], reverse=True)
        if fresh:
            logger.debug("merged %d new activity entries", len(fresh))
        return fresh
