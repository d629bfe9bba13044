import os
import asyncio
import logging
import sqlite3
from datetime import date
from typing import Optional, Dict, Any, List

from fastapi import (
    FastAPI, UploadFile, File, Form, HTTPException, Depends, Response, Request, Query,
    WebSocket, WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse

from . import crud, reports, storage, users
from .activity import ActivityStream, activity_since, list_activity
from .auth import (
    authenticate,
    create_session,
    delete_session,
    ensure_default_users,
    purge_expired_sessions,
    require_role,
    require_user,
    verify_password,
)
from .db import connect, init_schema
from .errors import (
    LinkError,
    NotFoundError,
    OperationCancelled,
    TrackerError,
    ValidationError,
    WriteError,
)
from .exporter import export_workbook, import_template, load_test_packs
from .guard import run_guarded
from .hierarchy_import import hierarchy_template, import_hierarchy
from .importer import import_test_packs
from .stats import dashboard_stats, pack_stats
from .tags import release_tag

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ACTIVITY_POLL_SECONDS = float(os.getenv("ACTIVITY_POLL_SECONDS", "2"))
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

app = FastAPI(title="Commissioning Tracker")

# CORS configurable por variables de entorno
def _parse_csv_env(s: str) -> list[str]:
    parts = [p.strip() for p in (s or "").split(",")]
    return [p for p in parts if p]

_origins_env = os.getenv("ALLOWED_ORIGINS", "*")
_methods_env = os.getenv("CORS_ALLOW_METHODS", "*")
_headers_env = os.getenv("CORS_ALLOW_HEADERS", "*")
_creds_env = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() in ("1", "true", "yes")

_allow_origins = ["*"] if _origins_env.strip() == "*" else _parse_csv_env(_origins_env)
_allow_methods = ["*"] if _methods_env.strip() == "*" else _parse_csv_env(_methods_env)
_allow_headers = ["*"] if _headers_env.strip() == "*" else _parse_csv_env(_headers_env)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allow_origins,
    allow_credentials=_creds_env,
    allow_methods=_allow_methods,
    allow_headers=_allow_headers,
)

# admin: everything; tecnico: field data; user: read only
can_edit = require_role("admin", "tecnico")
admin_only = require_role("admin")


@app.on_event("startup")
def startup():
    with connect() as con:
        init_schema(con)
        cur = con.cursor()
        ensure_default_users(cur)
        purge_expired_sessions(cur)
        con.commit()
    logger.info("schema ready")


# ---------------------- Errors ----------------------

@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    if isinstance(exc, NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})
    if isinstance(exc, (ValidationError, LinkError)):
        return JSONResponse(status_code=400, content={"detail": exc.message, **exc.as_dict()})
    if isinstance(exc, WriteError):
        return JSONResponse(status_code=400, content={"detail": {
            "message": exc.message,
            "phase": exc.phase,
            "rows_skipped": exc.rows_skipped,
            "test_packs_created": exc.test_packs_created,
        }})
    if isinstance(exc, OperationCancelled):
        return JSONResponse(status_code=504, content={"detail": str(exc)})
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(sqlite3.IntegrityError)
async def integrity_error_handler(request: Request, exc: sqlite3.IntegrityError):
    logger.warning("%s %s rejected by the database: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": f"Conflicto de datos: {exc}"})


def _bad_request(e: Exception):
    return HTTPException(status_code=400, detail=str(e))


def _xlsx(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------- Auth ----------------------


@app.post("/auth/login")
def login(payload: Dict[str, str], response: Response):
    username = (payload.get("username") or "").strip().lower()
    password = payload.get("password") or ""
    if not username or not password:
        raise HTTPException(status_code=400, detail="Usuario y contraseña requeridos")
    with connect() as con:
        cur = con.cursor()
        row = cur.execute(
            "SELECT id, username, full_name, password_hash, password_salt, role FROM users WHERE username=?",
            (username,),
        ).fetchone()
        if not row or not verify_password(password, row["password_salt"], row["password_hash"]):
            logger.info("failed login for %s", username)
            raise HTTPException(status_code=401, detail="Credenciales inválidas")
        session = create_session(cur, row["id"])
        con.commit()
        cookie_params = {
            "httponly": True,
            "samesite": "lax",
            "path": "/",
        }
        # Overrides por entorno
        samesite_env = (os.getenv("COOKIE_SAMESITE", "lax") or "").strip().lower()
        if samesite_env in ("lax", "strict", "none"):
            cookie_params["samesite"] = samesite_env
        domain_env = (os.getenv("COOKIE_DOMAIN", "") or "").strip()
        if domain_env:
            cookie_params["domain"] = domain_env
        secure_env = os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")
        if cookie_params.get("samesite") == "none" or secure_env:
            cookie_params["secure"] = True
        response.set_cookie(key="session", value=session["token"], **cookie_params)
        return {
            "token": session["token"],
            "expires_at": session["expires_at"],
            "user": {"id": row["id"], "username": row["username"], "full_name": row["full_name"], "role": row["role"]},
        }


@app.post("/auth/logout")
def logout(response: Response, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        delete_session(cur, current_user["session_token"])
        con.commit()
    response.delete_cookie("session", path="/")
    return {"ok": True}


@app.get("/auth/session")
def session(current_user: Dict[str, Any] = Depends(require_user)):
    return {
        "active": True,
        "user": {
            "id": current_user["id"],
            "username": current_user["username"],
            "full_name": current_user["full_name"],
            "role": current_user["role"],
        },
        "expires_at": current_user["session_expires_at"],
    }


# ---------------------- Test Packs: import / export ----------------------
# registered before the generic /test-packs/{record_id} routes

def _import_job(content: bytes, actor: Dict[str, Any], cancel=None) -> Dict[str, Any]:
    with connect() as con:
        return import_test_packs(con, content, actor, cancel=cancel).as_dict()


@app.post("/test-packs/import")
async def import_test_packs_endpoint(
    file: UploadFile = File(...),
    current_user: Dict[str, Any] = Depends(can_edit),
):
    content = await file.read()
    logger.info("test pack import %s (%d bytes) by %s", file.filename, len(content), current_user["username"])
    return await run_guarded(_import_job, content, current_user)


@app.get("/test-packs/export")
def export_test_packs(
    search: Optional[str] = None,
    estado: Optional[str] = None,
    sistema: Optional[str] = None,
    ids: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    id_list = None
    if ids:
        try:
            id_list = [int(x) for x in ids.split(",") if x.strip()]
        except ValueError:
            raise HTTPException(status_code=400, detail="ids debe ser una lista de enteros separada por comas")
    with connect() as con:
        packs = load_test_packs(con, search=search, estado=estado, sistema=sistema, ids=id_list)
    return _xlsx(export_workbook(packs), f"test_packs_tags_{date.today().isoformat()}.xlsx")


@app.get("/test-packs/import-template")
def test_pack_template(current_user: Dict[str, Any] = Depends(require_user)):
    return _xlsx(import_template(), "plantilla_test_packs_tags.xlsx")


@app.get("/test-packs/stats")
def test_pack_stats_endpoint(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return pack_stats(con)


@app.get("/test-packs")
def list_test_packs(
    search: Optional[str] = None,
    estado: Optional[str] = None,
    sistema: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = "SELECT * FROM v_test_pack_list WHERE 1=1"
    params: Dict[str, Any] = {"limit": limit, "offset": offset}
    if search:
        q += " AND (nombre_paquete LIKE :kw OR itr_asociado LIKE :kw)"
        params["kw"] = f"%{search}%"
    if estado:
        q += " AND estado = :estado"
        params["estado"] = estado
    if sistema:
        q += " AND sistema = :sistema"
        params["sistema"] = sistema
    q += " ORDER BY id DESC LIMIT :limit OFFSET :offset"
    with connect() as con:
        return [dict(r) for r in con.execute(q, params).fetchall()]


# ---------------------- Tags ----------------------

@app.post("/tags/{tag_id}/release")
def release_tag_endpoint(
    tag_id: int,
    payload: Dict[str, Any],
    current_user: Dict[str, Any] = Depends(can_edit),
):
    with connect() as con:
        return release_tag(con, tag_id, payload.get("fecha_liberacion"), current_user)


# ---------------------- Hierarchy import ----------------------

def _hierarchy_job(content: bytes, actor: Dict[str, Any], cancel=None) -> Dict[str, Any]:
    with connect() as con:
        return import_hierarchy(con, content, actor, cancel=cancel)


@app.post("/hierarchy/import")
async def import_hierarchy_endpoint(
    file: UploadFile = File(...),
    current_user: Dict[str, Any] = Depends(admin_only),
):
    content = await file.read()
    return await run_guarded(_hierarchy_job, content, current_user)


@app.get("/hierarchy/import-template")
def hierarchy_template_endpoint(current_user: Dict[str, Any] = Depends(require_user)):
    return _xlsx(hierarchy_template(), "plantilla_proyectos.xlsx")


# ---------------------- CRUD ----------------------

def _register_crud(prefix: str, table: str, parent_fk: Optional[str] = None, with_list: bool = True):
    if with_list:
        @app.get(prefix, name=f"list_{table}")
        def list_rows(
            parent_id: Optional[int] = Query(None, alias=parent_fk or "parent_id"),
            search: Optional[str] = None,
            limit: int = Query(500, ge=1, le=5000),
            offset: int = Query(0, ge=0),
            current_user: Dict[str, Any] = Depends(require_user),
        ):
            filters = {parent_fk: parent_id} if parent_fk else None
            with connect() as con:
                return crud.select_rows(con, table, filters=filters, search=search, limit=limit, offset=offset)

    @app.post(prefix, name=f"create_{table}", status_code=201)
    def create_row(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(can_edit)):
        with connect() as con:
            return crud.insert_row(con, table, payload, current_user)

    @app.get(prefix + "/{record_id}", name=f"get_{table}")
    def get_row(record_id: int, current_user: Dict[str, Any] = Depends(require_user)):
        with connect() as con:
            return crud.get_row(con, table, record_id)

    @app.put(prefix + "/{record_id}", name=f"update_{table}")
    def update_row(record_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(can_edit)):
        with connect() as con:
            return crud.update_row(con, table, record_id, payload, current_user)

    @app.delete(prefix + "/{record_id}", name=f"delete_{table}")
    def delete_row(record_id: int, current_user: Dict[str, Any] = Depends(admin_only)):
        with connect() as con:
            crud.delete_row(con, table, record_id, current_user)
        return {"ok": True, "deleted_id": record_id}


_register_crud("/projects", "projects")
_register_crud("/systems", "systems", "project_id")
_register_crud("/subsystems", "subsystems", "system_id")
_register_crud("/itrs", "itrs", "subsystem_id")
_register_crud("/test-packs", "test_packs", with_list=False)
_register_crud("/tags", "tags", "test_pack_id")


@app.get("/test-packs/{record_id}/tags")
def list_pack_tags(record_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        crud.get_row(con, "test_packs", record_id)
        return crud.select_rows(con, "tags", filters={"test_pack_id": record_id})


# ---------------------- Stats ----------------------

@app.get("/dashboard/stats")
def dashboard(project_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        if project_id is not None:
            crud.get_row(con, "projects", project_id)
        return dashboard_stats(con, project_id)


# ---------------------- Users ----------------------

@app.get("/users")
def list_users(current_user: Dict[str, Any] = Depends(admin_only)):
    with connect() as con:
        return users.list_users(con)


@app.post("/users", status_code=201)
def create_user_endpoint(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(admin_only)):
    with connect() as con:
        try:
            user = users.add_user(
                con,
                payload.get("username") or payload.get("email") or "",
                payload.get("password") or "",
                payload.get("role") or "user",
                payload.get("full_name"),
                current_user,
            )
        except ValueError as e:
            raise _bad_request(e)
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="El usuario ya existe")
    logger.info("user %s created by %s", user["id"], current_user["username"])
    return user


@app.post("/users/bulk")
async def bulk_users(file: UploadFile = File(...), current_user: Dict[str, Any] = Depends(admin_only)):
    content = await file.read()
    rows = users.read_user_rows(content)
    with connect() as con:
        return users.bulk_create_users(con, rows, current_user)


@app.put("/users/{user_id}")
def update_user_endpoint(user_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(admin_only)):
    with connect() as con:
        try:
            return users.update_user(con, user_id, payload.get("full_name"), payload.get("role"), current_user)
        except ValueError as e:
            raise _bad_request(e)


@app.post("/users/{user_id}/password")
def change_password_endpoint(user_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    if current_user["role"] != "admin" and current_user["id"] != user_id:
        raise HTTPException(status_code=403, detail="No tienes permisos para esta operación")
    with connect() as con:
        try:
            users.change_password(con, user_id, payload.get("password") or "", current_user)
        except ValueError as e:
            raise _bad_request(e)
    return {"ok": True}


@app.delete("/users/{user_id}")
def delete_user_endpoint(user_id: int, current_user: Dict[str, Any] = Depends(admin_only)):
    if current_user["id"] == user_id:
        raise HTTPException(status_code=400, detail="No puedes eliminar tu propio usuario")
    with connect() as con:
        users.delete_user(con, user_id, current_user)
    return {"ok": True, "deleted_id": user_id}


# ---------------------- Files ----------------------

@app.post("/files", status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    folder: str = Form(""),
    current_user: Dict[str, Any] = Depends(can_edit),
):
    content = await file.read()
    with connect() as con:
        return storage.save_file(con, file.filename, content, folder, file.content_type, current_user)


@app.get("/files")
def list_files(folder: Optional[str] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return storage.list_files(con, folder)


@app.get("/files/{file_id}/download")
def download_file(file_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        record = storage.get_file(con, file_id)
    path = storage.file_path(record)
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Archivo no encontrado en el almacenamiento")
    return FileResponse(path, media_type=record["content_type"] or "application/octet-stream",
                        filename=record["file_name"])


@app.delete("/files/{file_id}")
def delete_file(file_id: int, current_user: Dict[str, Any] = Depends(can_edit)):
    with connect() as con:
        storage.delete_file(con, file_id, current_user)
    return {"ok": True, "deleted_id": file_id}


# ---------------------- Reports ----------------------

@app.get("/reports/settings")
def get_report_settings(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return reports.get_settings(con)


@app.put("/reports/settings")
def save_report_settings(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(admin_only)):
    with connect() as con:
        return reports.save_settings(con, payload, current_user)


@app.get("/reports/recipients")
def list_recipients(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return reports.list_recipients(con)


@app.post("/reports/recipients", status_code=201)
def add_recipient(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(admin_only)):
    with connect() as con:
        try:
            return reports.add_recipient(con, payload.get("email") or "", current_user)
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="El destinatario ya existe")


@app.delete("/reports/recipients/{recipient_id}")
def delete_recipient(recipient_id: int, current_user: Dict[str, Any] = Depends(admin_only)):
    with connect() as con:
        reports.delete_recipient(con, recipient_id, current_user)
    return {"ok": True, "deleted_id": recipient_id}


@app.get("/reports/schedule/{period}")
def report_dispatch_plan(period: str, current_user: Dict[str, Any] = Depends(admin_only)):
    with connect() as con:
        return reports.dispatch_plan(con, period)


@app.get("/reports/{report_type}")
def report(
    report_type: str,
    project_id: Optional[int] = None,
    format: str = Query("html", pattern="^(html|json)$"),
    current_user: Dict[str, Any] = Depends(require_user),
):
    with connect() as con:
        result = reports.build_report(con, report_type, project_id)
    if format == "json":
        return result
    return HTMLResponse(result["html"])


# ---------------------- Activity ----------------------

@app.get("/activity")
def activity(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    table_name: Optional[str] = None,
    after_id: Optional[int] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    with connect() as con:
        return list_activity(con, limit=limit, offset=offset, table_name=table_name, after_id=after_id)


@app.websocket("/ws/activity")
async def activity_feed(websocket: WebSocket, token: Optional[str] = Query(None)):
    """Push activity entries as they are written.

    The first message is a snapshot of the latest entries; later messages
    carry only entries the client has not received yet.
    """
    try:
        user = await asyncio.to_thread(authenticate, token or websocket.cookies.get("session"))
    except HTTPException as e:
        await websocket.close(code=1008, reason=str(e.detail))
        return
    await websocket.accept()
    stream = ActivityStream()

    def snapshot() -> List[Dict[str, Any]]:
        with connect() as con:
            return list_activity(con, limit=100)

    def poll(after_id: int) -> List[Dict[str, Any]]:
        with connect() as con:
            return activity_since(con, after_id)

    try:
        fresh = stream.merge(await asyncio.to_thread(snapshot))
        await websocket.send_json({"type": "snapshot", "entries": fresh})
        while True:
            try:
                # client messages are ignored; the receive only detects disconnects
                await asyncio.wait_for(websocket.receive_text(), timeout=ACTIVITY_POLL_SECONDS)
            except asyncio.TimeoutError:
                pass
            fresh = stream.merge(await asyncio.to_thread(poll, stream.last_id or 0))
            if fresh:
                await websocket.send_json({"type": "activity", "entries": fresh})
    except WebSocketDisconnect:
        logger.info("activity feed closed for %s", user["username"])
