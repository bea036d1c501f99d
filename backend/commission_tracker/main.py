"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the commission tracker.
Controllers are intentionally thin: they authenticate and authorize the
caller, delegate to services, and return JSON (or CSV for exports).

Endpoint groups:
- /auth/login, /auth/logout, /auth/me
- /clients, /products, /brokers, /sales-leads (reference data CRUD)
- /client-product-mappings, /mapping-options
- /sales-data (+ /import, /export), /exchange-rates
- /reports/dashboard, /reports/monthly-trends, /reports/commission (+ /export)
- /users, /roles, /modules, /permissions (administration)
"""

import json
import logging
import os
import time
import uuid
from datetime import date
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import permissions as perms
from . import services
from .auth import get_current_user, require_access, require_admin, session_token, bearer_scheme
from .config import settings
from .database import create_db_and_tables, engine, get_session
from .reports import ReportFilters, ReportService, months_back, resolve_date_range
from .schemas import (
    BrokerIn,
    ClientIn,
    CurrentUserOut,
    ExchangeRateIn,
    GrantIn,
    ImportResultOut,
    LoginIn,
    LoginOut,
    MappingIn,
    PermissionOut,
    ProductIn,
    RoleIn,
    SalesDataIn,
    SalesLeadIn,
    UserCreateIn,
    UserUpdateIn,
)
from .utils.csv_export import COMMISSION_REPORT_HEADERS, SALES_DATA_HEADERS, flatten_commission_report, to_csv
from .utils.rate_limit import InMemoryRateLimiter

app = FastAPI(title="Commission Tracker API")
logger = logging.getLogger("commission_tracker.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_login_limiter = InMemoryRateLimiter()
LOGIN_WINDOW_SECONDS = 60

# Permissive CORS for local dashboard frontends.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def bootstrap():
    """Create tables and seed system roles, the bootstrap admin and permissions."""
    create_db_and_tables()
    with Session(engine) as session:
        services.RoleService(session).ensure_system_roles()
        services.UserService(session).ensure_admin(settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
        svc = services.PermissionService(session)
        if svc.ensure_permission_tables():
            svc.seed()


bootstrap()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path != "/health":
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "user_id": getattr(request.state, "user_id", None),
                },
                ensure_ascii=True,
            ),
        )
    return response


@app.exception_handler(services.ServiceError)
async def service_error_handler(request: Request, exc: services.ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("database_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "database error"})


def _client_key(request: Request, email: str) -> str:
    return f"{request.client.host if request.client else 'unknown'}:{email.strip().lower()}"


def _user_out(user) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "full_name": user.full_name,
        "email": user.email,
        "role": user.role,
        "role_id": user.role_id,
        "created_at": user.created_at,
        "last_login": user.last_login,
    }


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# --- auth -----------------------------------------------------------------

@app.post("/auth/login", response_model=LoginOut)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate by email and password and open a cookie session.

    `username` is accepted in place of `email` for older form posts. The
    session token is also returned so API clients can send it as a
    bearer token.
    """
    email = payload.email or payload.username or ""
    key = _client_key(request, email)
    blocked, retry_after = _login_limiter.blocked(key, settings.LOGIN_RATE_LIMIT_PER_MIN, LOGIN_WINDOW_SECONDS)
    if blocked:
        raise HTTPException(
            status_code=429,
            detail=f"too many login attempts; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )
    try:
        user, row, role = services.AuthService(db).login(email, payload.password or "")
    except services.Unauthorized:
        _login_limiter.hit(key, LOGIN_WINDOW_SECONDS)
        raise
    _login_limiter.reset(key)
    body = {"success": True, "role": role, "token": row.id}
    response = JSONResponse(content=body)
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        row.id,
        httponly=True,
        secure=settings.SECURE_COOKIES,
        max_age=settings.SESSION_TTL_HOURS * 3600,
        path="/",
        samesite="lax",
    )
    logger.info("login user_id=%s role=%s", user.id, role)
    return response


@app.post("/auth/logout")
def logout(request: Request, db: Session = Depends(get_session), credentials=Depends(bearer_scheme)):
    """Delete the current session and clear the cookie."""
    services.AuthService(db).logout(session_token(request, credentials))
    response = JSONResponse(content={"success": True})
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    return response


@app.get("/auth/me", response_model=CurrentUserOut)
def me(user: dict = Depends(get_current_user)):
    return user


# --- reference data ---------------------------------------------------------

def _register_reference_routes(path: str, factory, schema, label: str):
    """Register list/get/create/update/delete routes for a reference table."""

    def list_items(search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc",
                   db: Session = Depends(get_session), user: dict = Depends(require_access)):
        return factory(db).list(search=search, sort=sort, order=order)

    def get_item(item_id: str, db: Session = Depends(get_session), user: dict = Depends(require_access)):
        return factory(db).get(item_id)

    def create_item(payload: schema, db: Session = Depends(get_session), user: dict = Depends(require_access)):
        return factory(db).create(payload.model_dump())

    def update_item(item_id: str, payload: schema, db: Session = Depends(get_session),
                    user: dict = Depends(require_access)):
        return factory(db).update(item_id, payload.model_dump())

    def delete_item(item_id: str, db: Session = Depends(get_session), user: dict = Depends(require_access)):
        factory(db).delete(item_id)
        return {"success": True}

    app.get(path, summary=f"List {label}")(list_items)
    app.get(path + "/{item_id}", summary=f"Get {label}")(get_item)
    app.post(path, status_code=201, summary=f"Create {label}")(create_item)
    app.put(path + "/{item_id}", summary=f"Update {label}")(update_item)
    app.delete(path + "/{item_id}", summary=f"Delete {label}")(delete_item)


_register_reference_routes("/clients", services.client_service, ClientIn, "clients")
_register_reference_routes("/products", services.product_service, ProductIn, "products")
_register_reference_routes("/brokers", services.broker_service, BrokerIn, "brokers")
_register_reference_routes("/sales-leads", services.sales_lead_service, SalesLeadIn, "sales leads")


@app.get("/mapping-options")
def mapping_options(db: Session = Depends(get_session), user: dict = Depends(get_current_user)):
    """Id/name lists of clients, products, brokers and sales leads for form dropdowns."""
    return services.mapping_options(db)


# --- client-product mappings ----------------------------------------------

@app.get("/client-product-mappings")
def list_mappings(search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc",
                  db: Session = Depends(get_session), user: dict = Depends(require_access)):
    return services.MappingService(db).list(search=search, sort=sort, order=order)


@app.get("/client-product-mappings/{mapping_id}")
def get_mapping(mapping_id: str, db: Session = Depends(get_session), user: dict = Depends(require_access)):
    return services.MappingService(db).get(mapping_id)


@app.post("/client-product-mappings", status_code=201)
def create_mapping(payload: MappingIn, db: Session = Depends(get_session), user: dict = Depends(require_access)):
    return services.MappingService(db).create(payload.model_dump())


@app.put("/client-product-mappings/{mapping_id}")
def update_mapping(mapping_id: str, payload: MappingIn, db: Session = Depends(get_session),
                   user: dict = Depends(require_access)):
    return services.MappingService(db).update(mapping_id, payload.model_dump())


@app.delete("/client-product-mappings/{mapping_id}")
def delete_mapping(mapping_id: str, db: Session = Depends(get_session), user: dict = Depends(require_access)):
    services.MappingService(db).delete(mapping_id)
    return {"success": True}


# --- sales data -------------------------------------------------------------

@app.get("/sales-data")
def list_sales(search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc",
               db: Session = Depends(get_session), user: dict = Depends(require_access)):
    """List sales records newest first, joined with client/product/broker names."""
    return services.SalesService(db).list(search=search, sort=sort, order=order)


@app.get("/sales-data/export")
def export_sales(search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc",
                 db: Session = Depends(get_session), user: dict = Depends(require_access)):
    rows = services.SalesService(db).list(search=search, sort=sort, order=order)
    return _csv_response(to_csv(rows, SALES_DATA_HEADERS), f"sales-data-{date.today().isoformat()}.csv")


@app.post("/sales-data/import", response_model=ImportResultOut)
def import_sales(file: UploadFile = File(...), dry_run: bool = False, db: Session = Depends(get_session),
                 user: dict = Depends(require_access)):
    """Upload a CSV of sales and create one record per valid row.

    Returns `{created, errors}`; rows that fail validation are reported
    by CSV line number and skipped.
    """
    if not file.filename:
        raise HTTPException(status_code=400, detail="no file")
    if not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="unsupported file type; expected .csv")
    content = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="file too large")
    try:
        return services.SalesService(db).import_file(content, dry_run=dry_run)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/sales-data/{sale_id}")
def get_sale(sale_id: str, db: Session = Depends(get_session), user: dict = Depends(require_access)):
    return services.SalesService(db).get(sale_id)


@app.post("/sales-data", status_code=201)
def create_sale(payload: SalesDataIn, db: Session = Depends(get_session), user: dict = Depends(require_access)):
    """Record a sale; omitted percentages and derived amounts are filled in."""
    return services.SalesService(db).create(payload.model_dump())


@app.put("/sales-data/{sale_id}")
def update_sale(sale_id: str, payload: SalesDataIn, db: Session = Depends(get_session),
                user: dict = Depends(require_access)):
    return services.SalesService(db).update(sale_id, payload.model_dump())


@app.delete("/sales-data/{sale_id}")
def delete_sale(sale_id: str, db: Session = Depends(get_session), user: dict = Depends(require_access)):
    services.SalesService(db).delete(sale_id)
    return {"success": True}


@app.get("/exchange-rates/latest")
def latest_exchange_rate(db: Session = Depends(get_session), user: dict = Depends(require_access)):
    """Latest INR/USD rate; stores today's default rate when none exists."""
    return services.ExchangeRateService(db).latest()


@app.post("/exchange-rates", status_code=201)
def create_exchange_rate(payload: ExchangeRateIn, db: Session = Depends(get_session),
                         user: dict = Depends(require_access)):
    return services.ExchangeRateService(db).create(payload.date, payload.rate)


# --- reports ----------------------------------------------------------------

def _report_filters(commission: bool):
    def _dependency(
        range_type: Optional[str] = Query(default=None, alias="range"),
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        client_id: Optional[str] = None,
        product_id: Optional[str] = None,
        broker_id: Optional[str] = None,
        channel_type: Optional[str] = None,
    ) -> ReportFilters:
        if commission and range_type in (None, "", "custom") and from_date is None:
            from_date = months_back(to_date or date.today(), 3)
        start, end = resolve_date_range(range_type, from_date, to_date)
        return ReportFilters(start, end, client_id, product_id, broker_id, channel_type)
    return _dependency


def _report_failure(name: str, exc: SQLAlchemyError) -> HTTPException:
    logger.exception("Error fetching %s", name)
    return HTTPException(status_code=500, detail=f"Failed to fetch {name}: {exc.__class__.__name__}")


@app.get("/reports/dashboard")
def dashboard(filters: ReportFilters = Depends(_report_filters(commission=False)),
              db: Session = Depends(get_session), user: dict = Depends(require_access)):
    """Totals of GWP, NBP, broker commission and CDP fee for the filter window."""
    try:
        return ReportService(db).dashboard_summary(filters)
    except SQLAlchemyError as e:
        raise _report_failure("dashboard data", e)


@app.get("/reports/monthly-trends")
def monthly_trends(filters: ReportFilters = Depends(_report_filters(commission=False)),
                   db: Session = Depends(get_session), user: dict = Depends(require_access)):
    """Chart-ready monthly GWP series and commission vs CDP fee totals."""
    try:
        return ReportService(db).monthly_trends(filters)
    except SQLAlchemyError as e:
        raise _report_failure("monthly trends data", e)


@app.get("/reports/commission")
def commission_report(filters: ReportFilters = Depends(_report_filters(commission=True)),
                      db: Session = Depends(get_session), user: dict = Depends(require_access)):
    """Client -> product/broker/channel commission tree."""
    try:
        return {"clients": ReportService(db).commission_report(filters)}
    except SQLAlchemyError as e:
        raise _report_failure("commission report data", e)


@app.get("/reports/commission/export")
def export_commission_report(filters: ReportFilters = Depends(_report_filters(commission=True)),
                             db: Session = Depends(get_session), user: dict = Depends(require_access)):
    try:
        clients = ReportService(db).commission_report(filters)
    except SQLAlchemyError as e:
        raise _report_failure("commission report data", e)
    content = to_csv(flatten_commission_report(clients), COMMISSION_REPORT_HEADERS)
    return _csv_response(content, f"commission-report-{date.today().isoformat()}.csv")


# --- users & roles ----------------------------------------------------------

@app.get("/users")
def list_users(search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc",
               db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    return services.UserService(db).list(search=search, sort=sort, order=order)


@app.post("/users", status_code=201)
def create_user(payload: UserCreateIn, db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    user = services.UserService(db).create(**payload.model_dump())
    return _user_out(user)


@app.put("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdateIn, db: Session = Depends(get_session),
                admin: dict = Depends(require_admin)):
    user = services.UserService(db).update(user_id, **payload.model_dump())
    return _user_out(user)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    services.UserService(db).delete(user_id, admin["id"])
    return {"success": True}


def _self_or_admin(user_id: str, current: dict) -> None:
    if current["id"] != user_id and current["role"] != perms.ADMIN_ROLE:
        raise services.Forbidden("Forbidden")


@app.get("/users/{user_id}/role")
def get_user_role(user_id: str, db: Session = Depends(get_session), user: dict = Depends(get_current_user)):
    _self_or_admin(user_id, user)
    svc = services.UserService(db)
    return {"role": svc.repo.effective_role(svc.get(user_id))}


@app.get("/users/{user_id}/permissions")
def get_user_permissions(user_id: str, db: Session = Depends(get_session), user: dict = Depends(get_current_user)):
    """Every module permission with a `granted` flag for explicit grants."""
    _self_or_admin(user_id, user)
    services.UserService(db).get(user_id)
    return {"permissions": services.PermissionService(db).user_permissions(user_id)}


@app.post("/users/{user_id}/permissions")
def grant_user_permission(user_id: str, payload: GrantIn, db: Session = Depends(get_session),
                          admin: dict = Depends(require_admin)):
    services.PermissionService(db).grant(user_id, payload.permission_id, admin["id"])
    return {"success": True}


@app.delete("/users/{user_id}/permissions/{permission_id}")
def revoke_user_permission(user_id: str, permission_id: str, db: Session = Depends(get_session),
                           admin: dict = Depends(require_admin)):
    services.PermissionService(db).revoke(user_id, permission_id)
    return {"success": True}


@app.get("/roles")
def list_roles(db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    return {"roles": services.RoleService(db).list()}


@app.get("/roles/{role_id}")
def get_role(role_id: str, db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    return {"role": services.RoleService(db).get(role_id)}


@app.post("/roles", status_code=201)
def create_role(payload: RoleIn, db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    role = services.RoleService(db).create(payload.name, payload.description)
    return {"success": True, "id": role.id}


@app.put("/roles/{role_id}")
def update_role(role_id: str, payload: RoleIn, db: Session = Depends(get_session),
                admin: dict = Depends(require_admin)):
    services.RoleService(db).update(role_id, payload.name, payload.description)
    return {"success": True}


@app.delete("/roles/{role_id}")
def delete_role(role_id: str, db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    services.RoleService(db).delete(role_id)
    return {"success": True}


# --- modules & permissions --------------------------------------------------

@app.get("/modules")
def list_modules(db: Session = Depends(get_session), user: dict = Depends(get_current_user)):
    return {"modules": services.PermissionService(db).modules()}


@app.get("/permissions")
def list_permissions(user_id: Optional[str] = None, db: Session = Depends(get_session),
                     user: dict = Depends(get_current_user)):
    """Granted `{module_name, name}` pairs for the caller (or, for admins, any user)."""
    target_id = user_id or user["id"]
    _self_or_admin(target_id, user)
    if target_id == user["id"]:
        role = user["role"]
    else:
        svc = services.UserService(db)
        role = svc.repo.effective_role(svc.get(target_id))
    pairs = services.PermissionService(db).effective_permissions(target_id, role)
    return {"permissions": [PermissionOut(**p) for p in pairs]}


@app.get("/permissions/check")
def check_permission(user_id: Optional[str] = None, module: Optional[str] = None, permission: str = "view",
                     db: Session = Depends(get_session), user: dict = Depends(get_current_user)):
    if not user_id or not module:
        raise HTTPException(status_code=400, detail="Missing required parameters: user_id and module")
    _self_or_admin(user_id, user)
    return {"has_permission": services.PermissionService(db).has_permission(user_id, module, permission)}


@app.post("/permissions/create-tables")
def create_permission_tables(db: Session = Depends(get_session), admin: dict = Depends(require_admin)):
    """Create/seed the permission tables and grant every user their role defaults."""
    svc = services.PermissionService(db)
    if not svc.ensure_permission_tables():
        raise HTTPException(status_code=500, detail="Failed to create permissions tables")
    svc.seed(grant_role_defaults=True)
    return {"success": True}


# --- misc -------------------------------------------------------------------

@app.get("/", response_class=HTMLResponse)
def home():
    """Minimal homepage for quick manual testing."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset="UTF-8" />
      <title>Commission Tracker API</title>
      <style>
        body { font-family: Arial, sans-serif; margin: 32px; }
        .card { max-width: 640px; padding: 16px; border: 1px solid #ddd; border-radius: 8px; }
      </style>
    </head>
    <body>
      <div class="card">
        <h1>Commission Tracker API</h1>
        <p>Open <a href="/docs">Swagger UI</a>, then <code>POST /auth/login</code> to start a session.</p>
      </div>
    </body>
    </html>
    """


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


def run() -> None:
    """Serve the API with uvicorn on `HOST`/`PORT`."""
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
