"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and domain rules. Services are intentionally thin: they validate input,
apply the commission arithmetic and access-control cascade, and persist
through repositories. Failures are raised as `ServiceError` subclasses
which the application maps to HTTP status codes.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from passlib.context import CryptContext
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from . import models, repositories
from . import permissions as perms
from .config import settings
from .database import engine, table_exists
from .schemas import SalesDataIn
from .utils.sales_import import parse_sales_csv
from .utils.table import apply_table_query

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
logger = logging.getLogger("commission_tracker.services")
perm_logger = logging.getLogger("commission_tracker.permissions")


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(ServiceError):
    status_code = 400


class Unauthorized(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


def hash_password(password: str) -> str:
    return PWD_CTX.hash(password)


class AuthService:
    """Session-based login, logout and current-user resolution."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.session_repo = repositories.SessionRepository(session)

    def login(self, email: str, password: str) -> Tuple[models.User, models.UserSession, str]:
        """Verify credentials and open a session.

        Returns `(user, session_row, effective_role)`. Raises InvalidInput
        when a field is missing and Unauthorized on bad credentials;
        the message is the same for an unknown email and a wrong password.
        """
        if not email or not password:
            raise InvalidInput("Email and password are required")
        user = self.user_repo.get_by_email(email)
        if not user or not PWD_CTX.verify(password, user.password_hash):
            raise Unauthorized("Invalid email or password")
        now = models.utcnow()
        self.session_repo.purge_expired(user.id, now)
        row = self.session_repo.create(user.id, now + timedelta(hours=settings.SESSION_TTL_HOURS))
        user.last_login = now
        self.user_repo.save(user)
        return user, row, self.user_repo.effective_role(user)

    def logout(self, token: Optional[str]) -> None:
        """Drop the session row; failures are logged, the cookie is cleared regardless."""
        if not token:
            return
        try:
            self.session_repo.delete(token)
        except SQLAlchemyError:
            logger.exception("Error deleting session")
            self.session.rollback()

    def resolve(self, token: Optional[str]) -> Optional[dict]:
        """Return the current user as a dict for a valid token, else `None`."""
        if not token:
            return None
        user = self.session_repo.get_active_user(token, models.utcnow())
        if not user:
            return None
        return {
            "id": user.id,
            "username": user.username or user.email,
            "full_name": user.full_name or user.email.split("@")[0],
            "email": user.email,
            "role": self.user_repo.effective_role(user),
            "role_id": user.role_id,
        }


class RoleService:
    """Role CRUD with protection for system roles."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.RoleRepository(session)

    def ensure_system_roles(self) -> None:
        for name, description in perms.SYSTEM_ROLES.items():
            if not self.repo.get_by_name(name):
                self.session.add(models.Role(name=name, description=description, is_system=True))
        self.session.commit()

    def list(self) -> List[models.Role]:
        return self.repo.list()

    def get(self, role_id: str) -> models.Role:
        role = self.repo.get(role_id)
        if not role:
            raise NotFound("Role not found")
        return role

    def create(self, name: Optional[str], description: Optional[str]) -> models.Role:
        if not name:
            raise InvalidInput("Role name is required")
        if self.repo.name_taken(name):
            raise InvalidInput("Role with this name already exists")
        return self.repo.create(models.Role(name=name, description=description or None, is_system=False))

    def update(self, role_id: str, name: Optional[str], description: Optional[str]) -> models.Role:
        if not name:
            raise InvalidInput("Role name is required")
        role = self.get(role_id)
        if role.is_system:
            raise InvalidInput("Cannot modify system roles")
        if self.repo.name_taken(name, exclude_id=role_id):
            raise InvalidInput("Role with this name already exists")
        # users carry the role name in their legacy column as well
        for user in self.session.exec(select(models.User).where(models.User.role_id == role_id)).all():
            user.role = name
            self.session.add(user)
        return self.repo.update(role, {"name": name, "description": description or None})

    def delete(self, role_id: str) -> None:
        role = self.get(role_id)
        if role.is_system:
            raise InvalidInput("Cannot delete system roles")
        if self.repo.count_users(role_id) > 0:
            raise InvalidInput("Cannot delete role that is assigned to users")
        self.repo.delete(role)


class UserService:
    """Admin-side user management."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.UserRepository(session)
        self.role_repo = repositories.RoleRepository(session)

    def list(self, search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc") -> List[dict]:
        return _table(self.repo.list_with_roles(), search, sort, order)

    def get(self, user_id: str) -> models.User:
        user = self.repo.get(user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def _resolve_role(self, role_id: Optional[str], role: Optional[str]) -> Tuple[Optional[str], str]:
        """Return `(role_id, role_name)`; `role_id` wins when both are given."""
        if role_id:
            found = self.role_repo.get(role_id)
            if not found:
                raise InvalidInput("Invalid role")
            return found.id, found.name
        if not role:
            raise InvalidInput("Role is required")
        found = self.role_repo.get_by_name(role)
        if not found:
            raise InvalidInput("Invalid role")
        return found.id, found.name

    def create(self, username: str, full_name: str, email: str, password: str,
               role_id: Optional[str] = None, role: Optional[str] = None) -> models.User:
        if not all([username, full_name, email, password]) or not (role_id or role):
            raise InvalidInput("All fields are required")
        if self.repo.email_taken(email):
            raise InvalidInput("Email already exists")
        if self.repo.get_by_username(username):
            raise InvalidInput("Username already exists")
        resolved_id, role_name = self._resolve_role(role_id, role)
        user = models.User(
            username=username,
            full_name=full_name,
            email=email,
            password_hash=hash_password(password),
            role=role_name,
            role_id=resolved_id,
        )
        return self.repo.create(user)

    def update(self, user_id: str, full_name: str, email: str, password: Optional[str] = None,
               role_id: Optional[str] = None, role: Optional[str] = None) -> models.User:
        if not email or not full_name or not (role_id or role):
            raise InvalidInput("Email, full name, and role are required")
        user = self.get(user_id)
        if self.repo.email_taken(email, exclude_id=user_id):
            raise InvalidInput("Email already exists")
        user.role_id, user.role = self._resolve_role(role_id, role)
        user.email = email
        user.full_name = full_name
        if password:
            user.password_hash = hash_password(password)
        return self.repo.save(user)

    def delete(self, user_id: str, current_user_id: str) -> None:
        if user_id == current_user_id:
            raise InvalidInput("You cannot delete your own account")
        self.repo.delete(self.get(user_id))

    def ensure_admin(self, email: str, password: str) -> Optional[models.User]:
        """Create the bootstrap admin account if no user owns `email` yet."""
        if not email or not password or self.repo.get_by_email(email):
            return None
        admin_role = self.role_repo.get_by_name(perms.ADMIN_ROLE)
        user = models.User(
            username=email.split("@")[0],
            full_name=email.split("@")[0],
            email=email,
            password_hash=hash_password(password),
            role=perms.ADMIN_ROLE,
            role_id=admin_role.id if admin_role else None,
        )
        logger.info("Created bootstrap admin %s", email)
        return self.repo.create(user)


class PermissionService:
    """Module/permission resolution with a static role-table fallback.

    Resolution order for `has_permission`: unknown user is denied, admin
    is allowed, then the static role table, then explicit grants. If the
    permission tables are unavailable or a query fails, the static role
    table alone decides.
    """
    TABLES = ("modules", "permissions", "user_permissions")

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.PermissionRepository(session)
        self.user_repo = repositories.UserRepository(session)

    def ensure_permission_tables(self) -> bool:
        """Create and seed the permission tables when they are missing or empty.

        A first seed also grants every existing user their role's static
        permissions. Returns False (after logging) when this fails.
        """
        try:
            if table_exists("modules") and self.repo.count_modules() > 0:
                return True
            perm_logger.info("Permissions tables missing or empty. Creating them automatically...")
            SQLModel.metadata.create_all(
                engine,
                tables=[SQLModel.metadata.tables[name] for name in self.TABLES],
            )
            self.seed(grant_role_defaults=True)
            perm_logger.info("Permission tables created successfully")
            return True
        except SQLAlchemyError:
            perm_logger.exception("Error checking/creating permissions tables")
            self.session.rollback()
            return False

    def seed(self, grant_role_defaults: bool = False) -> None:
        """Insert missing modules and permissions; optionally grant role defaults.

        Idempotent: existing rows and grants are left untouched.
        """
        for name, description in perms.MODULES.items():
            module = self.repo.ensure_module(name, description)
            for action in perms.ACTIONS:
                self.repo.ensure_permission(module, action, perms.permission_description(name, action))
        if grant_role_defaults:
            for role in (perms.ADMIN_ROLE, *perms.ROLE_ACCESS):
                pairs = perms.role_permissions(role)
                for user in self.user_repo.list_by_role(role):
                    for pair in pairs:
                        perm = self.repo.find_permission(pair["module_name"], pair["name"])
                        if perm:
                            self.repo.grant(user.id, perm.id, commit=False)
        self.session.commit()

    def _role_of(self, user_id: str) -> Optional[str]:
        user = self.user_repo.get(user_id)
        return self.user_repo.effective_role(user) if user else None

    def _fallback(self, user_id: str, module_name: str, action: str) -> bool:
        try:
            role = self._role_of(user_id)
            return perms.role_allows(role, module_name, action) if role else False
        except SQLAlchemyError:
            perm_logger.exception("Error in fallback permission check")
            self.session.rollback()
            return False

    def has_permission(self, user_id: str, module_name: str, action: str = "view") -> bool:
        try:
            role = self._role_of(user_id)
            if role is None:
                return False
            if role == perms.ADMIN_ROLE:
                return True
            if not self.ensure_permission_tables():
                return perms.role_allows(role, module_name, action)
            if perms.role_allows(role, module_name, action):
                return True
            return self.repo.has_grant(user_id, module_name, action)
        except SQLAlchemyError:
            perm_logger.exception("Error checking permission %s.%s for user %s", module_name, action, user_id)
            self.session.rollback()
            return self._fallback(user_id, module_name, action)

    def effective_permissions(self, user_id: str, role: str) -> List[dict]:
        """The `{module_name, name}` pairs `has_permission` accepts for a user."""
        if role == perms.ADMIN_ROLE:
            return perms.role_permissions(role)
        granted = {(p["module_name"], p["name"]) for p in perms.role_permissions(role)}
        try:
            if self.ensure_permission_tables():
                for p in self.repo.list_for_user(user_id):
                    if p["granted"]:
                        granted.add((p["module_name"], p["name"]))
        except SQLAlchemyError:
            perm_logger.exception("Error fetching permissions for user %s", user_id)
            self.session.rollback()
            return perms.role_permissions(role)
        return [
            {"module_name": m, "name": a}
            for m in perms.MODULES for a in perms.ACTIONS if (m, a) in granted
        ]

    def user_permissions(self, user_id: str) -> List[dict]:
        if not self.ensure_permission_tables():
            return []
        return self.repo.list_for_user(user_id)

    def modules(self) -> List[models.Module]:
        if not self.ensure_permission_tables():
            return []
        return self.repo.list_modules()

    def grant(self, user_id: str, permission_id: str, granted_by: str) -> None:
        if not self.ensure_permission_tables():
            raise ServiceError("Permission tables do not exist")
        if not self.user_repo.get(user_id):
            raise NotFound("User not found")
        if not self.repo.get_permission(permission_id):
            raise NotFound("Permission not found")
        self.repo.grant(user_id, permission_id, granted_by)

    def revoke(self, user_id: str, permission_id: str) -> None:
        if not self.ensure_permission_tables():
            raise ServiceError("Permission tables do not exist")
        self.repo.revoke(user_id, permission_id)


class ReferenceDataService:
    """CRUD for the simple reference tables (clients, products, brokers, sales leads).

    `reference_column` names the foreign-key column in mappings/sales that
    points at this table; deletes are refused while references remain.
    """
    def __init__(self, session: Session, repo_cls, model, label: str, reference_column: str):
        self.session = session
        self.repo = repo_cls(session)
        self.model = model
        self.label = label
        self.reference_column = reference_column

    def list(self, search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc") -> List[dict]:
        rows = [obj.model_dump() for obj in self.repo.list()]
        return _table(rows, search, sort, order)

    def get(self, obj_id: str):
        obj = self.repo.get(obj_id)
        if not obj:
            raise NotFound(f"{self.label} not found")
        return obj

    def create(self, values: dict):
        return self.repo.create(self.model(**values))

    def update(self, obj_id: str, values: dict):
        return self.repo.update(self.get(obj_id), values)

    def delete(self, obj_id: str) -> None:
        obj = self.get(obj_id)
        refs = repositories.ReferenceCounter(self.session).count(self.reference_column, obj_id)
        if refs:
            raise Conflict(f"{self.label} is referenced by {refs} mapping or sales record(s)")
        self.repo.delete(obj)


def client_service(session: Session) -> ReferenceDataService:
    return ReferenceDataService(session, repositories.ClientRepository, models.Client, "Client", "client_id")


def product_service(session: Session) -> ReferenceDataService:
    return ReferenceDataService(session, repositories.ProductRepository, models.Product, "Product", "product_id")


def broker_service(session: Session) -> ReferenceDataService:
    return ReferenceDataService(session, repositories.BrokerRepository, models.Broker, "Broker", "broker_id")


def sales_lead_service(session: Session) -> ReferenceDataService:
    return ReferenceDataService(session, repositories.SalesLeadRepository, models.SalesLead, "Sales lead",
                                "sales_lead_id")


def _table(rows, search, sort, order):
    try:
        return apply_table_query(rows, search, sort, order)
    except ValueError as e:
        raise InvalidInput(str(e))


def mapping_options(session: Session) -> Dict[str, List[dict]]:
    """Id/name lists used to populate mapping and sales forms."""
    return {
        "clients": repositories.ClientRepository(session).options(),
        "products": repositories.ProductRepository(session).options(),
        "brokers": repositories.BrokerRepository(session).options(),
        "sales_leads": repositories.SalesLeadRepository(session).options(),
    }


def _require(session: Session, model, obj_id: str, label: str) -> None:
    if not obj_id or session.get(model, obj_id) is None:
        raise InvalidInput(f"{label} not found: {obj_id}")


class MappingService:
    """Client-product mappings with reference validation."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.MappingRepository(session)

    def list(self, search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc") -> List[dict]:
        return _table(self.repo.list_detailed(), search, sort, order)

    def get(self, mapping_id: str) -> models.ClientProductMap:
        mapping = self.repo.get(mapping_id)
        if not mapping:
            raise NotFound("Client product mapping not found")
        return mapping

    def _validate(self, values: dict) -> None:
        _require(self.session, models.Client, values["client_id"], "client")
        _require(self.session, models.Product, values["product_id"], "product")
        _require(self.session, models.Broker, values["broker_id"], "broker")
        _require(self.session, models.SalesLead, values["sales_lead_id"], "sales lead")

    def create(self, values: dict) -> models.ClientProductMap:
        self._validate(values)
        return self.repo.create(models.ClientProductMap(**values))

    def update(self, mapping_id: str, values: dict) -> models.ClientProductMap:
        mapping = self.get(mapping_id)
        self._validate(values)
        return self.repo.update(mapping, values)

    def delete(self, mapping_id: str) -> None:
        self.repo.delete(self.get(mapping_id))


class ExchangeRateService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.ExchangeRateRepository(session)

    def latest(self) -> models.ExchangeRate:
        """Return the latest rate, storing today's default when none exists."""
        rate = self.repo.latest()
        if rate:
            return rate
        return self.repo.create(models.ExchangeRate(date=date.today(), rate=settings.DEFAULT_EXCHANGE_RATE))

    def current_rate(self) -> float:
        """Latest rate value without writing; the default when nothing is stored."""
        rate = self.repo.latest()
        return float(rate.rate) if rate else settings.DEFAULT_EXCHANGE_RATE

    def create(self, rate_date: date, rate: float) -> models.ExchangeRate:
        if rate <= 0:
            raise InvalidInput("rate must be positive")
        return self.repo.create(models.ExchangeRate(date=rate_date, rate=rate))


def derive_sale_amounts(values: dict, product: models.Product, exchange_rate: float) -> dict:
    """Fill in the percentages and derived INR/USD figures of a sale.

    Explicit values win; missing percentages come from the product and
    missing amounts are computed from GWP/NBP, rounded to 2 decimals.
    """
    out = dict(values)
    if out.get("broker_commission_pct") is None:
        out["broker_commission_pct"] = product.base_commission_pct
    if out.get("cdp_fee_pct") is None:
        out["cdp_fee_pct"] = product.cdp_fee_pct
    gwp = float(out.get("gwp_inr") or 0)
    nbp = float(out.get("nbp_inr") or 0)
    if out.get("broker_commission_inr") is None:
        out["broker_commission_inr"] = round(gwp * out["broker_commission_pct"] / 100, 2)
    if out.get("cdp_fee_inr") is None:
        out["cdp_fee_inr"] = round(gwp * out["cdp_fee_pct"] / 100, 2)
    if exchange_rate > 0:
        if out.get("gwp_usd") is None:
            out["gwp_usd"] = round(gwp / exchange_rate, 2)
        if out.get("nbp_usd") is None:
            out["nbp_usd"] = round(nbp / exchange_rate, 2)
    return out


class SalesService:
    """Sales records: CRUD, derived amounts and CSV import."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.SalesDataRepository(session)
        self.rates = ExchangeRateService(session)

    def list(self, search: Optional[str] = None, sort: Optional[str] = None, order: str = "asc") -> List[dict]:
        return _table(self.repo.list_detailed(), search, sort, order)

    def get(self, sale_id: str) -> models.SalesData:
        sale = self.repo.get(sale_id)
        if not sale:
            raise NotFound("Sales data not found")
        return sale

    def _prepare(self, values: dict) -> dict:
        if values.get("channel_type") not in models.CHANNEL_TYPES:
            raise InvalidInput(f"channel_type must be one of {', '.join(models.CHANNEL_TYPES)}")
        _require(self.session, models.Client, values.get("client_id"), "client")
        _require(self.session, models.Broker, values.get("broker_id"), "broker")
        product = self.session.get(models.Product, values.get("product_id")) if values.get("product_id") else None
        if not product:
            raise InvalidInput(f"product not found: {values.get('product_id')}")
        return derive_sale_amounts(values, product, self.rates.current_rate())

    def create(self, values: dict) -> models.SalesData:
        return self.repo.create(models.SalesData(**self._prepare(values)))

    def update(self, sale_id: str, values: dict) -> models.SalesData:
        sale = self.get(sale_id)
        return self.repo.update(sale, self._prepare(values))

    def delete(self, sale_id: str) -> None:
        self.repo.delete(self.get(sale_id))

    def import_file(self, file_bytes: bytes, dry_run: bool = False) -> dict:
        """Parse a sales CSV and create one record per valid row.

        Returns `{created, errors}` where each error names the CSV line.
        """
        return self.import_rows(parse_sales_csv(file_bytes), dry_run=dry_run)

    def import_rows(self, rows: List[dict], dry_run: bool = False) -> dict:
        lookups = {
            "client": _NameIndex(repositories.ClientRepository(self.session).options()),
            "product": _NameIndex(repositories.ProductRepository(self.session).options()),
            "broker": _NameIndex(repositories.BrokerRepository(self.session).options()),
        }
        created = 0
        errors = []
        for row in rows:
            if row.get("error"):
                errors.append({"line": row["line"], "error": row["error"]})
                continue
            try:
                values = {
                    "client_id": lookups["client"].resolve(row.get("client"), "client"),
                    "product_id": lookups["product"].resolve(row.get("product"), "product"),
                    "broker_id": lookups["broker"].resolve(row.get("broker"), "broker"),
                    "channel_type": row.get("channel_type") or "Online",
                    "nbp_inr": row["nbp_inr"],
                    "gwp_inr": row["gwp_inr"],
                    "broker_commission_pct": row.get("broker_commission_pct"),
                    "cdp_fee_pct": row.get("cdp_fee_pct"),
                    "sale_date": row["sale_date"],
                }
                prepared = self._prepare(SalesDataIn(**values).model_dump())
            except ValidationError as e:
                errors.append({"line": row["line"], "error": _validation_message(e)})
                continue
            except ServiceError as e:
                errors.append({"line": row["line"], "error": e.message})
                continue
            if not dry_run:
                self.session.add(models.SalesData(**prepared))
            created += 1
        if not dry_run:
            self.session.commit()
        logger.info("Sales import: created=%s errors=%s dry_run=%s", created, len(errors), dry_run)
        return {"created": created, "errors": errors}


class _NameIndex:
    """Resolve a CSV cell holding either an id or an exact (case-insensitive) name."""
    def __init__(self, options: List[dict]):
        self.ids = {o["id"] for o in options}
        self.by_name: Dict[str, List[str]] = {}
        for o in options:
            self.by_name.setdefault(o["name"].strip().lower(), []).append(o["id"])

    def resolve(self, value: Optional[str], label: str) -> str:
        if not value:
            raise InvalidInput(f"{label} is required")
        if value in self.ids:
            return value
        matches = self.by_name.get(value.strip().lower(), [])
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise InvalidInput(f"{label} name is ambiguous: {value}")
        raise InvalidInput(f"{label} not found: {value}")


def _validation_message(exc: ValidationError) -> str:
    """Flatten pydantic errors into `field: message; ...` for per-row import reports."""
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
