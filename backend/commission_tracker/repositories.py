"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate. Reference
data tables (clients, products, brokers, sales leads) share
`CrudRepository`; joins and permission lookups live on dedicated
repositories. Repositories return SQLModel objects or plain dicts and
commit where a write completes a unit of work.
"""

from datetime import date, datetime
from typing import Dict, List, Optional, Type

from sqlalchemy import delete, func, update
from sqlmodel import Session, SQLModel, select

from . import models


class CrudRepository:
    """Generic list/get/create/update/delete for a single table."""
    model: Type[SQLModel]
    order_by = "name"

    def __init__(self, session: Session):
        self.session = session

    def list(self) -> List[SQLModel]:
        stmt = select(self.model).order_by(getattr(self.model, self.order_by))
        return self.session.exec(stmt).all()

    def get(self, obj_id: str) -> Optional[SQLModel]:
        return self.session.get(self.model, obj_id)

    def create(self, obj: SQLModel) -> SQLModel:
        """Persist a new row and return the managed instance."""
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def update(self, obj: SQLModel, values: dict) -> SQLModel:
        for key, value in values.items():
            setattr(obj, key, value)
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def delete(self, obj: SQLModel) -> None:
        self.session.delete(obj)
        self.session.commit()

    def options(self) -> List[dict]:
        """Return `{id, name}` pairs for select boxes."""
        stmt = select(self.model.id, self.model.name).order_by(self.model.name)
        return [{"id": row[0], "name": row[1]} for row in self.session.exec(stmt).all()]


class ClientRepository(CrudRepository):
    model = models.Client


class ProductRepository(CrudRepository):
    model = models.Product


class BrokerRepository(CrudRepository):
    model = models.Broker


class SalesLeadRepository(CrudRepository):
    model = models.SalesLead


class ReferenceCounter:
    """Count rows in mappings/sales that point at a reference-data row."""
    def __init__(self, session: Session):
        self.session = session

    def count(self, column_name: str, value: str) -> int:
        total = 0
        for table in (models.ClientProductMap, models.SalesData):
            column = getattr(table, column_name, None)
            if column is None:
                continue
            stmt = select(func.count()).select_from(table).where(column == value)
            total += self.session.exec(stmt).one()
        return total


class MappingRepository(CrudRepository):
    """Client-product mappings, listed with display names joined in."""
    model = models.ClientProductMap

    def list_detailed(self) -> List[dict]:
        M = models.ClientProductMap
        stmt = (
            select(
                M,
                models.Client.name,
                models.Product.name,
                models.Broker.name,
                models.SalesLead.name,
            )
            .join(models.Client, M.client_id == models.Client.id)
            .join(models.Product, M.product_id == models.Product.id)
            .join(models.Broker, M.broker_id == models.Broker.id)
            .join(models.SalesLead, M.sales_lead_id == models.SalesLead.id)
            .order_by(models.Client.name)
        )
        out = []
        for mapping, client_name, product_name, broker_name, lead_name in self.session.exec(stmt).all():
            row = mapping.model_dump()
            row.update({
                "client_name": client_name,
                "product_name": product_name,
                "broker_name": broker_name,
                "sales_lead_name": lead_name,
            })
            out.append(row)
        return out


class SalesDataRepository(CrudRepository):
    """Sales records, newest first, with display names joined in."""
    model = models.SalesData
    order_by = "sale_date"

    def list_detailed(self) -> List[dict]:
        S = models.SalesData
        stmt = (
            select(S, models.Client.name, models.Product.name, models.Broker.name)
            .join(models.Client, S.client_id == models.Client.id)
            .join(models.Product, S.product_id == models.Product.id)
            .join(models.Broker, S.broker_id == models.Broker.id)
            .order_by(S.sale_date.desc())
        )
        out = []
        for sale, client_name, product_name, broker_name in self.session.exec(stmt).all():
            row = sale.model_dump()
            row.update({"client_name": client_name, "product_name": product_name, "broker_name": broker_name})
            out.append(row)
        return out


class ExchangeRateRepository:
    def __init__(self, session: Session):
        self.session = session

    def latest(self) -> Optional[models.ExchangeRate]:
        """Return the most recent rate by effective date, or `None`."""
        stmt = select(models.ExchangeRate).order_by(models.ExchangeRate.date.desc()).limit(1)
        return self.session.exec(stmt).first()

    def create(self, rate: models.ExchangeRate) -> models.ExchangeRate:
        self.session.add(rate)
        self.session.commit()
        self.session.refresh(rate)
        return rate


class RoleRepository(CrudRepository):
    model = models.Role

    def get_by_name(self, name: str) -> Optional[models.Role]:
        return self.session.exec(select(models.Role).where(models.Role.name == name)).first()

    def name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        stmt = select(models.Role.id).where(models.Role.name == name)
        if exclude_id:
            stmt = stmt.where(models.Role.id != exclude_id)
        return self.session.exec(stmt).first() is not None

    def count_users(self, role_id: str) -> int:
        stmt = select(func.count()).select_from(models.User).where(models.User.role_id == role_id)
        return self.session.exec(stmt).one()


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: str) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by email or `None` if not found."""
        return self.session.exec(select(models.User).where(models.User.email == email)).first()

    def get_by_username(self, username: str) -> Optional[models.User]:
        return self.session.exec(select(models.User).where(models.User.username == username)).first()

    def email_taken(self, email: str, exclude_id: Optional[str] = None) -> bool:
        stmt = select(models.User.id).where(models.User.email == email)
        if exclude_id:
            stmt = stmt.where(models.User.id != exclude_id)
        return self.session.exec(stmt).first() is not None

    def list_by_role(self, role: str) -> List[models.User]:
        """Users whose effective role name is `role`."""
        stmt = (
            select(models.User)
            .outerjoin(models.Role, models.User.role_id == models.Role.id)
            .where(func.coalesce(models.Role.name, models.User.role) == role)
        )
        return self.session.exec(stmt).all()

    def list_with_roles(self) -> List[dict]:
        """All users ordered by email with their effective role name."""
        stmt = (
            select(models.User, models.Role.name)
            .outerjoin(models.Role, models.User.role_id == models.Role.id)
            .order_by(models.User.email)
        )
        out = []
        for user, role_name in self.session.exec(stmt).all():
            out.append({
                "id": user.id,
                "username": user.username,
                "full_name": user.full_name,
                "email": user.email,
                "role": role_name or user.role,
                "role_id": user.role_id,
                "created_at": user.created_at,
                "last_login": user.last_login,
            })
        return out

    def effective_role(self, user: models.User) -> str:
        if user.role_id:
            role = self.session.get(models.Role, user.role_id)
            if role:
                return role.name
        return user.role

    def delete(self, user: models.User) -> None:
        """Delete a user together with their sessions and grants."""
        self.session.exec(delete(models.UserSession).where(models.UserSession.user_id == user.id))
        self.session.exec(delete(models.UserPermission).where(models.UserPermission.user_id == user.id))
        self.session.exec(
            update(models.UserPermission)
            .where(models.UserPermission.granted_by == user.id)
            .values(granted_by=None)
        )
        self.session.delete(user)
        self.session.commit()


class SessionRepository:
    """Login sessions keyed by their opaque token."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user_id: str, expires_at: datetime) -> models.UserSession:
        s = models.UserSession(user_id=user_id, expires_at=expires_at)
        self.session.add(s)
        self.session.commit()
        self.session.refresh(s)
        return s

    def get_active_user(self, token: str, now: datetime) -> Optional[models.User]:
        """Return the user owning an unexpired session `token`."""
        stmt = (
            select(models.User)
            .join(models.UserSession, models.UserSession.user_id == models.User.id)
            .where(models.UserSession.id == token, models.UserSession.expires_at > now)
        )
        return self.session.exec(stmt).first()

    def delete(self, token: str) -> None:
        self.session.exec(delete(models.UserSession).where(models.UserSession.id == token))
        self.session.commit()

    def purge_expired(self, user_id: str, now: datetime) -> None:
        self.session.exec(
            delete(models.UserSession).where(
                models.UserSession.user_id == user_id,
                models.UserSession.expires_at <= now,
            )
        )
        self.session.commit()


class PermissionRepository:
    """Modules, permissions and per-user grants."""
    def __init__(self, session: Session):
        self.session = session

    def count_modules(self) -> int:
        return self.session.exec(select(func.count()).select_from(models.Module)).one()

    def list_modules(self) -> List[models.Module]:
        return self.session.exec(select(models.Module).order_by(models.Module.name)).all()

    def get_module_by_name(self, name: str) -> Optional[models.Module]:
        return self.session.exec(select(models.Module).where(models.Module.name == name)).first()

    def get_permission(self, permission_id: str) -> Optional[models.Permission]:
        return self.session.get(models.Permission, permission_id)

    def find_permission(self, module_name: str, action: str) -> Optional[models.Permission]:
        stmt = (
            select(models.Permission)
            .join(models.Module, models.Permission.module_id == models.Module.id)
            .where(models.Module.name == module_name, models.Permission.name == action)
        )
        return self.session.exec(stmt).first()

    def ensure_module(self, name: str, description: str) -> models.Module:
        module = self.get_module_by_name(name)
        if module:
            return module
        module = models.Module(name=name, description=description)
        self.session.add(module)
        self.session.flush()
        return module

    def ensure_permission(self, module: models.Module, action: str, description: str) -> models.Permission:
        stmt = select(models.Permission).where(
            models.Permission.module_id == module.id, models.Permission.name == action
        )
        perm = self.session.exec(stmt).first()
        if perm:
            return perm
        perm = models.Permission(module_id=module.id, name=action, description=description)
        self.session.add(perm)
        self.session.flush()
        return perm

    def has_grant(self, user_id: str, module_name: str, action: str) -> bool:
        stmt = (
            select(models.UserPermission.id)
            .join(models.Permission, models.UserPermission.permission_id == models.Permission.id)
            .join(models.Module, models.Permission.module_id == models.Module.id)
            .where(
                models.UserPermission.user_id == user_id,
                models.Module.name == module_name,
                models.Permission.name == action,
            )
        )
        return self.session.exec(stmt).first() is not None

    def list_for_user(self, user_id: str) -> List[dict]:
        """Every permission with a `granted` flag for `user_id`."""
        stmt = (
            select(models.Permission, models.Module.name, models.UserPermission.id)
            .join(models.Module, models.Permission.module_id == models.Module.id)
            .outerjoin(
                models.UserPermission,
                (models.UserPermission.permission_id == models.Permission.id)
                & (models.UserPermission.user_id == user_id),
            )
            .order_by(models.Module.name, models.Permission.name)
        )
        out = []
        for perm, module_name, grant_id in self.session.exec(stmt).all():
            out.append({
                "id": perm.id,
                "module_id": perm.module_id,
                "module_name": module_name,
                "name": perm.name,
                "description": perm.description,
                "granted": grant_id is not None,
            })
        return out

    def grant(self, user_id: str, permission_id: str, granted_by: Optional[str] = None, commit: bool = True) -> None:
        """Insert a grant unless it already exists."""
        stmt = select(models.UserPermission.id).where(
            models.UserPermission.user_id == user_id,
            models.UserPermission.permission_id == permission_id,
        )
        if self.session.exec(stmt).first() is None:
            self.session.add(models.UserPermission(user_id=user_id, permission_id=permission_id, granted_by=granted_by))
        if commit:
            self.session.commit()

    def revoke(self, user_id: str, permission_id: str) -> None:
        self.session.exec(
            delete(models.UserPermission).where(
                models.UserPermission.user_id == user_id,
                models.UserPermission.permission_id == permission_id,
            )
        )
        self.session.commit()


class SalesReportRepository:
    """Filtered reads over `sales_data` used by the reporting service."""
    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _apply_filters(stmt, filters: Dict[str, Optional[str]], from_date: date, to_date: date):
        S = models.SalesData
        stmt = stmt.where(S.sale_date >= from_date, S.sale_date <= to_date)
        for column_name, value in filters.items():
            if value is not None:
                stmt = stmt.where(getattr(S, column_name) == value)
        return stmt

    def totals(self, filters, from_date: date, to_date: date):
        S = models.SalesData
        stmt = select(
            func.coalesce(func.sum(S.gwp_inr), 0),
            func.coalesce(func.sum(S.nbp_inr), 0),
            func.coalesce(func.sum(S.broker_commission_inr), 0),
            func.coalesce(func.sum(S.cdp_fee_inr), 0),
        )
        return self.session.exec(self._apply_filters(stmt, filters, from_date, to_date)).first()

    def trend_rows(self, filters, from_date: date, to_date: date):
        """Per-sale rows carrying product/broker names for monthly grouping."""
        S = models.SalesData
        stmt = (
            select(
                S.sale_date,
                models.Product.name,
                models.Broker.name,
                S.channel_type,
                S.gwp_inr,
                S.broker_commission_inr,
                S.cdp_fee_inr,
            )
            .join(models.Product, S.product_id == models.Product.id)
            .join(models.Broker, S.broker_id == models.Broker.id)
        )
        stmt = self._apply_filters(stmt, filters, from_date, to_date).order_by(S.sale_date)
        return self.session.exec(stmt).all()

    def commission_rows(self, filters, from_date: date, to_date: date):
        """Sales aggregated by client, product, broker and channel."""
        S = models.SalesData
        stmt = (
            select(
                models.Client.id,
                models.Client.name,
                models.Product.id,
                models.Product.name,
                models.Broker.id,
                models.Broker.name,
                S.channel_type,
                func.sum(S.gwp_inr),
                func.avg(S.broker_commission_pct),
                func.sum(S.broker_commission_inr),
                func.avg(S.cdp_fee_pct),
                func.sum(S.cdp_fee_inr),
            )
            .join(models.Client, S.client_id == models.Client.id)
            .join(models.Product, S.product_id == models.Product.id)
            .join(models.Broker, S.broker_id == models.Broker.id)
        )
        stmt = self._apply_filters(stmt, filters, from_date, to_date)
        stmt = stmt.group_by(
            models.Client.id, models.Client.name,
            models.Product.id, models.Product.name,
            models.Broker.id, models.Broker.name,
            S.channel_type,
        ).order_by(models.Client.name, models.Product.name, models.Broker.name, S.channel_type)
        return self.session.exec(stmt).all()
