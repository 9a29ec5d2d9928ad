"""Entity store backed by one SQLAlchemy session.

A ``Repository`` is built per request (or per test) and handed to every reader
and writer, so there is no module level state. Writes are flushed right away so
that later lookups in the same unit of work see them; committing or rolling
back stays with the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from visittrack.config import settings
from visittrack.dates import SystemClock
from visittrack.models import ReferenceValue, SessionRecord, Store, User, VisitLog

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTS = ["EVFA PRO", "EVFA PRO KatzE", "EVFA Cap", "EVFA PRO PLUS"]
DEFAULT_SALESPERSONS = ["John Smith", "Sarah Johnson", "Mike Chen", "Lisa Wong", "David Brown"]
DEFAULT_RESET_PASSWORD = "temp123"
SESSION_ROW_ID = 1

STORE_FIELDS = {
    "name",
    "category",
    "other_category_name",
    "region",
    "area",
    "state",
    "address",
    "city",
    "zip_code",
    "phone",
    "email",
    "pic_info",
    "salesperson",
    "species",
    "other_species",
    "payment_terms",
    "other_payment_terms",
    "is_ex_customer",
    "is_new",
}
VISIT_FIELDS = {
    "store_id",
    "store_name",
    "user_id",
    "user_name",
    "date",
    "visit_type",
    "visit_status",
    "potential_level",
    "notes",
    "next_steps",
    "products_promoted",
    "account_opened_date",
}
USER_FIELDS = {"name", "email", "role"}


def _name_key(value: str | None) -> str:
    return (value or "").strip().casefold()


def _contains(haystack: str | None, needle: str) -> bool:
    return needle in (haystack or "").casefold()


def _is_ex_customer(store: Store | None) -> bool:
    return bool(store is not None and store.is_ex_customer)


def _visit_matches(visit: VisitLog, store: Store | None, needle: str) -> bool:
    store_name = store.name if store is not None else visit.store_name
    return _contains(store_name, needle) or _contains(visit.user_name, needle)


def _pick(values: dict[str, Any], allowed: set[str]) -> dict[str, Any]:
    unknown = set(values) - allowed
    if unknown:
        raise ValueError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return dict(values)


class Repository:
    def __init__(self, db: Session, clock=None):
        self.db = db
        self.clock = clock or SystemClock()

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # Stores

    def list_stores(
        self,
        *,
        category: str | None = None,
        state: str | None = None,
        salesperson: str | None = None,
        region: str | None = None,
        query: str | None = None,
    ) -> list[Store]:
        """Stores in registration order.

        ``query`` is a case-insensitive substring match on name, region or area.
        """
        stmt = select(Store).order_by(Store.id)
        if category:
            stmt = stmt.where(Store.category == category)
        if state:
            stmt = stmt.where(Store.state == state)
        if salesperson:
            stmt = stmt.where(Store.salesperson == salesperson)
        if region:
            stmt = stmt.where(Store.region == region)
        stores = list(self.db.scalars(stmt))
        needle = (query or "").strip().casefold()
        if needle:
            stores = [s for s in stores if any(_contains(v, needle) for v in (s.name, s.region, s.area))]
        return stores

    def get_store(self, store_id: int) -> Store | None:
        return self.db.get(Store, store_id)

    def stores_by_ids(self, store_ids: Iterable[int]) -> list[Store]:
        wanted = set(store_ids)
        if not wanted:
            return []
        return list(self.db.scalars(select(Store).where(Store.id.in_(wanted)).order_by(Store.id)))

    def find_store(self, name: str, category: str) -> Store | None:
        """Exact case-insensitive name match within one category, oldest first."""
        stmt = (
            select(Store)
            .where(Store.name_key == _name_key(name))
            .where(Store.category == category)
            .order_by(Store.id)
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def find_store_by_name(self, name: str, preferred_category: str | None = None) -> Store | None:
        if preferred_category:
            store = self.find_store(name, preferred_category)
            if store is not None:
                return store
        stmt = (
            select(Store)
            .where(Store.name_key == _name_key(name))
            .order_by(Store.id)
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def add_store(self, **fields: Any) -> Store:
        values = _pick(fields, STORE_FIELDS | {"created_at"})
        values.setdefault("created_at", self.clock.now())
        values.setdefault("is_new", True)
        values.setdefault("is_ex_customer", False)
        values["name_key"] = _name_key(values.get("name"))
        store = Store(**values)
        self.db.add(store)
        self.db.flush()
        return store

    def update_store(self, store: Store, **fields: Any) -> Store:
        for key, value in _pick(fields, STORE_FIELDS).items():
            setattr(store, key, value)
        store.name_key = _name_key(store.name)
        self.db.flush()
        return store

    def delete_store(self, store: Store) -> None:
        self.db.delete(store)
        self.db.flush()

    # Visit logs

    def list_visits(
        self,
        *,
        store_id: int | None = None,
        product: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        search: str | None = None,
        ex_customer: bool | None = None,
    ) -> list[VisitLog]:
        stmt = select(VisitLog).order_by(VisitLog.id)
        if store_id is not None:
            stmt = stmt.where(VisitLog.store_id == store_id)
        if start is not None:
            stmt = stmt.where(VisitLog.date >= start)
        if end is not None:
            stmt = stmt.where(VisitLog.date <= end)
        visits = list(self.db.scalars(stmt))
        if product:
            visits = [v for v in visits if product in (v.products_promoted or [])]

        needle = (search or "").strip().casefold()
        if not needle and ex_customer is None:
            return visits
        stores = {s.id: s for s in self.list_stores()}
        if needle:
            visits = [v for v in visits if _visit_matches(v, stores.get(v.store_id), needle)]
        if ex_customer is not None:
            # Visits without a store on record count as not ex-customer.
            visits = [v for v in visits if _is_ex_customer(stores.get(v.store_id)) == ex_customer]
        return visits

    def visits_by_ids(self, visit_ids: Iterable[int]) -> list[VisitLog]:
        wanted = set(visit_ids)
        if not wanted:
            return []
        return list(self.db.scalars(select(VisitLog).where(VisitLog.id.in_(wanted)).order_by(VisitLog.id)))

    def get_visit(self, visit_id: int) -> VisitLog | None:
        return self.db.get(VisitLog, visit_id)

    def store_has_opened_account(self, store_id: int | None, *, exclude_visit_id: int | None = None) -> bool:
        if store_id is None:
            return False
        for visit in self.list_visits(store_id=store_id):
            if exclude_visit_id is not None and visit.id == exclude_visit_id:
                continue
            if "opened_account" in (visit.visit_status or []):
                return True
        return False

    def add_visit(self, **fields: Any) -> VisitLog:
        values = _pick(fields, VISIT_FIELDS)
        values.setdefault("date", self.clock.now())
        values["visit_status"] = list(values.get("visit_status") or [])
        values["products_promoted"] = list(values.get("products_promoted") or [])
        values.setdefault("notes", "")
        values.setdefault("next_steps", "")
        if "opened_account" in values["visit_status"]:
            values["account_opened_date"] = values.get("account_opened_date") or values["date"]
        else:
            values["account_opened_date"] = None
        visit = VisitLog(**values)
        self.db.add(visit)
        self.db.flush()
        return visit

    def update_visit(self, visit: VisitLog, **fields: Any) -> VisitLog:
        values = _pick(fields, VISIT_FIELDS)
        for key in ("visit_status", "products_promoted"):
            if key in values:
                values[key] = list(values[key] or [])
        for key, value in values.items():
            setattr(visit, key, value)
        if "opened_account" in (visit.visit_status or []):
            visit.account_opened_date = visit.account_opened_date or visit.date
        else:
            visit.account_opened_date = None
        self.db.flush()
        return visit

    def delete_visit(self, visit: VisitLog) -> None:
        self.db.delete(visit)
        self.db.flush()

    # Users and the signed-in session

    def list_users(self) -> list[User]:
        return list(self.db.scalars(select(User).order_by(User.id)))

    def get_user(self, user_id: int) -> User | None:
        return self.db.get(User, user_id)

    def get_user_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == (email or "").strip().lower()).limit(1)
        return self.db.scalars(stmt).first()

    def register_user(self, name: str, email: str, password: str, role: str = "sales") -> User:
        user = User(
            name=name.strip(),
            email=email.strip().lower(),
            role=role,
            password_hash=generate_password_hash(password),
            join_date=self.clock.now(),
        )
        self.db.add(user)
        self.db.flush()
        return user

    def update_user(self, user: User, **fields: Any) -> User:
        for key, value in _pick(fields, USER_FIELDS).items():
            if key == "email":
                value = value.strip().lower()
            setattr(user, key, value)
        self.db.flush()
        return user

    def set_password(self, user: User, new_password: str = DEFAULT_RESET_PASSWORD) -> None:
        user.password_hash = generate_password_hash(new_password)
        self.db.flush()

    def delete_user(self, user: User) -> None:
        self.db.delete(user)
        self.db.flush()

    def authenticate(self, email: str, password: str) -> User | None:
        user = self.get_user_by_email(email)
        if user is None or not check_password_hash(user.password_hash, password):
            return None
        return user

    def current_user(self) -> User | None:
        record = self.db.get(SessionRecord, SESSION_ROW_ID)
        if record is None or record.user_id is None:
            return None
        return self.get_user(record.user_id)

    def sign_in(self, user: User) -> None:
        record = self.db.get(SessionRecord, SESSION_ROW_ID)
        if record is None:
            record = SessionRecord(id=SESSION_ROW_ID)
            self.db.add(record)
        record.user_id = user.id
        record.signed_in_at = self.clock.now()
        self.db.flush()

    def sign_out(self) -> None:
        record = self.db.get(SessionRecord, SESSION_ROW_ID)
        if record is not None:
            record.user_id = None
            record.signed_in_at = None
            self.db.flush()

    # Product and salesperson registries

    def list_values(self, category: str) -> list[str]:
        stmt = (
            select(ReferenceValue.value)
            .where(ReferenceValue.category == category)
            .order_by(ReferenceValue.sort_order, ReferenceValue.id)
        )
        return list(self.db.scalars(stmt))

    def add_value(self, category: str, value: str) -> bool:
        """Append ``value`` unless it is blank or already registered."""
        cleaned = (value or "").strip()
        if not cleaned:
            return False
        existing = self.list_values(category)
        if cleaned in existing:
            return False
        self.db.add(ReferenceValue(category=category, value=cleaned, sort_order=len(existing)))
        self.db.flush()
        return True

    def replace_values(self, category: str, values: Iterable[str]) -> list[str]:
        for row in self.db.scalars(select(ReferenceValue).where(ReferenceValue.category == category)):
            self.db.delete(row)
        self.db.flush()
        for value in values:
            self.add_value(category, value)
        return self.list_values(category)

    def products(self) -> list[str]:
        return self.list_values("product")

    def salespersons(self) -> list[str]:
        return self.list_values("salesperson")

    def seed_defaults(self) -> None:
        if self.get_user_by_email(settings.demo_admin_email) is None:
            self.register_user(
                "Demo Administrator",
                settings.demo_admin_email,
                settings.demo_admin_password,
                role="admin",
            )
            logger.info("Seeded demo administrator %s", settings.demo_admin_email)
        if not self.products():
            self.replace_values("product", DEFAULT_PRODUCTS)
        if not self.salespersons():
            self.replace_values("salesperson", DEFAULT_SALESPERSONS)
