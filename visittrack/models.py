from datetime import datetime

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from visittrack.database import Base

STORE_CATEGORIES = ("vet", "pet_store", "grooming", "breeding", "other")
SPECIES = ("cat_only", "dog_only", "majority_dog", "majority_cat", "50_50", "others")
PAYMENT_TERMS = ("consignment", "advanced_payment", "30_days", "60_days", "90_days", "others")
VISIT_TYPES = ("initial", "first_visit", "follow_up", "revisit")
VISIT_STATUSES = (
    "pending",
    "completed",
    "cancelled",
    "visited",
    "opened_account",
    "no_interest",
    "follow_up_required",
    "rejected_visit",
    "closed_down",
    "ex_customer",
)
POTENTIAL_LEVELS = ("high", "medium", "low", "na")
USER_ROLES = ("sales", "management", "admin")
REGISTRY_CATEGORIES = ("product", "salesperson")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ",".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Store(Base):
    __tablename__ = "stores"
    __table_args__ = (
        CheckConstraint(_in_list("category", STORE_CATEGORIES), name="store_category_chk"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(Text)
    # Trimmed, casefolded name; the import dedup lookup compares on this.
    name_key: Mapped[str] = mapped_column(Text, index=True)
    category: Mapped[str] = mapped_column(String(32))
    other_category_name: Mapped[str | None] = mapped_column(Text)
    region: Mapped[str | None] = mapped_column(Text)
    area: Mapped[str | None] = mapped_column(Text)
    state: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    city: Mapped[str | None] = mapped_column(Text)
    zip_code: Mapped[str | None] = mapped_column(String(32))
    phone: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    pic_info: Mapped[str | None] = mapped_column(Text)
    salesperson: Mapped[str | None] = mapped_column(Text)
    species: Mapped[str | None] = mapped_column(String(32))
    other_species: Mapped[str | None] = mapped_column(Text)
    payment_terms: Mapped[str | None] = mapped_column(String(32))
    other_payment_terms: Mapped[str | None] = mapped_column(Text)
    is_ex_customer: Mapped[bool] = mapped_column(Boolean, default=False)
    is_new: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime)


class VisitLog(Base):
    __tablename__ = "visit_logs"
    __table_args__ = (
        CheckConstraint(_in_list("visit_type", VISIT_TYPES), name="visit_type_chk"),
        CheckConstraint(_in_list("potential_level", POTENTIAL_LEVELS), name="visit_potential_chk"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    # Not a foreign key: visits outlive deleted stores and may point at no store.
    store_id: Mapped[int | None] = mapped_column(Integer, index=True)
    store_name: Mapped[str] = mapped_column(Text)
    user_id: Mapped[int | None] = mapped_column(Integer)
    user_name: Mapped[str] = mapped_column(Text)
    date: Mapped[datetime] = mapped_column(DateTime, index=True)
    visit_type: Mapped[str] = mapped_column(String(32))
    visit_status: Mapped[list[str]] = mapped_column(JSON, default=list)
    potential_level: Mapped[str] = mapped_column(String(16))
    notes: Mapped[str] = mapped_column(Text, default="")
    next_steps: Mapped[str] = mapped_column(Text, default="")
    products_promoted: Mapped[list[str]] = mapped_column(JSON, default=list)
    account_opened_date: Mapped[datetime | None] = mapped_column(DateTime)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(_in_list("role", USER_ROLES), name="user_role_chk"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(Text)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    role: Mapped[str] = mapped_column(String(16))
    password_hash: Mapped[str] = mapped_column(String(255))
    join_date: Mapped[datetime] = mapped_column(DateTime)


class ReferenceValue(Base):
    __tablename__ = "reference_values"
    __table_args__ = (
        CheckConstraint(_in_list("category", REGISTRY_CATEGORIES), name="reference_category_chk"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    category: Mapped[str] = mapped_column(String(32), index=True)
    value: Mapped[str] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer)


class SessionRecord(Base):
    __tablename__ = "app_sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    signed_in_at: Mapped[datetime | None] = mapped_column(DateTime)
