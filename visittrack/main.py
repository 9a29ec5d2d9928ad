import logging
from datetime import date, datetime, time

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from visittrack.config import settings
from visittrack.database import Base, SessionLocal, engine
from visittrack.dates import SystemClock
from visittrack.exporter import VALID_REPORTS, build_report, export_selected_stores, export_selected_visits
from visittrack.importer import import_file, import_template
from visittrack.repository import Repository
from visittrack.schemas import (
    IdSelection,
    LoginPayload,
    PasswordReset,
    RegistryValue,
    RegistryValues,
    StorePayload,
    UserCreate,
    UserUpdate,
    VisitPayload,
)
from visittrack.serializers import json_safe, store_to_dict, user_to_dict, visit_to_dict
from visittrack.summaries import (
    is_new_store,
    last_visit_dates,
    monthly_summary,
    universe_tracking,
    visit_status_options,
    weekly_summary,
)

app = FastAPI(title="Sales Visit Tracker")
logger = logging.getLogger(__name__)

REGISTRIES = {"products": "product", "salespersons": "salesperson"}
UNKNOWN_USER = "Unknown User"


@app.on_event("startup")
def ensure_tables():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        Repository(db).seed_defaults()
        db.commit()
    finally:
        db.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock():
    return SystemClock()


def get_repo(db: Session = Depends(get_db), clock=Depends(get_clock)) -> Repository:
    return Repository(db, clock)


def parse_optional_date(value: str | None, field_name: str, *, end_of_day: bool = False) -> datetime | None:
    if value is None or not value.strip():
        return None
    try:
        parsed = date.fromisoformat(value.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}. Use YYYY-MM-DD.") from exc
    return datetime.combine(parsed, time.max if end_of_day else time.min)


def ensure_store(repo: Repository, store_id: int):
    store = repo.get_store(store_id)
    if store is None:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


def ensure_visit(repo: Repository, visit_id: int):
    visit = repo.get_visit(visit_id)
    if visit is None:
        raise HTTPException(status_code=404, detail="Visit log not found")
    return visit


def ensure_user(repo: Repository, user_id: int):
    user = repo.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def commit_or_fail(repo: Repository, action: str) -> None:
    try:
        repo.commit()
    except (IntegrityError, DataError) as exc:
        repo.rollback()
        raise HTTPException(status_code=400, detail=f"Could not {action}. Check field values.") from exc
    except SQLAlchemyError as exc:
        repo.rollback()
        logger.exception("Unexpected database error while trying to %s", action)
        raise HTTPException(status_code=500, detail=f"Unexpected server error while trying to {action}.") from exc


def csv_download(result: dict):
    if result["content"] is None:
        return {"message": result["message"]}
    return Response(
        content=result["content"],
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{result["filename"]}"'},
    )


def store_row(store, *, now: datetime, last_visit: datetime | None = None) -> dict:
    row = store_to_dict(store)
    row["showNewBadge"] = is_new_store(store, now, settings.new_store_window_days)
    row["lastVisitDate"] = last_visit
    return json_safe(row)


@app.get("/health")
def health(repo: Repository = Depends(get_repo)):
    repo.list_values("product")
    return {"ok": True}


@app.get("/api/dashboard")
def dashboard(repo: Repository = Depends(get_repo)):
    now = repo.clock.now()
    stores = repo.list_stores()
    visits = repo.list_visits()
    return json_safe(
        {
            "counts": {
                "stores": len(stores),
                "vetClinics": sum(1 for s in stores if s.category == "vet"),
                "petStores": sum(1 for s in stores if s.category == "pet_store"),
                "visits": len(visits),
            },
            "weeklySummary": weekly_summary(stores, visits, now),
            "monthlySummary": monthly_summary(stores, visits, now),
            "universeTracking": universe_tracking(stores, visits),
        }
    )


# Stores


@app.get("/api/stores")
def list_stores(
    category: str | None = Query(default=None),
    state: str | None = Query(default=None),
    salesperson: str | None = Query(default=None),
    region: str | None = Query(default=None),
    q: str | None = Query(default=None),
    repo: Repository = Depends(get_repo),
):
    now = repo.clock.now()
    last_visits = last_visit_dates(repo.list_visits())
    stores = repo.list_stores(
        category=category,
        state=state,
        salesperson=salesperson,
        region=region,
        query=q,
    )
    return {"items": [store_row(s, now=now, last_visit=last_visits.get(s.id)) for s in stores]}


@app.post("/api/stores", status_code=201)
def create_store(payload: StorePayload, repo: Repository = Depends(get_repo)):
    values = payload.model_dump()
    values["name"] = values["name"].strip()
    if not values["name"]:
        raise HTTPException(status_code=400, detail="name is required")
    values["state"] = values["state"].strip() or settings.default_state

    store = repo.add_store(**values, is_new=True)
    if store.salesperson:
        repo.add_value("salesperson", store.salesperson)
    commit_or_fail(repo, "create store")
    return store_row(store, now=repo.clock.now())


@app.post("/api/stores/bulk-delete")
def bulk_delete_stores(payload: IdSelection, repo: Repository = Depends(get_repo)):
    stores = repo.stores_by_ids(payload.ids)
    for store in stores:
        repo.delete_store(store)
    commit_or_fail(repo, "delete stores")
    return {"deleted": len(stores)}


@app.post("/api/stores/bulk-export")
def bulk_export_stores(payload: IdSelection, repo: Repository = Depends(get_repo)):
    return csv_download(export_selected_stores(repo, payload.ids))


@app.get("/api/stores/{store_id}")
def get_store(store_id: int, repo: Repository = Depends(get_repo)):
    store = ensure_store(repo, store_id)
    last_visits = last_visit_dates(repo.list_visits(store_id=store_id))
    return store_row(store, now=repo.clock.now(), last_visit=last_visits.get(store_id))


@app.put("/api/stores/{store_id}")
def update_store(store_id: int, payload: StorePayload, repo: Repository = Depends(get_repo)):
    store = ensure_store(repo, store_id)
    values = payload.model_dump(exclude_unset=True)
    if "name" in values:
        values["name"] = values["name"].strip()
        if not values["name"]:
            raise HTTPException(status_code=400, detail="name is required")

    repo.update_store(store, **values)
    if store.salesperson:
        repo.add_value("salesperson", store.salesperson)
    commit_or_fail(repo, "update store")
    return store_row(store, now=repo.clock.now())


@app.delete("/api/stores/{store_id}")
def delete_store(store_id: int, repo: Repository = Depends(get_repo)):
    store = ensure_store(repo, store_id)
    repo.delete_store(store)
    commit_or_fail(repo, "delete store")
    return {"ok": True}


@app.get("/api/stores/{store_id}/visits")
def store_visits(store_id: int, repo: Repository = Depends(get_repo)):
    ensure_store(repo, store_id)
    visits = sorted(repo.list_visits(store_id=store_id), key=lambda v: v.date, reverse=True)
    return {"items": [json_safe(visit_to_dict(v)) for v in visits]}


@app.get("/api/stores/{store_id}/visit-status-options")
def store_visit_status_options(store_id: int, repo: Repository = Depends(get_repo)):
    ensure_store(repo, store_id)
    return {"options": visit_status_options(repo.list_visits(store_id=store_id))}


# Visit logs


@app.get("/api/visits")
def list_visits(
    store_id: int | None = Query(default=None),
    product: str | None = Query(default=None),
    start: str | None = Query(default=None),
    end: str | None = Query(default=None),
    q: str | None = Query(default=None),
    ex_customer: bool | None = Query(default=None),
    repo: Repository = Depends(get_repo),
):
    visits = repo.list_visits(
        store_id=store_id,
        product=product,
        start=parse_optional_date(start, "start"),
        end=parse_optional_date(end, "end", end_of_day=True),
        search=q,
        ex_customer=ex_customer,
    )
    visits.sort(key=lambda v: v.date, reverse=True)
    return {"items": [json_safe(visit_to_dict(v)) for v in visits]}


@app.post("/api/visits", status_code=201)
def create_visit(payload: VisitPayload, repo: Repository = Depends(get_repo)):
    store = repo.get_store(payload.store_id)
    if store is None:
        raise HTTPException(status_code=400, detail="Invalid store_id")
    if "opened_account" in payload.visit_status and repo.store_has_opened_account(store.id):
        raise HTTPException(status_code=400, detail="This store already has an opened account.")

    user = repo.current_user()
    values = payload.model_dump()
    values["date"] = values["date"] or repo.clock.now()
    visit = repo.add_visit(
        **values,
        store_name=store.name,
        user_id=user.id if user is not None else None,
        user_name=user.name if user is not None else UNKNOWN_USER,
    )
    for product in visit.products_promoted:
        repo.add_value("product", product)
    commit_or_fail(repo, "create visit log")
    return json_safe(visit_to_dict(visit))


@app.post("/api/visits/bulk-delete")
def bulk_delete_visits(payload: IdSelection, repo: Repository = Depends(get_repo)):
    visits = repo.visits_by_ids(payload.ids)
    for visit in visits:
        repo.delete_visit(visit)
    commit_or_fail(repo, "delete visit logs")
    return {"deleted": len(visits)}


@app.post("/api/visits/bulk-export")
def bulk_export_visits(payload: IdSelection, repo: Repository = Depends(get_repo)):
    return csv_download(export_selected_visits(repo, payload.ids))


@app.get("/api/visits/{visit_id}")
def get_visit(visit_id: int, repo: Repository = Depends(get_repo)):
    return json_safe(visit_to_dict(ensure_visit(repo, visit_id)))


@app.put("/api/visits/{visit_id}")
def update_visit(visit_id: int, payload: VisitPayload, repo: Repository = Depends(get_repo)):
    visit = ensure_visit(repo, visit_id)
    store = repo.get_store(payload.store_id)
    if store is None:
        raise HTTPException(status_code=400, detail="Invalid store_id")
    if "opened_account" in payload.visit_status and repo.store_has_opened_account(
        store.id, exclude_visit_id=visit.id
    ):
        raise HTTPException(status_code=400, detail="This store already has an opened account.")

    values = payload.model_dump(exclude_unset=True)
    if values.get("date") is None:
        values.pop("date", None)
    repo.update_visit(visit, **values, store_name=store.name)
    commit_or_fail(repo, "update visit log")
    return json_safe(visit_to_dict(visit))


@app.delete("/api/visits/{visit_id}")
def delete_visit(visit_id: int, repo: Repository = Depends(get_repo)):
    visit = ensure_visit(repo, visit_id)
    repo.delete_visit(visit)
    commit_or_fail(repo, "delete visit log")
    return {"ok": True}


# Users and session


@app.get("/api/users")
def list_users(repo: Repository = Depends(get_repo)):
    return {"items": [json_safe(user_to_dict(u)) for u in repo.list_users()]}


@app.post("/api/users", status_code=201)
def create_user(payload: UserCreate, repo: Repository = Depends(get_repo)):
    if not payload.name.strip() or not payload.email.strip() or not payload.password:
        raise HTTPException(status_code=400, detail="name, email and password are required")
    if repo.get_user_by_email(payload.email) is not None:
        raise HTTPException(status_code=400, detail="Email is already registered")

    user = repo.register_user(payload.name, payload.email, payload.password, payload.role)
    if payload.role == "sales":
        repo.add_value("salesperson", user.name)
    commit_or_fail(repo, "create user")
    return json_safe(user_to_dict(user))


@app.put("/api/users/{user_id}")
def update_user(user_id: int, payload: UserUpdate, repo: Repository = Depends(get_repo)):
    user = ensure_user(repo, user_id)
    values = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "email" in values:
        other = repo.get_user_by_email(values["email"])
        if other is not None and other.id != user.id:
            raise HTTPException(status_code=400, detail="Email is already registered")

    repo.update_user(user, **values)
    commit_or_fail(repo, "update user")
    return json_safe(user_to_dict(user))


@app.post("/api/users/{user_id}/reset-password")
def reset_password(user_id: int, payload: PasswordReset, repo: Repository = Depends(get_repo)):
    user = ensure_user(repo, user_id)
    repo.set_password(user, payload.new_password)
    commit_or_fail(repo, "reset password")
    return {"ok": True}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: int, repo: Repository = Depends(get_repo)):
    user = ensure_user(repo, user_id)
    current = repo.current_user()
    if current is not None and current.id == user.id:
        repo.sign_out()
    repo.delete_user(user)
    commit_or_fail(repo, "delete user")
    return {"ok": True}


@app.post("/api/session")
def sign_in(payload: LoginPayload, repo: Repository = Depends(get_repo)):
    user = repo.authenticate(payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    repo.sign_in(user)
    commit_or_fail(repo, "sign in")
    return {"user": json_safe(user_to_dict(user))}


@app.get("/api/session")
def current_session(repo: Repository = Depends(get_repo)):
    user = repo.current_user()
    return {"user": json_safe(user_to_dict(user)) if user is not None else None}


@app.delete("/api/session")
def sign_out(repo: Repository = Depends(get_repo)):
    repo.sign_out()
    commit_or_fail(repo, "sign out")
    return {"ok": True}


# Product and salesperson registries


def resolve_registry(registry: str) -> str:
    category = REGISTRIES.get(registry)
    if category is None:
        raise HTTPException(status_code=404, detail="Unknown list")
    return category


@app.get("/api/{registry}")
def list_registry(registry: str, repo: Repository = Depends(get_repo)):
    return {"items": repo.list_values(resolve_registry(registry))}


@app.post("/api/{registry}")
def add_registry_value(registry: str, payload: RegistryValue, repo: Repository = Depends(get_repo)):
    category = resolve_registry(registry)
    if not payload.value.strip():
        raise HTTPException(status_code=400, detail="value is required")
    added = repo.add_value(category, payload.value)
    commit_or_fail(repo, f"update {registry}")
    return {"added": added, "items": repo.list_values(category)}


@app.put("/api/{registry}")
def replace_registry(registry: str, payload: RegistryValues, repo: Repository = Depends(get_repo)):
    category = resolve_registry(registry)
    items = repo.replace_values(category, payload.values)
    commit_or_fail(repo, f"update {registry}")
    return {"items": items}


# Import and export


@app.get("/api/import/{kind}/template")
def download_import_template(kind: str):
    filename, content = import_template(kind)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/import/{kind}")
async def import_upload(
    kind: str,
    file: UploadFile = File(...),
    import_mode: str = Form("apply"),
    upsert_policy: str = Form("overwrite"),
    repo: Repository = Depends(get_repo),
):
    mode = import_mode.strip().lower() or "apply"
    if mode not in {"preview", "apply"}:
        raise HTTPException(status_code=400, detail="Invalid import mode. Use preview or apply.")

    content = await file.read()
    try:
        result = import_file(
            repo,
            content,
            file.filename or "import.csv",
            kind,
            upsert_policy=upsert_policy,
            user=repo.current_user(),
        )
        if mode == "preview":
            repo.rollback()
        else:
            repo.commit()
    except HTTPException:
        repo.rollback()
        raise
    except (ValueError, TypeError) as exc:
        repo.rollback()
        raise HTTPException(status_code=400, detail=f"Import failed: {exc}") from exc
    except SQLAlchemyError as exc:
        repo.rollback()
        logger.exception("Unexpected database error during CSV import")
        raise HTTPException(status_code=500, detail="Unexpected import database error.") from exc

    result["dry_run"] = mode == "preview"
    return result


@app.get("/api/export/{report}")
def export_report(
    report: str,
    product: str | None = Query(default=None),
    repo: Repository = Depends(get_repo),
):
    if report not in VALID_REPORTS:
        raise HTTPException(status_code=404, detail="Unknown report")

    return csv_download(build_report(repo, report, product=product))
