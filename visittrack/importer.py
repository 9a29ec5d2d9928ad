from __future__ import annotations

import logging
from datetime import date, datetime
from io import BytesIO
from typing import Any

from fastapi import HTTPException

from visittrack.config import settings
from visittrack.csv_parser import parse_csv
from visittrack.dates import parse_datetime
from visittrack.models import POTENTIAL_LEVELS, SPECIES, VISIT_TYPES, Store, User
from visittrack.repository import Repository

logger = logging.getLogger(__name__)

KIND_STORES = "stores"
KIND_STORE_VISITS = "store-visits"
KIND_STORE_UPDATES = "store-updates"
KIND_VET_UPDATES = "vet-updates"
KIND_VISITS = "visits"
VALID_KINDS = {KIND_STORES, KIND_STORE_VISITS, KIND_STORE_UPDATES, KIND_VET_UPDATES, KIND_VISITS}
UPDATE_KINDS = {KIND_STORE_UPDATES, KIND_VET_UPDATES, KIND_VISITS}
VALID_UPSERT_POLICIES = {"overwrite", "merge", "create_only"}

VET_ALIASES = {"vet", "vet_clinic", "vet clinic", "veterinary clinic"}
UNKNOWN_STORE = "Unknown Store"
IMPORT_USER_NAME = "CSV Import"
EMPTY_FILE_DETAIL = "The file appears to be empty or invalid."

# Row column -> Store attribute for the plain text store fields.
STORE_TEXT_COLUMNS = {
    "region": "region",
    "area": "area",
    "address": "address",
    "city": "city",
    "zipCode": "zip_code",
    "phone": "phone",
    "email": "email",
    "picInfo": "pic_info",
    "salesperson": "salesperson",
}


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    text_value = str(value).replace("\xa0", " ").strip()
    return text_value


def _first(row: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = _clean_text(row.get(key))
        if value:
            return value
    return ""


def coerce_string_list(value: Any) -> list[str]:
    """Turn a ``;``-separated cell or a list into a trimmed, deduplicated list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        parts = value
    else:
        parts = str(value).split(";")

    result: list[str] = []
    for part in parts:
        cleaned = _clean_text(part)
        if cleaned and cleaned not in result:
            result.append(cleaned)
    return result


def normalize_status(value: str) -> str:
    return "_".join(_clean_text(value).lower().replace("-", " ").split())


def normalize_statuses(value: Any) -> list[str]:
    result: list[str] = []
    for status in coerce_string_list(value):
        normalized = normalize_status(status)
        if normalized and normalized not in result:
            result.append(normalized)
    return result


def normalize_category(value: Any) -> str:
    raw = " ".join(_clean_text(value).lower().split())
    if raw in VET_ALIASES:
        return "vet"
    return "pet_store"


def _normalize_choice(value: Any, allowed: tuple[str, ...], default: str | None) -> str | None:
    raw = _clean_text(value).lower()
    return raw if raw in allowed else default


def _normalize_kind(kind: str) -> str:
    resolved = _clean_text(kind).lower()
    if resolved not in VALID_KINDS:
        allowed = ", ".join(sorted(VALID_KINDS))
        raise HTTPException(status_code=400, detail=f"Invalid import type '{kind}'. Allowed: {allowed}.")
    return resolved


def _normalize_upsert_policy(upsert_policy: str) -> str:
    policy = _clean_text(upsert_policy).lower() or "overwrite"
    if policy not in VALID_UPSERT_POLICIES:
        allowed = ", ".join(sorted(VALID_UPSERT_POLICIES))
        raise HTTPException(status_code=400, detail=f"Invalid upsert policy '{upsert_policy}'. Allowed: {allowed}.")
    return policy


def _record_issue(summary: dict[str, Any], *, row: int | None, message: str) -> None:
    issues = summary.setdefault("row_issues", [])
    issue_limit = int(summary.get("row_issue_limit", settings.import_row_issue_limit))
    if len(issues) < issue_limit:
        issues.append({"level": "warning", "row": row, "message": message})
    else:
        summary["row_issues_truncated"] = int(summary.get("row_issues_truncated", 0)) + 1
    summary["warning_count"] = int(summary.get("warning_count", 0)) + 1


def _register_names(repo: Repository, summary: dict[str, Any], *, products: list[str], salesperson: str) -> None:
    for product in products:
        if repo.add_value("product", product):
            summary["products_registered"] += 1
    if salesperson and repo.add_value("salesperson", salesperson):
        summary["salespersons_registered"] += 1


def _store_fields(
    row: dict[str, Any],
    name: str,
    category: str,
    *,
    species_default: str | None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a row into the cells it carries and the defaults standing in for blank ones."""
    fields: dict[str, Any] = {"name": name, "category": category}
    defaults: dict[str, Any] = {}
    for column, attr in STORE_TEXT_COLUMNS.items():
        fields[attr] = _clean_text(row.get(column))

    state = _clean_text(row.get("state"))
    if state:
        fields["state"] = state
    else:
        defaults["state"] = settings.default_state

    species = _normalize_choice(row.get("species"), SPECIES, None)
    if species is not None:
        fields["species"] = species
    elif species_default is not None:
        defaults["species"] = species_default
    return fields, defaults


def _upsert_store(
    repo: Repository,
    summary: dict[str, Any],
    fields: dict[str, Any],
    defaults: dict[str, Any],
    upsert_policy: str,
) -> Store:
    existing = repo.find_store(fields["name"], fields["category"])
    if existing is None:
        store = repo.add_store(**fields, **defaults, is_new=True, created_at=repo.clock.now())
        summary["stores_added"] += 1
        return store

    if upsert_policy == "create_only":
        summary["stores_skipped_existing"] += 1
        return existing

    updates = dict(fields)
    # Keep the stored spelling of the name; the match was case-insensitive.
    updates.pop("name")
    if upsert_policy == "merge":
        updates = {k: v for k, v in updates.items() if v}
    else:
        updates.update(defaults)
    repo.update_store(existing, **updates, is_new=False)
    summary["stores_updated"] += 1
    return existing


def _visit_fields(
    row: dict[str, Any],
    *,
    visit_type: str,
    visit_date: datetime,
    user: User | None,
) -> dict[str, Any]:
    return {
        "user_id": user.id if user is not None else None,
        "user_name": user.name if user is not None else IMPORT_USER_NAME,
        "date": visit_date,
        "visit_type": visit_type,
        "visit_status": normalize_statuses(row.get("visitStatus")) or ["completed"],
        "potential_level": _normalize_choice(row.get("potentialLevel"), POTENTIAL_LEVELS, "medium"),
        "notes": _first(row, "latestUpdate", "notes"),
        "next_steps": _clean_text(row.get("nextSteps")),
        "products_promoted": coerce_string_list(row.get("productsPromoted")),
    }


def _resolve_visit_date(
    row: dict[str, Any],
    keys: tuple[str, ...],
    *,
    now: datetime,
    summary: dict[str, Any],
    row_num: int,
) -> datetime:
    raw = _first(row, *keys)
    if not raw:
        return now
    parsed = parse_datetime(raw)
    if parsed is None:
        _record_issue(summary, row=row_num, message=f"Invalid visit date '{raw}'; today's date used.")
        return now
    return parsed


def _guard_opened_account(
    repo: Repository,
    summary: dict[str, Any],
    fields: dict[str, Any],
    store_id: int | None,
    row_num: int,
) -> None:
    if "opened_account" not in fields["visit_status"]:
        return
    if not repo.store_has_opened_account(store_id):
        return
    fields["visit_status"] = [s for s in fields["visit_status"] if s != "opened_account"] or ["visited"]
    _record_issue(
        summary,
        row=row_num,
        message=f"'{fields['store_name']}' already has an opened account; opened_account status dropped.",
    )


def _add_visit(
    repo: Repository,
    summary: dict[str, Any],
    fields: dict[str, Any],
    row_num: int,
) -> None:
    _guard_opened_account(repo, summary, fields, fields.get("store_id"), row_num)
    repo.add_visit(**fields)
    summary["visits_created"] += 1


def _import_store_row(
    repo: Repository,
    summary: dict[str, Any],
    row: dict[str, Any],
    row_num: int,
    *,
    kind: str,
    upsert_policy: str,
    user: User | None,
    now: datetime,
) -> None:
    combined = kind == KIND_STORE_VISITS
    name = _first(row, "storeName", "name") if combined else _clean_text(row.get("name"))
    if not name:
        _record_issue(summary, row=row_num, message=f"Missing store name; saved as '{UNKNOWN_STORE}'.")
        name = UNKNOWN_STORE

    fields, defaults = _store_fields(
        row,
        name,
        normalize_category(row.get("category")),
        species_default="50_50" if combined else None,
    )
    store = _upsert_store(repo, summary, fields, defaults, upsert_policy)

    products: list[str] = []
    if combined:
        visit_date = _resolve_visit_date(row, ("visitDate",), now=now, summary=summary, row_num=row_num)
        visit = _visit_fields(row, visit_type="initial", visit_date=visit_date, user=user)
        visit.update(store_id=store.id, store_name=store.name)
        _add_visit(repo, summary, visit, row_num)
        products = visit["products_promoted"]

    _register_names(repo, summary, products=products, salesperson=fields["salesperson"])


def _import_update_row(
    repo: Repository,
    summary: dict[str, Any],
    row: dict[str, Any],
    row_num: int,
    *,
    kind: str,
    user: User | None,
    now: datetime,
) -> None:
    name = _first(row, "storeName", "clinicName")
    store = None
    if name:
        preferred = "vet" if kind == KIND_VET_UPDATES else "pet_store"
        store = repo.find_store_by_name(name, preferred)
        if store is None:
            _record_issue(summary, row=row_num, message=f"Store '{name}' not found; visit saved without a store link.")
    else:
        _record_issue(summary, row=row_num, message=f"Missing store name; visit saved as '{UNKNOWN_STORE}'.")
        name = UNKNOWN_STORE

    visit_type = _normalize_choice(normalize_status(row.get("visitType") or ""), VISIT_TYPES, "follow_up")
    visit_date = _resolve_visit_date(row, ("visitDate", "date"), now=now, summary=summary, row_num=row_num)
    visit = _visit_fields(row, visit_type=visit_type, visit_date=visit_date, user=user)
    visit.update(
        store_id=store.id if store is not None else None,
        store_name=store.name if store is not None else name,
    )
    _add_visit(repo, summary, visit, row_num)
    _register_names(repo, summary, products=visit["products_promoted"], salesperson="")


def import_rows(
    repo: Repository,
    rows: list[dict[str, Any]],
    kind: str,
    *,
    upsert_policy: str = "overwrite",
    user: User | None = None,
    filename: str = "",
) -> dict[str, Any]:
    """Reconcile parsed rows against the repository and report what changed.

    Store rows are matched on (case-insensitive name, resolved category);
    matches are updated in place, everything else is created. Update-only kinds
    never touch stores and only derive visit logs.
    """
    resolved_kind = _normalize_kind(kind)
    resolved_policy = _normalize_upsert_policy(upsert_policy)
    if not rows:
        raise HTTPException(status_code=400, detail=EMPTY_FILE_DETAIL)

    now = repo.clock.now()
    summary: dict[str, Any] = {
        "filename": filename,
        "kind": resolved_kind,
        "upsert_policy": resolved_policy,
        "rows_processed": 0,
        "stores_added": 0,
        "stores_updated": 0,
        "stores_skipped_existing": 0,
        "visits_created": 0,
        "products_registered": 0,
        "salespersons_registered": 0,
        "warning_count": 0,
        "row_issues": [],
        "row_issue_limit": settings.import_row_issue_limit,
        "row_issues_truncated": 0,
    }

    # Row numbers count the header as row 1, matching what a spreadsheet shows.
    for row_num, row in enumerate(rows, start=2):
        if resolved_kind in UPDATE_KINDS:
            _import_update_row(repo, summary, row, row_num, kind=resolved_kind, user=user, now=now)
        else:
            _import_store_row(
                repo,
                summary,
                row,
                row_num,
                kind=resolved_kind,
                upsert_policy=resolved_policy,
                user=user,
                now=now,
            )
        summary["rows_processed"] += 1

    summary["message"] = (
        f"{summary['stores_added']} stores added, {summary['stores_updated']} stores updated, "
        f"{summary['visits_created']} visit logs created."
    )
    logger.info(
        "Imported %s (%s): %s rows, %s added, %s updated, %s visits, %s warnings",
        filename or "<rows>",
        resolved_kind,
        summary["rows_processed"],
        summary["stores_added"],
        summary["stores_updated"],
        summary["visits_created"],
        summary["warning_count"],
    )
    return summary


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _read_workbook_rows(content: bytes) -> list[dict[str, str]]:
    try:
        from openpyxl import load_workbook
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="Workbook import requires openpyxl. Install dependencies and redeploy.",
        ) from exc

    try:
        workbook = load_workbook(BytesIO(content), data_only=True, read_only=True)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Could not read workbook: {exc}") from exc

    try:
        sheet = workbook.worksheets[0]
        values = [list(r) for r in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()

    values = [r for r in values if any(_cell_text(v) for v in r)]
    if not values:
        return []
    headers = [_cell_text(v) for v in values[0]]
    rows = []
    for record in values[1:]:
        rows.append(
            {
                header: _cell_text(record[i]) if i < len(record) else ""
                for i, header in enumerate(headers)
                if header
            }
        )
    return rows


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def read_upload(content: bytes, filename: str) -> list[dict[str, str]]:
    """Decode an uploaded CSV or Excel file into header-keyed rows."""
    if not content:
        raise HTTPException(status_code=400, detail=EMPTY_FILE_DETAIL)

    lowered = (filename or "").lower()
    if lowered.endswith((".xlsx", ".xlsm")):
        rows = _read_workbook_rows(content)
    elif lowered.endswith((".csv", ".txt")) or not lowered:
        rows = parse_csv(_decode_text(content))
    else:
        raise HTTPException(status_code=400, detail="Please select an Excel (.xlsx) or CSV file.")

    if not rows:
        raise HTTPException(status_code=400, detail=EMPTY_FILE_DETAIL)
    return rows


def import_file(
    repo: Repository,
    content: bytes,
    filename: str,
    kind: str,
    *,
    upsert_policy: str = "overwrite",
    user: User | None = None,
) -> dict[str, Any]:
    _normalize_kind(kind)
    rows = read_upload(content, filename)
    return import_rows(repo, rows, kind, upsert_policy=upsert_policy, user=user, filename=filename)


IMPORT_TEMPLATES = {
    KIND_STORES: (
        "stores_template",
        "name,category,region,area,state,address,city,zipCode,phone,email,picInfo,salesperson,species\n"
        "Sample Pet Store,PET_STORE,North Region,Area 1,Kuala Lumpur,123 Main St,Kuala Lumpur,50000,"
        "+60123456789,store@example.com,John Doe - Manager,John Smith,50_50\n"
        "City Veterinary Clinic,VET,South Region,Area 2,Selangor,456 Vet St,Shah Alam,40000,"
        "+60123456790,vet@example.com,Dr. Jane Smith,Sarah Johnson,majority_dog\n",
    ),
    KIND_STORE_VISITS: (
        "stores_visits_template",
        "storeName,category,region,area,state,address,city,zipCode,phone,email,picInfo,salesperson,species,"
        "latestUpdate,nextSteps,visitStatus,potentialLevel,productsPromoted,visitDate\n"
        '"Pet Paradise Store",PET_STORE,North Region,Area 1,Kuala Lumpur,123 Main St,Kuala Lumpur,50000,'
        "+60123456789,store@example.com,John Doe - Manager,John Smith,50_50,"
        '"Discussed new product lines and pricing\nCustomer showed interest in bulk orders",'
        '"Follow up with bulk order pricing\nSchedule demo next week",COMPLETED,HIGH,'
        '"EVFA PRO;EVFA Cap",2024-01-15\n'
        '"City Veterinary Clinic",VET,South Region,Area 2,Selangor,456 Vet St,Shah Alam,40000,'
        "+60123456790,vet@example.com,Dr. Jane Smith,Sarah Johnson,majority_dog,"
        '"Presented veterinary supplies catalog\nPositive response from head vet",'
        '"Schedule equipment demonstration\nSend detailed proposal",PENDING,MEDIUM,'
        '"EVFA PRO PLUS",2024-01-16\n',
    ),
    KIND_VISITS: (
        "visits_template",
        "storeName,latestUpdate,nextSteps,visitStatus,potentialLevel\n"
        "Pet Paradise,Discussed new product lines,Follow up with pricing,COMPLETED,HIGH\n"
        "City Vets,Samples provided,Await feedback,PENDING,MEDIUM\n",
    ),
    KIND_STORE_UPDATES: (
        "import_store_updates_template",
        "storeName,latestUpdate,nextSteps,visitStatus,potentialLevel,productsPromoted\n"
        '"Pet Paradise Store","Discussed premium pet food line and new accessories\n'
        'Manager very interested in partnership","Follow up with bulk pricing next week\n'
        'Schedule staff training session",COMPLETED,HIGH,"EVFA PRO;EVFA Cap"\n',
    ),
    KIND_VET_UPDATES: (
        "import_vet_updates_template",
        "clinicName,latestUpdate,nextSteps,visitStatus,potentialLevel,productsPromoted\n"
        '"City Veterinary Clinic","Presented new veterinary supplies and equipment\n'
        'Dr. Smith showed strong interest","Schedule equipment demonstration next month\n'
        'Prepare detailed proposal",COMPLETED,HIGH,"EVFA PRO PLUS"\n',
    ),
}


def import_template(kind: str) -> tuple[str, str]:
    """Return ``(filename, csv_text)`` of the sample file for an import type."""
    filename, content = IMPORT_TEMPLATES[_normalize_kind(kind)]
    return f"{filename}.csv", content
