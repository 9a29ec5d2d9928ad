from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime
from typing import Any, Iterable

from visittrack.dates import week_window
from visittrack.repository import Repository
from visittrack.serializers import json_safe, store_to_dict, visit_to_dict
from visittrack.summaries import monthly_summary, visits_in_window, weekly_summary

NO_DATA_MESSAGE = "No data to export."
VALID_REPORTS = {"visits", "stores", "stores-vet", "stores-pet", "weekly", "monthly", "weekly-store-updates"}


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.replace("\r\n", "\n").replace("\r", "\n")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ";".join(str(_cell(v)) for v in value)
    if isinstance(value, dict):
        return json.dumps(json_safe(value))
    return value


def export_to_csv(records: Iterable[dict[str, Any]], filename: str) -> dict[str, Any]:
    """Serialise homogeneous records; headers come from the first record.

    Cells holding the delimiter, a quote or a line break are quoted with inner
    quotes doubled, everything else is written bare.
    """
    rows = list(records)
    if not rows:
        return {"filename": None, "content": None, "message": NO_DATA_MESSAGE}

    headers = list(rows[0].keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_cell(row.get(header)) for header in headers])

    return {
        "filename": f"{filename}.csv",
        "content": buffer.getvalue(),
        "message": "CSV file has been downloaded.",
    }


def _summary_record(summary: dict[str, Any]) -> dict[str, Any]:
    record = dict(summary)
    # Summaries embed store objects; a flat CSV only has room for their names.
    record["newAccounts"] = [store.name for store in summary["newAccounts"]]
    return record


def build_report(repo: Repository, report: str, *, product: str | None = None) -> dict[str, Any]:
    if report not in VALID_REPORTS:
        raise ValueError(f"Unknown report '{report}'")

    now = repo.clock.now()
    if report == "visits":
        records = [visit_to_dict(v) for v in repo.list_visits(product=product or None)]
        return export_to_csv(records, "visit-logs")
    if report == "stores":
        return export_to_csv([store_to_dict(s) for s in repo.list_stores()], "stores-master-list")
    if report == "stores-vet":
        return export_to_csv([store_to_dict(s) for s in repo.list_stores(category="vet")], "veterinary-stores")
    if report == "stores-pet":
        return export_to_csv([store_to_dict(s) for s in repo.list_stores(category="pet_store")], "pet-stores")

    stores = repo.list_stores()
    visits = repo.list_visits()
    if report == "weekly":
        return export_to_csv([_summary_record(weekly_summary(stores, visits, now))], "weekly-summary")
    if report == "monthly":
        return export_to_csv([_summary_record(monthly_summary(stores, visits, now))], "monthly-summary")

    start, end = week_window(now)
    records = [visit_to_dict(v) for v in visits_in_window(visits, start, end)]
    return export_to_csv(records, "weekly-store-updates")


def export_selected_stores(repo: Repository, store_ids: Iterable[int]) -> dict[str, Any]:
    return export_to_csv([store_to_dict(s) for s in repo.stores_by_ids(store_ids)], "selected-stores")


def export_selected_visits(repo: Repository, visit_ids: Iterable[int]) -> dict[str, Any]:
    return export_to_csv([visit_to_dict(v) for v in repo.visits_by_ids(visit_ids)], "selected-visits")
