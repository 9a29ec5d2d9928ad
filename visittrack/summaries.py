"""Read-side rollups over the full store and visit collections.

Every function here is pure: it takes the collections plus an explicit
``now`` and never writes anything back.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Iterable

from visittrack.dates import as_naive, day_of, month_window, week_window
from visittrack.models import Store, VisitLog

UNASSIGNED = "Unassigned"
UNSPECIFIED_STATE = "Unspecified"
BASE_STATUS_OPTIONS = ["visited", "rejected_visit", "closed_down"]


def _statuses(visit: VisitLog) -> list[str]:
    return list(visit.visit_status or [])


def _in_days(value: date | datetime | None, start: date, end: date) -> bool:
    day = day_of(value)
    return day is not None and start <= day <= end


def visits_in_window(visits: Iterable[VisitLog], start: date | datetime, end: date | datetime) -> list[VisitLog]:
    first, last = day_of(start), day_of(end)
    return [v for v in visits if _in_days(v.date, first, last)]


def stores_created_in_window(stores: Iterable[Store], start: date | datetime, end: date | datetime) -> list[Store]:
    first, last = day_of(start), day_of(end)
    return [s for s in stores if _in_days(s.created_at, first, last)]


def visits_by_salesperson(stores: list[Store], visits: Iterable[VisitLog]) -> dict[str, int]:
    """Count visits under the salesperson who owns each visited store.

    Keys follow store registration order and include owners with no visits in
    the period; visits to stores without an owner, or to stores no longer on
    record, count under "Unassigned", which is listed after everyone else.
    """
    owner_by_store: dict[int, str] = {}
    counts: dict[str, int] = {}
    for store in stores:
        owner = (store.salesperson or "").strip()
        if not owner:
            continue
        owner_by_store[store.id] = owner
        counts.setdefault(owner, 0)

    unassigned = 0
    for visit in visits:
        owner = owner_by_store.get(visit.store_id)
        if owner is None:
            unassigned += 1
        else:
            counts[owner] += 1
    if unassigned:
        counts[UNASSIGNED] = unassigned
    return counts


def _store_key(visit: VisitLog) -> str:
    if visit.store_id is not None:
        return f"id:{visit.store_id}"
    return f"name:{(visit.store_name or '').strip().lower()}"


def _top_names(values: Iterable[str], limit: int) -> list[str]:
    # Counter.most_common keeps first-seen order among equal counts.
    counts = Counter(v for v in values if v)
    return [name for name, _ in counts.most_common(limit)]


def weekly_summary(stores: list[Store], visits: list[VisitLog], now: datetime) -> dict:
    start, end = week_window(now)
    week_visits = visits_in_window(visits, start, end)
    new_accounts = stores_created_in_window(stores, start, end)

    return {
        "totalVisits": len(week_visits),
        "completedVisits": sum(1 for v in week_visits if "completed" in _statuses(v)),
        "pendingVisits": sum(1 for v in week_visits if "pending" in _statuses(v)),
        "topPerformers": _top_names((v.user_name for v in week_visits), 2),
        "weekStartDate": start,
        "weekEndDate": end,
        "storesVisited": len({_store_key(v) for v in week_visits}),
        "newAccounts": new_accounts,
        "visitsBySalesperson": visits_by_salesperson(stores, week_visits),
    }


def monthly_summary(stores: list[Store], visits: list[VisitLog], now: datetime) -> dict:
    now = as_naive(now)
    start, end = month_window(now.year, now.month)
    month_visits = visits_in_window(visits, start, end)
    visited_keys = {_store_key(v) for v in month_visits}
    opened_keys = {_store_key(v) for v in month_visits if "opened_account" in _statuses(v)}
    earlier_keys = {_store_key(v) for v in visits if v.date is not None and day_of(v.date) < start}

    conversion_rate = 0.0
    if visited_keys:
        conversion_rate = round(len(opened_keys) / len(visited_keys), 2)

    products = (p for v in month_visits for p in (v.products_promoted or []))
    return {
        "totalVisits": len(month_visits),
        "newAccounts": stores_created_in_window(stores, start, end),
        "conversionRate": conversion_rate,
        "topProducts": _top_names(products, 3),
        "year": now.year,
        "month": now.month,
        "totalRevisitedStores": len(visited_keys & earlier_keys),
        "visitsBySalesperson": visits_by_salesperson(stores, month_visits),
    }


def coverage(visited: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(visited / total * 100, 2)


def _bucket() -> dict:
    return {"total": 0, "visited": 0, "coverage": 0.0}


def universe_tracking(stores: list[Store], visits: Iterable[VisitLog]) -> dict:
    """Per-state coverage of the vet and pet store universe.

    A store counts as visited once any visit references its id. Other
    categories (grooming, breeding, other) are outside the universe.
    """
    visited_ids = {v.store_id for v in visits if v.store_id is not None}
    breakdown: dict[str, dict] = {}
    totals = {"vet": _bucket(), "petStore": _bucket()}

    for store in stores:
        if store.category == "vet":
            key = "vet"
        elif store.category == "pet_store":
            key = "petStore"
        else:
            continue
        state = (store.state or "").strip() or UNSPECIFIED_STATE
        entry = breakdown.setdefault(state, {"vet": _bucket(), "petStore": _bucket()})
        was_visited = store.id in visited_ids
        for bucket in (entry[key], totals[key]):
            bucket["total"] += 1
            if was_visited:
                bucket["visited"] += 1

    for entry in breakdown.values():
        for bucket in entry.values():
            bucket["coverage"] = coverage(bucket["visited"], bucket["total"])

    return {
        "totalVetUniverse": totals["vet"]["total"],
        "totalPetStores": totals["petStore"]["total"],
        "visitedVetStores": totals["vet"]["visited"],
        "visitedPetStores": totals["petStore"]["visited"],
        "vetCoverage": coverage(totals["vet"]["visited"], totals["vet"]["total"]),
        "petStoreCoverage": coverage(totals["petStore"]["visited"], totals["petStore"]["total"]),
        "stateBreakdown": breakdown,
    }


def visit_status_options(store_visits: Iterable[VisitLog]) -> list[str]:
    """Statuses a new visit to this store may carry.

    ``opened_account`` is offered until a visit records it; after that the
    store can only be marked ``ex_customer``.
    """
    has_opened = any("opened_account" in _statuses(v) for v in store_visits)
    return BASE_STATUS_OPTIONS + (["ex_customer"] if has_opened else ["opened_account"])


def is_new_store(store: Store, now: datetime, window_days: int = 7) -> bool:
    if not store.is_new or store.created_at is None:
        return False
    age = as_naive(now) - as_naive(store.created_at)
    return age < timedelta(days=window_days)


def last_visit_dates(visits: Iterable[VisitLog]) -> dict[int, datetime]:
    latest: dict[int, datetime] = {}
    for visit in visits:
        if visit.store_id is None or visit.date is None:
            continue
        current = latest.get(visit.store_id)
        if current is None or visit.date > current:
            latest[visit.store_id] = visit.date
    return latest
