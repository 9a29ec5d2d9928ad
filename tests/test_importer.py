from datetime import datetime, timedelta
from io import BytesIO

import pytest
from fastapi import HTTPException
from openpyxl import Workbook

from conftest import NOW
from visittrack.csv_parser import parse_csv
from visittrack.importer import (
    coerce_string_list,
    import_file,
    import_rows,
    import_template,
    normalize_category,
    normalize_statuses,
    read_upload,
)


def test_coerce_string_list_accepts_strings_and_lists():
    assert coerce_string_list(" EVFA PRO ; ;EVFA Cap;EVFA PRO ") == ["EVFA PRO", "EVFA Cap"]
    assert coerce_string_list(["a", " b ", "", "a"]) == ["a", "b"]
    assert coerce_string_list(None) == []
    assert coerce_string_list("") == []


def test_normalize_statuses_lowercases_and_dedupes():
    assert normalize_statuses("COMPLETED;Opened Account;completed") == ["completed", "opened_account"]
    assert normalize_statuses(["follow-up required"]) == ["follow_up_required"]


@pytest.mark.parametrize("raw", ["VET", "vet_clinic", " Vet Clinic ", "Veterinary   Clinic", "VET_CLINIC"])
def test_vet_aliases_resolve_to_vet(raw):
    assert normalize_category(raw) == "vet"


@pytest.mark.parametrize("raw", ["PET_STORE", "grooming", "", None, "vets"])
def test_other_categories_default_to_pet_store(raw):
    assert normalize_category(raw) == "pet_store"


def test_stores_import_creates_new_store(repo):
    rows = parse_csv("name,category,state,salesperson\nFoo Store,PET_STORE,Penang,Mike Chen\n")

    summary = import_rows(repo, rows, "stores")

    assert summary["stores_added"] == 1
    assert summary["stores_updated"] == 0
    assert summary["visits_created"] == 0
    store = repo.list_stores()[0]
    assert store.name == "Foo Store"
    assert store.category == "pet_store"
    assert store.state == "Penang"
    assert store.is_new is True
    assert store.created_at == NOW
    assert repo.salespersons() == ["Mike Chen"]


def test_importing_same_store_twice_updates_instead_of_duplicating(repo):
    text = 'name,category,city\n"Foo Store",PET_STORE,Ipoh\n'

    first = import_rows(repo, parse_csv(text), "stores")
    store_id = repo.list_stores()[0].id
    second = import_rows(repo, parse_csv(text.replace("Ipoh", "Taiping")), "stores")

    assert first["stores_added"] == 1
    assert second["stores_added"] == 0
    assert second["stores_updated"] == 1
    stores = repo.list_stores()
    assert len(stores) == 1
    assert stores[0].id == store_id
    assert stores[0].city == "Taiping"
    assert stores[0].is_new is False
    assert second["message"] == "0 stores added, 1 stores updated, 0 visit logs created."


def test_vet_clinic_alias_updates_existing_vet_case_insensitively(repo):
    created_at = NOW - timedelta(days=30)
    existing = repo.add_store(name="pet paradise", category="vet", state="Selangor", created_at=created_at)

    summary = import_rows(repo, [{"name": "Pet Paradise", "category": "VET_CLINIC", "phone": "123"}], "stores")

    assert summary["stores_updated"] == 1
    assert summary["stores_added"] == 0
    stores = repo.list_stores()
    assert len(stores) == 1
    assert stores[0].id == existing.id
    assert stores[0].category == "vet"
    assert stores[0].created_at == created_at
    assert stores[0].phone == "123"


def test_accented_names_are_matched_case_insensitively(repo):
    rows = [{"name": "\u00dcber Pets", "category": "PET_STORE"}]

    first = import_rows(repo, rows, "stores")
    second = import_rows(repo, rows, "stores")

    assert first["stores_added"] == 1
    assert second["stores_added"] == 0
    assert second["stores_updated"] == 1
    assert [s.name for s in repo.list_stores()] == ["\u00dcber Pets"]


def test_accented_vet_clinic_alias_updates_existing_vet(repo):
    import_rows(repo, [{"name": "caf\u00e9 \u00c9LITE", "category": "VET"}], "stores")

    summary = import_rows(repo, [{"name": "CAF\u00c9 \u00c9LITE", "category": "vet clinic"}], "stores")

    assert summary["stores_updated"] == 1
    assert summary["stores_added"] == 0
    assert len(repo.list_stores()) == 1


def test_update_import_links_visit_to_accented_store(repo):
    store = repo.add_store(name="\u00dcber Pets", category="pet_store")

    summary = import_rows(repo, [{"storeName": "\u00fcBER PETS"}], "store-updates")

    assert summary["warning_count"] == 0
    assert repo.list_visits()[0].store_id == store.id


def test_same_name_in_other_category_is_a_new_store(repo):
    repo.add_store(name="Pet Paradise", category="pet_store")

    summary = import_rows(repo, [{"name": "Pet Paradise", "category": "VET"}], "stores")

    assert summary["stores_added"] == 1
    assert sorted(s.category for s in repo.list_stores()) == ["pet_store", "vet"]


def test_merge_policy_keeps_existing_values_for_blank_cells(repo):
    repo.add_store(name="Foo Store", category="pet_store", city="Ipoh", phone="111")

    import_rows(repo, [{"name": "foo store", "category": "", "phone": "222"}], "stores", upsert_policy="merge")

    store = repo.list_stores()[0]
    assert store.city == "Ipoh"
    assert store.phone == "222"
    assert store.name == "Foo Store"


def test_merge_policy_keeps_stored_state_and_species_over_defaults(repo):
    repo.add_store(name="Foo Store", category="pet_store", state="Penang", city="Ipoh", species="cat_only")

    rows = [{"storeName": "Foo Store", "category": "PET_STORE", "state": "", "species": "", "city": "George Town"}]
    summary = import_rows(repo, rows, "store-visits", upsert_policy="merge")

    store = repo.list_stores()[0]
    assert summary["stores_updated"] == 1
    assert store.state == "Penang"
    assert store.species == "cat_only"
    assert store.city == "George Town"


def test_overwrite_policy_applies_defaults_for_blank_cells(repo):
    repo.add_store(name="Foo Store", category="pet_store", state="Penang", species="cat_only")

    import_rows(repo, [{"storeName": "Foo Store", "category": "PET_STORE"}], "store-visits")

    store = repo.list_stores()[0]
    assert store.state == "Kuala Lumpur"
    assert store.species == "50_50"


def test_create_only_policy_skips_existing_store(repo):
    repo.add_store(name="Foo Store", category="pet_store", city="Ipoh")

    summary = import_rows(repo, [{"name": "Foo Store", "city": "Klang"}], "stores", upsert_policy="create_only")

    assert summary["stores_skipped_existing"] == 1
    assert repo.list_stores()[0].city == "Ipoh"


def test_missing_state_defaults_and_missing_name_is_flagged(repo):
    summary = import_rows(repo, [{"name": "", "category": "VET"}], "stores")

    store = repo.list_stores()[0]
    assert store.name == "Unknown Store"
    assert store.state == "Kuala Lumpur"
    assert summary["warning_count"] == 1
    assert summary["row_issues"][0]["row"] == 2


def test_store_visits_import_creates_store_and_initial_visit(repo):
    text = (
        "storeName,category,state,salesperson,latestUpdate,nextSteps,visitStatus,potentialLevel,"
        "productsPromoted,visitDate\n"
        '"Pet Paradise Store",PET_STORE,Johor,Lisa Wong,"Discussed pricing\nWants bulk deal",'
        '"Send quote",COMPLETED;PENDING,HIGH,"EVFA PRO;EVFA Cap",2024-01-15\n'
    )

    summary = import_rows(repo, parse_csv(text), "store-visits")

    assert summary["stores_added"] == 1
    assert summary["visits_created"] == 1
    store = repo.list_stores()[0]
    assert store.species == "50_50"
    visit = repo.list_visits()[0]
    assert visit.store_id == store.id
    assert visit.store_name == "Pet Paradise Store"
    assert visit.visit_type == "initial"
    assert visit.visit_status == ["completed", "pending"]
    assert visit.potential_level == "high"
    assert visit.notes == "Discussed pricing\nWants bulk deal"
    assert visit.next_steps == "Send quote"
    assert visit.products_promoted == ["EVFA PRO", "EVFA Cap"]
    assert visit.date == datetime(2024, 1, 15)
    assert visit.user_name == "CSV Import"
    assert repo.products() == ["EVFA PRO", "EVFA Cap"]
    assert summary["products_registered"] == 2


def test_store_visits_defaults_date_status_and_level(repo):
    summary = import_rows(repo, [{"name": "Foo Store", "visitStatus": "", "potentialLevel": "huge"}], "store-visits")

    visit = repo.list_visits()[0]
    assert summary["visits_created"] == 1
    assert visit.date == NOW
    assert visit.visit_status == ["completed"]
    assert visit.potential_level == "medium"


def test_store_visits_reuses_existing_store(repo):
    store = repo.add_store(name="Foo Store", category="pet_store")

    summary = import_rows(repo, [{"storeName": "FOO STORE", "category": "pet_store"}], "store-visits")

    assert summary["stores_updated"] == 1
    assert len(repo.list_stores()) == 1
    assert repo.list_visits()[0].store_id == store.id


def test_opened_account_sets_account_date_and_second_one_is_dropped(repo):
    rows = [
        {"name": "Foo Store", "visitStatus": "opened_account", "visitDate": "2025-06-02"},
        {"name": "Foo Store", "visitStatus": "opened_account;visited", "visitDate": "2025-06-10"},
    ]

    summary = import_rows(repo, rows, "store-visits")

    first, second = repo.list_visits()
    assert first.visit_status == ["opened_account"]
    assert first.account_opened_date == datetime(2025, 6, 2)
    assert second.visit_status == ["visited"]
    assert second.account_opened_date is None
    assert summary["warning_count"] == 1


def test_store_updates_link_visit_by_name_without_touching_stores(repo):
    store = repo.add_store(name="Happy Pets", category="pet_store", city="Ipoh")
    rows = [{"storeName": "happy pets", "latestUpdate": "Samples left", "visitStatus": "Pending", "city": "Klang"}]

    summary = import_rows(repo, rows, "store-updates")

    assert summary["visits_created"] == 1
    assert summary["stores_added"] == 0
    assert summary["stores_updated"] == 0
    visit = repo.list_visits()[0]
    assert visit.store_id == store.id
    assert visit.store_name == "Happy Pets"
    assert visit.visit_type == "follow_up"
    assert visit.visit_status == ["pending"]
    assert visit.date == NOW
    assert repo.get_store(store.id).city == "Ipoh"


def test_vet_updates_prefer_vet_clinic_with_same_name(repo):
    repo.add_store(name="Animal Care", category="pet_store")
    clinic = repo.add_store(name="Animal Care", category="vet")

    import_rows(repo, [{"clinicName": "Animal Care"}], "vet-updates")

    assert repo.list_visits()[0].store_id == clinic.id


def test_update_for_unknown_store_keeps_visit_and_warns(repo):
    summary = import_rows(repo, [{"storeName": "Nowhere Pets"}, {"storeName": ""}], "store-updates")

    first, second = repo.list_visits()
    assert first.store_id is None
    assert first.store_name == "Nowhere Pets"
    assert second.store_name == "Unknown Store"
    assert summary["visits_created"] == 2
    assert summary["warning_count"] == 2


def test_invalid_kind_and_policy_are_rejected(repo):
    with pytest.raises(HTTPException) as kind_error:
        import_rows(repo, [{"name": "x"}], "customers")
    with pytest.raises(HTTPException) as policy_error:
        import_rows(repo, [{"name": "x"}], "stores", upsert_policy="replace")

    assert kind_error.value.status_code == 400
    assert policy_error.value.status_code == 400


def test_empty_upload_is_rejected_without_writes(repo):
    with pytest.raises(HTTPException) as empty:
        import_file(repo, b"", "stores.csv", "stores")
    with pytest.raises(HTTPException) as header_only:
        import_file(repo, b"name,category\n", "stores.csv", "stores")

    assert empty.value.detail == "The file appears to be empty or invalid."
    assert header_only.value.status_code == 400
    assert repo.list_stores() == []


def test_read_upload_rejects_unknown_extension():
    with pytest.raises(HTTPException):
        read_upload(b"name\nx\n", "stores.pdf")


def test_read_upload_reads_first_workbook_sheet():
    wb = Workbook()
    sheet = wb.active
    sheet.append(["storeName", "visitDate", "zipCode"])
    sheet.append(["Pet Paradise", datetime(2024, 1, 15), 50000])
    sheet.append([None, None, None])
    out = BytesIO()
    wb.save(out)

    rows = read_upload(out.getvalue(), "stores.xlsx")

    assert rows == [{"storeName": "Pet Paradise", "visitDate": "2024-01-15", "zipCode": "50000"}]


def test_templates_parse_and_import_cleanly(repo):
    filename, content = import_template("store-visits")

    summary = import_rows(repo, parse_csv(content), "store-visits")

    assert filename == "stores_visits_template.csv"
    assert summary["stores_added"] == 2
    assert summary["visits_created"] == 2
    assert summary["warning_count"] == 0
