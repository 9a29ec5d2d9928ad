from datetime import date, datetime

from visittrack.models import Store, User, VisitLog

# Attribute names keyed by the field names used in JSON payloads and CSV files.
STORE_COLUMNS = {
    "id": "id",
    "name": "name",
    "address": "address",
    "city": "city",
    "state": "state",
    "zipCode": "zip_code",
    "phone": "phone",
    "email": "email",
    "category": "category",
    "otherCategoryName": "other_category_name",
    "region": "region",
    "area": "area",
    "picInfo": "pic_info",
    "salesperson": "salesperson",
    "species": "species",
    "otherSpecies": "other_species",
    "paymentTerms": "payment_terms",
    "otherPaymentTerms": "other_payment_terms",
    "isNew": "is_new",
    "createdAt": "created_at",
    "isExCustomer": "is_ex_customer",
}

VISIT_COLUMNS = {
    "id": "id",
    "storeId": "store_id",
    "storeName": "store_name",
    "userId": "user_id",
    "userName": "user_name",
    "visitType": "visit_type",
    "visitStatus": "visit_status",
    "potentialLevel": "potential_level",
    "date": "date",
    "notes": "notes",
    "productsPromoted": "products_promoted",
    "nextSteps": "next_steps",
    "accountOpenedDate": "account_opened_date",
}


def store_to_dict(store: Store) -> dict:
    return {key: getattr(store, attr) for key, attr in STORE_COLUMNS.items()}


def visit_to_dict(visit: VisitLog) -> dict:
    row = {key: getattr(visit, attr) for key, attr in VISIT_COLUMNS.items()}
    row["visitStatus"] = list(row["visitStatus"] or [])
    row["productsPromoted"] = list(row["productsPromoted"] or [])
    return row


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "joinDate": user.join_date,
    }


def json_safe(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, Store):
        return json_safe(store_to_dict(value))
    if isinstance(value, VisitLog):
        return json_safe(visit_to_dict(value))
    return value
