from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

StoreCategory = Literal["vet", "pet_store", "grooming", "breeding", "other"]
Species = Literal["cat_only", "dog_only", "majority_dog", "majority_cat", "50_50", "others"]
PaymentTerms = Literal["consignment", "advanced_payment", "30_days", "60_days", "90_days", "others"]
VisitType = Literal["initial", "first_visit", "follow_up", "revisit"]
VisitStatus = Literal[
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
]
PotentialLevel = Literal["high", "medium", "low", "na"]
UserRole = Literal["sales", "management", "admin"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StorePayload(CamelModel):
    name: str = ""
    category: StoreCategory = "pet_store"
    other_category_name: Optional[str] = None
    region: str = ""
    area: str = ""
    state: str = ""
    address: str = ""
    city: str = ""
    zip_code: str = ""
    phone: str = ""
    email: str = ""
    pic_info: str = ""
    salesperson: str = ""
    species: Optional[Species] = None
    other_species: Optional[str] = None
    payment_terms: Optional[PaymentTerms] = None
    other_payment_terms: Optional[str] = None
    is_ex_customer: bool = False


class VisitPayload(CamelModel):
    store_id: int
    date: Optional[datetime] = None
    visit_type: VisitType = "first_visit"
    visit_status: List[VisitStatus] = Field(default_factory=list)
    potential_level: PotentialLevel = "medium"
    notes: str = ""
    next_steps: str = ""
    products_promoted: List[str] = Field(default_factory=list)
    account_opened_date: Optional[datetime] = None


class UserCreate(CamelModel):
    name: str
    email: str
    password: str
    role: UserRole = "sales"


class UserUpdate(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None


class PasswordReset(CamelModel):
    new_password: str = "temp123"


class LoginPayload(CamelModel):
    email: str
    password: str


class RegistryValue(CamelModel):
    value: str


class RegistryValues(CamelModel):
    values: List[str]


class IdSelection(CamelModel):
    ids: List[int] = Field(default_factory=list)
