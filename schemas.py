"""
Database Schemas for the branch sales backend (MongoDB)

Each collection has an input model (what a client may send on create), an update model
(every field optional, only sent fields are written) and an output model (what the API
returns). Stored identifiers are exposed to clients as the string `_id`.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from database import to_utc_naive

Number = Union[int, float]


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


def changes(payload: BaseModel) -> Dict[str, Any]:
    """Fields the client actually sent with a value; everything else is left untouched."""
    return payload.model_dump(exclude_unset=True, exclude_none=True)


# Branch
class BranchIn(BaseModel):
    name: str = Field(..., min_length=1)
    address: str = ""
    phone: str = ""
    email: str = ""


class BranchUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class BranchOut(Document):
    name: str
    address: str = ""
    phone: str = ""
    email: str = ""


# Category
class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    color: str = "primary"


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    color: Optional[str] = None


class CategoryOut(Document):
    name: str
    description: str = ""
    color: str = "primary"


# Sale
class SaleItem(BaseModel):
    sku: Optional[str] = None
    name: Optional[str] = None
    quantity: Optional[Number] = None
    unitPrice: Optional[Number] = None
    cost: Optional[Number] = None


class SaleIn(BaseModel):
    branchId: str = Field(..., min_length=1)
    date: datetime
    items: List[SaleItem] = []
    total: Optional[Number] = None
    costTotal: Optional[Number] = None
    profit: Optional[Number] = None
    category: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc_naive(v)


class BranchRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    name: str


class SaleOut(Document):
    branchId: Union[BranchRef, str, None] = None
    date: datetime
    items: List[SaleItem] = []
    total: Optional[Number] = None
    costTotal: Optional[Number] = None
    profit: Optional[Number] = None
    category: Optional[str] = None


# Settings (singleton)
SETTINGS_ID = "global"

SETTINGS_DEFAULTS: Dict[str, Any] = {
    "companyName": "",
    "currency": "PKR",
    "dateFormat": "DD/MM/YYYY",
    "itemsPerPage": 10,
    "defaultCostPercent": 70,
}


class SettingsUpdate(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    companyName: Optional[str] = None
    currency: Optional[str] = None
    dateFormat: Optional[str] = None
    itemsPerPage: Optional[Number] = None
    defaultCostPercent: Optional[Number] = None

    def merge(self) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Split the update into (`$set`, `$setOnInsert`) documents.

        Sent fields overwrite stored values. Fields not sent keep whatever is stored, or
        take their default when the singleton is created by this very write.
        """
        to_set = changes(self)
        on_insert = {k: v for k, v in SETTINGS_DEFAULTS.items() if k not in to_set}
        return to_set, on_insert


class SettingsOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(SETTINGS_ID, alias="_id")
    companyName: str = ""
    currency: str = "PKR"
    dateFormat: str = "DD/MM/YYYY"
    itemsPerPage: Number = 10
    defaultCostPercent: Number = 70
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
