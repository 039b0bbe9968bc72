"""Payloads for chemical intake, allocation and the expired-stock workflow."""

from __future__ import annotations

import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class ChemicalIntakeItem(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: float = Field(gt=0)
    unit: str = Field(..., min_length=1)
    vendor: Optional[str] = None
    expiry_date: Optional[str] = None
    price_per_unit: Optional[float] = Field(default=None, ge=0)
    department: Optional[str] = None


class ChemicalIntakeRequest(BaseModel):
    chemicals: list[ChemicalIntakeItem] = Field(..., min_length=1)
    batch_code: Optional[str] = None
    use_previous_batch_code: bool = False


class IntakeErrorOut(BaseModel):
    index: int
    name: Optional[str]
    code: str
    message: str


class IntakeResolutionOut(BaseModel):
    batch_id: int
    name: str
    display_name: str
    action: str
    quantity: float
    expiry_date: Optional[dt.date] = None
    renamed: list[tuple[str, str]] = Field(default_factory=list)


class ChemicalIntakeResponse(BaseModel):
    batch_code: str
    batches: list[IntakeResolutionOut]
    errors: list[IntakeErrorOut] = Field(default_factory=list)


class ChemicalAllocationItem(BaseModel):
    name: str = Field(..., min_length=1, alias="chemical_name")
    quantity: float = Field(gt=0)

    model_config = {"populate_by_name": True}


class ChemicalAllocationRequest(BaseModel):
    lab_id: str = Field(..., min_length=1)
    allocations: list[ChemicalAllocationItem] = Field(..., min_length=1)


class ItemAllocationOut(BaseModel):
    name: str
    requested: float
    status: str
    allocated_quantity: float
    attempted_quantity: float
    unit: Optional[str] = None
    expiry_date: Optional[dt.date] = None
    destination_ref: Optional[int] = None
    breakdown: list[dict] = Field(default_factory=list)
    reason: Optional[str] = None
    error_code: Optional[str] = None


class ChemicalAllocationResponse(BaseModel):
    success: bool
    results: list[ItemAllocationOut]


class ChemicalLiveOut(BaseModel):
    id: int
    batch_id: int
    lab_id: str
    name: str
    display_name: str
    unit: str
    expiry_date: Optional[dt.date]
    quantity: float
    original_quantity: float
    is_allocated: bool
    vendor: Optional[str] = None
    batch_code: Optional[str] = None

    class Config:
        from_attributes = True


class OutOfStockOut(BaseModel):
    id: int
    display_name: str
    unit: Optional[str]
    last_out_of_stock: str

    class Config:
        from_attributes = True


class ExpiredAction(BaseModel):
    action: Literal["merge", "delete", "update_expiry"]
    merge_to_id: Optional[int] = None
    new_expiry_date: Optional[dt.date] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def validate_action(self) -> "ExpiredAction":
        if self.action == "merge" and self.merge_to_id is None:
            raise ValueError("merge_to_id is required for merge")
        if self.action == "update_expiry" and self.new_expiry_date is None:
            raise ValueError("new_expiry_date is required for update_expiry")
        return self


class LedgerEntryOut(BaseModel):
    id: int
    resource_kind: str
    entry_type: str
    resource_ref: Optional[str]
    resource_name: Optional[str]
    from_location: Optional[str]
    to_location: Optional[str]
    amount: Optional[float]
    unit: Optional[str]
    performed_by: Optional[str]
    request_id: Optional[int]
    note: Optional[str]
    created_at: str

    class Config:
        from_attributes = True


class GlasswareIntakeItem(BaseModel):
    name: str = Field(..., min_length=1)
    variant: Optional[str] = None
    quantity: float = Field(gt=0)
    unit: Optional[str] = None
    condition: Optional[str] = None
    vendor: Optional[str] = None
    batch_code: Optional[str] = None


class GlasswareIntakeRequest(BaseModel):
    items: list[GlasswareIntakeItem] = Field(..., min_length=1)
    lab_id: Optional[str] = None


class GlasswareOut(BaseModel):
    id: int
    name: str
    variant: str
    lab_id: str
    quantity: float
    unit: Optional[str]
    condition: Optional[str]

    class Config:
        from_attributes = True
