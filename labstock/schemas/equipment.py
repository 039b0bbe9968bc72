from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..core.stock_types import UNIT_ASSIGNED, UNIT_ISSUED


class EquipmentUnitIn(BaseModel):
    item_id: str = Field(..., min_length=1)
    product_name: str = Field(..., min_length=1)
    variant: Optional[str] = None
    batch_code: Optional[str] = None
    vendor: Optional[str] = None
    unit: Optional[str] = None
    price_per_unit: Optional[float] = Field(default=None, ge=0)


class EquipmentRegisterRequest(BaseModel):
    units: list[EquipmentUnitIn] = Field(..., min_length=1)
    lab_id: Optional[str] = None


class EquipmentUnitOut(BaseModel):
    id: int
    item_id: str
    product_name: str
    variant: Optional[str]
    status: str
    lab_id: str
    location: Optional[str]
    assigned_to: Optional[str]

    class Config:
        from_attributes = True


class EquipmentRegisterResponse(BaseModel):
    created: list[EquipmentUnitOut]
    errors: list[dict] = Field(default_factory=list)


class EquipmentAllocationGroup(BaseModel):
    name: str = Field(..., min_length=1)
    variant: Optional[str] = None
    item_ids: list[str] = Field(..., min_length=1)


class EquipmentAllocationRequest(BaseModel):
    from_lab_id: Optional[str] = None
    to_lab_id: Optional[str] = None
    assigned_to: Optional[str] = None
    allocations: list[EquipmentAllocationGroup] = Field(..., min_length=1)

    @property
    def target_status(self) -> str:
        return UNIT_ASSIGNED if self.to_lab_id else UNIT_ISSUED


class UnitResultOut(BaseModel):
    item_id: str
    status: str
    message: Optional[str] = None


class EquipmentGroupOut(BaseModel):
    name: str
    variant: Optional[str]
    status: str
    units: list[UnitResultOut]
    allocated_ids: list[str]


class EquipmentAllocationResponse(BaseModel):
    success: bool
    results: list[EquipmentGroupOut]


class EquipmentReturnRequest(BaseModel):
    item_ids: list[str] = Field(..., min_length=1)


class EquipmentReturnResponse(BaseModel):
    success: bool
    results: list[UnitResultOut]
