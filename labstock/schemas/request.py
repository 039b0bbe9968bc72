"""Request payloads. Items are a union discriminated by ``kind``."""

from __future__ import annotations

import datetime as dt
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class ChemicalItemIn(BaseModel):
    kind: Literal["chemical"]
    name: str = Field(..., min_length=1)
    quantity: float = Field(gt=0)
    unit: Optional[str] = None


class GlasswareItemIn(BaseModel):
    kind: Literal["glassware"]
    glassware_id: int
    name: Optional[str] = None
    variant: Optional[str] = None
    quantity: float = Field(gt=0)
    unit: Optional[str] = None


class EquipmentItemIn(BaseModel):
    kind: Literal["equipment"]
    name: str = Field(..., min_length=1)
    variant: Optional[str] = None
    quantity: int = Field(gt=0)
    item_ids: list[str] = Field(default_factory=list)


RequestItemIn = Annotated[Union[ChemicalItemIn, GlasswareItemIn, EquipmentItemIn], Field(discriminator="kind")]


class ExperimentIn(BaseModel):
    name: str = Field(..., min_length=1)
    date: dt.date
    items: list[RequestItemIn] = Field(..., min_length=1)


class RequestCreate(BaseModel):
    faculty_id: Optional[str] = None
    lab_id: str = Field(..., min_length=1)
    experiments: list[ExperimentIn] = Field(..., min_length=1)


class DecisionIn(BaseModel):
    reason: Optional[str] = None


class AllocateIn(BaseModel):
    equipment_unit_ids: dict[int, list[str]] = Field(default_factory=dict)


class OverrideIn(BaseModel):
    enable: bool
    reason: Optional[str] = None

    @model_validator(mode="after")
    def require_reason(self) -> "OverrideIn":
        if self.enable and not (self.reason and self.reason.strip()):
            raise ValueError("reason is required when enabling an override")
        return self


class DisabledUpdate(BaseModel):
    experiment_id: int
    item_id: int
    is_disabled: bool
    reason: Optional[str] = None


class DisabledUpdatesIn(BaseModel):
    updates: list[DisabledUpdate] = Field(..., min_length=1)


class ItemEdit(BaseModel):
    experiment_id: int
    item_id: int
    new_quantity: Optional[float] = None
    disable_item: bool = False
    disable_reason: Optional[str] = None


class ItemEditsIn(BaseModel):
    edits: list[ItemEdit] = Field(..., min_length=1)


class ApprovalOut(BaseModel):
    action: str
    actor: Optional[str]
    reason: Optional[str]
    created_at: str

    class Config:
        from_attributes = True


class RequestItemOut(BaseModel):
    id: int
    kind: str
    name: str
    variant: Optional[str] = None
    unit: Optional[str] = None
    quantity: float
    original_quantity: Optional[float] = None
    allocated_quantity: float
    is_allocated: bool
    is_disabled: bool
    disabled_reason: Optional[str] = None
    was_disabled: bool
    glassware_id: Optional[int] = None
    item_ids: Optional[list[str]] = None

    class Config:
        from_attributes = True


class ExperimentOut(BaseModel):
    id: int
    name: str
    date: dt.date
    admin_override: bool
    override_reason: Optional[str] = None
    override_by: Optional[str] = None
    allocation_reason_type: Optional[str] = None
    items: list[RequestItemOut]

    class Config:
        from_attributes = True


class RequestOut(BaseModel):
    id: int
    faculty_id: str
    lab_id: str
    status: str
    created_by: Optional[str]
    updated_by: Optional[str]
    created_at: str
    updated_at: Optional[str]
    experiments: list[ExperimentOut]
    approvals: list[ApprovalOut] = Field(default_factory=list)

    class Config:
        from_attributes = True


class EditOutcomeOut(BaseModel):
    processed: list[dict]
    errors: list[dict]
