"""Experiment-date rules that decide who may allocate and edit, and when.

Dates are compared without a time component. Anyone may allocate up to and
including the experiment date; admins keep access for a grace window of
``ADMIN_GRACE_DAYS`` after it, after which nobody may allocate or edit.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from ..core.clock import as_date, today as _today
from ..core.errors import DateRestrictionError
from ..settings import settings

REASON_ADMIN_GRACE = "admin_grace"
REASON_ADMIN_OVERRIDE = "admin_override"
REASON_EXPIRED_ADMIN_ONLY = "date_expired_admin_only"
REASON_EXPIRED_COMPLETELY = "date_expired_completely"
REASON_ALLOCATABLE = "allocatable"
REASON_FULLY_ALLOCATED = "fully_allocated"


@dataclass
class DateDecision:
    allowed: bool
    reason: str | None = None
    days_remaining: int | None = None
    days_overdue: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExperimentAllocationStatus:
    can_allocate: bool
    reason_type: str
    reason: str | None = None
    pending_items: int = 0
    reenabled_items: int = 0
    days_remaining: int | None = None
    days_overdue: int | None = None
    admin_override: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EditPermissions:
    can_edit: bool
    can_increase: bool
    can_disable: bool
    can_enable: bool
    max_increase: float = 0.0
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / 86400)


def is_allocation_allowed(
    experiment_date: date | datetime | str,
    is_admin: bool = False,
    today: date | None = None,
) -> DateDecision:
    exp_date = as_date(experiment_date)
    if exp_date is None:
        raise ValueError("experiment_date is required")
    current = as_date(today) or _today()
    grace_end = exp_date + timedelta(days=settings.ADMIN_GRACE_DAYS)

    if current <= exp_date:
        return DateDecision(allowed=True, days_remaining=_days(exp_date - current))
    overdue = _days(current - exp_date)
    if is_admin and current <= grace_end:
        return DateDecision(allowed=True, reason=REASON_ADMIN_GRACE, days_overdue=overdue)
    reason = REASON_EXPIRED_COMPLETELY if current > grace_end else REASON_EXPIRED_ADMIN_ONLY
    return DateDecision(allowed=False, reason=reason, days_overdue=overdue)


def experiment_gate(experiment, is_admin: bool = False, today: date | None = None) -> DateDecision:
    """Apply the date rule for ``experiment``; an admin override lets admins through."""

    decision = is_allocation_allowed(experiment.date, is_admin, today)
    if experiment.admin_override and is_admin:
        decision.allowed = True
        decision.reason = REASON_ADMIN_OVERRIDE
    return decision


def require_allocation_allowed(experiment, is_admin: bool = False, today: date | None = None) -> DateDecision:
    decision = experiment_gate(experiment, is_admin, today)
    if not decision.allowed:
        exp_date = as_date(experiment.date)
        if decision.reason == REASON_EXPIRED_COMPLETELY:
            message = (
                f"Experiment date ({exp_date}) expired beyond grace period "
                f"({decision.days_overdue} days overdue)"
            )
        else:
            message = f"Experiment date ({exp_date}) expired - admin access available ({decision.days_overdue} days overdue)"
        raise DateRestrictionError(
            decision.reason or REASON_EXPIRED_COMPLETELY,
            message,
            details={
                "experiment_id": getattr(experiment, "id", None),
                "experiment_date": str(exp_date),
                "days_overdue": decision.days_overdue,
            },
        )
    return decision


def experiment_allocation_status(
    experiment,
    is_admin: bool = False,
    today: date | None = None,
) -> ExperimentAllocationStatus:
    try:
        decision = require_allocation_allowed(experiment, is_admin, today)
    except DateRestrictionError as exc:
        return ExperimentAllocationStatus(
            can_allocate=False,
            reason_type=exc.reason,
            reason=exc.message,
            days_overdue=exc.details.get("days_overdue"),
        )

    pending = [item for item in experiment.items if not item.is_allocated and not item.is_disabled]
    reenabled = [item for item in pending if item.was_disabled]
    if not pending:
        return ExperimentAllocationStatus(
            can_allocate=False,
            reason_type=REASON_FULLY_ALLOCATED,
            reason="All items are either allocated or disabled",
        )
    return ExperimentAllocationStatus(
        can_allocate=True,
        reason_type=REASON_ALLOCATABLE,
        pending_items=len(pending),
        reenabled_items=len(reenabled),
        days_remaining=decision.days_remaining,
        days_overdue=decision.days_overdue,
        admin_override=bool(experiment.admin_override),
    )


def refresh_experiment_status(experiment, is_admin: bool = False, today: date | None = None) -> ExperimentAllocationStatus:
    """Evaluate ``experiment`` and cache the reason type on it. The caller commits."""

    status = experiment_allocation_status(experiment, is_admin, today)
    experiment.allocation_reason_type = status.reason_type
    return status


def validate_bulk_allocation(experiments: Iterable, is_admin: bool = False, today: date | None = None) -> dict[str, Any]:
    """Summarize which experiments block allocation and which only warn."""

    summary: dict[str, Any] = {"valid": True, "errors": [], "warnings": [], "experiments": []}
    for experiment in experiments:
        status = experiment_allocation_status(experiment, is_admin, today)
        summary["experiments"].append({"experiment_id": experiment.id, "name": experiment.name, **status.as_dict()})
        if status.can_allocate:
            continue
        line = f'Experiment "{experiment.name}": {status.reason}'
        if status.reason_type == REASON_EXPIRED_COMPLETELY:
            summary["valid"] = False
            summary["errors"].append(line)
        else:
            summary["warnings"].append(line)
    return summary


def item_edit_permissions(
    item,
    experiment_date: date | datetime | str,
    is_admin: bool = False,
    available_inventory: float = 0,
    today: date | None = None,
) -> EditPermissions:
    decision = is_allocation_allowed(experiment_date, is_admin, today)
    if not decision.allowed and decision.reason == REASON_EXPIRED_COMPLETELY:
        return EditPermissions(
            can_edit=False,
            can_increase=False,
            can_disable=False,
            can_enable=False,
            reason="Experiment date expired beyond grace period",
        )
    allowed = decision.allowed
    return EditPermissions(
        can_edit=allowed and (not item.is_allocated or item.is_disabled),
        can_increase=allowed and item.is_allocated and available_inventory > item.quantity,
        can_disable=allowed and not item.is_allocated,
        can_enable=allowed and item.is_disabled,
        max_increase=max(0.0, float(available_inventory) - float(item.quantity)),
        reason=None if allowed else "Date expired - admin access only",
    )
