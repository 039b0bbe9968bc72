"""Batch identity: which stored name a received chemical batch ends up under.

Each display name has at most one base-named batch at the central store.
Siblings with other expiry dates are suffixed ``" - A"``, ``" - B"``, ...
and the earliest expiry holds the base name. Batches without an expiry form
a single pool per (name, vendor, unit) that later intake merges into.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ..core.batch_names import SUFFIX_LETTERS, base_name, name_key, next_suffix, suffixed
from ..core.errors import SuffixExhaustedError, ValidationError
from ..crud import stock
from ..models.chemical import ChemicalBatch, ChemicalLive
from ..settings import settings

logger = logging.getLogger("labstock.naming")

MERGED = "merged"
CREATED = "created"
CREATED_SUFFIXED = "created_suffixed"
CREATED_RENAMED_SIBLINGS = "created_renamed_siblings"


@dataclass
class IntakeResolution:
    batch: ChemicalBatch
    live: ChemicalLive
    action: str
    renamed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def merged(self) -> bool:
        return self.action == MERGED


def _normalize_vendor(vendor: str | None) -> str | None:
    return (vendor or "").strip() or None


def _family(db: Session, base: str) -> list[ChemicalBatch]:
    """Every batch sharing ``base`` regardless of vendor or unit."""

    key = name_key(base)
    stmt = select(ChemicalBatch).where(
        or_(
            func.lower(ChemicalBatch.display_name) == base.lower(),
            func.lower(ChemicalBatch.name) == base.lower(),
            func.lower(ChemicalBatch.name).like(f"{base.lower()} - _"),
        )
    )
    return [batch for batch in db.execute(stmt).scalars().all() if name_key(batch.name) == key]


def find_siblings(db: Session, name: str, vendor: str | None, unit: str) -> list[ChemicalBatch]:
    base = base_name(name)
    vendor = _normalize_vendor(vendor)
    return [
        batch
        for batch in _family(db, base)
        if batch.unit == unit and _normalize_vendor(batch.vendor) == vendor
    ]


def allocate_suffix(db: Session, base: str) -> str:
    letter = next_suffix(batch.name for batch in _family(db, base))
    if letter is None:
        raise SuffixExhaustedError(base)
    return letter


def _live_defaults(batch: ChemicalBatch) -> dict:
    return {
        "name": batch.name,
        "display_name": batch.display_name,
        "name_key": name_key(batch.display_name),
        "unit": batch.unit,
        "expiry_date": batch.expiry_date,
    }


def _create_batch(
    db: Session,
    *,
    name: str,
    display_name: str,
    vendor: str | None,
    unit: str,
    expiry: date | None,
    quantity: float,
    batch_code: str | None,
    price_per_unit: float | None,
    department: str | None,
) -> tuple[ChemicalBatch, ChemicalLive]:
    batch = ChemicalBatch(
        name=name,
        display_name=display_name,
        vendor=vendor,
        unit=unit,
        expiry_date=expiry,
        batch_code=batch_code,
        quantity=quantity,
        price_per_unit=price_per_unit,
        department=department,
    )
    db.add(batch)
    db.commit()
    db.refresh(batch)
    live, _ = stock.increment_or_create(db, batch.id, settings.CENTRAL_STORE_ID, quantity, _live_defaults(batch))
    return batch, live


def _merge_into(
    db: Session,
    batch: ChemicalBatch,
    quantity: float,
    *,
    price_per_unit: float | None,
    department: str | None,
) -> tuple[ChemicalLive, bool]:
    db.execute(
        update(ChemicalBatch)
        .where(ChemicalBatch.id == batch.id)
        .values(quantity=ChemicalBatch.quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    if price_per_unit is not None:
        batch.price_per_unit = price_per_unit
    if department:
        batch.department = department
    db.commit()
    db.refresh(batch)
    return stock.increment_or_create(db, batch.id, settings.CENTRAL_STORE_ID, quantity, _live_defaults(batch))


def _rename_batch(db: Session, batch: ChemicalBatch, new_name: str) -> None:
    batch.name = new_name
    central = stock.find_live_for_batch(db, batch.id, settings.CENTRAL_STORE_ID)
    if central is not None:
        central.name = new_name
    db.commit()


def resolve_on_intake(
    db: Session,
    *,
    name: str,
    unit: str,
    quantity: float,
    vendor: str | None = None,
    expiry: date | None = None,
    batch_code: str | None = None,
    price_per_unit: float | None = None,
    department: str | None = None,
) -> IntakeResolution:
    """Merge ``quantity`` into an existing batch or create a new one.

    * No expiry: merge into the unique no-expiry batch for (name, vendor,
      unit), otherwise create a base-named no-expiry batch.
    * Same expiry as an existing sibling: merge into it.
    * Otherwise the earlier expiry holds the base name. A new batch that
      expires later than some sibling gets the next free suffix; one that
      expires first takes the base name and every existing sibling is renamed
      to the next free suffix.
    """

    display = base_name(name)
    if not display:
        raise ValidationError("Chemical name is required")
    if not unit:
        raise ValidationError("Unit is required", details={"name": display})
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be positive", details={"name": display, "quantity": quantity})
    vendor = _normalize_vendor(vendor)
    create_kwargs = {
        "display_name": display,
        "vendor": vendor,
        "unit": unit,
        "expiry": expiry,
        "quantity": quantity,
        "batch_code": batch_code,
        "price_per_unit": price_per_unit,
        "department": department,
    }

    siblings = find_siblings(db, display, vendor, unit)
    match = next((batch for batch in siblings if batch.expiry_date == expiry), None)
    if match is not None:
        live, recreated = _merge_into(db, match, quantity, price_per_unit=price_per_unit, department=department)
        if recreated:
            # the emptied row was dropped and its siblings reindexed without it
            reindex(db, display)
            db.refresh(live)
            db.refresh(match)
        logger.info(
            "naming.merged",
            extra={"extra_data": {"batch_id": match.id, "name": match.name, "quantity": quantity}},
        )
        return IntakeResolution(batch=match, live=live, action=MERGED)

    if expiry is None or not siblings:
        batch, live = _create_batch(db, name=display, **create_kwargs)
        return IntakeResolution(batch=batch, live=live, action=CREATED)

    if any(batch.expiry_date is not None and batch.expiry_date < expiry for batch in siblings):
        letter = allocate_suffix(db, display)
        batch, live = _create_batch(db, name=suffixed(display, letter), **create_kwargs)
        logger.info(
            "naming.suffixed",
            extra={"extra_data": {"batch_id": batch.id, "name": batch.name, "expiry": str(expiry)}},
        )
        return IntakeResolution(batch=batch, live=live, action=CREATED_SUFFIXED)

    letter = allocate_suffix(db, display)
    renamed_to = suffixed(display, letter)
    renamed: list[tuple[str, str]] = []
    for sibling in siblings:
        renamed.append((sibling.name, renamed_to))
        _rename_batch(db, sibling, renamed_to)
    batch, live = _create_batch(db, name=display, **create_kwargs)
    logger.info(
        "naming.siblings_renamed",
        extra={"extra_data": {"batch_id": batch.id, "renamed": [old for old, _ in renamed], "suffix": letter}},
    )
    return IntakeResolution(batch=batch, live=live, action=CREATED_RENAMED_SIBLINGS, renamed=renamed)


def reindex(db: Session, display_name: str, lab_id: str | None = None) -> list[ChemicalLive]:
    """Rename the in-stock batches of ``display_name`` by expiry order.

    The earliest expiry takes the base name, the rest get ``- A``, ``- B``
    and so on. Batches without an expiry sort last.
    """

    lab_id = lab_id or settings.CENTRAL_STORE_ID
    rows = stock.find_central_batches(db, display_name, lab_id=lab_id)
    if not rows:
        return []
    base = base_name(rows[0].display_name)
    if len(rows) - 1 > len(SUFFIX_LETTERS):
        raise SuffixExhaustedError(base)
    for index, row in enumerate(rows):
        target = base if index == 0 else suffixed(base, SUFFIX_LETTERS[index - 1])
        if row.name != target:
            stock.rename_live(db, row, target)
    logger.info(
        "naming.reindexed",
        extra={"extra_data": {"display_name": base, "lab_id": lab_id, "count": len(rows)}},
    )
    return rows
