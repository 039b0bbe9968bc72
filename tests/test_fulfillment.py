import os
import sys
from datetime import date
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from labstock.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    OverrideNotNeededError,
    PermissionDeniedError,
    ValidationError,
)
from labstock.core.stock_types import (
    REQUEST_APPROVED,
    REQUEST_COMPLETED,
    REQUEST_FULFILLED,
    REQUEST_PARTIALLY_FULFILLED,
    REQUEST_PENDING,
    UNIT_ASSIGNED,
)
from labstock.crud import stock
from labstock.db.session import Base, init_db
from labstock.services import dategate, fulfillment, intake, naming
from labstock.services.lab_directory import LabDirectory
from labstock.settings import settings

LAB = "LAB01"
FACULTY = "dr-rao"
TODAY = date(2027, 3, 1)
EXP_DATE = date(2027, 3, 10)
PAST_DATE = date(2027, 2, 1)


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "ALLOCATION_RETRY_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(settings, "ADMIN_GRACE_DAYS", 2)


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    init_db(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def labs():
    return LabDirectory(lambda: [LAB], ttl_seconds=300, serve_stale=True, central_store_id=settings.CENTRAL_STORE_ID)


def _chemical(name, quantity):
    return {"kind": "chemical", "name": name, "quantity": quantity, "unit": "g"}


def _submit(db, labs, *experiments):
    return fulfillment.submit_request(
        db, faculty_id=FACULTY, lab_id=LAB, experiments=list(experiments), actor=FACULTY, lab_directory=labs
    )


def _approved(db, labs, *experiments):
    request = _submit(db, labs, *experiments)
    return fulfillment.approve_request(db, request.id, "admin")


def _stock(db, name, quantity):
    naming.resolve_on_intake(db, name=name, unit="g", quantity=quantity)


def _items(request):
    return {item.name: item for item in request.iter_items()}


def test_lifecycle_transitions_are_guarded(db_session, labs):
    request = _submit(db_session, labs, {"name": "Titration", "date": EXP_DATE, "items": [_chemical("NaCl", 1)]})
    assert request.status == REQUEST_PENDING

    with pytest.raises(InvalidTransitionError):
        fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)

    approved = fulfillment.approve_request(db_session, request.id, "admin", "looks fine")
    assert approved.status == REQUEST_APPROVED
    assert [(a.action, a.reason) for a in approved.approvals] == [(REQUEST_APPROVED, "looks fine")]

    with pytest.raises(InvalidTransitionError):
        fulfillment.reject_request(db_session, request.id, "admin")
    with pytest.raises(InvalidTransitionError):
        fulfillment.complete_request(db_session, request.id, "admin")


def test_rejected_request_is_terminal(db_session, labs):
    request = _submit(db_session, labs, {"name": "Titration", "date": EXP_DATE, "items": [_chemical("NaCl", 1)]})
    rejected = fulfillment.reject_request(db_session, request.id, "admin", "no budget")

    with pytest.raises(InvalidTransitionError):
        fulfillment.approve_request(db_session, rejected.id, "admin")


def test_submit_validates_lab_and_items(db_session, labs):
    with pytest.raises(NotFoundError):
        fulfillment.submit_request(
            db_session,
            faculty_id=FACULTY,
            lab_id="LAB99",
            experiments=[{"name": "X", "date": EXP_DATE, "items": [_chemical("NaCl", 1)]}],
            lab_directory=labs,
        )
    with pytest.raises(ValidationError):
        _submit(db_session, labs, {"name": "Empty", "date": EXP_DATE, "items": []})


def test_recompute_status_is_a_pure_function_of_item_flags():
    def fake(status, *flags, disabled=()):
        items = [SimpleNamespace(is_allocated=flag, is_disabled=index in disabled) for index, flag in enumerate(flags)]
        return SimpleNamespace(status=status, iter_items=lambda: iter(items))

    assert fulfillment.recompute_status(fake(REQUEST_APPROVED, True, True)) == REQUEST_FULFILLED
    assert fulfillment.recompute_status(fake(REQUEST_APPROVED, True, False)) == REQUEST_PARTIALLY_FULFILLED
    assert fulfillment.recompute_status(fake(REQUEST_APPROVED, False, False)) == REQUEST_APPROVED
    assert fulfillment.recompute_status(fake(REQUEST_PARTIALLY_FULFILLED, False)) == REQUEST_PARTIALLY_FULFILLED
    # disabled items never hold a request open, but something must have been handed out
    assert fulfillment.recompute_status(fake(REQUEST_PARTIALLY_FULFILLED, True, False, disabled={1})) == REQUEST_FULFILLED
    assert fulfillment.recompute_status(fake(REQUEST_APPROVED, False, False, disabled={0, 1})) == REQUEST_APPROVED


def test_unified_allocation_covers_every_kind(db_session, labs):
    _stock(db_session, "NaCl", 10)
    (beakers,) = intake.add_glassware(db_session, [{"name": "Beaker", "variant": "250ml", "quantity": 10}])
    intake.register_equipment_units(
        db_session,
        [{"item_id": "MIC-1", "product_name": "Microscope"}, {"item_id": "MIC-2", "product_name": "Microscope"}],
    )
    request = _approved(
        db_session,
        labs,
        {
            "name": "Titration",
            "date": EXP_DATE,
            "items": [
                _chemical("NaCl", 3),
                {"kind": "glassware", "glassware_id": beakers.id, "quantity": 2},
                {"kind": "equipment", "name": "Microscope", "quantity": 2, "item_ids": ["MIC-1", "MIC-2"]},
            ],
        },
    )

    result = fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)

    assert result.errors == []
    assert result.status == REQUEST_FULFILLED
    assert result.outcome == fulfillment.OUTCOME_FULL
    items = _items(request)
    assert set(items) == {"NaCl", "Beaker", "Microscope"}
    assert all(item.is_allocated for item in items.values())
    assert [entry.unit_ids for entry in items["Microscope"].history] == [["MIC-1", "MIC-2"]]
    assert stock.find_central_batches(db_session, "NaCl")[0].quantity == pytest.approx(7)
    assert stock.get_glassware(db_session, beakers.id).quantity == pytest.approx(8)
    unit = stock.find_unit(db_session, "MIC-2")
    assert (unit.status, unit.lab_id, unit.assigned_to) == (UNIT_ASSIGNED, LAB, FACULTY)

    completed = fulfillment.complete_request(db_session, request.id, "admin")
    assert completed.status == REQUEST_COMPLETED


def test_partial_allocation_then_fulfil_remaining(db_session, labs):
    _stock(db_session, "NaCl", 10)
    _stock(db_session, "KCl", 1)
    request = _approved(
        db_session,
        labs,
        {"name": "Buffers", "date": EXP_DATE, "items": [_chemical("NaCl", 3), _chemical("KCl", 5)]},
    )

    first = fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)

    assert first.status == REQUEST_PARTIALLY_FULFILLED
    assert first.outcome == fulfillment.OUTCOME_PARTIAL
    assert [(issue.category, issue.name, issue.code) for issue in first.errors] == [
        ("chemical", "KCl", "insufficient_stock")
    ]
    assert stock.find_central_batches(db_session, "KCl")[0].quantity == pytest.approx(1)

    with pytest.raises(InvalidTransitionError):
        fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)

    _stock(db_session, "KCl", 10)
    second = fulfillment.fulfill_remaining(db_session, request.id, actor="tech", today=TODAY)

    assert second.errors == []
    assert second.status == REQUEST_FULFILLED
    # only the outstanding item is allocated on the second pass
    assert [result.name for result in second.chemicals] == ["KCl"]
    with pytest.raises(InvalidTransitionError):
        fulfillment.fulfill_remaining(db_session, request.id, actor="tech", today=TODAY)


def test_date_gated_experiment_is_skipped(db_session, labs):
    _stock(db_session, "NaCl", 10)
    request = _approved(
        db_session,
        labs,
        {"name": "Old", "date": PAST_DATE, "items": [_chemical("NaCl", 1)]},
        {"name": "Upcoming", "date": EXP_DATE, "items": [_chemical("NaCl", 2)]},
    )

    result = fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)

    assert [(issue.category, issue.code) for issue in result.errors] == [
        ("date", dategate.REASON_EXPIRED_COMPLETELY)
    ]
    assert result.status == REQUEST_PARTIALLY_FULFILLED
    old, upcoming = request.experiments
    assert not old.items[0].is_allocated
    assert upcoming.items[0].is_allocated
    assert old.allocation_reason_type == dategate.REASON_EXPIRED_COMPLETELY


def test_admin_override_reopens_expired_experiment(db_session, labs):
    _stock(db_session, "NaCl", 10)
    request = _approved(db_session, labs, {"name": "Old", "date": PAST_DATE, "items": [_chemical("NaCl", 1)]})
    experiment_id = request.experiments[0].id

    with pytest.raises(PermissionDeniedError):
        fulfillment.set_admin_override(
            db_session, request.id, experiment_id, actor="tech", is_admin=False, enable=True, reason="late", today=TODAY
        )
    with pytest.raises(ValidationError):
        fulfillment.set_admin_override(
            db_session, request.id, experiment_id, actor="admin", is_admin=True, enable=True, today=TODAY
        )
    with pytest.raises(OverrideNotNeededError):
        fulfillment.set_admin_override(
            db_session, request.id, experiment_id, actor="admin", is_admin=True, enable=True, reason="late",
            today=date(2027, 2, 2),
        )

    experiment = fulfillment.set_admin_override(
        db_session, request.id, experiment_id, actor="admin", is_admin=True, enable=True, reason="late", today=TODAY
    )
    assert experiment.admin_override and experiment.override_by == "admin"

    blocked = fulfillment.allocate_unified(db_session, request.id, actor="tech", is_admin=False, today=TODAY)
    assert blocked.outcome == fulfillment.OUTCOME_NONE
    allowed = fulfillment.allocate_unified(db_session, request.id, actor="admin", is_admin=True, today=TODAY)
    assert allowed.status == REQUEST_FULFILLED

    cleared = fulfillment.set_admin_override(
        db_session, request.id, experiment_id, actor="admin", is_admin=True, enable=False, today=TODAY
    )
    assert not cleared.admin_override and cleared.override_reason is None


def test_disabled_items_are_skipped_and_can_be_reenabled(db_session, labs):
    _stock(db_session, "NaCl", 10)
    _stock(db_session, "KCl", 10)
    request = _approved(
        db_session,
        labs,
        {
            "name": "Buffers",
            "date": EXP_DATE,
            "items": [_chemical("NaCl", 1), _chemical("KCl", 2), _chemical("MgSO4", 5)],
        },
    )
    experiment = request.experiments[0]
    nacl, kcl, _ = experiment.items

    outcome = fulfillment.set_item_disabled(
        db_session,
        request.id,
        [{"experiment_id": experiment.id, "item_id": kcl.id, "is_disabled": True}],
        actor="tech",
        today=TODAY,
    )
    assert outcome.errors == []
    assert kcl.disabled_reason == "No reason provided"

    result = fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)
    assert result.status == REQUEST_PARTIALLY_FULFILLED
    assert [r.name for r in result.chemicals] == ["NaCl", "MgSO4"]

    outcome = fulfillment.set_item_disabled(
        db_session,
        request.id,
        [
            {"experiment_id": experiment.id, "item_id": nacl.id, "is_disabled": True, "reason": "oops"},
            {"experiment_id": experiment.id, "item_id": kcl.id, "is_disabled": False},
            {"experiment_id": experiment.id, "item_id": 999, "is_disabled": False},
        ],
        actor="tech",
        today=TODAY,
    )
    assert len(outcome.processed) == 1
    assert len(outcome.errors) == 2
    assert kcl.was_disabled and not kcl.is_disabled and kcl.disabled_reason is None
    assert nacl.is_allocated and not nacl.is_disabled

    _stock(db_session, "MgSO4", 10)
    final = fulfillment.fulfill_remaining(db_session, request.id, actor="tech", today=TODAY)
    assert final.status == REQUEST_FULFILLED
    assert sorted(r.name for r in final.chemicals) == ["KCl", "MgSO4"]


def test_disabling_the_last_outstanding_item_fulfils_the_request(db_session, labs):
    _stock(db_session, "NaCl", 10)
    request = _approved(
        db_session,
        labs,
        {"name": "Buffers", "date": EXP_DATE, "items": [_chemical("NaCl", 3), _chemical("KCl", 5)]},
    )
    experiment = request.experiments[0]
    _, kcl = experiment.items

    first = fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)
    assert first.status == REQUEST_PARTIALLY_FULFILLED

    fulfillment.set_item_disabled(
        db_session,
        request.id,
        [{"experiment_id": experiment.id, "item_id": kcl.id, "is_disabled": True, "reason": "out of budget"}],
        actor="tech",
        today=TODAY,
    )
    assert request.status == REQUEST_FULFILLED
    assert fulfillment.allocation_outcome(request) == fulfillment.OUTCOME_FULL

    completed = fulfillment.complete_request(db_session, request.id, "admin")
    assert completed.status == REQUEST_COMPLETED
    with pytest.raises(ValidationError):
        fulfillment.set_item_disabled(
            db_session,
            request.id,
            [{"experiment_id": experiment.id, "item_id": kcl.id, "is_disabled": False}],
            actor="tech",
            today=TODAY,
        )


def test_unexpected_failure_is_confined_to_its_item(db_session, labs, monkeypatch):
    _stock(db_session, "NaCl", 10)
    (beakers,) = intake.add_glassware(db_session, [{"name": "Beaker", "variant": "250ml", "quantity": 10}])
    request = _approved(
        db_session,
        labs,
        {
            "name": "Titration",
            "date": EXP_DATE,
            "items": [{"kind": "glassware", "glassware_id": beakers.id, "quantity": 2}, _chemical("NaCl", 3)],
        },
    )

    def broken_decrement(db, stock_id, amount):
        raise OperationalError("UPDATE glassware_stock", {}, Exception("disk I/O error"))

    monkeypatch.setattr(stock, "conditional_decrement_glassware", broken_decrement)

    result = fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)

    assert [(issue.category, issue.name, issue.code) for issue in result.errors] == [
        ("glassware", "Beaker", "allocation_error")
    ]
    assert result.status == REQUEST_PARTIALLY_FULFILLED
    items = _items(request)
    assert items["NaCl"].is_allocated
    assert not items["Beaker"].is_allocated
    assert stock.get_glassware(db_session, beakers.id).quantity == pytest.approx(10)
    assert stock.find_central_batches(db_session, "NaCl")[0].quantity == pytest.approx(7)


def test_admin_edits_follow_edit_permissions(db_session, labs):
    _stock(db_session, "NaCl", 10)
    request = _approved(
        db_session,
        labs,
        {"name": "Buffers", "date": EXP_DATE, "items": [_chemical("NaCl", 3), _chemical("KCl", 5)]},
    )
    fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)
    experiment = request.experiments[0]
    nacl, kcl = experiment.items

    with pytest.raises(PermissionDeniedError):
        fulfillment.admin_edit_items(db_session, request.id, [], actor="tech", is_admin=False, today=TODAY)

    outcome = fulfillment.admin_edit_items(
        db_session,
        request.id,
        [
            {"experiment_id": experiment.id, "item_id": nacl.id, "new_quantity": 2},
            {"experiment_id": experiment.id, "item_id": nacl.id, "new_quantity": 20},
            {"experiment_id": experiment.id, "item_id": nacl.id, "new_quantity": 5},
            {"experiment_id": experiment.id, "item_id": kcl.id, "new_quantity": 1},
            {"experiment_id": experiment.id, "item_id": kcl.id, "disable_item": True},
        ],
        actor="admin",
        is_admin=True,
        today=TODAY,
    )

    assert len(outcome.processed) == 2
    assert len(outcome.errors) == 3
    assert (nacl.quantity, nacl.original_quantity, nacl.is_allocated) == (5, 3, False)
    assert (kcl.quantity, kcl.original_quantity) == (1, 5)

    _stock(db_session, "KCl", 1)
    result = fulfillment.fulfill_remaining(db_session, request.id, actor="tech", today=TODAY)
    assert result.status == REQUEST_FULFILLED
    assert nacl.allocated_quantity == pytest.approx(5)
    assert stock.find_central_batches(db_session, "NaCl")[0].quantity == pytest.approx(5)


def test_equipment_needs_selected_units(db_session, labs):
    intake.register_equipment_units(db_session, [{"item_id": "MIC-9", "product_name": "Microscope"}])
    request = _approved(
        db_session, labs, {"name": "Imaging", "date": EXP_DATE, "items": [{"kind": "equipment", "name": "Microscope", "quantity": 1}]}
    )
    item_id = request.experiments[0].items[0].id

    empty = fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)
    assert [issue.category for issue in empty.errors] == ["equipment"]
    assert empty.status == REQUEST_APPROVED

    chosen = fulfillment.allocate_unified(
        db_session, request.id, actor="tech", equipment_unit_ids={str(item_id): ["MIC-9"]}, today=TODAY
    )
    assert chosen.status == REQUEST_FULFILLED
    assert chosen.equipment[0].allocated_ids == ["MIC-9"]


def test_overview_and_edit_permissions(db_session, labs):
    _stock(db_session, "NaCl", 10)
    request = _approved(
        db_session, labs, {"name": "Buffers", "date": EXP_DATE, "items": [_chemical("NaCl", 3), _chemical("KCl", 5)]}
    )
    fulfillment.allocate_unified(db_session, request.id, actor="tech", today=TODAY)

    overview = fulfillment.allocation_overview(db_session, request.id, is_admin=True, today=TODAY)
    assert overview["summary"] == {"total_items": 2, "allocated": 1, "disabled": 0, "pending": 1}
    assert overview["experiments"][0]["allocation_status"]["pending_items"] == 1
    assert [item["name"] for item in overview["experiments"][0]["items"]["chemical"]] == ["NaCl", "KCl"]

    permissions = fulfillment.edit_permissions_overview(db_session, request.id, is_admin=True, today=TODAY)
    nacl, kcl = permissions[0]["items"]
    assert nacl["permissions"]["can_increase"] and nacl["permissions"]["max_increase"] == pytest.approx(4)
    assert kcl["permissions"]["can_edit"] and not kcl["permissions"]["can_increase"]
