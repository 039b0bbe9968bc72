import os
import sys
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from labstock.core.errors import SuffixExhaustedError
from labstock.crud import stock
from labstock.db.session import Base, init_db
from labstock.models.chemical import ChemicalBatch, ChemicalLive
from labstock.models.ledger import LedgerEntry
from labstock.services import allocation, intake, naming, out_of_stock
from labstock.settings import settings


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


def _receive(db, name, quantity, expiry=None, vendor="Merck", unit="g"):
    return naming.resolve_on_intake(db, name=name, unit=unit, quantity=quantity, vendor=vendor, expiry=expiry)


def _central_names(db, display_name):
    return [row.name for row in stock.find_central_batches(db, display_name)]


def test_no_expiry_intake_merges_into_single_batch(db_session):
    first = _receive(db_session, "NaCl", 50)
    second = _receive(db_session, "NaCl", 50)

    assert first.action == naming.CREATED
    assert second.merged
    batches = db_session.execute(select(ChemicalBatch)).scalars().all()
    assert len(batches) == 1
    assert batches[0].quantity == pytest.approx(100)
    live = stock.find_central_batches(db_session, "NaCl")
    assert len(live) == 1
    assert live[0].quantity == pytest.approx(100)
    assert live[0].original_quantity == pytest.approx(100)


def test_same_expiry_merges(db_session):
    _receive(db_session, "Ethanol", 2, expiry=date(2027, 1, 1), unit="L")
    again = _receive(db_session, "ethanol", 3, expiry=date(2027, 1, 1), unit="L")

    assert again.merged
    assert again.batch.quantity == pytest.approx(5)


def test_merge_into_emptied_batch_restores_expiry_order(db_session):
    first = _receive(db_session, "NaCl", 5, expiry=date(2027, 1, 1))
    _receive(db_session, "NaCl", 5, expiry=date(2027, 2, 1))
    allocation.allocate_chemical_item(db_session, "LAB01", "NaCl", 5)
    # the later batch moved up to the base name once the first was emptied
    assert _central_names(db_session, "NaCl") == ["NaCl"]

    again = _receive(db_session, "NaCl", 3, expiry=date(2027, 1, 1))

    assert again.merged
    assert again.batch.id == first.batch.id
    rows = stock.find_central_batches(db_session, "NaCl")
    assert [(row.name, row.expiry_date, row.quantity) for row in rows] == [
        ("NaCl", date(2027, 1, 1), 3),
        ("NaCl - A", date(2027, 2, 1), 5),
    ]
    assert again.live.name == "NaCl"


def test_later_expiry_gets_next_suffix(db_session):
    _receive(db_session, "NaCl", 5, expiry=date(2027, 1, 1))
    later = _receive(db_session, "NaCl", 5, expiry=date(2027, 6, 1))

    assert later.action == naming.CREATED_SUFFIXED
    assert later.batch.name == "NaCl - A"
    assert later.batch.display_name == "NaCl"
    assert _central_names(db_session, "NaCl") == ["NaCl", "NaCl - A"]


def test_earlier_expiry_takes_base_name_and_renames_siblings(db_session):
    _receive(db_session, "NaCl", 5, expiry=date(2027, 6, 1))
    earlier = _receive(db_session, "NaCl", 5, expiry=date(2027, 1, 1))

    assert earlier.action == naming.CREATED_RENAMED_SIBLINGS
    assert earlier.batch.name == "NaCl"
    assert earlier.renamed == [("NaCl", "NaCl - A")]
    rows = stock.find_central_batches(db_session, "NaCl")
    assert [(row.name, row.expiry_date) for row in rows] == [
        ("NaCl", date(2027, 1, 1)),
        ("NaCl - A", date(2027, 6, 1)),
    ]


def test_different_vendor_is_not_merged(db_session):
    _receive(db_session, "NaCl", 5, vendor="Merck")
    other = _receive(db_session, "NaCl", 5, vendor="Sigma")

    assert other.action == naming.CREATED
    assert len(db_session.execute(select(ChemicalBatch)).scalars().all()) == 2


def test_suffix_exhaustion_is_rejected(db_session):
    _receive(db_session, "KCl", 1, expiry=date(2027, 1, 1))
    for offset in range(26):
        _receive(db_session, "KCl", 1, expiry=date(2027, 2, 1 + offset))

    with pytest.raises(SuffixExhaustedError):
        _receive(db_session, "KCl", 1, expiry=date(2028, 1, 1))


def test_reindex_orders_by_expiry_with_undated_last(db_session):
    _receive(db_session, "NaCl", 5)
    _receive(db_session, "NaCl", 5, expiry=date(2027, 3, 1))
    _receive(db_session, "NaCl", 5, expiry=date(2027, 1, 1))

    rows = naming.reindex(db_session, "NaCl")

    assert [row.name for row in rows] == ["NaCl", "NaCl - A", "NaCl - B"]
    assert [row.expiry_date for row in rows] == [date(2027, 1, 1), date(2027, 3, 1), None]
    for row in rows:
        assert row.batch.name == row.name


def test_out_of_stock_is_idempotent_and_cleared_on_restock(db_session):
    resolution = _receive(db_session, "Urea", 4)
    stock.conditional_decrement(db_session, resolution.live.id, 4)

    assert out_of_stock.on_batch_exhausted(db_session, resolution.live)
    out_of_stock.mark_out_of_stock(db_session, "Urea", "g")
    out_of_stock.mark_out_of_stock(db_session, "Urea", "g")
    assert [entry.display_name for entry in out_of_stock.list_out_of_stock(db_session)] == ["Urea"]
    assert db_session.execute(select(ChemicalLive)).scalars().all() == []

    assert out_of_stock.on_restock(db_session, "Urea")
    assert not out_of_stock.on_restock(db_session, "Urea")
    assert out_of_stock.list_out_of_stock(db_session) == []


def test_out_of_stock_entry_is_recorded_before_the_row_is_dropped(db_session, monkeypatch):
    resolution = _receive(db_session, "Urea", 4)
    stock.conditional_decrement(db_session, resolution.live.id, 4)

    def failing_delete(db, row):
        raise RuntimeError("delete failed")

    monkeypatch.setattr(stock, "delete_live", failing_delete)

    with pytest.raises(RuntimeError):
        out_of_stock.on_batch_exhausted(db_session, resolution.live)

    db_session.rollback()
    assert [entry.display_name for entry in out_of_stock.list_out_of_stock(db_session)] == ["Urea"]
    assert db_session.get(ChemicalLive, resolution.live.id) is not None


def test_chemical_intake_reports_bad_entries_and_clears_out_of_stock(db_session):
    out_of_stock.mark_out_of_stock(db_session, "Glucose", "g")

    result = intake.add_chemical_intake(
        db_session,
        [
            {"name": "Glucose", "quantity": 10, "unit": "g", "expiry_date": "2027-05-01"},
            {"name": "", "quantity": 1, "unit": "g"},
            {"name": "Agar", "quantity": 3, "unit": "g", "expiry_date": "not-a-date"},
        ],
        batch_code="BATCH-TEST-001",
        actor="tester",
    )

    assert result.batch_code == "BATCH-TEST-001"
    assert [resolution.batch.name for resolution in result.resolutions] == ["Glucose", "Agar"]
    assert result.resolutions[1].batch.expiry_date is None
    assert len(result.errors) == 1 and result.errors[0].index == 1
    assert out_of_stock.get_entry(db_session, "Glucose") is None
    entries = db_session.execute(select(LedgerEntry)).scalars().all()
    assert {entry.resource_name for entry in entries} == {"Glucose", "Agar"}
    assert all(entry.to_location == settings.CENTRAL_STORE_ID for entry in entries)


def test_previous_batch_code_is_reused(db_session):
    intake.add_chemical_intake(db_session, [{"name": "NaCl", "quantity": 1, "unit": "g"}], batch_code="BATCH-1")
    result = intake.add_chemical_intake(
        db_session, [{"name": "KCl", "quantity": 1, "unit": "g"}], use_previous_batch_code=True
    )
    assert result.batch_code == "BATCH-1"
