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

from labstock.core.errors import ValidationError
from labstock.core.stock_types import ENTRY_EXPIRED_DELETE, ENTRY_EXPIRED_MERGE, ENTRY_EXPIRY_UPDATE
from labstock.crud import stock
from labstock.db.session import Base, init_db
from labstock.models.chemical import ChemicalLive
from labstock.models.ledger import LedgerEntry
from labstock.services import expired, naming

TODAY = date(2027, 6, 1)


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
def batches(db_session):
    old = naming.resolve_on_intake(db_session, name="NaCl", unit="g", quantity=4, expiry=date(2027, 1, 1))
    fresh = naming.resolve_on_intake(db_session, name="NaCl", unit="g", quantity=6, expiry=date(2027, 12, 1))
    return old.live.id, fresh.live.id


def _entry_types(db):
    return [entry.entry_type for entry in db.execute(select(LedgerEntry)).scalars().all()]


def test_list_expired_uses_given_day(db_session, batches):
    old_id, _ = batches
    assert [row.id for row in expired.list_expired(db_session, today=TODAY)] == [old_id]
    assert expired.list_expired(db_session, today=date(2026, 12, 1)) == []


def test_merge_moves_quantity_and_reindexes(db_session, batches):
    old_id, fresh_id = batches

    expired.process_expired_action(db_session, old_id, expired.ACTION_MERGE, actor="admin", merge_to_id=fresh_id)

    assert db_session.get(ChemicalLive, old_id) is None
    survivor = stock.get_live(db_session, fresh_id)
    assert survivor.quantity == pytest.approx(10)
    assert survivor.name == "NaCl"
    assert _entry_types(db_session) == [ENTRY_EXPIRED_MERGE]


def test_merge_requires_a_different_target(db_session, batches):
    old_id, _ = batches
    with pytest.raises(ValidationError):
        expired.process_expired_action(db_session, old_id, expired.ACTION_MERGE, merge_to_id=old_id)


def test_delete_logs_and_removes(db_session, batches):
    old_id, fresh_id = batches

    summary = expired.process_expired_action(db_session, old_id, expired.ACTION_DELETE, reason="spoiled")

    assert summary == "Deleted expired chemical"
    assert db_session.get(ChemicalLive, old_id) is None
    assert stock.get_live(db_session, fresh_id).name == "NaCl"
    assert _entry_types(db_session) == [ENTRY_EXPIRED_DELETE]


def test_update_expiry_redates_batch_and_reorders(db_session, batches):
    old_id, fresh_id = batches

    expired.process_expired_action(
        db_session, old_id, expired.ACTION_UPDATE_EXPIRY, new_expiry_date="2028-01-01"
    )

    row = stock.get_live(db_session, old_id)
    assert row.expiry_date == date(2028, 1, 1)
    assert row.batch.expiry_date == date(2028, 1, 1)
    assert row.name == "NaCl - A"
    assert stock.get_live(db_session, fresh_id).name == "NaCl"
    assert _entry_types(db_session) == [ENTRY_EXPIRY_UPDATE]


def test_unknown_action_is_rejected(db_session, batches):
    with pytest.raises(ValidationError):
        expired.process_expired_action(db_session, batches[0], "shred")
