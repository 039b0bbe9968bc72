import os
import sys
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATA_DIR", str(ROOT / "data"))

from labstock.core.errors import NotFoundError
from labstock.services.lab_directory import LabDirectory


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FlakyLoader:
    def __init__(self, lab_ids):
        self.lab_ids = list(lab_ids)
        self.calls = 0
        self.fail = False

    def __call__(self):
        self.calls += 1
        if self.fail:
            raise OperationalError("SELECT lab_id FROM labs", {}, Exception("database is locked"))
        return list(self.lab_ids)


def _directory(loader, clock, serve_stale=True):
    return LabDirectory(loader, ttl_seconds=300, serve_stale=serve_stale, central_store_id="central-store", clock=clock)


def test_cached_until_ttl_expires():
    loader, clock = FlakyLoader(["LAB01"]), FakeClock()
    directory = _directory(loader, clock)

    assert directory.get() == frozenset({"LAB01"})
    loader.lab_ids.append("LAB02")
    clock.now += 299
    assert directory.get() == frozenset({"LAB01"})
    assert loader.calls == 1

    clock.now += 2
    assert directory.get() == frozenset({"LAB01", "LAB02"})
    assert loader.calls == 2


def test_stale_snapshot_served_when_refresh_fails():
    loader, clock = FlakyLoader(["LAB01"]), FakeClock()
    directory = _directory(loader, clock)
    directory.get()

    loader.fail = True
    clock.now += 600

    assert directory.get() == frozenset({"LAB01"})
    assert directory.is_valid("LAB01")


def test_refresh_failure_propagates_without_snapshot_or_stale_policy():
    loader, clock = FlakyLoader(["LAB01"]), FakeClock()
    loader.fail = True
    with pytest.raises(OperationalError):
        _directory(loader, clock).get()

    loader.fail = False
    strict = _directory(loader, clock, serve_stale=False)
    strict.get()
    loader.fail = True
    strict.invalidate()
    with pytest.raises(OperationalError):
        strict.get()


def test_central_store_is_always_valid_and_unknown_labs_rejected():
    directory = _directory(FlakyLoader([]), FakeClock())

    assert directory.require("central-store") == "central-store"
    assert not directory.is_valid("")
    with pytest.raises(NotFoundError):
        directory.require("LAB99")
