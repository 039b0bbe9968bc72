"""Time-bounded cache of the active lab ids.

Lab ids change rarely but are checked on every intake and allocation, so
they are read from the database at most once per TTL. When a refresh fails
the previous snapshot keeps being served if ``serve_stale`` is enabled.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError

from ..core.errors import NotFoundError
from ..settings import settings

logger = logging.getLogger("labstock.labs")

LabLoader = Callable[[], Iterable[str]]


def load_active_lab_ids() -> list[str]:
    from ..crud.labs import list_labs
    from ..db.session import SessionLocal

    db = SessionLocal()
    try:
        return [lab.lab_id for lab in list_labs(db)]
    finally:
        db.close()


class LabDirectory:
    def __init__(
        self,
        loader: LabLoader = load_active_lab_ids,
        *,
        ttl_seconds: float | None = None,
        serve_stale: bool | None = None,
        central_store_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self.ttl_seconds = settings.LAB_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.serve_stale = settings.LAB_CACHE_SERVE_STALE if serve_stale is None else serve_stale
        self.central_store_id = central_store_id or settings.CENTRAL_STORE_ID
        self._clock = clock
        self._lock = threading.Lock()
        self._lab_ids: frozenset[str] | None = None
        self._loaded_at: float | None = None

    @property
    def is_fresh(self) -> bool:
        if self._lab_ids is None or self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self.ttl_seconds

    def get(self) -> frozenset[str]:
        """Return the cached lab ids, refreshing them once the TTL has passed."""

        if self.is_fresh:
            return self._lab_ids  # type: ignore[return-value]
        return self.refresh()

    def refresh(self) -> frozenset[str]:
        with self._lock:
            try:
                lab_ids = frozenset(str(lab_id) for lab_id in self._loader())
            except (SQLAlchemyError, OSError) as exc:
                if self._lab_ids is not None and self.serve_stale:
                    logger.warning(
                        "labs.cache_stale",
                        extra={"extra_data": {"error": str(exc), "count": len(self._lab_ids)}},
                    )
                    return self._lab_ids
                logger.error("labs.cache_unavailable", extra={"extra_data": {"error": str(exc)}})
                raise
            self._lab_ids = lab_ids
            self._loaded_at = self._clock()
            logger.info("labs.cache_refreshed", extra={"extra_data": {"count": len(lab_ids)}})
            return lab_ids

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None

    def is_valid(self, lab_id: str | None) -> bool:
        if not lab_id:
            return False
        if lab_id == self.central_store_id:
            return True
        return lab_id in self.get()

    def require(self, lab_id: str | None) -> str:
        if not self.is_valid(lab_id):
            raise NotFoundError("lab", lab_id or "")
        return lab_id  # type: ignore[return-value]
