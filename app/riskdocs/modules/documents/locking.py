"""
Per-lineage transaction boundary.

Every operation that moves a chain's tip, allocates reference numbers or
changes a version's status runs inside ``lineage_transaction()``. Three
layers keep two writers on the same lineage from interleaving:

- an in-process mutex per lineage (acquired with a timeout),
- ``SELECT ... FOR UPDATE NOWAIT`` on the lineage row (Postgres; a no-op on SQLite),
- the lineage ``lock_version`` counter, checked by the ORM on flush.

Contention on any layer surfaces as ``ConcurrentModification``. The block
commits on success and rolls back on any exception, so callers never see a
half-applied transition.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.riskdocs.modules.documents.errors import ConcurrentModification, DocumentNotFound
from app.riskdocs.modules.documents.models import Lineage

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0


class _LineageMutex:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


_registry_lock = threading.Lock()
# Entries live only while some thread holds or waits on the lineage.
_lineage_locks: dict[str, _LineageMutex] = {}


def _checkout(lineage_id: str) -> _LineageMutex:
    with _registry_lock:
        entry = _lineage_locks.get(lineage_id)
        if entry is None:
            entry = _lineage_locks[lineage_id] = _LineageMutex()
        entry.users += 1
        return entry


def _checkin(lineage_id: str, entry: _LineageMutex) -> None:
    with _registry_lock:
        entry.users -= 1
        if entry.users == 0:
            _lineage_locks.pop(lineage_id, None)


def _lock_timeout(timeout: float | None) -> float:
    if timeout is not None:
        return timeout
    if has_app_context():
        return float(current_app.config.get("LINEAGE_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT))
    return DEFAULT_LOCK_TIMEOUT


@contextmanager
def lineage_transaction(
    s: Session,
    lineage_id: str,
    *,
    timeout: float | None = None,
) -> Generator[Lineage, None, None]:
    entry = _checkout(lineage_id)
    if not entry.lock.acquire(timeout=_lock_timeout(timeout)):
        _checkin(lineage_id, entry)
        logger.warning("Lineage lock timeout lineage_id=%s", lineage_id)
        raise ConcurrentModification(lineage_id)
    try:
        try:
            lineage = s.execute(
                select(Lineage)
                .where(Lineage.id == lineage_id)
                .with_for_update(nowait=True)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        except OperationalError as e:
            s.rollback()
            logger.warning("Lineage row lock unavailable lineage_id=%s", lineage_id)
            raise ConcurrentModification(lineage_id, "row lock held by another transaction") from e
        if lineage is None:
            s.rollback()
            raise DocumentNotFound("Lineage", lineage_id)

        try:
            yield lineage
            # Touch the root so its lock_version moves with every guarded write.
            if lineage not in s.deleted:
                lineage.updated_at = datetime.utcnow()
            s.commit()
        except StaleDataError as e:
            s.rollback()
            logger.warning("Stale lineage write rejected lineage_id=%s", lineage_id)
            raise ConcurrentModification(lineage_id, "the chain changed while this operation ran") from e
        except IntegrityError as e:
            s.rollback()
            logger.warning("Conflicting lineage write rejected lineage_id=%s: %s", lineage_id, e.orig)
            raise ConcurrentModification(lineage_id, "a conflicting version or reference was written concurrently") from e
        except BaseException:
            s.rollback()
            raise
    finally:
        entry.lock.release()
        _checkin(lineage_id, entry)
