"""Expiring run lease - one precalculation at a time.

A crashed holder never blocks future runs for longer than the lease TTL.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import PrecalcLease, utc_now


logger = logging.getLogger(__name__)

PRECALC_LEASE = "graph_precalc"


class RunLease:
    """Conditional-update lease on a precalc_leases row."""

    def __init__(
        self,
        db: Session,
        ttl_seconds: int,
        name: str = PRECALC_LEASE,
        holder: Optional[str] = None,
    ):
        self.db = db
        self.ttl = timedelta(seconds=ttl_seconds)
        self.name = name
        self.holder = holder or uuid.uuid4().hex
        self.held = False

    def _claim(self) -> bool:
        now = utc_now()
        result = self.db.execute(
            update(PrecalcLease)
            .where(
                PrecalcLease.name == self.name,
                or_(PrecalcLease.expires_at < now, PrecalcLease.holder == self.holder),
            )
            .values(holder=self.holder, acquired_at=now, expires_at=now + self.ttl)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def acquire(self) -> bool:
        """Take the lease if it is free, expired or already ours. Never waits."""
        if self._claim():
            self.db.commit()
            self.held = True
            return True

        if self.db.get(PrecalcLease, self.name) is not None:
            self.db.rollback()
            logger.info(f"Lease {self.name} is held by another run")
            return False

        now = utc_now()
        self.db.add(PrecalcLease(
            name=self.name, holder=self.holder, acquired_at=now, expires_at=now + self.ttl
        ))
        try:
            self.db.commit()
        except IntegrityError:
            # Another process created the row first
            self.db.rollback()
            logger.info(f"Lease {self.name} was taken concurrently")
            return False
        self.held = True
        return True

    def renew(self) -> bool:
        """Extend the lease; False means it was lost (expired and taken over)."""
        if not self.held:
            return False
        if self._claim():
            self.db.commit()
            return True
        self.db.rollback()
        self.held = False
        logger.warning(f"Lost lease {self.name}")
        return False

    def release(self) -> None:
        if not self.held:
            return
        self.db.rollback()
        self.db.execute(
            delete(PrecalcLease)
            .where(PrecalcLease.name == self.name, PrecalcLease.holder == self.holder)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.held = False
