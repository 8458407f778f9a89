"""
License persistence.

Two interchangeable backends behind one interface:
  - SqlLicenseStore: SQLAlchemy over SQLite (WAL) or PostgreSQL
  - MemoryLicenseStore: plain dicts under a lock, for tests and throwaway runs

Every mutating call is a single conditional statement (or a single critical
section in memory), so concurrent requests need no extra coordination.
"""
import abc
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import and_, case, delete, or_, select, text, update
from sqlalchemy.dialects import postgresql, sqlite

from license_server.db import Base, make_engine, make_session_factory, utcnow
from license_server.models import (
    ACTIVE, DEACTIVATED, EXPIRED, PENDING, License, LicenseRecord,
)
from license_server.security import normalize_key

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _blank(value) -> bool:
    return value is None or value == ""


class LicenseStore(abc.ABC):
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    @abc.abstractmethod
    def upsert_pending(self, email, license_key, fingerprint, payment_reference) -> None:
        ...

    @abc.abstractmethod
    def upsert_active(self, email, license_key, fingerprint, expires_at, payment_reference) -> None:
        ...

    @abc.abstractmethod
    def get_by_key(self, license_key) -> Optional[LicenseRecord]:
        """Return the row, flipping it to expired first when its expiry has passed."""

    @abc.abstractmethod
    def bind_fingerprint(self, license_key, fingerprint) -> bool:
        """Bind only when nothing is bound yet. True when this call did the binding."""

    @abc.abstractmethod
    def clear_and_deactivate(self, license_key) -> bool:
        ...

    @abc.abstractmethod
    def sweep_expired(self) -> int:
        ...

    @abc.abstractmethod
    def purge_stale_pending(self, older_than: datetime) -> int:
        ...

    @abc.abstractmethod
    def ping(self) -> None:
        ...

    def close(self) -> None:
        pass


class SqlLicenseStore(LicenseStore):
    def __init__(self, database_url: str, timeout: float = 10.0, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.engine = make_engine(database_url, timeout=timeout)
        self.Session = make_session_factory(self.engine)
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            self._insert = sqlite.insert
        elif dialect == "postgresql":
            self._insert = postgresql.insert
        else:
            raise ValueError(f"unsupported database dialect: {dialect}")

    def create_schema(self):
        Base.metadata.create_all(bind=self.engine)

    def close(self):
        self.engine.dispose()

    # --- upserts ---------------------------------------------------------

    def _bind_if_absent(self, excluded):
        return case(
            (or_(License.fingerprint.is_(None), License.fingerprint == ""), excluded.fingerprint),
            else_=License.fingerprint,
        )

    def _keep_known_reference(self, excluded):
        return case(
            (and_(excluded.payment_reference.isnot(None), excluded.payment_reference != ""),
             excluded.payment_reference),
            else_=License.payment_reference,
        )

    def upsert_pending(self, email, license_key, fingerprint, payment_reference):
        now = self.clock()
        stmt = self._insert(License).values(
            email=email,
            license_key=normalize_key(license_key),
            fingerprint=fingerprint or None,
            expires_at=None,
            payment_reference=payment_reference or None,
            status=PENDING,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        # status is left alone on replay so a pending write never regresses a live row
        stmt = stmt.on_conflict_do_update(
            index_elements=["license_key"],
            set_={
                "email": excluded.email,
                "fingerprint": self._bind_if_absent(excluded),
                "payment_reference": self._keep_known_reference(excluded),
                "updated_at": excluded.updated_at,
            },
        )
        with self.Session.begin() as session:
            session.execute(stmt)

    def upsert_active(self, email, license_key, fingerprint, expires_at, payment_reference):
        if expires_at is None:
            raise ValueError("an active license needs an expiry")
        now = self.clock()
        stmt = self._insert(License).values(
            email=email,
            license_key=normalize_key(license_key),
            fingerprint=fingerprint or None,
            expires_at=expires_at,
            payment_reference=payment_reference or None,
            status=ACTIVE,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        # an already-applied event arriving after deactivation changes nothing
        redelivered = and_(
            License.status == DEACTIVATED,
            or_(
                excluded.payment_reference.is_(None),
                excluded.payment_reference == License.payment_reference,
            ),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["license_key"],
            set_={
                "email": excluded.email,
                "fingerprint": case(
                    (redelivered, License.fingerprint),
                    else_=self._bind_if_absent(excluded),
                ),
                # out-of-order deliveries must not pull the expiry backwards
                "expires_at": case(
                    (redelivered, License.expires_at),
                    (License.expires_at > excluded.expires_at, License.expires_at),
                    else_=excluded.expires_at,
                ),
                "payment_reference": self._keep_known_reference(excluded),
                "status": case((redelivered, License.status), else_=ACTIVE),
                "updated_at": excluded.updated_at,
            },
        )
        with self.Session.begin() as session:
            session.execute(stmt)

    # --- reads and conditional updates -----------------------------------

    def _expire_stmt(self, now):
        return (
            update(License)
            .where(
                License.status.notin_([EXPIRED, DEACTIVATED]),
                License.expires_at.isnot(None),
                License.expires_at <= now,
            )
            .values(status=EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def get_by_key(self, license_key):
        key = normalize_key(license_key)
        now = self.clock()
        with self.Session.begin() as session:
            session.execute(self._expire_stmt(now).where(License.license_key == key))
            row = session.execute(select(License).where(License.license_key == key)).scalar_one_or_none()
            return LicenseRecord.from_row(row) if row is not None else None

    def bind_fingerprint(self, license_key, fingerprint):
        if _blank(fingerprint):
            return False
        stmt = (
            update(License)
            .where(
                License.license_key == normalize_key(license_key),
                License.status == ACTIVE,
                or_(License.fingerprint.is_(None), License.fingerprint == ""),
            )
            .values(fingerprint=fingerprint, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        with self.Session.begin() as session:
            return session.execute(stmt).rowcount > 0

    def clear_and_deactivate(self, license_key):
        stmt = (
            update(License)
            .where(License.license_key == normalize_key(license_key))
            .values(status=DEACTIVATED, fingerprint=None, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        with self.Session.begin() as session:
            return session.execute(stmt).rowcount > 0

    def sweep_expired(self):
        with self.Session.begin() as session:
            return session.execute(self._expire_stmt(self.clock())).rowcount

    def purge_stale_pending(self, older_than):
        stmt = (
            delete(License)
            .where(License.status == PENDING, License.created_at < older_than)
            .execution_options(synchronize_session=False)
        )
        with self.Session.begin() as session:
            return session.execute(stmt).rowcount

    def ping(self):
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))


class MemoryLicenseStore(LicenseStore):
    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._rows: Dict[str, LicenseRecord] = {}
        self._lock = threading.Lock()

    def _merge(self, existing, email, fingerprint, payment_reference, now, **changes):
        return replace(
            existing,
            email=email,
            fingerprint=existing.fingerprint if not _blank(existing.fingerprint) else (fingerprint or None),
            payment_reference=payment_reference if not _blank(payment_reference) else existing.payment_reference,
            updated_at=now,
            **changes,
        )

    def upsert_pending(self, email, license_key, fingerprint, payment_reference):
        key = normalize_key(license_key)
        with self._lock:
            now = self.clock()
            existing = self._rows.get(key)
            if existing is None:
                self._rows[key] = LicenseRecord(
                    email=email, license_key=key, status=PENDING,
                    fingerprint=fingerprint or None, expires_at=None,
                    payment_reference=payment_reference or None,
                    created_at=now, updated_at=now,
                )
            else:
                self._rows[key] = self._merge(existing, email, fingerprint, payment_reference, now)

    def upsert_active(self, email, license_key, fingerprint, expires_at, payment_reference):
        if expires_at is None:
            raise ValueError("an active license needs an expiry")
        key = normalize_key(license_key)
        with self._lock:
            now = self.clock()
            existing = self._rows.get(key)
            if existing is None:
                self._rows[key] = LicenseRecord(
                    email=email, license_key=key, status=ACTIVE,
                    fingerprint=fingerprint or None, expires_at=expires_at,
                    payment_reference=payment_reference or None,
                    created_at=now, updated_at=now,
                )
                return
            if existing.status == DEACTIVATED and (
                _blank(payment_reference) or payment_reference == existing.payment_reference
            ):
                self._rows[key] = replace(existing, email=email, updated_at=now)
                return
            if existing.expires_at is not None and existing.expires_at > expires_at:
                expires_at = existing.expires_at
            self._rows[key] = self._merge(
                existing, email, fingerprint, payment_reference, now,
                status=ACTIVE, expires_at=expires_at,
            )

    def _expire_locked(self, key, now) -> bool:
        row = self._rows[key]
        if row.status in (EXPIRED, DEACTIVATED) or row.expires_at is None or row.expires_at > now:
            return False
        self._rows[key] = replace(row, status=EXPIRED, updated_at=now)
        return True

    def get_by_key(self, license_key):
        key = normalize_key(license_key)
        with self._lock:
            if key not in self._rows:
                return None
            self._expire_locked(key, self.clock())
            return self._rows[key]

    def bind_fingerprint(self, license_key, fingerprint):
        if _blank(fingerprint):
            return False
        key = normalize_key(license_key)
        with self._lock:
            row = self._rows.get(key)
            if row is None or row.status != ACTIVE or not _blank(row.fingerprint):
                return False
            self._rows[key] = replace(row, fingerprint=fingerprint, updated_at=self.clock())
            return True

    def clear_and_deactivate(self, license_key):
        key = normalize_key(license_key)
        with self._lock:
            row = self._rows.get(key)
            if row is None:
                return False
            self._rows[key] = replace(row, status=DEACTIVATED, fingerprint=None, updated_at=self.clock())
            return True

    def sweep_expired(self):
        with self._lock:
            now = self.clock()
            return sum(1 for key in list(self._rows) if self._expire_locked(key, now))

    def purge_stale_pending(self, older_than):
        with self._lock:
            stale = [k for k, r in self._rows.items() if r.status == PENDING and r.created_at < older_than]
            for key in stale:
                del self._rows[key]
            return len(stale)

    def ping(self):
        return None


def open_store(settings, clock: Optional[Clock] = None) -> LicenseStore:
    backend = settings.STORE_BACKEND
    if backend == "memory":
        logger.warning("Using in-memory license store; licenses will not survive a restart")
        return MemoryLicenseStore(clock=clock)
    if backend == "sql":
        store = SqlLicenseStore(settings.DATABASE_URL, timeout=settings.DB_TIMEOUT_SECONDS, clock=clock)
        store.create_schema()
        return store
    raise ValueError(f"unknown STORE_BACKEND: {backend!r}")
