from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime

from license_server.db import Base, utcnow

PENDING = "pending"
ACTIVE = "active"
EXPIRED = "expired"
DEACTIVATED = "deactivated"

STATUSES = (PENDING, ACTIVE, EXPIRED, DEACTIVATED)


class License(Base):
    __tablename__ = "licenses"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, index=True)
    license_key = Column(String(64), nullable=False, unique=True, index=True)
    fingerprint = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    payment_reference = Column(String(128), nullable=True)
    status = Column(String(32), nullable=False, default=PENDING, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


@dataclass(frozen=True)
class LicenseRecord:
    """Detached snapshot of a licenses row, shared by every store backend."""

    email: str
    license_key: str
    status: str
    fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: License) -> "LicenseRecord":
        return cls(
            email=row.email,
            license_key=row.license_key,
            status=row.status,
            fingerprint=row.fingerprint,
            expires_at=row.expires_at,
            payment_reference=row.payment_reference,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
