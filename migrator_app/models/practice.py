# migrator_app/models/practice.py

from __future__ import annotations

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class Provider(BaseModel):
    """Treating provider known to a tenant."""

    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    npi: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    credentials: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    specialty: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    __table_args__ = (Index("idx_providers_tenant_name", "tenant_id", "last_name", "first_name"),)

    def __repr__(self):
        return f"<Provider {self.first_name} {self.last_name}>"


class ServiceCode(BaseModel):
    """Billable service (CPT-style) code."""

    __tablename__ = "service_codes"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    code: Mapped[str] = mapped_column(db.String(20), nullable=False)
    description: Mapped[str] = mapped_column(db.String(255), nullable=False)
    category: Mapped[str] = mapped_column(db.String(50), nullable=False, default="Other")
    unit_rate: Mapped[float] = mapped_column(db.Float, nullable=False, default=0.0)
    is_package: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    total_sessions: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_service_codes_tenant_code"),)


class DiagnosticCode(BaseModel):
    """ICD diagnosis code."""

    __tablename__ = "diagnostic_codes"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    code: Mapped[str] = mapped_column(db.String(20), nullable=False)
    description: Mapped[str] = mapped_column(db.String(255), nullable=False)
    category: Mapped[str] = mapped_column(db.String(50), nullable=False, default="Other")
    body_system: Mapped[str] = mapped_column(db.String(50), nullable=False, default="Other")
    commonly_used: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_diagnostic_codes_tenant_code"),)
