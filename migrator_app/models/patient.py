# migrator_app/models/patient.py

from __future__ import annotations

import enum
from datetime import date, datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class PatientAliasType(str, enum.Enum):
    """Legacy identifier columns retained for later patient matching."""

    RECORD_NUMBER = "record_number"
    LEGACY_ACCOUNT_NUMBER = "legacy_account_number"
    LEGACY_PATIENT_ID = "legacy_patient_id"
    LEGACY_CLIENT_ID = "legacy_client_id"


class Patient(BaseModel):
    """Patient demographics keyed by tenant and record number."""

    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    record_number: Mapped[str] = mapped_column(db.String(100), nullable=False)
    first_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(db.String(30), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    street: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="Active")
    imported: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    import_source: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    imported_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    aliases = relationship("PatientAlias", back_populates="patient", cascade="all, delete-orphan")
    files = relationship("PatientFile", back_populates="patient", cascade="all, delete-orphan")
    insurances = relationship("Insurance", back_populates="patient", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("tenant_id", "record_number", name="uq_patients_tenant_record_number"),
        Index("idx_patients_tenant_name", "tenant_id", "last_name", "first_name"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f"<Patient {self.tenant_id}:{self.record_number}>"


class PatientAlias(BaseModel):
    """Secondary legacy identifier stored when a patient is imported."""

    __tablename__ = "patient_aliases"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    alias_type: Mapped[PatientAliasType] = mapped_column(
        Enum(PatientAliasType, name="patient_alias_type_enum"),
        nullable=False,
    )
    value: Mapped[str] = mapped_column(db.String(100), nullable=False)

    patient = relationship("Patient", back_populates="aliases")

    __table_args__ = (
        UniqueConstraint("tenant_id", "alias_type", "value", name="uq_patient_aliases_tenant_type_value"),
        Index("idx_patient_aliases_tenant_value", "tenant_id", "value"),
    )


class PatientFile(BaseModel):
    """Document metadata appended to a patient's file list."""

    __tablename__ = "patient_files"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    original_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    stored_name: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    file_path: Mapped[str] = mapped_column(db.String(1024), nullable=False)
    file_type: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    size_bytes: Mapped[int] = mapped_column(db.BigInteger, nullable=False, default=0)
    category: Mapped[str] = mapped_column(db.String(50), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(db.String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    patient = relationship("Patient", back_populates="files")

    __table_args__ = (Index("idx_patient_files_lookup", "tenant_id", "patient_id", "original_name", "category"),)


class Insurance(BaseModel):
    """Insurance coverage attached to a patient."""

    __tablename__ = "patient_insurances"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    insurance_name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    member_id: Mapped[str] = mapped_column(db.String(100), nullable=False)
    group_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    copay: Mapped[float] = mapped_column(db.Float, nullable=False, default=0.0)
    is_primary: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    patient = relationship("Patient", back_populates="insurances")

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "patient_id",
            "insurance_name",
            "member_id",
            name="uq_patient_insurances_business_key",
        ),
    )
