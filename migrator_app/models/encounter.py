# migrator_app/models/encounter.py

from __future__ import annotations

from datetime import date

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class Appointment(BaseModel):
    """Scheduled visit for a patient."""

    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    appointment_date: Mapped[date] = mapped_column(db.Date, nullable=False)
    appointment_time: Mapped[str] = mapped_column(db.String(10), nullable=False, default="09:00")
    visit_type: Mapped[str] = mapped_column(db.String(100), nullable=False, default="Regular Visit")
    duration_minutes: Mapped[int] = mapped_column(db.Integer, nullable=False, default=30)
    provider_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    status: Mapped[str] = mapped_column(db.String(30), nullable=False, default="Scheduled")

    patient = relationship("Patient")

    __table_args__ = (
        Index("idx_appointments_business_key", "tenant_id", "patient_id", "appointment_date", "appointment_time"),
    )


class LedgerEntry(BaseModel):
    """Historical billing transaction."""

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_date: Mapped[date] = mapped_column(db.Date, nullable=False)
    transaction_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="Payment")
    description: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    amount: Mapped[float] = mapped_column(db.Float, nullable=False, default=0.0)
    payment_method: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    patient = relationship("Patient")

    __table_args__ = (Index("idx_ledger_entries_patient_date", "tenant_id", "patient_id", "transaction_date"),)


class HistoricalNote(BaseModel):
    """
    Chart note recovered from a legacy export.

    These notes are never authoritative: they sit beside, not inside, the live
    clinical record.
    """

    __tablename__ = "historical_notes"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_file_id: Mapped[int | None] = mapped_column(
        ForeignKey("patient_files.id", ondelete="SET NULL"),
        nullable=True,
    )
    source_file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    visit_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    provider_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True)
    subjective: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    objective: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    assessment: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    plan: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    pain_scale: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    is_authoritative: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, default="chirotouch_import")

    patient = relationship("Patient")
    patient_file = relationship("PatientFile")

    __table_args__ = (Index("idx_historical_notes_source", "tenant_id", "patient_id", "source_file_name"),)
