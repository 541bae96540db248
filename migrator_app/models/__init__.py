# migrator_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .encounter import Appointment, HistoricalNote, LedgerEntry
from .importer import ImportIssue, ImportIssueKind, ImportRun, ImportRunStatus, ImportType
from .patient import Insurance, Patient, PatientAlias, PatientAliasType, PatientFile
from .practice import DiagnosticCode, Provider, ServiceCode

__all__ = [
    "db",
    "BaseModel",
    # Record store
    "Patient",
    "PatientAlias",
    "PatientAliasType",
    "PatientFile",
    "Insurance",
    "Provider",
    "ServiceCode",
    "DiagnosticCode",
    "Appointment",
    "LedgerEntry",
    "HistoricalNote",
    # Importer
    "ImportRun",
    "ImportRunStatus",
    "ImportType",
    "ImportIssue",
    "ImportIssueKind",
]
