"""
Importer-specific SQLAlchemy models: runs and their recorded issues.
"""

from .schema import (
    TERMINAL_STATUSES,
    ImportIssue,
    ImportIssueKind,
    ImportRun,
    ImportRunStatus,
    ImportType,
    format_duration,
)

__all__ = [
    "TERMINAL_STATUSES",
    "ImportIssue",
    "ImportIssueKind",
    "ImportRun",
    "ImportRunStatus",
    "ImportType",
    "format_duration",
]
