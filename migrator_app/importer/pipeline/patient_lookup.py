"""
Patient resolution for rows and files that reference a patient indirectly.

Tiers are tried in order and the first hit wins:

1. exact record number
2. exact legacy alias (account number, patient id, client id)
3. exact first/last name pair, in either order (pair tokens only)
4. case-insensitive name substring (opt-in, lowest precision)

The substring tier is known to be ambiguous for common names. It is kept as
an explicit last resort, logged on every use, and records an
``ambiguous_patient`` warning when it matches more than one patient.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import func, or_, select

from migrator_app.models import Patient, PatientAlias

from .run_ledger import AMBIGUOUS_PATIENT, ImportRunLedger
from .store import RecordStore

logger = logging.getLogger(__name__)

MIN_SUBSTRING_LENGTH = 2


class MatchTier(str, enum.Enum):
    RECORD_NUMBER = "record_number"
    ALIAS = "alias"
    NAME_PAIR = "name_pair"
    NAME_SUBSTRING = "name_substring"


@dataclass(frozen=True)
class PatientMatch:
    patient: Patient
    tier: MatchTier
    token: str
    candidate_count: int = 1

    @property
    def is_ambiguous(self) -> bool:
        return self.candidate_count > 1


class PatientResolver:
    """Resolve legacy identifiers and filename tokens to stored patients."""

    def __init__(self, store: RecordStore, tenant_id: str, *, ledger: ImportRunLedger | None = None) -> None:
        self.store = store
        self.tenant_id = tenant_id
        self.ledger = ledger

    def by_key(self, token: str) -> PatientMatch | None:
        """Exact lookup against the record number, then every stored alias."""

        token = (token or "").strip()
        if not token:
            return None
        patient = self.store.find_one(Patient, self.tenant_id, record_number=token)
        if patient is not None:
            return PatientMatch(patient=patient, tier=MatchTier.RECORD_NUMBER, token=token)

        statement = (
            select(Patient)
            .join(PatientAlias, PatientAlias.patient_id == Patient.id)
            .where(PatientAlias.tenant_id == self.tenant_id, PatientAlias.value == token)
            .order_by(Patient.id)
            .limit(1)
        )
        patient = self.store.session.scalars(statement).first()
        if patient is not None:
            return PatientMatch(patient=patient, tier=MatchTier.ALIAS, token=token)
        return None

    def by_name_pair(self, first: str, second: str) -> PatientMatch | None:
        """Exact, case-insensitive first/last name match in either order."""

        first, second = first.strip().lower(), second.strip().lower()
        if not first or not second:
            return None
        first_name = func.lower(Patient.first_name)
        last_name = func.lower(Patient.last_name)
        statement = (
            select(Patient)
            .where(
                Patient.tenant_id == self.tenant_id,
                or_(
                    (first_name == first) & (last_name == second),
                    (first_name == second) & (last_name == first),
                ),
            )
            .order_by(Patient.id)
        )
        candidates = list(self.store.session.scalars(statement))
        if not candidates:
            return None
        return PatientMatch(
            patient=candidates[0],
            tier=MatchTier.NAME_PAIR,
            token=f"{first} {second}",
            candidate_count=len(candidates),
        )

    def by_name_substring(self, token: str) -> PatientMatch | None:
        token = (token or "").strip().lower()
        if len(token) < MIN_SUBSTRING_LENGTH:
            return None
        pattern = f"%{token}%"
        statement = (
            select(Patient)
            .where(
                Patient.tenant_id == self.tenant_id,
                or_(func.lower(Patient.first_name).like(pattern), func.lower(Patient.last_name).like(pattern)),
            )
            .order_by(Patient.id)
        )
        candidates = list(self.store.session.scalars(statement))
        if not candidates:
            return None
        return PatientMatch(
            patient=candidates[0],
            tier=MatchTier.NAME_SUBSTRING,
            token=token,
            candidate_count=len(candidates),
        )

    def resolve(
        self,
        token: str,
        *,
        name_parts: Sequence[str] = (),
        allow_name_match: bool = False,
        file_name: str | None = None,
    ) -> PatientMatch | None:
        """
        Resolve ``token`` through every tier in order.

        ``name_parts`` is the split of a ``First_Last`` style token; each part is
        tried as a key before the pair is tried as a name. The name tiers only
        run when ``allow_name_match`` is set.
        """

        match = self.by_key(token)
        for part in name_parts:
            if match is not None:
                break
            match = self.by_key(part)
        if match is not None or not allow_name_match:
            return match

        if len(name_parts) == 2:
            match = self.by_name_pair(*name_parts)
        if match is None:
            match = self.by_name_substring(token)
            for part in name_parts:
                if match is not None:
                    break
                match = self.by_name_substring(part)
            if match is not None:
                logger.info(
                    "Resolved patient %s by name substring '%s'",
                    match.patient.id,
                    match.token,
                    extra={"importer_run_id": self.ledger.run_id if self.ledger else None, "importer_file": file_name},
                )

        if match is not None and match.is_ambiguous and self.ledger is not None:
            self.ledger.record_warning(
                AMBIGUOUS_PATIENT,
                f"'{match.token}' matched {match.candidate_count} patients; using patient {match.patient.id}.",
                file_name=file_name,
                record_key=match.token,
                details={"tier": match.tier.value, "candidate_count": match.candidate_count},
            )
        return match
