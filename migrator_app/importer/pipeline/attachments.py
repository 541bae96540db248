"""
Link unstructured export files (scanned documents, chart notes) to patients.

These files carry no structured key, so the target patient is inferred from
the filename. Linking is best-effort: a file that cannot be matched is
recorded as a ``missing_patient`` warning and left unattached.
"""

from __future__ import annotations

import enum
import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Pattern, Tuple

from sqlalchemy.exc import SQLAlchemyError

from migrator_app.importer.adapters.archive import ExtractedFile
from migrator_app.importer.metrics import record_attachment
from migrator_app.models import HistoricalNote, Patient, PatientFile

from .classify import CHART_NOTES, SCANNED_DOCS
from .patient_lookup import PatientResolver
from .run_ledger import DATABASE_ERROR, MISSING_FILE, MISSING_PATIENT, ImportRunLedger
from .soap import PROVIDER_TOKEN, read_chart_note, strip_date_tokens
from .store import RecordStore

logger = logging.getLogger(__name__)

UPLOADED_BY = "ChiroTouch Import"
DESCRIPTION = "Imported from ChiroTouch export"
NOTE_SOURCE = "chirotouch_import"

CATEGORY_LABELS = {CHART_NOTES: "Chart Notes", SCANNED_DOCS: "Scanned Documents"}
COUNTER_KEYS = {CHART_NOTES: "chart_notes_attached", SCANNED_DOCS: "scanned_docs_attached"}

# Words exporters put in document names that never identify a patient.
NOISE_WORDS = re.compile(
    r"(?<![A-Za-z])(?:chart|notes?|soap|visit|progress|scanned|scans?|docs?|documents?|reports?|intake|"
    r"forms?|page|img|image|xray|mri|pdf)(?![A-Za-z])",
    re.IGNORECASE,
)

_EDGE = r"(?<![A-Za-z0-9])"
_END = r"(?![A-Za-z0-9])"


@dataclass(frozen=True)
class FilenameToken:
    pattern: str
    token: str
    parts: Tuple[str, ...] = ()


def _single(name: str) -> Callable[[re.Match], FilenameToken]:
    return lambda match: FilenameToken(pattern=name, token=match.group(1))


def _p_number(match: re.Match) -> FilenameToken:
    return FilenameToken(pattern="p_number", token=match.group(0), parts=(match.group(1),))


def _pair(name: str) -> Callable[[re.Match], FilenameToken]:
    return lambda match: FilenameToken(pattern=name, token=match.group(0), parts=(match.group(1), match.group(2)))


# Ordered filename extraction patterns; the first that matches wins.
FILENAME_PATTERNS: Tuple[Tuple[Pattern[str], Callable[[re.Match], FilenameToken]], ...] = (
    (re.compile(_EDGE + r"(\d+)" + _END), _single("numeric")),
    (re.compile(_EDGE + r"P(\d+)" + _END, re.IGNORECASE), _p_number),
    (re.compile(_EDGE + r"([A-Za-z]+\d+)" + _END), _single("letter_digit")),
    (re.compile(_EDGE + r"(\d+[A-Za-z]+)" + _END), _single("digit_letter")),
    (re.compile(r"(?<![A-Za-z])([A-Za-z]{2,})_([A-Za-z]{2,})(?![A-Za-z])"), _pair("first_last")),
    (re.compile(r"(?<![A-Za-z])([A-Za-z]{2,}) +([A-Za-z]{2,})(?![A-Za-z])"), _pair("first_space_last")),
)


def extract_patient_token(filename: str) -> FilenameToken | None:
    """
    Pull the most likely patient identifier out of ``filename``.

    Dates, provider tokens (``Dr_First_Last``) and document noise words are
    removed first so they are never mistaken for identifiers.
    """

    stem = Path(filename).stem
    stem = PROVIDER_TOKEN.sub(" ", stem)
    stem = strip_date_tokens(stem)
    stem = NOISE_WORDS.sub(" ", stem)
    stem = re.sub(r"_{2,}", "_", stem)
    stem = re.sub(r"(?:^[_\s]+|[_\s]+$)", "", stem)
    for pattern, build in FILENAME_PATTERNS:
        match = pattern.search(stem)
        if match is not None:
            return build(match)
    return None


class LinkOutcome(str, enum.Enum):
    LINKED = "linked"
    DUPLICATE = "duplicate"
    MISSING_PATIENT = "missing_patient"
    FAILED = "failed"


@dataclass
class LinkResult:
    outcome: LinkOutcome
    patient_id: int | None = None
    patient_file_id: int | None = None
    historical_note_id: int | None = None


class AttachmentLinker:
    """Copy matched files into the tenant document store and record metadata."""

    def __init__(
        self,
        store: RecordStore,
        tenant_id: str,
        ledger: ImportRunLedger,
        *,
        document_dir: Path | str,
        resolver: PatientResolver | None = None,
    ) -> None:
        self.store = store
        self.tenant_id = tenant_id
        self.ledger = ledger
        self.document_dir = Path(document_dir)
        self.resolver = resolver or PatientResolver(store, tenant_id, ledger=ledger)

    @property
    def tenant_dir(self) -> Path:
        return self.document_dir / self.tenant_id

    def link(self, extracted: ExtractedFile, category: str, *, folder: str | None = None) -> LinkResult:
        if category not in CATEGORY_LABELS:
            raise ValueError(f"Unsupported attachment category '{category}'.")

        self.ledger.record_processed(folder=folder)
        context = {"file_name": extracted.name, "folder_path": folder}

        token = extract_patient_token(extracted.name)
        if token is None:
            self.ledger.record_warning(
                MISSING_PATIENT, f"No patient identifier found in filename {extracted.name}", **context
            )
            record_attachment(category, "missing_patient")
            return LinkResult(LinkOutcome.MISSING_PATIENT)

        match = self.resolver.resolve(
            token.token,
            name_parts=token.parts,
            allow_name_match=True,
            file_name=extracted.name,
        )
        if match is None:
            self.ledger.record_warning(
                MISSING_PATIENT,
                f"No patient found for '{token.token}' in {extracted.name}",
                record_key=token.token,
                details={"pattern": token.pattern},
                **context,
            )
            record_attachment(category, "missing_patient")
            return LinkResult(LinkOutcome.MISSING_PATIENT)

        patient = match.patient
        label = CATEGORY_LABELS[category]
        if self.store.find_one(
            PatientFile,
            self.tenant_id,
            patient_id=patient.id,
            original_name=extracted.name,
            category=label,
        ):
            self.ledger.record_duplicate(
                category,
                f"{extracted.name} is already attached to patient {patient.record_number}",
                record_key=patient.record_number,
                **context,
            )
            record_attachment(category, "duplicate")
            return LinkResult(LinkOutcome.DUPLICATE, patient_id=patient.id)

        return self._attach(extracted, category, patient, context)

    def _attach(self, extracted: ExtractedFile, category: str, patient: Patient, context: dict) -> LinkResult:
        stored_name = f"{patient.id}_{uuid.uuid4().hex}{extracted.suffix}"
        destination = self.tenant_dir / stored_name
        try:
            self.tenant_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(extracted.absolute_path, destination)
        except OSError as exc:
            self.ledger.record_error(MISSING_FILE, f"Unable to copy {extracted.name}: {exc}", **context)
            record_attachment(category, "failed")
            return LinkResult(LinkOutcome.FAILED, patient_id=patient.id)

        try:
            patient_file = self.store.create(
                PatientFile,
                self.tenant_id,
                patient_id=patient.id,
                original_name=extracted.name,
                stored_name=stored_name,
                file_path=str(destination),
                file_type=extracted.suffix.lstrip(".") or None,
                size_bytes=extracted.size,
                category=CATEGORY_LABELS[category],
                uploaded_by=UPLOADED_BY,
                description=DESCRIPTION,
            )
            note = None
            if category == CHART_NOTES:
                note = self._historical_note(extracted, category, patient, patient_file)
            self.store.commit()
        except SQLAlchemyError as exc:
            self.store.rollback()
            destination.unlink(missing_ok=True)
            logger.warning(
                "Database error attaching %s: %s",
                extracted.name,
                exc,
                extra={"importer_run_id": self.ledger.run_id, "importer_file": extracted.name},
            )
            self.ledger.record_error(
                DATABASE_ERROR, f"Unable to attach {extracted.name}: {exc.__class__.__name__}", **context
            )
            record_attachment(category, "failed")
            return LinkResult(LinkOutcome.FAILED, patient_id=patient.id)

        self.ledger.record_success(COUNTER_KEYS[category])
        if note is not None:
            self.ledger.record_historical_note()
        record_attachment(category, "linked")
        return LinkResult(
            LinkOutcome.LINKED,
            patient_id=patient.id,
            patient_file_id=patient_file.id,
            historical_note_id=note.id if note is not None else None,
        )

    def _historical_note(
        self,
        extracted: ExtractedFile,
        category: str,
        patient: Patient,
        patient_file: PatientFile,
    ) -> HistoricalNote | None:
        soap = read_chart_note(extracted.absolute_path, extracted.name)
        if soap is None or soap.is_empty:
            return None
        if self.store.find_one(HistoricalNote, self.tenant_id, patient_id=patient.id, source_file_name=extracted.name):
            return None
        return self.store.create(
            HistoricalNote,
            self.tenant_id,
            patient_id=patient.id,
            patient_file_id=patient_file.id,
            source_file_name=extracted.name,
            visit_date=soap.visit_date,
            provider_name=soap.provider_name,
            subjective=soap.subjective,
            objective=soap.objective,
            assessment=soap.assessment,
            plan=soap.plan,
            pain_scale=soap.pain_scale,
            is_authoritative=False,
            source=NOTE_SOURCE,
        )
