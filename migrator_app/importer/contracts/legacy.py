"""Canonical legacy-export contract definitions.

Legacy exports name the same column many different ways (``First Name``,
``FirstName``, ``first_name``). Each canonical field carries an ordered tuple
of candidate column names; resolving a raw row against those candidates is
the only place where free-form column names are handled.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, Tuple


class EntityType(str, enum.Enum):
    """Entity types the importer knows how to load."""

    PATIENTS = "patients"
    PROVIDERS = "providers"
    INSURANCE = "insurance"
    DIAGNOSIS_CODES = "diagnosis_codes"
    SERVICE_CODES = "service_codes"
    APPOINTMENTS = "appointments"
    LEDGER = "ledger"
    SOAP_NOTES = "soap_notes"


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical field and its legacy column candidates."""

    name: str
    candidates: Tuple[str, ...]
    description: str = ""

    def resolve(self, row: Mapping[str, object | None]) -> str:
        """Return the value of the first candidate column present in ``row``."""

        for column in self.candidates:
            value = row.get(column)
            if value is not None:
                return value if isinstance(value, str) else str(value)
        return ""


@dataclass(frozen=True)
class CanonicalRow(Mapping[str, str]):
    """
    Schema-normalized view of one legacy row.

    Every field declared for the entity is present; missing data is an empty
    string. ``sequence_number`` and ``file_name`` locate the row for error
    reporting.
    """

    entity: EntityType
    values: Mapping[str, str]
    sequence_number: int = 0
    file_name: str | None = None
    raw: Mapping[str, object | None] = field(default_factory=dict, compare=False, repr=False)

    def __getitem__(self, key: str) -> str:
        return self.values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def text(self, key: str) -> str:
        """Return the stripped value for ``key`` (empty when undeclared)."""

        return (self.values.get(key) or "").strip()


class FieldMapper:
    """Pure, total translation of raw legacy rows into ``CanonicalRow`` objects."""

    def __init__(self, field_specs: Mapping[EntityType, Iterable[FieldSpec]]) -> None:
        self._field_specs: dict[EntityType, Tuple[FieldSpec, ...]] = {
            EntityType(entity): tuple(specs) for entity, specs in field_specs.items()
        }

    def fields_for(self, entity: EntityType | str) -> Tuple[FieldSpec, ...]:
        return self._field_specs.get(EntityType(entity), ())

    def field_names(self, entity: EntityType | str) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.fields_for(entity))

    def map_row(
        self,
        row: Mapping[str, object | None],
        entity: EntityType | str,
        *,
        sequence_number: int = 0,
        file_name: str | None = None,
    ) -> CanonicalRow:
        entity = EntityType(entity)
        values = {spec.name: spec.resolve(row) for spec in self.fields_for(entity)}
        return CanonicalRow(
            entity=entity,
            values=values,
            sequence_number=sequence_number,
            file_name=file_name,
            raw=dict(row),
        )

    def map_with_columns(
        self,
        row: Mapping[str, object | None],
        entity: EntityType | str,
        column_mapping: Mapping[str, str],
        *,
        sequence_number: int = 0,
        file_name: str | None = None,
    ) -> CanonicalRow:
        """
        Map ``row`` using an operator-supplied ``canonical field -> column`` mapping.

        Fields the operator did not map fall back to the declared candidates.
        """

        entity = EntityType(entity)
        values: dict[str, str] = {}
        for spec in self.fields_for(entity):
            column = column_mapping.get(spec.name)
            if column:
                value = row.get(column)
                values[spec.name] = "" if value is None else str(value)
            else:
                values[spec.name] = spec.resolve(row)
        return CanonicalRow(
            entity=entity,
            values=values,
            sequence_number=sequence_number,
            file_name=file_name,
            raw=dict(row),
        )
