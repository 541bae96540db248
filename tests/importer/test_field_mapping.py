from __future__ import annotations

import textwrap

import pytest

from migrator_app.importer.contracts.legacy import EntityType, FieldMapper, FieldSpec
from migrator_app.importer.mapping import (
    DEFAULT_MAPPING_PATH,
    MappingLoadError,
    get_active_mapping,
    load_mapping,
)


@pytest.fixture
def mapper():
    return load_mapping(DEFAULT_MAPPING_PATH).build_mapper()


def test_default_mapping_covers_every_entity():
    spec = load_mapping(DEFAULT_MAPPING_PATH)

    assert spec.version == 1
    assert spec.adapter == "chirotouch"
    assert set(spec.entities) == set(EntityType)
    assert len(spec.checksum) == 64


@pytest.mark.parametrize(
    "row",
    [
        {"Record Number": "1001", "First Name": "Jane", "Last Name": "Doe"},
        {"RecordNumber": "1001", "FirstName": "Jane", "LastName": "Doe"},
        {"record_number": "1001", "first_name": "Jane", "last_name": "Doe"},
    ],
)
def test_column_name_variants_resolve_to_same_canonical_values(mapper, row):
    canonical = mapper.map_row(row, EntityType.PATIENTS)

    assert canonical.text("record_number") == "1001"
    assert canonical.text("first_name") == "Jane"
    assert canonical.text("last_name") == "Doe"


def test_map_row_is_total_over_declared_fields(mapper):
    canonical = mapper.map_row({"Unrelated": "x"}, EntityType.PATIENTS, sequence_number=4, file_name="p.csv")

    assert set(canonical) == set(mapper.field_names(EntityType.PATIENTS))
    assert all(value == "" for value in canonical.values.values())
    assert canonical.sequence_number == 4
    assert canonical.file_name == "p.csv"


def test_first_present_candidate_wins_even_when_blank():
    mapper = FieldMapper({EntityType.PROVIDERS: [FieldSpec("npi", ("NPI", "NPI Number"))]})

    assert mapper.map_row({"NPI": "", "NPI Number": "123"}, "providers")["npi"] == ""
    assert mapper.map_row({"NPI": None, "NPI Number": "123"}, "providers")["npi"] == "123"


def test_map_with_columns_prefers_explicit_mapping(mapper):
    row = {"Chart": "A-77", "Record Number": "ignored", "First Name": "Jane", "Surname": "Doe"}

    canonical = mapper.map_with_columns(
        row,
        EntityType.PATIENTS,
        {"record_number": "Chart", "last_name": "Surname"},
    )

    assert canonical["record_number"] == "A-77"
    assert canonical["last_name"] == "Doe"
    assert canonical["first_name"] == "Jane"


def test_load_mapping_rejects_unknown_entity(tmp_path):
    path = tmp_path / "mapping.yaml"
    path.write_text(
        textwrap.dedent(
            """
            version: 1
            adapter: custom
            entities:
              invoices:
                - name: first_name
                  candidates: ["First"]
            """
        ),
        encoding="utf-8",
    )

    with pytest.raises(MappingLoadError, match="Unknown entity"):
        load_mapping(path)


def test_load_mapping_rejects_field_without_candidates(tmp_path):
    path = tmp_path / "mapping.yaml"
    path.write_text(
        "version: 1\nadapter: custom\nentities:\n  patients:\n    - name: first_name\n      candidates: []\n",
        encoding="utf-8",
    )

    with pytest.raises(MappingLoadError, match="non-empty candidates"):
        load_mapping(path)


def test_load_mapping_missing_file(tmp_path):
    with pytest.raises(MappingLoadError, match="not found"):
        load_mapping(tmp_path / "nope.yaml")


def test_get_active_mapping_reads_configured_path(importer_app, tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text(
        "version: 2\nadapter: custom\nentities:\n"
        "  patients:\n    - name: record_number\n      candidates: [\"Chart\"]\n",
        encoding="utf-8",
    )
    importer_app.config["IMPORTER_MAPPING_PATH"] = str(path)

    spec = get_active_mapping()

    assert spec.version == 2
    assert get_active_mapping() is spec
    assert spec.build_mapper().map_row({"Chart": "9"}, "patients")["record_number"] == "9"
