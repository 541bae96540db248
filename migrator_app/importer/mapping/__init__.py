"""Utilities for loading the legacy column-candidate mapping."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Tuple

import yaml
from flask import current_app

from migrator_app.importer.contracts.legacy import EntityType, FieldMapper, FieldSpec

DEFAULT_MAPPING_PATH = Path(__file__).resolve().parents[3] / "config" / "mappings" / "chirotouch_v1.yaml"


class MappingLoadError(RuntimeError):
    """Raised when a mapping specification cannot be loaded or validated."""


@dataclass(frozen=True)
class MappingSpec:
    version: int
    adapter: str
    entities: Mapping[EntityType, Tuple[FieldSpec, ...]]
    checksum: str
    path: Path

    def build_mapper(self) -> FieldMapper:
        return FieldMapper(self.entities)


def _compute_checksum(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def _parse_field(entity: str, entry: Any) -> FieldSpec:
    if not isinstance(entry, Mapping):
        raise MappingLoadError(f"Field definition for '{entity}' must be a mapping, got {entry!r}")
    name = str(entry.get("name") or "").strip()
    if not name:
        raise MappingLoadError(f"Field entry for '{entity}' missing 'name': {entry!r}")
    candidates = entry.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise MappingLoadError(f"Field '{entity}.{name}' requires a non-empty candidates list.")
    return FieldSpec(
        name=name,
        candidates=tuple(str(candidate) for candidate in candidates),
        description=str(entry.get("description") or ""),
    )


def load_mapping(path: str | Path) -> MappingSpec:
    """
    Load and validate a YAML candidate-column mapping.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        adapter = str(raw["adapter"]).strip()
        entities_payload = raw["entities"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid mapping attribute: {exc}") from exc

    if not isinstance(entities_payload, Mapping):
        raise MappingLoadError("Mapping 'entities' must be a mapping of entity name to field list.")

    entities: dict[EntityType, Tuple[FieldSpec, ...]] = {}
    for entity_name, fields_payload in entities_payload.items():
        try:
            entity = EntityType(str(entity_name))
        except ValueError:
            raise MappingLoadError(f"Unknown entity '{entity_name}' in mapping.") from None
        specs: list[FieldSpec] = []
        seen: set[str] = set()
        for entry in fields_payload or ():
            spec = _parse_field(entity.value, entry)
            if spec.name in seen:
                raise MappingLoadError(f"Duplicate field '{spec.name}' for entity '{entity.value}'.")
            seen.add(spec.name)
            specs.append(spec)
        entities[entity] = tuple(specs)

    return MappingSpec(
        version=version,
        adapter=adapter,
        entities=entities,
        checksum=_compute_checksum(raw),
        path=path,
    )


@lru_cache(maxsize=1)
def load_default_mapping() -> MappingSpec:
    """Load the bundled ChiroTouch mapping (cached for the process)."""

    return load_mapping(DEFAULT_MAPPING_PATH)


def get_active_mapping() -> MappingSpec:
    """
    Load the configured mapping spec (cached on the app).
    The cache is invalidated when the file modification time changes.
    """

    configured = current_app.config.get("IMPORTER_MAPPING_PATH")
    if not configured:
        return load_default_mapping()
    config_path = Path(configured)
    cache: dict[str, tuple[MappingSpec, float]] = current_app.extensions.setdefault("_importer_mapping_cache", {})
    current_mtime = config_path.stat().st_mtime if config_path.exists() else 0.0

    cached_entry = cache.get(str(config_path))
    if cached_entry and cached_entry[1] == current_mtime:
        return cached_entry[0]

    if cached_entry:
        current_app.logger.debug(f"Mapping file changed, reloading: {config_path}")
    spec = load_mapping(config_path)
    cache[str(config_path)] = (spec, current_mtime)
    return spec
