"""Canonical contracts shared by importer adapters and loaders."""

from .legacy import CanonicalRow, EntityType, FieldMapper, FieldSpec

__all__ = [
    "CanonicalRow",
    "EntityType",
    "FieldMapper",
    "FieldSpec",
]
