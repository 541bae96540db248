"""
Record-store collaborator used by the entity importers.

Only lookup and create are exposed; the import pipeline never updates or
deletes an existing business record.
"""

from __future__ import annotations

from typing import Any, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from migrator_app.models import BaseModel, db

ModelT = TypeVar("ModelT", bound=BaseModel)


class RecordStore:
    """Tenant-scoped find/create access over a SQLAlchemy session."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    def find_one(self, model: Type[ModelT], tenant_id: str, **key: Any) -> ModelT | None:
        """Return the oldest record of ``model`` matching the business key, if any."""

        statement = select(model).filter_by(tenant_id=tenant_id, **key).order_by(model.id).limit(1)
        return self.session.scalars(statement).first()

    def create(self, model: Type[ModelT], tenant_id: str, **fields: Any) -> ModelT:
        """Add a new record and flush so its primary key is assigned."""

        record = model(tenant_id=tenant_id, **fields)
        self.session.add(record)
        self.session.flush()
        return record

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
