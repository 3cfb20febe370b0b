"""Generic table access used uniformly across every entity type.

Mirrors the query helper shape of a hosted data API: equality, range,
ordering and pagination predicates over a single table.  All mutating
helpers flush but never commit; the caller owns the transaction.
"""
from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from autopilot.models import Base

ModelT = TypeVar("ModelT", bound=Base)

DEFAULT_PAGE_SIZE = 10


class StoreError(Exception):
    """A table operation could not be carried out."""


class RecordNotFoundError(StoreError):
    def __init__(self, table: str, row_id: Any):
        super().__init__(f"No row in {table} with id {row_id!r}")
        self.table = table
        self.row_id = row_id


def _column(model: type[Base], name: str):
    col = model.__table__.columns.get(name)
    if col is None:
        raise StoreError(f"Unknown column {name!r} on {model.__tablename__}")
    return getattr(model, col.key)


def select_rows(
    session: Session,
    model: type[ModelT],
    *,
    eq: dict[str, Any] | None = None,
    gte: dict[str, Any] | None = None,
    lte: dict[str, Any] | None = None,
    order_by: dict[str, str] | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> list[ModelT]:
    """Select rows matching all given predicates.

    ``order_by`` maps column name to ``"asc"`` or ``"desc"``.  An ``offset``
    without a ``limit`` pages in blocks of ``DEFAULT_PAGE_SIZE``.
    """
    query = select(model)
    for name, value in (eq or {}).items():
        query = query.where(_column(model, name) == value)
    for name, value in (gte or {}).items():
        query = query.where(_column(model, name) >= value)
    for name, value in (lte or {}).items():
        query = query.where(_column(model, name) <= value)
    for name, direction in (order_by or {}).items():
        col = _column(model, name)
        query = query.order_by(col.asc() if direction == "asc" else col.desc())
    if offset:
        query = query.offset(offset).limit(limit or DEFAULT_PAGE_SIZE)
    elif limit:
        query = query.limit(limit)
    return list(session.execute(query).scalars().all())


def find_row(session: Session, model: type[ModelT], **eq: Any) -> ModelT | None:
    rows = select_rows(session, model, eq=eq, limit=1)
    return rows[0] if rows else None


def get_row(session: Session, model: type[ModelT], row_id: Any) -> ModelT:
    obj = session.get(model, row_id)
    if obj is None:
        raise RecordNotFoundError(model.__tablename__, row_id)
    return obj


def insert_row(session: Session, model: type[ModelT], values: dict[str, Any]) -> ModelT:
    obj = model(**values)
    session.add(obj)
    session.flush()
    session.refresh(obj)
    return obj


def update_row(session: Session, model: type[ModelT], row_id: Any, values: dict[str, Any]) -> ModelT:
    obj = get_row(session, model, row_id)
    for name, value in values.items():
        setattr(obj, _column(model, name).key, value)
    session.flush()
    session.refresh(obj)
    return obj


def delete_row(session: Session, model: type[ModelT], row_id: Any) -> None:
    obj = get_row(session, model, row_id)
    session.delete(obj)
    session.flush()
