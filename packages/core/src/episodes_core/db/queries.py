from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import InstrumentedAttribute, Session

from episodes_core.db.models import ContentNode


def parent_column(model: type[ContentNode]) -> InstrumentedAttribute:
    if not model.parent_key:
        raise ValueError(f"{model.__name__} has no parent level")
    return getattr(model, model.parent_key)


def iter_chunks(
    session: Session,
    stmt: Select,
    id_column: InstrumentedAttribute,
    size: int,
    *,
    scalars: bool = False,
) -> Iterator[Sequence[Any]]:
    """
    Yield the rows of `stmt` in pages of at most `size`, ordered by `id_column`.

    Keyset pagination (`id > last_seen`) instead of OFFSET, so rows inserted into the
    same table while iterating do not shift page boundaries. Each page is fetched
    completely before it is yielded; no cursor stays open across a caller's commit.
    """
    if size <= 0:
        raise ValueError("chunk size must be positive")
    last_id = None
    while True:
        page = stmt.order_by(id_column).limit(size)
        if last_id is not None:
            page = page.where(id_column > last_id)
        rows: Sequence[Any] = session.scalars(page).all() if scalars else session.execute(page).all()
        if not rows:
            return
        last_id = getattr(rows[-1], id_column.key)
        yield rows
        if len(rows) < size:
            return


def duplicated_rows(model: type[ContentNode], parent_ids: Iterable[int]) -> Select:
    """(id, orig_id) of copies under the given (new) parents."""
    return select(model.id, model.orig_id).where(  # type: ignore[attr-defined]
        parent_column(model).in_(list(parent_ids)),
        model.orig_id.is_not(None),  # type: ignore[attr-defined]
    )


def rows_under(model: type[ContentNode], parent_ids: Iterable[int]) -> Select:
    return select(model).where(parent_column(model).in_(list(parent_ids)))


def existing_copies(
    session: Session,
    model: type[ContentNode],
    orig_ids: Iterable[int],
    new_parent_ids: Iterable[int],
) -> set[int]:
    """Source ids among `orig_ids` that already have a copy under `new_parent_ids`."""
    orig_ids = list(orig_ids)
    new_parent_ids = list(new_parent_ids)
    if not orig_ids or not new_parent_ids:
        return set()
    return set(
        session.scalars(
            select(model.orig_id).where(  # type: ignore[attr-defined]
                model.orig_id.in_(orig_ids),  # type: ignore[attr-defined]
                parent_column(model).in_(new_parent_ids),
            )
        ).all()
    )


def count_rows(
    session: Session,
    model: type[ContentNode],
    parent_ids: Iterable[int],
    *,
    duplicates_only: bool = False,
) -> int:
    stmt = select(func.count()).select_from(model).where(parent_column(model).in_(list(parent_ids)))
    if duplicates_only:
        stmt = stmt.where(model.orig_id.is_not(None))  # type: ignore[attr-defined]
    return int(session.scalar(stmt) or 0)
