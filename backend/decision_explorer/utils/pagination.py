import base64
import binascii
from typing import Any, Callable, List, Optional, Sequence, Tuple, Type
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from decision_explorer.core.exceptions import ValidationFailure
from decision_explorer.schemas.common import Connection, Edge, PageInfo

CURSOR_SEPARATOR = "|"


def encode_cursor(sort_key: str, row_id: UUID) -> str:
    raw = f"{sort_key}{CURSOR_SEPARATOR}{row_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[str, UUID]:
    """Inverse of encode_cursor; the sort key may itself contain the separator"""
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        sort_key, separator, row_id = raw.rpartition(CURSOR_SEPARATOR)
        if not separator:
            raise ValueError("missing separator")
        return sort_key, UUID(row_id)
    except (ValueError, UnicodeError, binascii.Error) as e:
        raise ValidationFailure(f"Invalid cursor: {cursor}", {"reason": str(e)})


def keyset_predicate(
    sort_column: Any,
    id_column: Any,
    sort_value: Any,
    row_id: UUID,
    descending: bool = False
) -> ColumnElement:
    """Rows strictly after (sort_value, row_id) in the listing order"""
    if descending:
        return or_(sort_column < sort_value, and_(sort_column == sort_value, id_column < row_id))
    return or_(sort_column > sort_value, and_(sort_column == sort_value, id_column > row_id))


def clamp_page_size(first: Optional[int], default: int, maximum: int) -> int:
    if first is None:
        return default
    if first < 1:
        raise ValidationFailure("first must be a positive integer", {"first": first})
    return min(first, maximum)


def build_connection(
    rows: Sequence[Any],
    page_size: int,
    total_count: int,
    after: Optional[str],
    node_schema: Type[BaseModel],
    sort_key: Callable[[Any], str]
) -> Connection:
    """
    Shape a keyset query result into a connection page.

    ``rows`` is expected to hold up to ``page_size + 1`` rows; the extra row
    only signals that another page exists.
    """
    has_next_page = len(rows) > page_size
    page: List[Any] = list(rows[:page_size])

    edges = [
        Edge[node_schema](node=node_schema.model_validate(row), cursor=encode_cursor(sort_key(row), row.id))
        for row in page
    ]

    return Connection[node_schema](
        edges=edges,
        page_info=PageInfo(
            has_next_page=has_next_page,
            has_previous_page=after is not None,
            start_cursor=edges[0].cursor if edges else None,
            end_cursor=edges[-1].cursor if edges else None,
        ),
        total_count=total_count,
    )


__all__ = [
    "encode_cursor",
    "decode_cursor",
    "keyset_predicate",
    "clamp_page_size",
    "build_connection",
]
