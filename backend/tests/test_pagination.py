import base64
import uuid

import pytest

from decision_explorer.core.exceptions import ValidationFailure
from decision_explorer.schemas.pathway import PathwayResponse
from decision_explorer.utils.pagination import (
    build_connection,
    clamp_page_size,
    decode_cursor,
    encode_cursor
)

from factories import make_pathway


class TestCursor:
    """Opaque cursors over (sort key, id)."""

    def test_sort_key_containing_separator(self):
        row_id = uuid.uuid4()

        cursor = encode_cursor("Heart failure | HFrEF", row_id)

        assert decode_cursor(cursor) == ("Heart failure | HFrEF", row_id)

    def test_cursor_is_urlsafe(self):
        cursor = encode_cursor("??>>??", uuid.uuid4())

        assert "+" not in cursor and "/" not in cursor

    @pytest.mark.parametrize("cursor", [
        "not-base64!!",
        base64.urlsafe_b64encode(b"no separator").decode(),
        base64.urlsafe_b64encode(b"name|not-a-uuid").decode(),
    ])
    def test_invalid_cursor_rejected(self, cursor):
        with pytest.raises(ValidationFailure):
            decode_cursor(cursor)


class TestPageSize:

    def test_default_when_absent(self):
        assert clamp_page_size(None, 50, 200) == 50

    def test_clamped_to_maximum(self):
        assert clamp_page_size(1000, 50, 200) == 200

    def test_non_positive_rejected(self):
        with pytest.raises(ValidationFailure):
            clamp_page_size(0, 50, 200)


class TestBuildConnection:

    def test_extra_row_signals_next_page(self):
        rows = [make_pathway(id=uuid.uuid4(), name=f"Pathway {i}", slug=f"pathway-{i}") for i in range(3)]

        page = build_connection(
            rows, page_size=2, total_count=3, after=None,
            node_schema=PathwayResponse, sort_key=lambda row: row.name
        )

        assert len(page.edges) == 2
        assert page.page_info.has_next_page is True
        assert page.page_info.has_previous_page is False
        assert page.page_info.end_cursor == page.edges[-1].cursor
        assert decode_cursor(page.page_info.end_cursor) == ("Pathway 1", rows[1].id)
        assert page.total_count == 3

    def test_empty_page(self):
        page = build_connection(
            [], page_size=10, total_count=0, after="cursor",
            node_schema=PathwayResponse, sort_key=lambda row: row.name
        )

        assert page.edges == []
        assert page.page_info.start_cursor is None
        assert page.page_info.has_previous_page is True
