# =============================================================================
# tests/unit/test_components.py
# Unit Tests for the Streamlit view helpers
# =============================================================================

from unittest.mock import patch

import pandas as pd
import pytest

from school_core.errors import NetworkError
from school_core.sync import ViewState
from school_core.ui.components import records_to_frame, render_view_state


@pytest.fixture
def st():
    with patch("school_core.ui.components.st") as mock_st, \
            patch("school_core.errors.handlers.st") as handler_st:
        handler_st.session_state = {}
        mock_st.handler = handler_st
        yield mock_st


class TestRecordsToFrame:

    def test_list_of_records(self):
        df = records_to_frame([{"id": 1, "full_name": "Ada"}, {"id": 2, "full_name": "Bob"}])
        assert list(df["full_name"]) == ["Ada", "Bob"]

    def test_single_record(self):
        assert len(records_to_frame({"id": 1})) == 1

    def test_none(self):
        assert records_to_frame(None).empty

    def test_column_selection(self):
        df = records_to_frame([{"id": 1, "full_name": "Ada", "secret": "x"}], columns=["full_name", "email"])
        assert list(df.columns) == ["full_name", "email"]
        assert pd.isna(df.loc[0, "email"])


class TestRenderViewState:

    def test_renders_rows(self, st):
        df = render_view_state(ViewState(data=[{"id": 1, "full_name": "Ada"}]), title="Students")

        st.subheader.assert_called_once_with("Students")
        st.dataframe.assert_called_once()
        assert list(df["full_name"]) == ["Ada"]

    def test_loading_without_data(self, st):
        assert render_view_state(ViewState(is_loading=True)) is None
        st.spinner.assert_called_once()
        st.dataframe.assert_not_called()

    def test_error_keeps_previous_rows(self, st):
        state = ViewState(data=[{"id": 1}], is_error=True, error=NetworkError("timeout"))

        df = render_view_state(state)

        st.handler.warning.assert_called_once()
        assert len(df) == 1

    def test_empty(self, st):
        assert render_view_state(ViewState(data=[]), empty_message="No students") is None
        st.info.assert_called_once_with("No students")
