# =============================================================================
# school_core/ui/components.py
# Streamlit rendering helpers for bound views
# =============================================================================

from __future__ import annotations
from typing import List, Optional, Sequence

import pandas as pd
import streamlit as st

from school_core.errors.handlers import handle_error
from school_core.sync import ViewState


def header(title: str, subtitle: str, icon: str = "🏫"):
    st.markdown(f"## {icon} {title}")
    st.caption(subtitle)


def records_to_frame(records, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Turn cached rows (a list or a single record) into a DataFrame."""
    if records is None:
        rows: List[dict] = []
    elif isinstance(records, dict):
        rows = [records]
    else:
        rows = list(records)

    df = pd.DataFrame(rows)
    if columns:
        df = df.reindex(columns=list(columns))
    return df


def render_view_state(
    state: ViewState,
    title: Optional[str] = None,
    columns: Optional[Sequence[str]] = None,
    empty_message: str = "Nothing to show yet.",
) -> Optional[pd.DataFrame]:
    """
    Render one bound view.

    Previous data stays visible next to an error, and a loading view with
    cached data shows that data under a spinner caption.

    Returns:
        The rendered DataFrame, or None when there was nothing to show
    """
    if title:
        st.subheader(title)

    if state.is_error and state.error is not None:
        handle_error(state.error, log_error=False)

    if state.is_loading and not state.data:
        with st.spinner("Loading..."):
            st.caption("Fetching latest data...")
        return None

    df = records_to_frame(state.data, columns)
    if df.empty:
        st.info(empty_message)
        return None

    if state.is_loading:
        st.caption("Refreshing...")
    st.dataframe(df, use_container_width=True, hide_index=True)
    return df
