"""Streamlit presentation helpers for SchoolHub."""

from .components import header, records_to_frame, render_view_state

__all__ = ["header", "records_to_frame", "render_view_state"]
