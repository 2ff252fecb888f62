# =============================================================================
# school_core/config.py
# Settings for the Supabase-backed sync layer
# =============================================================================
"""
Settings are read, in order, from:

1. Streamlit secrets (``st.secrets["supabase"]``) when running inside the app
2. ``.streamlit/secrets.toml`` for scripts and tests
3. ``SUPABASE_URL`` / ``SUPABASE_KEY`` environment variables

Expected secrets.toml format:

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"
    storage_bucket = "avatars"      # optional
    realtime_backoff_cap = 30       # optional, seconds
    idle_timeout = 1800             # optional, seconds; 0 keeps the runtime alive
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from school_core.errors import ConfigurationError
from school_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SECRETS_PATH = Path(".streamlit") / "secrets.toml"


@dataclass(frozen=True)
class SyncSettings:
    """Connection and tuning settings for the sync layer."""
    supabase_url: str
    supabase_key: str
    schema: str = "public"
    storage_bucket: str = "avatars"
    page_size: int = 1000  # Supabase caps a single select at 1000 rows
    realtime_backoff_base: float = 1.0
    realtime_backoff_cap: float = 30.0
    idle_timeout: float = 1800.0  # stop a session runtime nobody used for this long

    def __post_init__(self):
        if not self.supabase_url:
            raise ConfigurationError("Supabase URL is not configured", config_key="supabase.url")
        if not self.supabase_key:
            raise ConfigurationError("Supabase key is not configured", config_key="supabase.key")
        if self.page_size <= 0:
            raise ConfigurationError(
                "page_size must be positive", config_key="supabase.page_size", expected_type="int > 0"
            )
        if self.realtime_backoff_base <= 0 or self.realtime_backoff_cap < self.realtime_backoff_base:
            raise ConfigurationError(
                "Realtime backoff must satisfy 0 < base <= cap",
                config_key="supabase.realtime_backoff_cap",
            )
        if self.idle_timeout < 0:
            raise ConfigurationError(
                "idle_timeout must not be negative", config_key="supabase.idle_timeout", expected_type="float >= 0"
            )

    @classmethod
    def from_mapping(cls, section: Dict[str, Any]) -> SyncSettings:
        """Build settings from a ``[supabase]`` secrets section."""
        known = {f.name for f in fields(cls)}
        values = {"supabase_url": section.get("url", ""), "supabase_key": section.get("key", "")}
        for name, value in section.items():
            if name in known and name not in values:
                values[name] = value
        return cls(**values)


def _streamlit_section() -> Optional[Dict[str, Any]]:
    try:
        import streamlit as st
        if "supabase" in st.secrets:
            return dict(st.secrets["supabase"])
    except FileNotFoundError:
        return None
    except Exception as e:
        # st.secrets raises its own error type when no secrets file exists
        logger.debug(f"Streamlit secrets unavailable: {e}")
    return None


def _toml_section(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        secrets = toml.load(path)
    except toml.TomlDecodeError as e:
        raise ConfigurationError(f"Cannot parse {path}: {e}", config_key="secrets.toml") from e
    return secrets.get("supabase")


def load_settings(secrets_path: Optional[Path] = None, use_streamlit: bool = True) -> SyncSettings:
    """
    Load settings from the first available source.

    Raises:
        ConfigurationError: if no source provides a URL and key
    """
    section = _streamlit_section() if use_streamlit else None
    source = "streamlit secrets"

    if section is None:
        path = secrets_path or DEFAULT_SECRETS_PATH
        section = _toml_section(path)
        source = str(path)

    if section is None:
        section = {
            "url": os.getenv("SUPABASE_URL", ""),
            "key": os.getenv("SUPABASE_KEY", ""),
        }
        bucket = os.getenv("SUPABASE_STORAGE_BUCKET")
        if bucket:
            section["storage_bucket"] = bucket
        source = "environment"

    settings = SyncSettings.from_mapping(section)
    logger.info(f"Loaded Supabase settings from {source}")
    return settings
