"""
Authentication boundary for SchoolHub.

Authentication is delegated to Supabase Auth; access control is enforced by
row-level security policies on the server.
"""

from .session import AuthSession, CurrentUser, DEFAULT_ROLE

__all__ = [
    "AuthSession",
    "CurrentUser",
    "DEFAULT_ROLE",
]
