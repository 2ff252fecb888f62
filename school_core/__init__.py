"""
SchoolHub core package.

Client-side data synchronization for a Supabase-backed school front end:
cached queries, optimistic mutations and realtime reconciliation.
"""

__version__ = "0.1.0"
