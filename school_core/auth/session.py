# =============================================================================
# school_core/auth/session.py
# Authentication boundary - Supabase Auth sign-in and the current user
# =============================================================================
"""
AuthSession wraps the hosted auth service.

Sign-in, token issuance and policy evaluation all happen on the platform;
this module only keeps the resulting session and exposes the access token
so the gateway can attach it to every table call. No authorisation decision
is taken locally: row-level security on the server is the only gate.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from supabase import AuthError, AuthRetryableError

from school_core.errors import AuthorizationError, NetworkError
from school_core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ROLE = "viewer"


@dataclass(frozen=True)
class CurrentUser:
    """The signed-in user as seen by the front end."""
    user_id: str
    email: Optional[str]
    role: str
    access_token: str

    @classmethod
    def from_auth(cls, user: Any, session: Any) -> CurrentUser:
        metadata = getattr(user, "app_metadata", None) or {}
        return cls(
            user_id=str(user.id),
            email=getattr(user, "email", None),
            role=metadata.get("role") or DEFAULT_ROLE,
            access_token=session.access_token,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AuthSession:
    """
    Holds the authenticated session for one runtime.

    Usage:
        auth = AuthSession(client)
        user = await auth.sign_in("teacher@school.test", "secret")
        gateway = SupabaseGateway(client, settings, credentials=auth.access_token)
    """

    def __init__(self, client):
        self.client = client
        self._user: Optional[CurrentUser] = None
        self._callbacks: List[Callable[[Optional[CurrentUser]], None]] = []

    @property
    def current_user(self) -> Optional[CurrentUser]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    def access_token(self) -> Optional[str]:
        """Credentials provider for the gateway; None means anonymous."""
        return self._user.access_token if self._user else None

    def register_callback(self, callback: Callable[[Optional[CurrentUser]], None]) -> None:
        """Call ``callback(user)`` whenever the signed-in identity changes (None after sign-out)."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def _set_user(self, user: Optional[CurrentUser]) -> None:
        previous = self._user.user_id if self._user else None
        self._user = user
        if previous == (user.user_id if user else None):
            return
        for callback in list(self._callbacks):
            try:
                callback(user)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    async def sign_in(self, email: str, password: str) -> CurrentUser:
        """
        Sign in with email and password.

        Raises:
            AuthorizationError: Credentials rejected
            NetworkError: Auth service unreachable
        """
        try:
            response = await self.client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except AuthRetryableError as e:
            raise NetworkError(f"Auth service unavailable: {e}", entity="auth") from e
        except AuthError as e:
            raise AuthorizationError(str(e), entity="auth", operation="sign_in") from e

        if response.user is None or response.session is None:
            raise AuthorizationError("Sign-in returned no session", entity="auth", operation="sign_in")

        self._set_user(CurrentUser.from_auth(response.user, response.session))
        logger.info(f"Signed in {self._user.email} ({self._user.role})")
        return self._user

    async def refresh(self) -> Optional[CurrentUser]:
        """Pick up a session the client refreshed on its own."""
        session = await self.client.auth.get_session()
        if session is None:
            self._set_user(None)
            return None
        self._set_user(CurrentUser.from_auth(session.user, session))
        return self._user

    async def sign_out(self) -> None:
        if self._user is None:
            return
        try:
            await self.client.auth.sign_out()
        except AuthError as e:
            # Local session is dropped regardless; the token expires server-side
            logger.warning(f"Sign-out request failed: {e}")
        logger.info(f"Signed out {self._user.email}")
        self._set_user(None)
