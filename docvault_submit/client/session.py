"""Per-user session context handed to the repository client.

The session replaces any process-wide token cache: every RepositoryClient is
constructed with exactly one Session, and two clients never share tokens
unless the caller passes them the same object.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Session:
    """Credentials for one authenticated user.

    auth_token: Value of the Authorization header issued by the backend's
                login endpoint (e.g. "Bearer eyJ..."). Empty for anonymous use.
    csrf_token: Most recent CSRF token seen from the backend. Refreshed
                before each mutating request; kept here as the fallback when
                a refresh fails.
    """

    auth_token: str = field(default="", repr=False)
    csrf_token: str | None = field(default=None, repr=False)

    @property
    def authenticated(self) -> bool:
        return bool(self.auth_token)

    def auth_headers(self) -> dict[str, str]:
        if not self.auth_token:
            return {}
        token = self.auth_token
        if not token.lower().startswith("bearer "):
            token = f"Bearer {token}"
        return {"Authorization": token}
