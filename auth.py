from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from inventory import LibraryStore
from models import Unauthorized


class NotAuthenticated(Unauthorized):
    """No identity could be established for the request."""

    status_code = 401


@dataclass(frozen=True)
class Identity:
    user_id: str
    name: str


def parse_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TokenAuthenticator:
    """Resolves ``Authorization: Bearer <token>`` headers to a user identity."""

    def __init__(self, store: LibraryStore):
        self.store = store

    def authenticate(self, header: Optional[str]) -> Identity:
        token = parse_bearer(header)
        if token is None:
            raise NotAuthenticated("Missing bearer token")
        user = self.store.get_user_by_token(token)
        if user is None:
            raise NotAuthenticated("Invalid or expired token")
        return Identity(user_id=user["id"], name=user["name"])
