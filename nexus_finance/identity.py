"""Who is asking: an account, a guest, or nobody yet."""

from dataclasses import dataclass
from typing import Optional


GUEST_MODE_COOKIE = "guest-mode"
GUEST_STORAGE_COOKIE = "guest-storage"

ACCOUNT = "account"
GUEST = "guest"
ANONYMOUS = "anonymous"

LOGIN_ENDPOINT = "login"
PUBLIC_ENDPOINT_PREFIXES = ("auth_",)
PUBLIC_ENDPOINTS = {"static", "db_health"}


@dataclass
class Identity:
    kind: str
    account_id: Optional[int] = None
    username: Optional[str] = None
    storage_token: Optional[str] = None

    @property
    def is_account(self):
        return self.kind == ACCOUNT

    @property
    def is_guest(self):
        return self.kind == GUEST

    @property
    def is_identified(self):
        return self.kind != ANONYMOUS


def resolve_identity(session_user_id, cookies, find_account):
    """Pick the caller's identity for one request.

    An account session wins over a guest cookie. ``find_account`` maps a
    user id to its row, or ``None`` when the account no longer exists.
    """
    storage_token = cookies.get(GUEST_STORAGE_COOKIE) or None
    if session_user_id is not None:
        account = find_account(session_user_id)
        if account is not None:
            return Identity(
                kind=ACCOUNT,
                account_id=account["id"],
                username=account["username"],
                storage_token=storage_token,
            )

    if cookies.get(GUEST_MODE_COOKIE) == "true":
        return Identity(kind=GUEST, storage_token=storage_token)

    return Identity(kind=ANONYMOUS, storage_token=storage_token)


def is_public_endpoint(endpoint):
    if endpoint is None:
        return False
    return endpoint in PUBLIC_ENDPOINTS or endpoint.startswith(PUBLIC_ENDPOINT_PREFIXES)


def access_redirect(identity, endpoint):
    """Return the endpoint to redirect to, or ``None`` to let the request through."""
    if is_public_endpoint(endpoint):
        return None
    if endpoint == LOGIN_ENDPOINT:
        return "index" if identity.is_identified else None
    if not identity.is_identified:
        return LOGIN_ENDPOINT
    return None
