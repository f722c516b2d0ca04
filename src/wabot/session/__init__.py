"""Session persistence: credential store and corruption guard."""

from wabot.session.guard import CorruptionGuard
from wabot.session.store import (
    CredentialsNotFoundError,
    CredentialStore,
    CredentialStoreError,
)

__all__ = [
    "CorruptionGuard",
    "CredentialStore",
    "CredentialStoreError",
    "CredentialsNotFoundError",
]
