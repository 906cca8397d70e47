from __future__ import annotations

import hashlib
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SharedCredential:
    """The application's own Gemini key; subject to the shared rate limit."""

    api_key: str = field(repr=False)

    @property
    def is_shared(self) -> bool:
        return True


@dataclass(frozen=True)
class UserCredential:
    """A key supplied by the caller in the `x-gemini-key` header."""

    api_key: str = field(repr=False)

    @property
    def is_shared(self) -> bool:
        return False


CredentialSource = SharedCredential | UserCredential


class MissingCredentialError(Exception):
    pass


def credential_fingerprint(api_key: str) -> str:
    return hashlib.sha256((api_key or "").encode("utf-8")).hexdigest()[:24]


def resolve_credential(header_value: str | None, shared_key: str) -> CredentialSource:
    supplied = (header_value or "").strip()
    shared = (shared_key or "").strip()
    if supplied and supplied != shared:
        return UserCredential(api_key=supplied)
    if not shared:
        raise MissingCredentialError("An API key is required. Add your own Gemini API key to continue.")
    # A caller echoing the shared key back is still metered as shared.
    return SharedCredential(api_key=shared)
