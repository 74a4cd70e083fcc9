"""Error mapping for the identity / object-storage provider.

The provider reports failures as string codes ("auth/user-not-found").
Handlers never show those codes to end users; they go through
`provider_error_from_code` which maps every code (known or not) onto a closed
ProviderErrorKind and a user-facing message.
"""

from __future__ import annotations

from enum import Enum


class ProviderErrorKind(str, Enum):
    """Known provider error codes. UNKNOWN covers everything else."""

    EMAIL_ALREADY_EXISTS = "auth/email-already-exists"
    INVALID_EMAIL = "auth/invalid-email"
    PHONE_NUMBER_ALREADY_EXISTS = "auth/phone-number-already-exists"
    INVALID_PHONE_NUMBER = "auth/invalid-phone-number"
    UID_ALREADY_EXISTS = "auth/uid-already-exists"
    USER_NOT_FOUND = "auth/user-not-found"
    WRONG_PASSWORD = "auth/wrong-password"
    TOO_MANY_REQUESTS = "auth/too-many-requests"
    NETWORK_REQUEST_FAILED = "auth/network-request-failed"
    STORAGE_UNAUTHORIZED = "storage/unauthorized"
    STORAGE_OBJECT_NOT_FOUND = "storage/object-not-found"
    STORAGE_QUOTA_EXCEEDED = "storage/quota-exceeded"
    UNKNOWN = "unknown"


PROVIDER_ERROR_MESSAGES: dict[ProviderErrorKind, str] = {
    ProviderErrorKind.EMAIL_ALREADY_EXISTS: "Email already exists",
    ProviderErrorKind.INVALID_EMAIL: "Invalid email address",
    ProviderErrorKind.PHONE_NUMBER_ALREADY_EXISTS: "Phone number already exists",
    ProviderErrorKind.INVALID_PHONE_NUMBER: "Invalid phone number",
    ProviderErrorKind.UID_ALREADY_EXISTS: "User ID already exists",
    ProviderErrorKind.USER_NOT_FOUND: "User not found",
    ProviderErrorKind.WRONG_PASSWORD: "Incorrect password",
    ProviderErrorKind.TOO_MANY_REQUESTS: "Too many requests, try again later",
    ProviderErrorKind.NETWORK_REQUEST_FAILED: "Network error, please check your connection",
    ProviderErrorKind.STORAGE_UNAUTHORIZED: "Unauthorized access to storage",
    ProviderErrorKind.STORAGE_OBJECT_NOT_FOUND: "File not found",
    ProviderErrorKind.STORAGE_QUOTA_EXCEEDED: "Storage quota exceeded",
    ProviderErrorKind.UNKNOWN: "Unexpected provider error",
}

# Every kind must have a message; checked at import time.
_missing = set(ProviderErrorKind) - set(PROVIDER_ERROR_MESSAGES)
if _missing:
    raise RuntimeError(f"Provider error kinds without a message: {sorted(k.name for k in _missing)}")


class ProviderError(RuntimeError):
    """A provider failure translated into a user-facing message."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        code: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.code = code or kind.value
        self.original = original
        super().__init__(message)


def classify_provider_code(code: str | None) -> ProviderErrorKind:
    """Map a raw provider code onto ProviderErrorKind (UNKNOWN if unrecognized)."""
    if not code:
        return ProviderErrorKind.UNKNOWN
    try:
        return ProviderErrorKind(code)
    except ValueError:
        return ProviderErrorKind.UNKNOWN


def provider_error_from_code(
    code: str | None,
    fallback_message: str | None = None,
    *,
    original: BaseException | None = None,
) -> ProviderError:
    """Build a ProviderError for a provider failure.

    Unknown codes keep the provider's own message when one is given.
    """
    kind = classify_provider_code(code)
    if kind is ProviderErrorKind.UNKNOWN and fallback_message:
        message = fallback_message
    else:
        message = PROVIDER_ERROR_MESSAGES[kind]
    return ProviderError(kind, message, code=code, original=original)
