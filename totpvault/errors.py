"""Typed failures raised by the totpvault core.

Messages name the offending field or label but never carry secret material.
"""
from typing import Optional


class TotpVaultError(Exception):
    """Base class for every error the core reports to the command layer."""


class ValidationError(TotpVaultError, ValueError):
    """A record field (or engine input) violates an invariant."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ParseError(TotpVaultError, ValueError):
    """Malformed otpauth input."""


class UnsupportedTypeError(ParseError):
    """otpauth URI for a generator type other than totp."""


class InvalidSecretError(ParseError):
    """Secret could not be decoded from Base32."""


class FormatError(TotpVaultError, ValueError):
    """Plaintext vault document does not match the schema."""

    def __init__(self, message: str, label: Optional[str] = None, field: Optional[str] = None):
        self.label = label
        self.field = field
        self.message = message
        parts = []
        if label is not None:
            parts.append(f"record '{label}'")
        if field is not None:
            parts.append(f"field '{field}'")
        prefix = ", ".join(parts)
        super().__init__(f"{prefix}: {message}" if prefix else message)


class AuthenticationError(TotpVaultError):
    """Encrypted vault failed to authenticate (wrong passphrase or corrupted file)."""

    def __init__(self, message: str = "unable to decrypt vault: wrong passphrase or corrupted file"):
        super().__init__(message)


class NotFoundError(TotpVaultError, LookupError):
    def __init__(self, label: str):
        self.label = label
        super().__init__(f"no record named '{label}'")


class DuplicateLabelError(TotpVaultError):
    def __init__(self, label: str):
        self.label = label
        super().__init__(f"a record named '{label}' already exists")
