"""
Error taxonomy for vault operations.

Every failure a caller can act on maps to one of these classes.
Lower layers raise; only the CLI turns them into messages and exit codes.
"""

from __future__ import annotations


class VaultError(Exception):
    """Base class for every vault failure."""


class ConfigurationError(VaultError):
    """Vault not initialized, or configuration missing/invalid. Not retried."""


class AuthenticationError(VaultError):
    """Signature mismatch, revoked key, stale timestamp, or bad token."""


class TransferError(VaultError):
    """Backend or network failure, including timeouts. Safe to retry."""


class IntegrityError(TransferError):
    """Received content does not match the hashes in its manifest."""


class ValidationError(VaultError):
    """Malformed input rejected at the boundary with no partial effect."""


class SyncInProgressError(VaultError):
    """Another sync operation already holds the lock on this machine."""


class ConfirmationRequired(VaultError):
    """A destructive operation was invoked without explicit confirmation."""


class ConflictWarning(UserWarning):
    """Remote content would overwrite uncommitted local edits.

    Not an error: the operator decides (usually after ``skvault diff``)
    whether to overwrite.
    """
