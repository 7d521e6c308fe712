"""Typed errors raised by the storage layer."""

from __future__ import annotations


class StorageError(RuntimeError):
    """Storage-operational failure wrapped with operation and provider context."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        provider: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.provider = provider
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        detail = f"[{self.provider}:{self.operation}] {base}"
        if self.cause is not None:
            detail = f"{detail} ({type(self.cause).__name__}: {self.cause})"
        return detail


class CorruptDocumentError(StorageError):
    """Raised when a stored document exists but cannot be decoded."""

    def __init__(
        self,
        key: str,
        *,
        operation: str,
        provider: str,
        cause: BaseException | None = None,
        reason: str | None = None,
    ) -> None:
        message = f"Corrupt document at '{key}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, operation=operation, provider=provider, cause=cause)
        self.key = key


class PointerUpdateError(StorageError):
    """Raised when the current-snapshot pointer could not be committed."""


__all__ = ["CorruptDocumentError", "PointerUpdateError", "StorageError"]
