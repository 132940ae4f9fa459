from __future__ import annotations

from typing import Optional


class SnapshotError(Exception):
    """Base class for errors that abort a snapshot build."""


class UniverseResolutionError(SnapshotError):
    pass


class AnchorMissingError(SnapshotError):
    def __init__(self, anchor: str, reason: str):
        super().__init__(f"anchor {anchor} missing: {reason}")
        self.anchor = anchor
        self.reason = reason


class BuildTimeoutError(SnapshotError):
    pass


class ExchangeError(Exception):
    """Raised by exchange clients once their retry budget is spent."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.retryable = retryable

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"{base} (http {self.status}, code {self.code})"
        return base
