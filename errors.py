"""
errors.py
─────────
Exception hierarchy for the Discord → Stoat structure transfer.
"""

from __future__ import annotations


class MigratorError(Exception):
    """Base exception for all transfer-related errors."""


class ConfigError(MigratorError):
    """Raised when config.json is invalid."""


class ScanError(MigratorError):
    """Raised when a raw scan snapshot is missing required data."""


class PermissionParseError(ValueError, MigratorError):
    """Raised when a permission bitstring is not a non-negative integer."""


class GatewayError(MigratorError):
    """A remote action failed (after retries, where retries apply)."""

    def __init__(self, action: str, status: int | None, body: str = ""):
        self.action = action
        self.status = status
        self.body = body
        detail = f" [{status}]" if status is not None else ""
        super().__init__(f"{action} failed{detail}: {body[:200]}")


class RequestValidationError(GatewayError):
    """The gateway refused to send a malformed request."""

    def __init__(self, action: str, message: str):
        super().__init__(action, 400, message)


class TransferFailedError(MigratorError):
    """A fatal step (clear / server) failed and the run was halted."""

    def __init__(self, step: str, message: str, result=None):
        self.step = step
        self.message = message
        self.result = result
        super().__init__(f"transfer failed at step {step}: {message}")
