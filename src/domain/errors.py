from __future__ import annotations

from enum import StrEnum


class ErrorCategory(StrEnum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CONTENTION = "contention"
    INVALID_INPUT = "invalid_input"
    UNAVAILABLE = "unavailable"


class CustodyError(Exception):
    """Base for failures surfaced to callers of the ledger."""

    category: ErrorCategory
    retryable: bool = False


class AssetNotFoundError(CustodyError):
    category = ErrorCategory.NOT_FOUND

    def __init__(self, asset_id: str) -> None:
        self.asset_id = asset_id
        super().__init__(f"Asset not found: {asset_id}")


class InvalidStatusConflictError(CustodyError):
    category = ErrorCategory.CONFLICT

    def __init__(self, status: str, *, asset_id: str | None = None) -> None:
        self.status = status
        self.asset_id = asset_id
        target = f" {asset_id}" if asset_id else ""
        super().__init__(f"Asset{target} has invalid status for this transition: {status}")


class ContentionError(CustodyError):
    category = ErrorCategory.CONTENTION
    retryable = True

    def __init__(self, asset_id: str, *, attempts: int) -> None:
        self.asset_id = asset_id
        self.attempts = attempts
        super().__init__(f"Lost concurrent update race for asset {asset_id} after {attempts} attempt(s)")


class InvalidTapInputError(CustodyError):
    category = ErrorCategory.INVALID_INPUT


class StorageUnavailableError(CustodyError):
    category = ErrorCategory.UNAVAILABLE
    retryable = True
