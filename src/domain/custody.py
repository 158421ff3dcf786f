from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

AssetId = NewType("AssetId", str)
HolderId = NewType("HolderId", str)
TransitionId = NewType("TransitionId", UUID)


class AssetStatus(StrEnum):
    AVAILABLE = "Available"
    HELD = "Held"
    IN_REPAIR = "InRepair"
    MISSING = "Missing"


class TransitionKind(StrEnum):
    ACQUIRE = "Acquire"
    RELEASE = "Release"


class Classification(StrEnum):
    ACQUIRED = "acquired"
    RELEASED = "released"
    RETURNED_BY_NON_HOLDER = "returned_by_non_holder"


class Asset(BaseModel):
    """Authoritative present state of one tagged asset.

    ``status`` is the only source of truth for custody; transition records are
    history. ``version`` is bumped on every write and guards conditional updates.
    """

    asset_id: AssetId
    name: str
    status: AssetStatus = AssetStatus.AVAILABLE
    holder_id: HolderId | None = None
    held_since: datetime | None = None
    expected_return: datetime | None = None
    category: str | None = None
    serial_number: str | None = None
    version: int = 0
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_custody(self) -> Asset:
        if not self.asset_id:
            raise ValueError("asset_id must be non-empty")
        # Held <=> holder set. Anything else is a corrupted row.
        if (self.status == AssetStatus.HELD) != (self.holder_id is not None):
            raise ValueError(f"Asset {self.asset_id} has status={self.status} but holder_id={self.holder_id!r}")
        if self.held_since is not None and self.status != AssetStatus.HELD:
            raise ValueError(f"Asset {self.asset_id} has held_since set while {self.status}")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.asset_id


class Holder(BaseModel):
    holder_id: HolderId
    name: str
    email: str | None = None
    role: str | None = None


class TransitionRecord(BaseModel):
    """Write-once history entry produced by the ledger."""

    model_config = ConfigDict(frozen=True)

    id: TransitionId = TransitionId(Field(default_factory=uuid4))
    asset_id: AssetId
    acting_holder_id: HolderId
    kind: TransitionKind
    note: str
    occurred_at: datetime


class TapRequest(BaseModel):
    """Inbound tap: who tapped which asset."""

    model_config = ConfigDict(frozen=True)

    acting_holder_id: HolderId
    asset_id: AssetId

    @field_validator("acting_holder_id", "asset_id", mode="before")
    @classmethod
    def _strip_identifier(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @model_validator(mode="after")
    def _validate_identifiers(self) -> TapRequest:
        if not self.acting_holder_id:
            raise ValueError("acting_holder_id must be non-empty")
        if not self.asset_id:
            raise ValueError("asset_id must be non-empty")
        return self


class TapOutcome(BaseModel):
    asset_id: AssetId
    kind: TransitionKind
    classification: Classification
    note: str
    asset_display_name: str
    message: str
    occurred_at: datetime


class CustodyChangeEvent(BaseModel):
    """Emitted after a committed transition."""

    asset_id: AssetId
    kind: TransitionKind
    occurred_at: datetime
