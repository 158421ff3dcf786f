from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from db import models
from domain.custody import (
    Asset,
    AssetId,
    AssetStatus,
    Holder,
    HolderId,
    TransitionId,
    TransitionKind,
    TransitionRecord,
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AssetRepository:
    """Asset rows. ``create_many`` commits; ``compare_and_set`` leaves the commit to the caller."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, assets: list[Asset]) -> list[Asset]:
        orm_assets = [
            models.AssetOrm(
                asset_id=asset.asset_id,
                name=asset.name,
                status=asset.status.value,
                holder_id=asset.holder_id,
                held_since=asset.held_since,
                expected_return=asset.expected_return,
                category=asset.category,
                serial_number=asset.serial_number,
                version=asset.version,
                updated_at=asset.updated_at,
            )
            for asset in assets
        ]
        self._session.add_all(orm_assets)
        self._session.commit()
        return assets

    def get(self, asset_id: AssetId) -> Asset | None:
        orm_asset = self._session.get(models.AssetOrm, asset_id)
        if orm_asset is None:
            return None
        return self._to_domain(orm_asset)

    def list(self) -> list[Asset]:
        orm_assets = self._session.scalars(select(models.AssetOrm).order_by(models.AssetOrm.name.asc())).all()
        return [self._to_domain(asset) for asset in orm_assets]

    def list_overdue(self, as_of: datetime) -> list[Asset]:
        stmt = (
            select(models.AssetOrm)
            .where(models.AssetOrm.status == AssetStatus.HELD.value)
            .where(models.AssetOrm.expected_return.is_not(None))
            .where(models.AssetOrm.expected_return < as_of)
            .order_by(models.AssetOrm.expected_return.asc())
        )
        return [self._to_domain(asset) for asset in self._session.scalars(stmt).all()]

    def compare_and_set(self, asset: Asset, *, expected_version: int) -> bool:
        """Write ``asset`` only if the stored row still has ``expected_version``.

        The stored version becomes ``expected_version + 1``. Returns whether the
        row matched.
        """
        stmt = (
            update(models.AssetOrm)
            .where(models.AssetOrm.asset_id == asset.asset_id)
            .where(models.AssetOrm.version == expected_version)
            .values(
                status=asset.status.value,
                holder_id=asset.holder_id,
                held_since=asset.held_since,
                expected_return=asset.expected_return,
                version=expected_version + 1,
                updated_at=asset.updated_at,
            )
        )
        result = self._session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    @staticmethod
    def _to_domain(orm_asset: models.AssetOrm) -> Asset:
        return Asset(
            asset_id=AssetId(orm_asset.asset_id),
            name=orm_asset.name,
            status=AssetStatus(orm_asset.status),
            holder_id=HolderId(orm_asset.holder_id) if orm_asset.holder_id is not None else None,
            held_since=_as_utc(orm_asset.held_since),
            expected_return=_as_utc(orm_asset.expected_return),
            category=orm_asset.category,
            serial_number=orm_asset.serial_number,
            version=orm_asset.version,
            updated_at=_as_utc(orm_asset.updated_at),
        )


class TransitionRecordRepository:
    """Append-only history. Records are never updated or deleted."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def append(self, record: TransitionRecord) -> TransitionRecord:
        self._session.add(
            models.TransitionRecordOrm(
                id=record.id,
                asset_id=record.asset_id,
                acting_holder_id=record.acting_holder_id,
                kind=record.kind.value,
                note=record.note,
                occurred_at=record.occurred_at,
            )
        )
        self._session.flush()
        return record

    def list(self, asset_id: AssetId | None = None, *, limit: int | None = None) -> list[TransitionRecord]:
        """Newest first."""
        stmt = select(models.TransitionRecordOrm).order_by(
            models.TransitionRecordOrm.occurred_at.desc(), models.TransitionRecordOrm.seq.desc()
        )
        if asset_id is not None:
            stmt = stmt.where(models.TransitionRecordOrm.asset_id == asset_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_domain(record) for record in self._session.scalars(stmt).all()]

    @staticmethod
    def _to_domain(orm_record: models.TransitionRecordOrm) -> TransitionRecord:
        occurred_at = _as_utc(orm_record.occurred_at)
        assert occurred_at is not None
        return TransitionRecord(
            id=TransitionId(orm_record.id),
            asset_id=AssetId(orm_record.asset_id),
            acting_holder_id=HolderId(orm_record.acting_holder_id),
            kind=TransitionKind(orm_record.kind),
            note=orm_record.note,
            occurred_at=occurred_at,
        )


class HolderRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, holders: list[Holder]) -> list[Holder]:
        self._session.add_all(
            [
                models.HolderOrm(holder_id=holder.holder_id, name=holder.name, email=holder.email, role=holder.role)
                for holder in holders
            ]
        )
        self._session.commit()
        return holders

    def get(self, holder_id: HolderId) -> Holder | None:
        orm_holder = self._session.get(models.HolderOrm, holder_id)
        if orm_holder is None:
            return None
        return self._to_domain(orm_holder)

    def list(self) -> list[Holder]:
        orm_holders = self._session.scalars(select(models.HolderOrm).order_by(models.HolderOrm.name.asc())).all()
        return [self._to_domain(holder) for holder in orm_holders]

    @staticmethod
    def _to_domain(orm_holder: models.HolderOrm) -> Holder:
        return Holder(
            holder_id=HolderId(orm_holder.holder_id),
            name=orm_holder.name,
            email=orm_holder.email,
            role=orm_holder.role,
        )
