from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class HolderOrm(Base):
    __tablename__ = "holders"

    holder_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str | None] = mapped_column(String, nullable=True)


class AssetOrm(Base):
    __tablename__ = "assets"

    asset_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    # No FK to holders: holder identity is owned by an external directory.
    holder_id: Mapped[str | None] = mapped_column(String, nullable=True)
    held_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expected_return: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    serial_number: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    transitions: Mapped[list["TransitionRecordOrm"]] = relationship(back_populates="asset", viewonly=True)


class TransitionRecordOrm(Base):
    __tablename__ = "transition_records"

    # Insertion order breaks ties between records sharing a timestamp.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(Uuid, unique=True, nullable=False, default=uuid4)
    asset_id: Mapped[str] = mapped_column(String, ForeignKey("assets.asset_id"), nullable=False)
    acting_holder_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    note: Mapped[str] = mapped_column(String, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    asset: Mapped[AssetOrm] = relationship(back_populates="transitions")

    __table_args__ = (Index("ix_transition_records_asset_time", "asset_id", "occurred_at"),)
