from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, TypeVar

from pydantic import ValidationError
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from db.repositories import AssetRepository, HolderRepository, TransitionRecordRepository
from domain.custody import (
    Asset,
    AssetId,
    AssetStatus,
    Classification,
    CustodyChangeEvent,
    Holder,
    HolderId,
    TapOutcome,
    TapRequest,
    TransitionRecord,
)
from domain.errors import (
    AssetNotFoundError,
    ContentionError,
    InvalidStatusConflictError,
    InvalidTapInputError,
    StorageUnavailableError,
)
from domain.policy import Decision, InvalidStateError, decide

from .asset_locks import AssetLockRegistry, AssetLockTimeout
from .notifications import ChangeNotifier, LoggingChangeNotifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_HISTORY_LIMIT = 50

_STORAGE_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)

_MESSAGE_PREFIX = {
    Classification.ACQUIRED: "Checked Out",
    Classification.RELEASED: "Checked In",
    Classification.RETURNED_BY_NON_HOLDER: "Returned",
}

_ADMIN_STATUSES = frozenset({AssetStatus.AVAILABLE, AssetStatus.IN_REPAIR, AssetStatus.MISSING})


class _StaleRead(Exception):
    """The asset row no longer matches the version read in this attempt."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustodyLedger:
    """Owns asset custody state and its append-only transition history.

    Every write runs under the asset's in-process lock and inside one database
    transaction that performs a version-guarded update of the asset row and the
    history append. A failed version check rolls the attempt back and re-reads,
    up to ``max_attempts`` times.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        notifier: ChangeNotifier | None = None,
        locks: AssetLockRegistry | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_attempts <= 0:
            msg = "max_attempts must be > 0"
            raise ValueError(msg)

        self._session_factory = session_factory
        self._notifier = notifier if notifier is not None else LoggingChangeNotifier()
        self._locks = locks if locks is not None else AssetLockRegistry()
        self._max_attempts = max_attempts
        self._clock = clock or _utcnow

    def record_tap(self, acting_holder_id: str, asset_id: str) -> TapOutcome:
        """Acquire an available asset or release a held one, depending on its current state."""
        request = self._validate_tap(acting_holder_id, asset_id)

        def plan(asset: Asset) -> Decision:
            try:
                return decide(asset.status, asset.holder_id, request.acting_holder_id)
            except InvalidStateError as err:
                raise InvalidStatusConflictError(err.status, asset_id=asset.asset_id) from err

        return self._transition(request.asset_id, request.acting_holder_id, plan)

    def check_out(
        self,
        asset_id: str,
        holder_id: str,
        *,
        expected_return: datetime | None = None,
        note: str | None = None,
    ) -> TapOutcome:
        request = self._validate_tap(holder_id, asset_id)

        def plan(asset: Asset) -> Decision:
            if asset.status != AssetStatus.AVAILABLE:
                raise InvalidStatusConflictError(asset.status, asset_id=asset.asset_id)
            decision = decide(asset.status, asset.holder_id, request.acting_holder_id)
            return decision.model_copy(update={"note": note}) if note else decision

        return self._transition(
            request.asset_id,
            request.acting_holder_id,
            plan,
            expected_return=_as_utc(expected_return) if expected_return is not None else None,
        )

    def check_in(self, asset_id: str, holder_id: str, *, note: str | None = None) -> TapOutcome:
        request = self._validate_tap(holder_id, asset_id)

        def plan(asset: Asset) -> Decision:
            if asset.status != AssetStatus.HELD:
                raise InvalidStatusConflictError(asset.status, asset_id=asset.asset_id)
            decision = decide(asset.status, asset.holder_id, request.acting_holder_id)
            return decision.model_copy(update={"note": note}) if note else decision

        return self._transition(request.asset_id, request.acting_holder_id, plan)

    def set_status(self, asset_id: str, status: AssetStatus | str) -> Asset:
        """Administrative move between non-custody statuses. Writes no transition record."""
        try:
            target = AssetStatus(status)
        except ValueError as err:
            raise InvalidTapInputError(f"Unknown status {status}") from err
        if target not in _ADMIN_STATUSES:
            raise InvalidTapInputError(f"Status {target} cannot be set administratively")

        def step(session: Session, asset: Asset) -> Asset:
            if asset.status == AssetStatus.HELD:
                raise InvalidStatusConflictError(asset.status, asset_id=asset.asset_id)
            updated = asset.model_copy(update={"status": target, "updated_at": self._next_timestamp(asset)})
            if not AssetRepository(session).compare_and_set(updated, expected_version=asset.version):
                raise _StaleRead
            return updated.model_copy(update={"version": asset.version + 1})

        updated = self._run_atomic(AssetId(asset_id), step)
        logger.info("Asset %s status set to %s", asset_id, target)
        return updated

    def get_asset(self, asset_id: str) -> Asset:
        with self._read_session() as session:
            asset = AssetRepository(session).get(AssetId(asset_id))
        if asset is None:
            raise AssetNotFoundError(asset_id)
        return asset

    def list_assets(self) -> list[Asset]:
        with self._read_session() as session:
            return AssetRepository(session).list()

    def history(
        self, asset_id: str | None = None, *, limit: int | None = DEFAULT_HISTORY_LIMIT
    ) -> list[TransitionRecord]:
        """Most recent transitions first."""
        with self._read_session() as session:
            return TransitionRecordRepository(session).list(
                AssetId(asset_id) if asset_id is not None else None, limit=limit
            )

    def overdue(self, as_of: datetime | None = None) -> list[Asset]:
        cutoff = _as_utc(as_of or self._clock())
        with self._read_session() as session:
            return AssetRepository(session).list_overdue(cutoff)

    def list_holders(self) -> list[Holder]:
        with self._read_session() as session:
            return HolderRepository(session).list()

    def _transition(
        self,
        asset_id: AssetId,
        acting_holder_id: HolderId,
        plan: Callable[[Asset], Decision],
        *,
        expected_return: datetime | None = None,
    ) -> TapOutcome:
        def step(session: Session, asset: Asset) -> tuple[Asset, Decision, TransitionRecord]:
            decision = plan(asset)
            occurred_at = self._next_timestamp(asset)
            acquiring = decision.next_holder_id is not None
            # Re-validate so a decision can never persist a Held row without a holder.
            updated = Asset.model_validate(
                {
                    **asset.model_dump(),
                    "status": decision.next_status,
                    "holder_id": decision.next_holder_id,
                    "held_since": occurred_at if acquiring else None,
                    "expected_return": expected_return if acquiring else None,
                    "updated_at": occurred_at,
                }
            )
            if not AssetRepository(session).compare_and_set(updated, expected_version=asset.version):
                raise _StaleRead
            record = TransitionRecordRepository(session).append(
                TransitionRecord(
                    asset_id=asset.asset_id,
                    acting_holder_id=acting_holder_id,
                    kind=decision.kind,
                    note=decision.note,
                    occurred_at=occurred_at,
                )
            )
            return updated, decision, record

        asset, decision, record = self._run_atomic(asset_id, step)
        logger.info(
            "Recorded %s of asset %s by holder %s: %s", record.kind, record.asset_id, acting_holder_id, record.note
        )
        self._publish(CustodyChangeEvent(asset_id=record.asset_id, kind=record.kind, occurred_at=record.occurred_at))

        return TapOutcome(
            asset_id=asset.asset_id,
            kind=decision.kind,
            classification=decision.classification,
            note=decision.note,
            asset_display_name=asset.display_name,
            message=f"{_MESSAGE_PREFIX[decision.classification]}: {asset.display_name}",
            occurred_at=record.occurred_at,
        )

    def _run_atomic(self, asset_id: AssetId, step: Callable[[Session, Asset], T]) -> T:
        """Run ``step`` on a fresh read of the asset, inside one transaction, retrying stale reads."""
        with self._storage_errors(asset_id):
            try:
                with self._locks.hold(asset_id):
                    for attempt in range(1, self._max_attempts + 1):
                        try:
                            with self._session_factory() as session, session.begin():
                                asset = AssetRepository(session).get(asset_id)
                                if asset is None:
                                    raise AssetNotFoundError(asset_id)
                                return step(session, asset)
                        except _StaleRead:
                            logger.warning(
                                "Asset %s changed concurrently (attempt %d/%d)", asset_id, attempt, self._max_attempts
                            )
            except AssetLockTimeout as err:
                logger.warning("Asset %s is busy: %s", asset_id, err)
                raise ContentionError(asset_id, attempts=0) from err

        logger.warning("Giving up on asset %s after %d attempts", asset_id, self._max_attempts)
        raise ContentionError(asset_id, attempts=self._max_attempts)

    @contextmanager
    def _storage_errors(self, asset_id: str | None = None) -> Iterator[None]:
        try:
            yield
        except _STORAGE_ERRORS as err:
            logger.error("Storage unavailable (asset=%s): %s", asset_id, err)
            raise StorageUnavailableError(f"Storage unavailable: {err.__class__.__name__}") from err

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        with self._storage_errors(), self._session_factory() as session:
            yield session

    def _next_timestamp(self, asset: Asset) -> datetime:
        now = _as_utc(self._clock())
        if asset.updated_at is not None and asset.updated_at > now:
            return asset.updated_at
        return now

    def _publish(self, event: CustodyChangeEvent) -> None:
        try:
            self._notifier.publish(event)
        except Exception:
            # The transition is already committed; delivery is the notifier's concern.
            logger.exception("Failed to publish custody change for asset %s", event.asset_id)

    @staticmethod
    def _validate_tap(acting_holder_id: str, asset_id: str) -> TapRequest:
        try:
            return TapRequest(acting_holder_id=acting_holder_id, asset_id=asset_id)  # type: ignore[arg-type]
        except ValidationError as err:
            raise InvalidTapInputError(f"Invalid tap: {_validation_summary(err)}") from err


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _validation_summary(err: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}" for error in err.errors()
    )


__all__ = ["CustodyLedger", "DEFAULT_HISTORY_LIMIT", "DEFAULT_MAX_ATTEMPTS"]
