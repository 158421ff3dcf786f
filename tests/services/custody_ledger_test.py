import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from time import perf_counter

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from db.repositories import AssetRepository, TransitionRecordRepository
from domain.custody import (
    AssetStatus,
    Classification,
    CustodyChangeEvent,
    Holder,
    HolderId,
    TransitionKind,
)
from domain.errors import (
    AssetNotFoundError,
    ContentionError,
    ErrorCategory,
    InvalidStatusConflictError,
    InvalidTapInputError,
    StorageUnavailableError,
)
from services.asset_locks import AssetLockRegistry
from services.custody_ledger import CustodyLedger
from services.notifications import InMemoryChangeBroker
from tests.helpers.custody import load_asset, load_history, make_asset, store_assets, store_holders
from tests.helpers.time_utils import ScriptedClock

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _assert_custody_invariant(session_factory: sessionmaker[Session], asset_id: str) -> None:
    asset = load_asset(session_factory, asset_id)
    assert (asset.status == AssetStatus.HELD) == (asset.holder_id is not None)


def test_tap_scenario_acquire_release_by_other_and_unknown_asset(
    ledger: CustodyLedger, session_factory: sessionmaker[Session]
) -> None:
    store_assets(session_factory, make_asset("A1", name="Canon R5"))

    first = ledger.record_tap("U1", "A1")

    assert first.kind == TransitionKind.ACQUIRE
    assert first.classification == Classification.ACQUIRED
    assert first.asset_display_name == "Canon R5"
    assert first.message == "Checked Out: Canon R5"
    held = load_asset(session_factory, "A1")
    assert held.status == AssetStatus.HELD
    assert held.holder_id == "U1"
    assert held.held_since == first.occurred_at

    second = ledger.record_tap("U2", "A1")

    assert second.kind == TransitionKind.RELEASE
    assert "non-original holder" in second.note
    assert "(was: U1)" in second.note
    assert second.message == "Returned: Canon R5"
    released = load_asset(session_factory, "A1")
    assert released.status == AssetStatus.AVAILABLE
    assert released.holder_id is None
    assert released.held_since is None

    with pytest.raises(AssetNotFoundError) as exc_info:
        ledger.record_tap("U1", "A404")
    assert exc_info.value.category == ErrorCategory.NOT_FOUND
    assert exc_info.value.retryable is False


def test_acquire_appends_exactly_one_record(ledger: CustodyLedger, session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A1"))

    outcome = ledger.record_tap("U1", "A1")

    (record,) = load_history(session_factory, "A1")
    assert record.kind == TransitionKind.ACQUIRE
    assert record.acting_holder_id == "U1"
    assert record.note == "acquired"
    assert record.occurred_at == outcome.occurred_at


@pytest.mark.parametrize("second_holder", ["U1", "U2"])
def test_tap_on_held_asset_always_releases(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], second_holder: str
) -> None:
    store_assets(session_factory, make_asset("A1"))

    ledger.record_tap("U1", "A1")
    outcome = ledger.record_tap(second_holder, "A1")

    assert outcome.kind == TransitionKind.RELEASE
    assert [record.kind for record in load_history(session_factory, "A1")] == [
        TransitionKind.ACQUIRE,
        TransitionKind.RELEASE,
    ]
    _assert_custody_invariant(session_factory, "A1")


def test_release_by_original_holder(ledger: CustodyLedger, session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A1", name="Rode mic"))

    ledger.record_tap("U1", "A1")
    outcome = ledger.record_tap("U1", "A1")

    assert outcome.classification == Classification.RELEASED
    assert outcome.note == "released by original holder"
    assert outcome.message == "Checked In: Rode mic"


def test_duplicate_taps_are_not_deduplicated(ledger: CustodyLedger, session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A1"))

    ledger.record_tap("U1", "A1")
    ledger.record_tap("U1", "A1")

    assert len(load_history(session_factory, "A1")) == 2


def test_invariant_holds_after_every_tap(ledger: CustodyLedger, session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A1"))

    for holder in ["U1", "U2", "U2", "U2", "U3", "U1"]:
        ledger.record_tap(holder, "A1")
        _assert_custody_invariant(session_factory, "A1")

    assert load_asset(session_factory, "A1").version == 6


@pytest.mark.parametrize("status", [AssetStatus.IN_REPAIR, AssetStatus.MISSING])
def test_tap_on_asset_outside_custody_cycle_is_conflict_without_writes(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], broker: InMemoryChangeBroker, status: AssetStatus
) -> None:
    store_assets(session_factory, make_asset("A1", status=status))
    events: list[CustodyChangeEvent] = []
    broker.subscribe(events.append)

    with pytest.raises(InvalidStatusConflictError) as exc_info:
        ledger.record_tap("U1", "A1")

    assert exc_info.value.status == status
    assert exc_info.value.category == ErrorCategory.CONFLICT
    asset = load_asset(session_factory, "A1")
    assert asset.status == status
    assert asset.version == 0
    assert load_history(session_factory, "A1") == []
    assert events == []


@pytest.mark.parametrize(("holder", "asset"), [("", "A1"), ("U1", ""), ("  ", "A1")])
def test_missing_identifiers_are_invalid_input(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], holder: str, asset: str
) -> None:
    store_assets(session_factory, make_asset("A1"))

    with pytest.raises(InvalidTapInputError) as exc_info:
        ledger.record_tap(holder, asset)

    assert exc_info.value.category == ErrorCategory.INVALID_INPUT
    assert load_history(session_factory) == []


def test_occurred_at_never_goes_backwards_for_an_asset(session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A1"))
    clock = ScriptedClock([T0, T0 - timedelta(minutes=5)])
    ledger = CustodyLedger(session_factory, clock=clock)

    first = ledger.record_tap("U1", "A1")
    second = ledger.record_tap("U1", "A1")

    assert first.occurred_at == T0
    assert second.occurred_at == T0
    assert [record.occurred_at for record in load_history(session_factory, "A1")] == [T0, T0]


def test_lost_update_race_is_retried(
    ledger: CustodyLedger,
    session_factory: sessionmaker[Session],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    store_assets(session_factory, make_asset("A1"))
    original = AssetRepository.compare_and_set
    calls: list[int] = []

    def flaky_compare_and_set(self: AssetRepository, asset, *, expected_version: int) -> bool:  # type: ignore[no-untyped-def]
        calls.append(expected_version)
        if len(calls) == 1:
            return False
        return original(self, asset, expected_version=expected_version)

    monkeypatch.setattr(AssetRepository, "compare_and_set", flaky_compare_and_set)

    with caplog.at_level(logging.WARNING, logger="services.custody_ledger"):
        outcome = ledger.record_tap("U1", "A1")

    assert outcome.kind == TransitionKind.ACQUIRE
    assert calls == [0, 0]
    assert len(load_history(session_factory, "A1")) == 1
    assert "changed concurrently" in caplog.text


def test_contention_after_retry_bound_leaves_no_trace(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    store_assets(session_factory, make_asset("A1"))
    calls: list[int] = []

    def always_stale(self: AssetRepository, asset, *, expected_version: int) -> bool:  # type: ignore[no-untyped-def]
        calls.append(expected_version)
        return False

    monkeypatch.setattr(AssetRepository, "compare_and_set", always_stale)

    with pytest.raises(ContentionError) as exc_info:
        ledger.record_tap("U1", "A1")

    assert exc_info.value.attempts == 3
    assert exc_info.value.retryable is True
    assert len(calls) == 3
    assert load_asset(session_factory, "A1").status == AssetStatus.AVAILABLE
    assert load_history(session_factory, "A1") == []


def test_failed_history_append_rolls_back_state_change(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    store_assets(session_factory, make_asset("A1"))

    def broken_append(self: TransitionRecordRepository, record):  # type: ignore[no-untyped-def]
        raise RuntimeError("history store rejected write")

    monkeypatch.setattr(TransitionRecordRepository, "append", broken_append)

    with pytest.raises(RuntimeError, match="history store"):
        ledger.record_tap("U1", "A1")

    asset = load_asset(session_factory, "A1")
    assert asset.status == AssetStatus.AVAILABLE
    assert asset.holder_id is None
    assert asset.version == 0


def test_storage_failure_mid_commit_is_unavailable_and_rolls_back(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    store_assets(session_factory, make_asset("A1"))

    def disk_error(self: TransitionRecordRepository, record):  # type: ignore[no-untyped-def]
        raise OperationalError("INSERT INTO transition_records", {}, Exception("disk I/O error"))

    monkeypatch.setattr(TransitionRecordRepository, "append", disk_error)

    with pytest.raises(StorageUnavailableError) as exc_info:
        ledger.record_tap("U1", "A1")

    assert exc_info.value.retryable is True
    assert exc_info.value.category == ErrorCategory.UNAVAILABLE
    assert load_asset(session_factory, "A1").status == AssetStatus.AVAILABLE


def test_unreachable_storage_is_unavailable(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'missing-dir' / 'gear.db'}")
    ledger = CustodyLedger(sessionmaker(engine))

    with pytest.raises(StorageUnavailableError):
        ledger.record_tap("U1", "A1")
    with pytest.raises(StorageUnavailableError):
        ledger.list_assets()


def test_busy_asset_lock_surfaces_as_contention(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], locks: AssetLockRegistry
) -> None:
    store_assets(session_factory, make_asset("A1"), make_asset("A2"))

    with locks.hold("A1"):
        with pytest.raises(ContentionError):
            ledger.record_tap("U1", "A1")
        # Other assets are unaffected.
        assert ledger.record_tap("U1", "A2").kind == TransitionKind.ACQUIRE

    assert load_history(session_factory, "A1") == []


def test_injected_lock_registry_is_shared_and_its_timeout_used(session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A1"))
    locks = AssetLockRegistry(timeout_seconds=0.05)
    first = CustodyLedger(session_factory, locks=locks)
    second = CustodyLedger(session_factory, locks=locks)

    with locks.hold("A1"):
        started = perf_counter()
        with pytest.raises(ContentionError):
            first.record_tap("U1", "A1")
        with pytest.raises(ContentionError):
            second.record_tap("U2", "A1")
        # The default registry would wait 5s per tap.
        assert perf_counter() - started < 2.0

    assert len(locks) == 0
    assert first.record_tap("U1", "A1").kind == TransitionKind.ACQUIRE


def test_committed_transition_is_published(
    ledger: CustodyLedger, session_factory: sessionmaker[Session], broker: InMemoryChangeBroker
) -> None:
    store_assets(session_factory, make_asset("A1"))
    events: list[CustodyChangeEvent] = []
    broker.subscribe(events.append)

    outcome = ledger.record_tap("U1", "A1")

    assert events == [CustodyChangeEvent(asset_id="A1", kind=TransitionKind.ACQUIRE, occurred_at=outcome.occurred_at)]


def test_failing_subscriber_does_not_undo_commit(
    ledger: CustodyLedger,
    session_factory: sessionmaker[Session],
    broker: InMemoryChangeBroker,
    caplog: pytest.LogCaptureFixture,
) -> None:
    store_assets(session_factory, make_asset("A1"))

    def explode(event: CustodyChangeEvent) -> None:
        raise RuntimeError("subscriber down")

    broker.subscribe(explode)

    with caplog.at_level(logging.ERROR, logger="services.custody_ledger"):
        outcome = ledger.record_tap("U1", "A1")

    assert outcome.kind == TransitionKind.ACQUIRE
    assert load_asset(session_factory, "A1").status == AssetStatus.HELD
    assert "Failed to publish custody change for asset A1" in caplog.text


def test_check_out_sets_expected_return_and_overdue_lists_it(
    ledger: CustodyLedger, session_factory: sessionmaker[Session]
) -> None:
    store_assets(session_factory, make_asset("A1", name="Lens 50mm"), make_asset("A2", name="Lens 85mm"))
    due = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)

    outcome = ledger.check_out("A1", "U1", expected_return=due, note="weekend shoot")
    ledger.record_tap("U2", "A2")

    assert outcome.kind == TransitionKind.ACQUIRE
    assert outcome.note == "weekend shoot"
    assert load_asset(session_factory, "A1").expected_return == due
    assert [asset.asset_id for asset in ledger.overdue(due + timedelta(hours=1))] == ["A1"]
    assert ledger.overdue(due - timedelta(hours=1)) == []


def test_check_in_clears_custody_fields(ledger: CustodyLedger, session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A1"))
    ledger.check_out("A1", "U1", expected_return=datetime(2024, 1, 2, tzinfo=timezone.utc))

    outcome = ledger.check_in("A1", "U1")

    assert outcome.kind == TransitionKind.RELEASE
    assert outcome.note == "released by original holder"
    asset = load_asset(session_factory, "A1")
    assert asset.status == AssetStatus.AVAILABLE
    assert asset.holder_id is None
    assert asset.held_since is None
    assert asset.expected_return is None


def test_explicit_check_out_and_check_in_require_matching_status(
    ledger: CustodyLedger, session_factory: sessionmaker[Session]
) -> None:
    store_assets(session_factory, make_asset("A1"), make_asset("A2"))
    ledger.check_out("A1", "U1")

    with pytest.raises(InvalidStatusConflictError):
        ledger.check_out("A1", "U2")
    with pytest.raises(InvalidStatusConflictError):
        ledger.check_in("A2", "U1")

    assert len(load_history(session_factory)) == 1


def test_set_status_moves_asset_out_of_and_back_into_circulation(
    ledger: CustodyLedger, session_factory: sessionmaker[Session]
) -> None:
    store_assets(session_factory, make_asset("A1"))

    repaired = ledger.set_status("A1", AssetStatus.IN_REPAIR)
    assert repaired.status == AssetStatus.IN_REPAIR
    assert repaired.version == 1
    with pytest.raises(InvalidStatusConflictError):
        ledger.record_tap("U1", "A1")

    ledger.set_status("A1", AssetStatus.AVAILABLE)
    assert ledger.record_tap("U1", "A1").kind == TransitionKind.ACQUIRE
    assert len(load_history(session_factory, "A1")) == 1


def test_set_status_refuses_held_assets_and_held_target(
    ledger: CustodyLedger, session_factory: sessionmaker[Session]
) -> None:
    store_assets(session_factory, make_asset("A1"))
    ledger.record_tap("U1", "A1")

    with pytest.raises(InvalidStatusConflictError):
        ledger.set_status("A1", AssetStatus.MISSING)
    with pytest.raises(InvalidTapInputError):
        ledger.set_status("A1", AssetStatus.HELD)


def test_read_side_queries(ledger: CustodyLedger, session_factory: sessionmaker[Session]) -> None:
    store_assets(session_factory, make_asset("A2", name="Zoom H6"), make_asset("A1", name="Aputure 300d"))
    store_holders(
        session_factory,
        Holder(holder_id=HolderId("U2"), name="Mira"),
        Holder(holder_id=HolderId("U1"), name="Jon", email="jon@example.com", role="crew"),
    )
    ledger.record_tap("U1", "A1")
    ledger.record_tap("U1", "A2")
    ledger.record_tap("U2", "A1")

    assert [asset.name for asset in ledger.list_assets()] == ["Aputure 300d", "Zoom H6"]
    assert [holder.name for holder in ledger.list_holders()] == ["Jon", "Mira"]
    assert ledger.get_asset("A2").holder_id == "U1"
    with pytest.raises(AssetNotFoundError):
        ledger.get_asset("A404")

    latest = ledger.history(limit=2)
    assert [(record.asset_id, record.kind) for record in latest] == [
        ("A1", TransitionKind.RELEASE),
        ("A2", TransitionKind.ACQUIRE),
    ]
    assert [record.kind for record in ledger.history("A1")] == [TransitionKind.RELEASE, TransitionKind.ACQUIRE]


def test_max_attempts_must_be_positive(session_factory: sessionmaker[Session]) -> None:
    with pytest.raises(ValueError):
        CustodyLedger(session_factory, max_attempts=0)
