from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base
from services.asset_locks import AssetLockRegistry
from services.custody_ledger import CustodyLedger
from services.notifications import InMemoryChangeBroker
from tests.helpers.time_utils import DEFAULT_TIME_GEN, TimeGenerator

# One shared connection so FastAPI's worker threads see the same in-memory database.
engine: Engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
_session_factory = sessionmaker(engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def session_factory() -> sessionmaker[Session]:
    return _session_factory


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with _session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_default_time_gen() -> None:
    DEFAULT_TIME_GEN.reset()


@pytest.fixture(scope="function")
def clock() -> TimeGenerator:
    return DEFAULT_TIME_GEN


@pytest.fixture(scope="function")
def broker() -> InMemoryChangeBroker:
    return InMemoryChangeBroker()


@pytest.fixture(scope="function")
def locks() -> AssetLockRegistry:
    return AssetLockRegistry(timeout_seconds=0.2)


@pytest.fixture(scope="function")
def ledger(
    session_factory: sessionmaker[Session],
    broker: InMemoryChangeBroker,
    locks: AssetLockRegistry,
    clock: TimeGenerator,
) -> CustodyLedger:
    return CustodyLedger(session_factory, notifier=broker, locks=locks, clock=clock)
