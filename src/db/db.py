from __future__ import annotations

import logging
from types import TracebackType
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Process-scoped storage handle: opened once, closed on shutdown."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.session_factory: sessionmaker[Session] = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def open(cls, url: str, *, timeout_seconds: float = 5.0, echo: bool = False) -> Database:
        engine = create_engine(url, echo=echo, **_engine_options(url, timeout_seconds))
        Base.metadata.create_all(engine)
        logger.info("Opened database %s", engine.url.render_as_string(hide_password=True))
        return cls(engine)

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Closed database %s", self.engine.url.render_as_string(hide_password=True))

    def __enter__(self) -> Database:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def _engine_options(url: str, timeout_seconds: float) -> dict[str, Any]:
    if url.startswith("sqlite"):
        # sqlite3's busy timeout bounds how long a writer waits for the file lock.
        return {"connect_args": {"timeout": timeout_seconds, "check_same_thread": False}}
    return {"pool_timeout": timeout_seconds, "pool_pre_ping": True}

