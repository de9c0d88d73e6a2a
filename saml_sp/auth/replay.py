# saml_sp/auth/replay.py
"""
Replay protection: each SAML message id may be consumed only once.

The unique constraint on message_id does the work. Two callbacks racing
with the same response both try to INSERT and the database lets exactly one
of them through, whether they run in one process or in several processes
sharing the store. A SELECT-then-INSERT would let two callbacks both pass.

A response is keyed by its own ID and by the ID of its assertion. The
assertion ID is covered by the signature even when the Response envelope
is not, so rewriting the Response ID does not make a captured response new.
Both rows are written in one transaction.

Rows are never updated. Pruning old rows is left to an external job.
"""

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from saml_sp.errors import ReplayError

logger = logging.getLogger(__name__)

metadata = MetaData()

saml_message_ids = Table(
    "saml_message_ids",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("message_id", String(255), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("message_id", name="uq_saml_message_ids_message_id"),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReplayGuard:
    """At-most-once gate for SAML message ids, backed by a SQL table."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = _utcnow):
        self._engine = engine
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> "ReplayGuard":
        """Create the engine for `url` and make sure the table exists."""
        engine = create_engine(url)
        metadata.create_all(engine)
        logger.info(f"Replay store ready ({engine.url.get_backend_name()})")
        return cls(engine)

    def check_and_record(self, *message_ids: str) -> None:
        """
        Record every id in `message_ids` as processed, all or none.
        Raises ReplayError if any of them was recorded before.
        """
        processed_at = self._clock()
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(saml_message_ids),
                    [{"message_id": message_id, "processed_at": processed_at} for message_id in message_ids],
                )
        except IntegrityError:
            logger.warning(f"Replayed SAML message rejected: {', '.join(message_ids)}")
            raise ReplayError("This message has already been processed")

    def is_processed(self, message_id: str) -> bool:
        stmt = select(saml_message_ids.c.id).where(saml_message_ids.c.message_id == message_id)
        with self._engine.connect() as conn:
            return conn.execute(stmt).first() is not None
