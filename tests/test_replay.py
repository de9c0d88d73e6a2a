"""Tests for the replay guard."""

import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select

from saml_sp.auth.replay import ReplayGuard, metadata, saml_message_ids
from saml_sp.errors import ReplayError


class TestReplayGuard:
    """Test at-most-once recording of message ids."""

    def test_first_call_records_message(self, replay_guard):
        """A fresh message id is accepted and recorded."""
        assert replay_guard.is_processed("_msg-1") is False
        replay_guard.check_and_record("_msg-1")
        assert replay_guard.is_processed("_msg-1") is True

    def test_second_call_is_rejected(self, replay_guard):
        """The same message id can never be processed twice."""
        replay_guard.check_and_record("_msg-1")
        with pytest.raises(ReplayError, match="This message has already been processed"):
            replay_guard.check_and_record("_msg-1")

    def test_distinct_messages_are_independent(self, replay_guard):
        """Recording one id does not affect another."""
        replay_guard.check_and_record("_msg-1")
        replay_guard.check_and_record("_msg-2")
        assert replay_guard.is_processed("_msg-2") is True

    def test_processed_at_comes_from_clock(self, tmp_path):
        """The record carries the processing time."""
        engine = create_engine(f"sqlite:///{tmp_path / 'clock.db'}")
        metadata.create_all(engine)
        fixed = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        ReplayGuard(engine, clock=lambda: fixed).check_and_record("_msg-1")

        with engine.connect() as conn:
            row = conn.execute(select(saml_message_ids)).one()
        assert row.message_id == "_msg-1"
        assert row.processed_at.replace(tzinfo=timezone.utc) == fixed

    def test_store_is_shared_between_guards(self, tmp_path):
        """Two guards on the same database see each other's records."""
        url = f"sqlite:///{tmp_path / 'shared.db'}"
        ReplayGuard.from_url(url).check_and_record("_msg-1")
        with pytest.raises(ReplayError):
            ReplayGuard.from_url(url).check_and_record("_msg-1")

    def test_concurrent_replays_only_one_wins(self, replay_guard, tmp_path):
        """Racing callbacks with the same id: exactly one succeeds."""
        workers = 8
        barrier = threading.Barrier(workers)
        successes = []
        replays = []

        def attempt():
            barrier.wait()
            try:
                replay_guard.check_and_record("_racing")
                successes.append(True)
            except ReplayError:
                replays.append(True)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 1
        assert len(replays) == workers - 1

        engine = create_engine(f"sqlite:///{tmp_path / 'saml_messages.db'}")
        with engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(saml_message_ids)).scalar()
        assert count == 1

    def test_several_ids_are_recorded_together(self, replay_guard):
        """A response and its assertion are recorded in one call."""
        replay_guard.check_and_record("_response-1", "_assertion-1")
        assert replay_guard.is_processed("_response-1") is True
        assert replay_guard.is_processed("_assertion-1") is True

    def test_one_known_id_rejects_the_whole_call(self, replay_guard):
        """A fresh Response ID around a known assertion is still a replay, and nothing is recorded."""
        replay_guard.check_and_record("_response-1", "_assertion-1")
        with pytest.raises(ReplayError):
            replay_guard.check_and_record("_response-2", "_assertion-1")
        assert replay_guard.is_processed("_response-2") is False
