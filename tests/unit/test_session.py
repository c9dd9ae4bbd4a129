"""
Tests for engine construction and session handling.
"""
import pytest
from sqlalchemy import text
from sqlalchemy.pool import QueuePool

from database.session import build_engine, session_scope, DATABASE_URL, SessionLocal


def test_sqlite_engine_allows_cross_thread_sessions(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'auctions.db'}")
    try:
        with engine.connect() as conn:
            assert conn.execute(text("SELECT 1")).scalar() == 1
    finally:
        engine.dispose()


def test_postgres_engine_uses_queue_pool():
    """pool_pre_ping / pool_recycle only apply to server databases."""
    engine = build_engine("postgresql://auction@localhost:5432/vehicle_auctions")
    assert isinstance(engine.pool, QueuePool)
    assert engine.pool.size() == 5
    engine.dispose()


def test_tests_run_against_sqlite():
    assert DATABASE_URL.startswith("sqlite")


def test_session_scope_closes_and_rolls_back(session_factory):
    with session_scope(session_factory) as session:
        assert session.execute(text("SELECT 1")).scalar() == 1

    with pytest.raises(RuntimeError):
        with session_scope(session_factory) as session:
            session.execute(text("SELECT 1"))
            raise RuntimeError("sweep failed")


def test_session_local_creates_new_sessions():
    """Test that SessionLocal creates independent sessions."""
    session1 = SessionLocal()
    session2 = SessionLocal()
    try:
        assert session1 is not session2
    finally:
        session1.close()
        session2.close()
