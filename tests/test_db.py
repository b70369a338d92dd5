"""Tests for sampler.db."""

from sqlalchemy import text

from sampler.db import database_url, init_db
from sampler.models import Sample


class TestInitDb:
    """Engine and session factory setup."""

    def test_url_uses_given_path(self, tmp_path):
        assert database_url(tmp_path / "x.db") == f"sqlite:///{tmp_path / 'x.db'}"

    def test_creates_parent_and_tables(self, tmp_path):
        db_path = tmp_path / "nested" / "sampler.db"
        engine, SessionFactory = init_db(db_path)
        try:
            assert db_path.exists()
            with SessionFactory() as session:
                assert session.query(Sample).count() == 0
        finally:
            engine.dispose()

    def test_connections_use_wal(self, tmp_path):
        engine, _ = init_db(tmp_path / "sampler.db")
        try:
            with engine.connect() as conn:
                mode = conn.execute(text("PRAGMA journal_mode")).scalar()
            assert mode.lower() == "wal"
        finally:
            engine.dispose()

    def test_idempotent(self, tmp_path):
        db_path = tmp_path / "sampler.db"
        first, _ = init_db(db_path)
        first.dispose()
        second, SessionFactory = init_db(db_path)
        try:
            with SessionFactory() as session:
                assert session.query(Sample).count() == 0
        finally:
            second.dispose()
