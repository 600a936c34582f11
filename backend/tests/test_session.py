"""Engine configuration tests"""
import pytest

from paycore.db.session import engine_options


@pytest.mark.medium
class TestEngineOptions:

    def test_sqlite_is_shared_across_threads(self):
        options = engine_options("sqlite:///./paycore.db")
        assert options == {"connect_args": {"check_same_thread": False}}

    def test_postgres_pool_follows_settings(self, override_settings):
        override_settings(DB_POOL_SIZE=4, DB_MAX_OVERFLOW=2)
        options = engine_options("postgresql://paycore:secret@db:5432/paycore")
        assert options["pool_pre_ping"] is True
        assert options["pool_size"] == 4
        assert options["max_overflow"] == 2
