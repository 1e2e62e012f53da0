from __future__ import annotations

from legalhub.persistence import db


def test_sqlite_engine_waits_for_the_write_lock() -> None:
    assert db.dialect_name() == "sqlite"
    assert db._engine_kwargs["connect_args"] == {"timeout": float(db.settings.sqlite_busy_timeout_s)}
    assert "pool_size" not in db._engine_kwargs
