from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import inspect

from billing.db import build_session_factory, check_database
from billing.db import init_billing_db as billing_init_billing_db


def test_init_billing_db_requires_postgres_in_production(monkeypatch) -> None:
    import billing.db as billing_db

    monkeypatch.setattr(billing_db, "APP_ENV", "production")
    monkeypatch.setattr(billing_db, "DATABASE_URL", "sqlite:///tmp/test.db")
    with pytest.raises(RuntimeError, match="PostgreSQL"):
        billing_db.init_billing_db()


def test_init_billing_db_allows_engine_override_for_tests(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "billing_startup_test.db"
    engine, session_factory = build_session_factory(f"sqlite+pysqlite:///{db_path}")
    billing_init_billing_db(engine)

    tables = set(inspect(engine).get_table_names())
    assert {"billing_subscriptions", "billing_webhook_audit_logs"} <= tables
    assert db_path.exists()
    assert check_database(session_factory) is True
    engine.dispose()


def test_alembic_upgrade_creates_schema(monkeypatch, tmp_path: Path) -> None:
    import billing.db as billing_db

    db_url = f"sqlite+pysqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setattr(billing_db, "APP_ENV", "dev")
    monkeypatch.setattr(billing_db, "DATABASE_URL", db_url)
    billing_db.init_billing_db()

    engine, _session_factory = build_session_factory(db_url)
    inspector = inspect(engine)
    assert {"billing_subscriptions", "billing_webhook_audit_logs", "alembic_version"} <= set(inspector.get_table_names())
    index_names = {item["name"] for item in inspector.get_indexes("billing_subscriptions")}
    assert "ix_billing_subscriptions_user_status" in index_names
    engine.dispose()
