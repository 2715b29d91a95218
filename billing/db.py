from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from alembic import command
from config import APP_ENV, DATABASE_ECHO, DATABASE_URL, ROOT_DIR

from .models import Base

SessionFactory = Callable[[], Session]

_SQLITE_PREFIXES = ("sqlite:///", "sqlite+pysqlite:///")


def _sqlite_file(url: str) -> Path | None:
    prefix = next((p for p in _SQLITE_PREFIXES if url.startswith(p)), None)
    if prefix is None:
        return None
    raw = url[len(prefix):].split("?", 1)[0]
    if not raw or raw == ":memory:":
        return None
    path = Path(raw).expanduser()
    return path if path.is_absolute() else (Path.cwd() / path).resolve()


def build_session_factory(database_url: str) -> tuple[Engine, SessionFactory]:
    kwargs: dict[str, Any] = {"future": True, "echo": DATABASE_ECHO, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        sqlite_file = _sqlite_file(database_url)
        if sqlite_file is not None:
            sqlite_file.parent.mkdir(parents=True, exist_ok=True)
        # Concurrent webhook deliveries wait on the SQLite write lock instead of failing.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, **kwargs)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    return engine, factory


_ENGINE, SessionLocal = build_session_factory(DATABASE_URL)


def init_billing_db(engine: Engine | None = None) -> None:
    """Bring the schema to head; an explicit engine gets ``create_all`` instead."""

    if engine is not None:
        Base.metadata.create_all(bind=engine)
        return
    url = str(DATABASE_URL or "").strip()
    production = str(APP_ENV or "").strip().lower() in {"prod", "production"}
    if production and not url.lower().startswith(("postgresql://", "postgresql+")):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")

    root = Path(ROOT_DIR).resolve()
    ini_path = root / "alembic.ini"
    if not ini_path.exists():
        raise RuntimeError(f"missing alembic.ini: {ini_path}")
    alembic_cfg = AlembicConfig(str(ini_path))
    alembic_cfg.set_main_option("script_location", str(root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", url)
    # Logging is already configured by the service; env.py must not reset it.
    alembic_cfg.attributes["configure_logger"] = False
    command.upgrade(alembic_cfg, "head")


def check_database(session_factory: SessionFactory | None = None) -> bool:
    try:
        with session_scope(session_factory) as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True


@contextmanager
def session_scope(session_factory: SessionFactory | None = None) -> Iterator[Session]:
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
