from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from app.dms.config import load_config
from app.dms.db import build_engine, make_sessionmaker

logger = logging.getLogger("dms.scripts")


def resolve_database_url(db_url: str | None = None) -> str:
    """Explicit URL wins; otherwise DATABASE_URL from the environment / .env, as the web app reads it."""
    if db_url and db_url.strip():
        return db_url.strip()
    load_dotenv()
    return load_config()["DATABASE_URL"]


@contextmanager
def script_session(db_url: str | None = None) -> Generator[Session, None, None]:
    """
    Session for cron/release scripts, built with the web app's engine settings
    (SQLite FK pragma, postgres pool sizing). Commits on success.
    """
    url = resolve_database_url(db_url)
    engine = build_engine(url)
    s: Session = make_sessionmaker(engine)()
    logger.debug("Script session opened on %s", engine.url.render_as_string(hide_password=True))
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
