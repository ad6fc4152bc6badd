from __future__ import annotations

from sqlalchemy import Engine, text

from backfill.core.config import Settings
from backfill.db.models import Base
from backfill.db.session import get_engine


def initialize_database(settings: Settings | None = None, *, engine: Engine | None = None) -> Engine:
    engine = engine or get_engine(settings)
    Base.metadata.create_all(bind=engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return engine
