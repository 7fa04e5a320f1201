from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from db.database import Base, engine as default_engine
from db import models  # noqa: F401 - ensure metadata is registered

logger = logging.getLogger(__name__)


def init_db(engine: Engine | None = None) -> None:
    """Create the pothole, confirmation, session and user tables if missing."""
    bind = engine or default_engine
    Base.metadata.create_all(bind=bind)
    logger.info("[db] Tables ready: %s", ", ".join(sorted(Base.metadata.tables)))
