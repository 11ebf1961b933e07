# src/core/database.py
import os
import logging
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from core.config import settings
from models.base import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Los jobs del scheduler corren en hilos distintos
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(bind=None):
    """Crea el directorio de datos (SQLite) y todas las tablas."""
    bind = bind or engine
    url = make_url(str(bind.url))
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
    Base.metadata.create_all(bind=bind)
    logger.info(f"Base de datos inicializada en {url.render_as_string(hide_password=True)}")
