"""
Configuración de base de datos SQLite para el store de reportes
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cr_mobile.core.config import Settings, get_settings
from cr_mobile.persistence.models import Base

logger = logging.getLogger(__name__)


def _enable_durable_writes(dbapi_connection, connection_record):
    # Un commit no se confirma hasta que SQLite sincroniza a disco
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.close()


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


def build_engine(settings: Optional[Settings] = None, db_url: Optional[str] = None) -> Engine:
    """
    Crear y configurar engine SQLite

    Cada hilo trabaja con su propia conexión del pool (la captura llega desde
    el excepthook mientras la pasada corre en el scheduler). Solo la BD en
    memoria comparte una única conexión.
    """
    if db_url is None:
        settings = settings or get_settings()
        settings.ensure_db_dir()
        db_url = f"sqlite:///{settings.DB_PATH}"

    logger.info(f"Creando engine SQLite: {db_url}")

    options = {}
    if _is_memory_url(db_url):
        options["poolclass"] = StaticPool

    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        echo=bool(settings and settings.DEBUG),
        **options,
    )
    event.listen(engine, "connect", _enable_durable_writes)

    return engine


def build_session_factory(engine=None):
    """Crear SessionFactory"""
    if engine is None:
        engine = build_engine()

    SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)
    return SessionFactory


def init_database(engine=None, settings: Optional[Settings] = None):
    """
    Inicializar base de datos: crear engine y tablas
    Llamar una sola vez en startup de la app
    """
    if engine is None:
        engine = build_engine(settings)

    Base.metadata.create_all(engine)

    logger.info("Base de datos de reportes inicializada")

    return engine
