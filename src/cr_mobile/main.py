"""
Bootstrap del reporter de fallos
Punto de entrada para la app embebedora
"""

import logging
from typing import Optional

from cr_mobile.core.config import Settings, get_settings
from cr_mobile.persistence.db import build_engine, build_session_factory, init_database
from cr_mobile.services.consent_gate import ConsentPrompt
from cr_mobile.sync.delegate import ReporterDelegate
from cr_mobile.sync.pipeline import ReportPipeline

logger = logging.getLogger(__name__)

_pipeline: Optional[ReportPipeline] = None


def configure_logging(settings: Settings) -> None:
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("cr_mobile").setLevel(level)


def build_pipeline(
    settings: Optional[Settings] = None,
    consent_prompt: Optional[ConsentPrompt] = None,
    delegate: Optional[ReporterDelegate] = None,
) -> ReportPipeline:
    """Crea engine, tablas y pipeline (sin arrancar nada en background)."""
    settings = settings or get_settings()
    engine = build_engine(settings)
    init_database(engine)
    session_factory = build_session_factory(engine)
    return ReportPipeline(
        settings,
        session_factory,
        consent_prompt=consent_prompt,
        delegate=delegate,
    )


def start(
    settings: Optional[Settings] = None,
    consent_prompt: Optional[ConsentPrompt] = None,
    delegate: Optional[ReporterDelegate] = None,
) -> ReportPipeline:
    """
    Arranca el reporter una sola vez por proceso: logging, BD, hooks de
    captura y pasada de arranque en background.
    """
    global _pipeline
    if _pipeline is not None:
        logger.warning("Reporter ya iniciado")
        return _pipeline

    settings = settings or get_settings()
    configure_logging(settings)

    pipeline = build_pipeline(settings, consent_prompt=consent_prompt, delegate=delegate)
    pipeline.start()
    _pipeline = pipeline
    logger.info(f"Reporter iniciado: {settings}")
    return pipeline


def stop() -> None:
    global _pipeline
    if _pipeline is None:
        return
    _pipeline.stop()
    _pipeline = None
    logger.info("Reporter detenido")


def main():
    """Procesa los reportes pendientes una vez (sin hooks ni scheduler)."""
    settings = get_settings()
    configure_logging(settings)
    pipeline = build_pipeline(settings)
    summary = pipeline.process_pending_blocking()
    if summary is not None:
        print(summary.to_dict())


if __name__ == "__main__":
    main()
