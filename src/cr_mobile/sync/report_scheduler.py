"""
ReportScheduler: pasada de reportes en background con APScheduler
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from cr_mobile.sync.pipeline import ReportPipeline

logger = logging.getLogger(__name__)


class ReportScheduler:
    """
    Ejecuta `ReportPipeline.on_launch` fuera del hilo de UI:
    - una pasada inmediatamente después de start()
    - opcionalmente, una pasada cada N minutos para reintentar pendientes
    - stop() cancela la pasada en curso y espera a que termine
    """

    def __init__(self, pipeline: "ReportPipeline", reprocess_interval_minutes: int = 0):
        self.pipeline = pipeline
        self.reprocess_interval_minutes = reprocess_interval_minutes

        self.last_run_time: Optional[datetime] = None
        self.run_count: int = 0
        self.is_running: bool = False

        self.scheduler: Optional[BackgroundScheduler] = None

    def start(self) -> None:
        """Inicia el scheduler."""
        if self.is_running:
            logger.warning("ReportScheduler ya está en marcha")
            return

        self.scheduler = BackgroundScheduler()

        self.scheduler.add_job(
            self._launch_job,
            DateTrigger(run_date=datetime.now(timezone.utc)),
            id="launch_pass",
            name="Process Pending Crash Reports",
            replace_existing=True,
            max_instances=1,
        )

        if self.reprocess_interval_minutes > 0:
            self.scheduler.add_job(
                self._launch_job,
                IntervalTrigger(minutes=self.reprocess_interval_minutes),
                id="periodic_pass",
                name="Retry Pending Crash Reports",
                replace_existing=True,
                max_instances=1,  # una sola pasada activa por proceso
            )

        self.scheduler.start()
        self.is_running = True
        logger.info(
            f"ReportScheduler iniciado (reproceso cada {self.reprocess_interval_minutes}min)"
            if self.reprocess_interval_minutes > 0
            else "ReportScheduler iniciado (solo pasada de arranque)"
        )

    def stop(self) -> None:
        """Cancela la pasada en curso y detiene el scheduler."""
        if self.scheduler and self.is_running:
            self.pipeline.cancel()
            self.scheduler.shutdown(wait=True)
            self.is_running = False
            logger.info("ReportScheduler detenido")

    def run_now(self) -> bool:
        """Ejecuta una pasada inmediatamente (bloqueante)."""
        logger.info("Pasada manual solicitada")
        return self._launch_job()

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "reprocess_interval_minutes": self.reprocess_interval_minutes,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "run_count": self.run_count,
        }

    def _launch_job(self) -> bool:
        try:
            summary = self.pipeline.process_pending_blocking()
        except Exception as e:
            logger.error(f"Pasada de reportes falló: {e}")
            return False

        self.run_count += 1
        self.last_run_time = datetime.now(timezone.utc)
        if summary is None or summary.skipped:
            return False
        return summary.errors == 0
