"""
ReportPipeline

Orquesta captura → persistencia → consentimiento → entrega → limpieza.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from cr_mobile.core.config import Settings
from cr_mobile.core.exceptions import ConsentError, CrashReporterError, StorageError
from cr_mobile.persistence.models import ReporterState, ReportState, generate_uuid
from cr_mobile.services.capture import CrashHandler, build_crash_payload, install_excepthook
from cr_mobile.services.consent_gate import ConsentGate, ConsentPrompt
from cr_mobile.services.report_store import ReportRecord, ReportStore
from cr_mobile.sync.collector_client import CollectorClient
from cr_mobile.sync.delegate import OutcomeStatus, ReporterDelegate, UploadOutcome
from cr_mobile.sync.report_scheduler import ReportScheduler
from cr_mobile.sync.retry_policy import RetryPolicy
from cr_mobile.sync.uploader import Uploader

logger = logging.getLogger(__name__)

INSTALL_ID_KEY = "install_id"


@dataclass
class LaunchSummary:
    """Resultado de una pasada de procesamiento"""

    purged: int = 0
    reconciled: int = 0
    consent_requests: int = 0
    approved: int = 0
    discarded: int = 0
    sent: int = 0
    rejected: int = 0
    abandoned: int = 0
    errors: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReportPipeline:
    """
    Pipeline de reportes de fallos (una instancia activa por proceso).

    - capture(): síncrono y durable, llamado desde el contexto del fallo
    - on_launch(): procesa lo pendiente de arranques anteriores
    - start()/stop(): hooks de captura + pasada en background
    """

    def __init__(
        self,
        settings: Settings,
        session_factory,
        consent_prompt: Optional[ConsentPrompt] = None,
        delegate: Optional[ReporterDelegate] = None,
        store: Optional[ReportStore] = None,
        consent_gate: Optional[ConsentGate] = None,
        client: Optional[CollectorClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.delegate = delegate or ReporterDelegate()
        self.store = store or ReportStore(
            session_factory, deduplicate=settings.DEDUPLICATE_BY_CONTENT
        )
        self.consent_gate = consent_gate or ConsentGate(session_factory, consent_prompt)
        self.install_id = self._get_or_create_install_id()
        self.client = client or CollectorClient(settings, install_id=self.install_id)
        self.uploader = Uploader(
            self.store,
            self.client,
            retry_policy=retry_policy or RetryPolicy.from_settings(settings),
            delegate=self.delegate,
        )

        # Sesión de captura: todos los fallos de este proceso comparten lote
        self.session_id = generate_uuid()

        self.enabled = settings.ENABLED
        self.last_summary: Optional[LaunchSummary] = None
        self.crash_handler: Optional[CrashHandler] = None
        self.scheduler = None

        self._pass_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

    # ==================== Integración ====================

    def start(self, install_crash_handler: bool = True) -> None:
        """Instala los hooks de captura y lanza la pasada en background."""
        if install_crash_handler and self.crash_handler is None:
            self.crash_handler = install_excepthook(self)
        if self.scheduler is None:
            self.scheduler = ReportScheduler(
                self, reprocess_interval_minutes=self.settings.REPROCESS_INTERVAL_MINUTES
            )
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.crash_handler is not None:
            self.crash_handler.uninstall()
            self.crash_handler = None

    def set_delegate(self, delegate: ReporterDelegate) -> None:
        self.delegate = delegate
        self.uploader.delegate = delegate

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info(f"Reporter {'habilitado' if enabled else 'deshabilitado'}")

    def is_enabled(self) -> bool:
        return self.enabled

    def cancel(self) -> bool:
        """Cancela cooperativamente la pasada en curso (seguro desde otro hilo)."""
        loop, task = self._loop, self._task
        if loop is None or task is None or task.done():
            return False
        loop.call_soon_threadsafe(task.cancel)
        return True

    def get_status(self) -> Dict[str, Any]:
        counts = self.store.count_by_state()
        return {
            "enabled": self.enabled,
            "session_id": self.session_id,
            "install_id": self.install_id,
            "consent_preference": self.consent_gate.get_preference().value,
            "reports": {state.value: counts.get(state, 0) for state in ReportState},
            "last_launch": self.last_summary.to_dict() if self.last_summary else None,
        }

    # ==================== Captura ====================

    def capture(self, payload: Any) -> Optional[str]:
        """
        Persiste un fallo antes de retornar.

        Returns:
            id del reporte, o None si el reporter está deshabilitado
        """
        if not self.enabled:
            logger.debug("Reporter deshabilitado, fallo no capturado")
            return None
        return self.store.append(payload, session_id=self.session_id)

    def capture_exception(self, exc: BaseException) -> Optional[str]:
        return self.capture(build_crash_payload(type(exc), exc, exc.__traceback__))

    # ==================== Procesamiento ====================

    def process_pending_blocking(self) -> Optional[LaunchSummary]:
        """on_launch para hilos sin event loop (scheduler)."""
        try:
            return asyncio.run(self.on_launch())
        except asyncio.CancelledError:
            logger.info("Pasada de reportes cancelada, se retoma en el próximo arranque")
            return None

    async def on_launch(self) -> LaunchSummary:
        """Procesa todos los reportes no terminales de arranques anteriores."""
        if not self.enabled:
            return LaunchSummary(skipped=True)
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Ya hay una pasada de reportes en curso")
            return LaunchSummary(skipped=True)

        summary = LaunchSummary()
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.current_task()
        try:
            summary.purged = self._purge_abandoned(summary)
            summary.reconciled = len(self.store.reconcile_interrupted())

            for batch in self._group_by_session():
                await self._resolve_consent(batch, summary)

            await self._upload_approved(summary)
        except StorageError as e:
            summary.errors += 1
            logger.error(f"Pasada de reportes interrumpida por el store: {e}")
        finally:
            self._task = None
            self._loop = None
            self._pass_lock.release()

        self.last_summary = summary
        logger.info(f"Pasada de reportes completada: {summary.to_dict()}")
        return summary

    def _purge_abandoned(self, summary: LaunchSummary) -> int:
        purged = len(self.store.purge_settled())
        for report in list(self.store.list_by_state(ReportState.FAILED)):
            if not report.gave_up:
                continue
            try:
                self.store.finalize(report.id, ReportState.DISCARDED)
                purged += 1
            except CrashReporterError as e:
                summary.errors += 1
                logger.error(f"No se pudo descartar el reporte abandonado {report.id}: {e}")
        return purged

    def _group_by_session(self) -> List[List[ReportRecord]]:
        reports = list(self.store.list_by_state(ReportState.AWAITING_CONSENT))
        reports.extend(self.store.list_by_state(ReportState.PENDING))
        reports.sort(key=lambda r: (r.created_at, r.sequence))

        batches: Dict[str, List[ReportRecord]] = {}
        for report in reports:
            batches.setdefault(report.session_id, []).append(report)
        return list(batches.values())

    async def _resolve_consent(self, batch: List[ReportRecord], summary: LaunchSummary) -> None:
        awaiting: List[ReportRecord] = []
        for report in batch:
            try:
                if report.state is ReportState.PENDING:
                    if not self.delegate.notify_should_process(report):
                        self._discard(report)
                        summary.discarded += 1
                        continue
                    report = self.store.update_state(report.id, ReportState.AWAITING_CONSENT)
                awaiting.append(report)
            except CrashReporterError as e:
                summary.errors += 1
                logger.error(f"Error preparando el reporte {report.id}: {e}")

        if not awaiting:
            return

        if self.settings.BATCH_CONSENT_PROMPT:
            groups = [awaiting]
        else:
            groups = [[report] for report in awaiting]

        for group in groups:
            summary.consent_requests += 1
            try:
                result = await self.consent_gate.evaluate(len(group), self._summarize(group))
            except (ConsentError, StorageError) as e:
                summary.errors += 1
                logger.error(f"Consentimiento no resuelto, el lote queda pendiente: {e}")
                continue

            for report in group:
                try:
                    if result.decision.approves:
                        self.store.update_state(report.id, ReportState.APPROVED)
                        summary.approved += 1
                    else:
                        self._discard(report)
                        summary.discarded += 1
                except CrashReporterError as e:
                    summary.errors += 1
                    logger.error(f"Error aplicando consentimiento a {report.id}: {e}")

    def _discard(self, report: ReportRecord) -> None:
        self.store.finalize(report.id, ReportState.DISCARDED)
        logger.info(f"Reporte {report.id} descartado")

    async def _upload_approved(self, summary: LaunchSummary) -> None:
        queue = list(self.store.list_by_state(ReportState.APPROVED))
        queue.extend(r for r in self.store.list_by_state(ReportState.FAILED) if r.is_retryable)
        queue.sort(key=lambda r: (r.created_at, r.sequence))
        if not queue:
            return

        semaphore = asyncio.Semaphore(max(1, self.settings.MAX_CONCURRENT_UPLOADS))

        async def _send(report: ReportRecord) -> Optional[UploadOutcome]:
            async with semaphore:
                try:
                    return await self.uploader.send(report)
                except Exception:
                    # Un reporte roto no bloquea al resto del lote
                    logger.exception(f"Error entregando el reporte {report.id}")
                    return None

        outcomes = await asyncio.gather(*(_send(report) for report in queue))
        self._tally(outcomes, summary)

    def _tally(self, outcomes: Iterable[Optional[UploadOutcome]], summary: LaunchSummary) -> None:
        for outcome in outcomes:
            if outcome is None:
                summary.errors += 1
            elif outcome.status is OutcomeStatus.SENT:
                summary.sent += 1
            elif outcome.status is OutcomeStatus.REJECTED:
                summary.rejected += 1
            elif outcome.status is OutcomeStatus.ABANDONED:
                summary.abandoned += 1

    def _summarize(self, group: List[ReportRecord]) -> str:
        kinds = []
        for report in group:
            exception = report.payload.get("exception") if isinstance(report.payload, dict) else None
            kind = exception.get("type") if isinstance(exception, dict) else None
            if kind and kind not in kinds:
                kinds.append(kind)
        detail = f" ({', '.join(kinds)})" if kinds else ""
        return f"La app se cerró inesperadamente{detail}. ¿Enviar {len(group)} reporte(s) anónimo(s)?"

    def _get_or_create_install_id(self) -> str:
        session = self.session_factory()
        try:
            item = session.get(ReporterState, INSTALL_ID_KEY)
            if item and item.value:
                return item.value
            install_id = generate_uuid()
            session.add(ReporterState(key=INSTALL_ID_KEY, value=install_id))
            session.commit()
            return install_id
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"No se pudo leer el install id: {e}") from e
        finally:
            session.close()
