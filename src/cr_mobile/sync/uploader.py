"""
Uploader: entrega de reportes con reintentos y backoff
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from cr_mobile.core.exceptions import (
    DeliveryAbandonedError,
    PermanentUploadError,
    TransientUploadError,
)
from cr_mobile.persistence.models import ReportState
from cr_mobile.services.report_store import ReportRecord, ReportStore
from cr_mobile.sync.collector_client import CollectorClient
from cr_mobile.sync.delegate import OutcomeStatus, ReporterDelegate, UploadOutcome
from cr_mobile.sync.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


class Uploader:
    """
    Envía un reporte aprobado (o failed reintentable) al colector.

    approved|failed → sending → sent (y se elimina del store)
                              → failed (transitorio: backoff y reintento)
                              → failed terminal (rechazo o reintentos agotados)

    Si la tarea se cancela durante la entrega el reporte queda en sending y
    se reconcilia en el siguiente arranque; si se cancela durante el backoff
    queda failed y reintentable.
    """

    def __init__(
        self,
        store: ReportStore,
        client: CollectorClient,
        retry_policy: Optional[RetryPolicy] = None,
        delegate: Optional[ReporterDelegate] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.delegate = delegate or ReporterDelegate()
        self.sleep = sleep

    async def send(self, report: ReportRecord) -> UploadOutcome:
        record = report
        if record.state is ReportState.FAILED and not self.retry_policy.should_retry(record.attempts):
            record = self.store.mark_abandoned(record.id)
            return self._abandon(record, record.last_error)

        while True:
            record = self.store.update_state(record.id, ReportState.SENDING)
            self.delegate.notify_will_send(record)
            logger.debug(f"Enviando reporte {record.id} (intento {record.attempts + 1})")

            try:
                ack = await self.client.deliver(record)
            except TransientUploadError as e:
                delay = self.retry_policy.get_delay(record.attempts + 1)
                if delay is None:
                    record = self.store.update_state(
                        record.id, ReportState.FAILED, error=str(e), gave_up=True
                    )
                    return self._abandon(record, str(e))

                record = self.store.update_state(record.id, ReportState.FAILED, error=str(e))
                logger.warning(
                    f"Entrega de {record.id} falló (intento {record.attempts}): {e}. "
                    f"Reintentando en {delay:.1f}s..."
                )
                self.delegate.notify_failed(record, e)
                await self.sleep(delay)
                continue
            except PermanentUploadError as e:
                record = self.store.update_state(
                    record.id, ReportState.FAILED, error=str(e), gave_up=True
                )
                logger.error(f"Reporte {record.id} rechazado por el colector: {e}")
                self.delegate.notify_failed(record, e)
                return self._finish(record, UploadOutcome(
                    report_id=record.id,
                    status=OutcomeStatus.REJECTED,
                    attempts=record.attempts,
                    error=e,
                ))

            record = self.store.finalize(record.id, ReportState.SENT)
            if ack.duplicate:
                logger.info(f"Reporte {record.id} ya estaba en el colector")
            else:
                logger.info(f"Reporte {record.id} entregado")
            self.delegate.notify_succeeded(record)
            return self._finish(record, UploadOutcome(
                report_id=record.id,
                status=OutcomeStatus.SENT,
                attempts=record.attempts + 1,
                ack=ack,
            ))

    def _abandon(self, record: ReportRecord, last_error: Optional[str]) -> UploadOutcome:
        error = DeliveryAbandonedError(record.id, record.attempts, last_error)
        logger.error(str(error))
        self.delegate.notify_failed(record, error)
        return self._finish(record, UploadOutcome(
            report_id=record.id,
            status=OutcomeStatus.ABANDONED,
            attempts=record.attempts,
            error=error,
        ))

    def _finish(self, record: ReportRecord, outcome: UploadOutcome) -> UploadOutcome:
        self.delegate.notify_result(record, outcome)
        return outcome
