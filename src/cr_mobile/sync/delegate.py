"""
ReporterDelegate: callbacks que expone el pipeline a la app
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from cr_mobile.services.report_store import ReportRecord
from cr_mobile.sync.collector_client import Ack

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    SENT = "sent"
    REJECTED = "rejected"
    ABANDONED = "abandoned"
    FAILED = "failed"  # error local (store), se reintenta en otro arranque


@dataclass(frozen=True)
class UploadOutcome:
    """Resultado final de `Uploader.send` para un reporte"""

    report_id: str
    status: OutcomeStatus
    attempts: int
    ack: Optional[Ack] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.SENT


@dataclass
class ReporterDelegate:
    """
    Hooks opcionales de la app embebedora.

    - should_process(report) -> bool: filtra antes de pedir consentimiento
    - will_send(report): antes de cada intento de entrega
    - did_succeed_sending(report): entrega confirmada
    - did_fail_sending(report, error): cada intento fallido; `error` es
      DeliveryAbandonedError o RejectedError cuando ya no habrá reintentos
    - on_send_result(report, outcome): resultado final de la entrega

    Una excepción dentro de un callback se registra y se ignora.
    """

    should_process: Optional[Callable[[ReportRecord], bool]] = None
    will_send: Optional[Callable[[ReportRecord], None]] = None
    did_succeed_sending: Optional[Callable[[ReportRecord], None]] = None
    did_fail_sending: Optional[Callable[[ReportRecord, Exception], None]] = None
    on_send_result: Optional[Callable[[ReportRecord, UploadOutcome], None]] = None

    def _call(self, name: str, *args: Any, default: Any = None) -> Any:
        callback = getattr(self, name)
        if callback is None:
            return default
        try:
            return callback(*args)
        except Exception:
            logger.exception(f"Callback {name} lanzó una excepción")
            return default

    def notify_should_process(self, report: ReportRecord) -> bool:
        return bool(self._call("should_process", report, default=True))

    def notify_will_send(self, report: ReportRecord) -> None:
        self._call("will_send", report)

    def notify_succeeded(self, report: ReportRecord) -> None:
        self._call("did_succeed_sending", report)

    def notify_failed(self, report: ReportRecord, error: Exception) -> None:
        self._call("did_fail_sending", report, error)

    def notify_result(self, report: ReportRecord, outcome: UploadOutcome) -> None:
        self._call("on_send_result", report, outcome)
