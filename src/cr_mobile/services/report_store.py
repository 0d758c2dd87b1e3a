"""
ReportStore: almacenamiento durable (append-only) de reportes de fallos

Toda mutación pasa por append / update_state / remove, cada una en su propia
transacción SQLite confirmada antes de retornar.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError

from cr_mobile.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from cr_mobile.persistence.models import ErrorReport, ReportState, generate_uuid, utcnow

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[ReportState, FrozenSet[ReportState]] = {
    ReportState.PENDING: frozenset(
        {ReportState.AWAITING_CONSENT, ReportState.APPROVED, ReportState.DISCARDED}
    ),
    ReportState.AWAITING_CONSENT: frozenset({ReportState.APPROVED, ReportState.DISCARDED}),
    ReportState.APPROVED: frozenset({ReportState.SENDING}),
    ReportState.SENDING: frozenset({ReportState.SENT, ReportState.FAILED}),
    ReportState.FAILED: frozenset({ReportState.SENDING, ReportState.DISCARDED}),
    ReportState.SENT: frozenset(),
    ReportState.DISCARDED: frozenset(),
}

REMOVABLE_STATES = frozenset({ReportState.SENT, ReportState.DISCARDED})

# Estados en los que un fallo repetido se asocia al reporte ya encolado
DEDUP_STATES = frozenset(
    {ReportState.PENDING, ReportState.AWAITING_CONSENT, ReportState.APPROVED, ReportState.SENDING}
)

# Campos que cambian en cada captura de un mismo fallo
VOLATILE_KEYS = frozenset({"capturedAt", "thread"})


@dataclass(frozen=True)
class ReportRecord:
    """Snapshot inmutable de un reporte leído del store"""

    id: str
    session_id: str
    sequence: int
    payload: Any
    created_at: datetime
    state: ReportState
    attempts: int = 0
    gave_up: bool = False
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        if self.state in REMOVABLE_STATES:
            return True
        return self.state is ReportState.FAILED and self.gave_up

    @property
    def is_retryable(self) -> bool:
        return self.state is ReportState.FAILED and not self.gave_up


def _to_record(row: ErrorReport) -> ReportRecord:
    return ReportRecord(
        id=row.id,
        session_id=row.session_id,
        sequence=row.sequence,
        payload=json.loads(row.payload),
        created_at=row.created_at,
        state=ReportState(row.state),
        attempts=row.attempts or 0,
        gave_up=bool(row.gave_up),
        last_error=row.last_error,
    )


def serialize_payload(payload: Any) -> Tuple[str, str]:
    """JSON canónico del payload y su hash sha256"""
    try:
        serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Payload no serializable: {e}") from e
    return serialized, hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def fault_fingerprint(payload: Any) -> str:
    """Hash del fallo sin los campos volátiles de la captura"""
    if isinstance(payload, dict):
        payload = {k: v for k, v in payload.items() if k not in VOLATILE_KEYS}
    return serialize_payload(payload)[1]


class ReportQuery:
    """
    Secuencia perezosa y reiniciable de reportes en un estado.

    Cada iteración vuelve a consultar el store, paginando por
    (created_at, sequence) ascendente.
    """

    def __init__(self, store: "ReportStore", state: ReportState, page_size: int = 100):
        self.store = store
        self.state = state
        self.page_size = page_size

    def __iter__(self) -> Iterator[ReportRecord]:
        cursor: Optional[Tuple[datetime, int]] = None
        while True:
            page = self.store._fetch_page(self.state, cursor, self.page_size)
            yield from page
            if len(page) < self.page_size:
                return
            cursor = (page[-1].created_at, page[-1].sequence)

    def count(self) -> int:
        return self.store.count_by_state().get(self.state, 0)

    def __repr__(self) -> str:
        return f"<ReportQuery state={self.state.value}>"


class ReportStore:
    """
    Store durable de reportes.

    Patrón: abrir sesión → validar → mutar ORM → commit() → snapshot.
    Las operaciones sobre un mismo id se serializan con un lock del store.
    """

    def __init__(self, session_factory, deduplicate: bool = False):
        self.session_factory = session_factory
        self.deduplicate = deduplicate
        self._lock = threading.RLock()

    def append(self, payload: Any, session_id: Optional[str] = None) -> str:
        """Persiste un reporte nuevo en estado pending y retorna su id."""
        serialized, _ = serialize_payload(payload)
        content_hash = fault_fingerprint(payload)

        with self._lock:
            session = self.session_factory()
            try:
                if self.deduplicate:
                    existing = (
                        session.query(ErrorReport)
                        .filter(ErrorReport.content_hash == content_hash)
                        .filter(
                            or_(
                                ErrorReport.state.in_([s.value for s in DEDUP_STATES]),
                                and_(
                                    ErrorReport.state == ReportState.FAILED.value,
                                    ErrorReport.gave_up.is_(False),
                                ),
                            )
                        )
                        .order_by(ErrorReport.created_at)
                        .first()
                    )
                    if existing is not None:
                        logger.debug(f"Reporte duplicado, se reutiliza {existing.id}")
                        return existing.id

                sequence = (session.query(func.max(ErrorReport.sequence)).scalar() or 0) + 1
                report = ErrorReport(
                    id=generate_uuid(),
                    session_id=session_id or generate_uuid(),
                    sequence=sequence,
                    payload=serialized,
                    content_hash=content_hash,
                    state=ReportState.PENDING.value,
                    attempts=0,
                    gave_up=False,
                    created_at=utcnow(),
                )
                session.add(report)
                session.commit()
                logger.info(f"Reporte {report.id} persistido (sesión {report.session_id})")
                return report.id
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"No se pudo persistir el reporte: {e}") from e
            finally:
                session.close()

    def get(self, report_id: str) -> ReportRecord:
        session = self.session_factory()
        try:
            report = session.get(ErrorReport, report_id)
            if report is None:
                raise NotFoundError(f"Reporte {report_id} no encontrado")
            return _to_record(report)
        except SQLAlchemyError as e:
            raise StorageError(f"Error leyendo reporte {report_id}: {e}") from e
        finally:
            session.close()

    def list_by_state(self, state: ReportState) -> ReportQuery:
        """Reportes en `state`, del más antiguo al más reciente."""
        return ReportQuery(self, ReportState(state))

    def update_state(
        self,
        report_id: str,
        new_state: ReportState,
        error: Optional[str] = None,
        gave_up: bool = False,
    ) -> ReportRecord:
        """
        Transición atómica de estado.

        Raises:
            NotFoundError: si el id no existe
            InvalidTransitionError: si la máquina de estados no la permite
        """
        new_state = ReportState(new_state)

        with self._lock:
            session = self.session_factory()
            try:
                report = session.get(ErrorReport, report_id)
                if report is None:
                    raise NotFoundError(f"Reporte {report_id} no encontrado")

                current = ReportState(report.state)
                if new_state not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"{report_id}: {current.value} -> {new_state.value} no permitido"
                    )
                if current is ReportState.FAILED and new_state is ReportState.SENDING and report.gave_up:
                    raise InvalidTransitionError(
                        f"{report_id}: entrega abandonada, no se reintenta"
                    )

                if current is ReportState.SENDING and new_state is ReportState.FAILED:
                    report.attempts = (report.attempts or 0) + 1
                if new_state is ReportState.FAILED:
                    report.gave_up = gave_up
                if error is not None:
                    report.last_error = error
                report.state = new_state.value
                report.updated_at = utcnow()

                session.commit()
                logger.debug(f"Reporte {report_id}: {current.value} -> {new_state.value}")
                return _to_record(report)
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Error actualizando reporte {report_id}: {e}") from e
            finally:
                session.close()

    def mark_abandoned(self, report_id: str, error: Optional[str] = None) -> ReportRecord:
        """Marca como terminal un reporte failed que ya agotó sus reintentos."""
        with self._lock:
            session = self.session_factory()
            try:
                report = session.get(ErrorReport, report_id)
                if report is None:
                    raise NotFoundError(f"Reporte {report_id} no encontrado")
                if report.state != ReportState.FAILED.value:
                    raise InvalidTransitionError(
                        f"{report_id}: solo un reporte failed puede abandonarse ({report.state})"
                    )
                report.gave_up = True
                if error is not None:
                    report.last_error = error
                report.updated_at = utcnow()
                session.commit()
                return _to_record(report)
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Error actualizando reporte {report_id}: {e}") from e
            finally:
                session.close()

    def remove(self, report_id: str) -> None:
        """Elimina un reporte sent o discarded."""
        with self._lock:
            session = self.session_factory()
            try:
                report = session.get(ErrorReport, report_id)
                if report is None:
                    raise NotFoundError(f"Reporte {report_id} no encontrado")
                if ReportState(report.state) not in REMOVABLE_STATES:
                    raise InvalidTransitionError(
                        f"{report_id}: no se puede eliminar en estado {report.state}"
                    )
                session.delete(report)
                session.commit()
                logger.debug(f"Reporte {report_id} eliminado")
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Error eliminando reporte {report_id}: {e}") from e
            finally:
                session.close()

    def finalize(self, report_id: str, final_state: ReportState) -> ReportRecord:
        """
        Transición a sent/discarded y borrado en una sola transacción.

        Returns:
            Snapshot del reporte en su estado final (ya eliminado del store)
        """
        final_state = ReportState(final_state)
        if final_state not in REMOVABLE_STATES:
            raise InvalidTransitionError(f"{final_state.value} no es un estado final")

        with self._lock:
            session = self.session_factory()
            try:
                report = session.get(ErrorReport, report_id)
                if report is None:
                    raise NotFoundError(f"Reporte {report_id} no encontrado")

                current = ReportState(report.state)
                if final_state not in ALLOWED_TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"{report_id}: {current.value} -> {final_state.value} no permitido"
                    )

                report.state = final_state.value
                record = _to_record(report)
                session.delete(report)
                session.commit()
                logger.debug(f"Reporte {report_id}: {current.value} -> {final_state.value} (eliminado)")
                return record
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Error finalizando reporte {report_id}: {e}") from e
            finally:
                session.close()

    def purge_settled(self) -> List[str]:
        """Elimina reportes que quedaron en sent/discarded sin borrarse."""
        with self._lock:
            session = self.session_factory()
            try:
                settled = (
                    session.query(ErrorReport)
                    .filter(ErrorReport.state.in_([s.value for s in REMOVABLE_STATES]))
                    .all()
                )
                ids = [report.id for report in settled]
                for report in settled:
                    session.delete(report)
                session.commit()
                if ids:
                    logger.info(f"{len(ids)} reportes finalizados eliminados del store")
                return ids
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Error eliminando reportes finalizados: {e}") from e
            finally:
                session.close()

    def reconcile_interrupted(self) -> List[str]:
        """
        Pasa a failed (reintentables) los reportes que quedaron en sending
        porque el proceso terminó a mitad de la entrega.
        """
        with self._lock:
            session = self.session_factory()
            try:
                interrupted = (
                    session.query(ErrorReport)
                    .filter(ErrorReport.state == ReportState.SENDING.value)
                    .all()
                )
                now = utcnow()
                for report in interrupted:
                    report.state = ReportState.FAILED.value
                    report.attempts = (report.attempts or 0) + 1
                    report.gave_up = False
                    report.last_error = "Entrega interrumpida"
                    report.updated_at = now
                session.commit()
                if interrupted:
                    logger.warning(f"{len(interrupted)} reportes interrumpidos en sending pasan a failed")
                return [report.id for report in interrupted]
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Error reconciliando reportes: {e}") from e
            finally:
                session.close()

    def count_by_state(self) -> Dict[ReportState, int]:
        session = self.session_factory()
        try:
            rows = (
                session.query(ErrorReport.state, func.count(ErrorReport.id))
                .group_by(ErrorReport.state)
                .all()
            )
            return {ReportState(state): count for state, count in rows}
        except SQLAlchemyError as e:
            raise StorageError(f"Error contando reportes: {e}") from e
        finally:
            session.close()

    def _fetch_page(
        self,
        state: ReportState,
        cursor: Optional[Tuple[datetime, int]],
        limit: int,
    ) -> List[ReportRecord]:
        session = self.session_factory()
        try:
            query = session.query(ErrorReport).filter(ErrorReport.state == state.value)
            if cursor is not None:
                created_at, sequence = cursor
                query = query.filter(
                    or_(
                        ErrorReport.created_at > created_at,
                        and_(
                            ErrorReport.created_at == created_at,
                            ErrorReport.sequence > sequence,
                        ),
                    )
                )
            rows = (
                query.order_by(ErrorReport.created_at, ErrorReport.sequence)
                .limit(limit)
                .all()
            )
            return [_to_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Error listando reportes {state.value}: {e}") from e
        finally:
            session.close()
