"""
ConsentGate: decide si un lote de reportes se envía, se descarta o requiere
confirmación del usuario.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cr_mobile.core.exceptions import ConsentError, StorageError
from cr_mobile.persistence.models import ReporterState

logger = logging.getLogger(__name__)

PREFERENCE_KEY = "consent_preference"


class ConsentPreference(str, Enum):
    ASK_EACH_TIME = "ask_each_time"
    ALWAYS_SEND = "always_send"
    NEVER_SEND = "never_send"


class UserConfirmation(str, Enum):
    """Respuestas posibles del diálogo de confirmación"""

    SEND = "send"
    ALWAYS_SEND = "always_send"
    DONT_SEND = "dont_send"


class Decision(str, Enum):
    APPROVE_ALL = "approve_all"
    APPROVE_ONCE = "approve_once"
    DISCARD_ALL = "discard_all"

    @property
    def approves(self) -> bool:
        return self is not Decision.DISCARD_ALL


@dataclass(frozen=True)
class ConsentResult:
    """Resultado único de una evaluación de consentimiento"""

    decision: Decision
    remember: bool = False

    @property
    def preference_update(self) -> Optional[ConsentPreference]:
        if not self.remember:
            return None
        if self.decision is Decision.APPROVE_ALL:
            return ConsentPreference.ALWAYS_SEND
        if self.decision is Decision.DISCARD_ALL:
            return ConsentPreference.NEVER_SEND
        return None


ConsentPrompt = Callable[
    [int, str], Union[UserConfirmation, Awaitable[UserConfirmation]]
]

_CONFIRMATION_RESULTS = {
    UserConfirmation.SEND: ConsentResult(Decision.APPROVE_ONCE),
    UserConfirmation.ALWAYS_SEND: ConsentResult(Decision.APPROVE_ALL, remember=True),
    UserConfirmation.DONT_SEND: ConsentResult(Decision.DISCARD_ALL),
}


class ConsentGate:
    """
    Evalúa el consentimiento una vez por lote.

    - AlwaysSend  → APPROVE_ALL sin preguntar
    - NeverSend   → DISCARD_ALL sin preguntar
    - AskEachTime → espera la respuesta del colaborador de UI (`prompt`)

    Sin `prompt` configurado no hay confirmación que pedir y el lote se
    aprueba una vez.
    """

    def __init__(self, session_factory, prompt: Optional[ConsentPrompt] = None) -> None:
        self.session_factory = session_factory
        self.prompt = prompt

    def _get_state(self, session: Session, key: str) -> Optional[str]:
        item = session.query(ReporterState).filter(ReporterState.key == key).first()
        return item.value if item else None

    def _set_state(self, session: Session, key: str, value: Optional[str]) -> None:
        item = session.query(ReporterState).filter(ReporterState.key == key).first()
        if not item:
            item = ReporterState(key=key, value=value)
            session.add(item)
        else:
            item.value = value

    def get_preference(self) -> ConsentPreference:
        session = self.session_factory()
        try:
            value = self._get_state(session, PREFERENCE_KEY)
        except SQLAlchemyError as e:
            raise StorageError(f"Error leyendo preferencia de consentimiento: {e}") from e
        finally:
            session.close()
        if value is None:
            return ConsentPreference.ASK_EACH_TIME
        try:
            return ConsentPreference(value)
        except ValueError:
            logger.warning(f"Preferencia de consentimiento desconocida '{value}', se pregunta")
            return ConsentPreference.ASK_EACH_TIME

    def set_preference(self, preference: ConsentPreference) -> None:
        preference = ConsentPreference(preference)
        session = self.session_factory()
        try:
            self._set_state(session, PREFERENCE_KEY, preference.value)
            session.commit()
            logger.info(f"Preferencia de consentimiento: {preference.value}")
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Error guardando preferencia de consentimiento: {e}") from e
        finally:
            session.close()

    async def evaluate(self, batch_size: int, summary: str = "") -> ConsentResult:
        """Decide el destino de un lote de `batch_size` reportes."""
        preference = self.get_preference()

        if preference is ConsentPreference.ALWAYS_SEND:
            return ConsentResult(Decision.APPROVE_ALL)
        if preference is ConsentPreference.NEVER_SEND:
            return ConsentResult(Decision.DISCARD_ALL)

        if self.prompt is None:
            logger.debug("Sin diálogo de confirmación configurado, se aprueba el lote")
            return ConsentResult(Decision.APPROVE_ONCE)

        logger.info(f"Solicitando confirmación para {batch_size} reportes")
        try:
            answer = await self._ask(batch_size, summary)
        except Exception as e:
            raise ConsentError(f"El diálogo de confirmación falló: {e}") from e

        try:
            result = _CONFIRMATION_RESULTS[UserConfirmation(answer)]
        except ValueError as e:
            raise ConsentError(f"Respuesta de confirmación desconocida: {answer!r}") from e

        update = result.preference_update
        if update is not None:
            self.set_preference(update)
        return result

    async def _ask(self, batch_size: int, summary: str):
        """
        Espera la respuesta del diálogo sin bloquear el event loop.

        Un diálogo síncrono corre en un hilo daemon: si la pasada se cancela
        la respuesta se abandona y el lote sigue en awaiting_consent.
        """
        if inspect.iscoroutinefunction(self.prompt):
            return await self.prompt(batch_size, summary)

        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def _deliver(setter, value):
            if not future.done():
                setter(value)

        def _run():
            try:
                answer = self.prompt(batch_size, summary)
            except Exception as e:
                callback = (future.set_exception, e)
            else:
                callback = (future.set_result, answer)
            try:
                loop.call_soon_threadsafe(_deliver, *callback)
            except RuntimeError:
                logger.debug("Respuesta de confirmación recibida tras cerrar la pasada, se ignora")

        threading.Thread(target=_run, name="consent-prompt", daemon=True).start()
        answer = await future
        if inspect.isawaitable(answer):
            answer = await answer
        return answer
