"""
RetryPolicy: reintentos de entrega con exponential backoff
"""

import random
from dataclasses import dataclass
from typing import Optional

from cr_mobile.core.config import Settings


@dataclass
class RetryPolicy:
    """
    Backoff exponencial para entregas fallidas.

    Fórmula: delay = base_delay * (multiplier ^ attempt) (+ jitter)
    Máximo: max_delay. Tras `max_retries` fallos no se reintenta más.
    """

    base_delay: float = 1.0          # segundos
    multiplier: float = 2.0
    max_delay: float = 300.0
    max_retries: int = 5
    jitter: bool = False             # ±20% uniforme

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            max_retries=settings.MAX_RETRIES,
            jitter=settings.BACKOFF_JITTER,
        )

    def get_delay(self, attempt: int) -> Optional[float]:
        """
        Espera antes del siguiente intento.

        Args:
            attempt: Intentos fallidos hasta ahora

        Returns:
            Segundos a esperar, o None si ya no se debe reintentar
        """
        if not self.should_retry(attempt):
            return None

        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

        if self.jitter:
            delay = delay * random.uniform(0.8, 1.2)

        return delay

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(base={self.base_delay}s, "
            f"multiplier={self.multiplier}x, "
            f"max={self.max_delay}s, "
            f"max_retries={self.max_retries})"
        )
