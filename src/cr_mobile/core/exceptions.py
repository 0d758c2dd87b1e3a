"""
Custom exceptions para el pipeline de reportes de fallos
"""

from typing import Optional


class CrashReporterError(Exception):
    """Base exception para todo el reporter"""

    pass


class StorageError(CrashReporterError):
    """Almacenamiento local no disponible o lleno"""

    pass


class NotFoundError(CrashReporterError):
    """El reporte no existe en el store"""

    pass


class InvalidTransitionError(CrashReporterError):
    """Transición de estado no permitida por la máquina de estados"""

    pass


class ValidationError(CrashReporterError):
    """Payload inválido (no serializable)"""

    pass


class ConsentError(CrashReporterError):
    """Respuesta desconocida del colaborador de consentimiento"""

    pass


class UploadError(CrashReporterError):
    """Errores de entrega al colector"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientUploadError(UploadError):
    """Red, timeout o 5xx: se reintenta con backoff"""

    pass


class PermanentUploadError(UploadError):
    """Rechazo definitivo (payload mal formado, 4xx)"""

    pass


class RejectedError(PermanentUploadError):
    """El colector rechazó el reporte; no se reintenta"""

    pass


class DeliveryAbandonedError(UploadError):
    """Se agotaron los reintentos de entrega"""

    def __init__(self, report_id: str, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            f"Entrega abandonada para {report_id} tras {attempts} intentos: {last_error}"
        )
        self.report_id = report_id
        self.attempts = attempts
        self.last_error = last_error
