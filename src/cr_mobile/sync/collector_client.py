"""
CollectorClient

Cliente HTTP (aiohttp) del colector de reportes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiohttp

from cr_mobile.core.config import Settings
from cr_mobile.core.credentials import CredentialStore
from cr_mobile.core.exceptions import RejectedError, TransientUploadError
from cr_mobile.services.report_store import ReportRecord

TRANSIENT_STATUSES = {408, 425, 429}
DUPLICATE_STATUS = 409


@dataclass(frozen=True)
class Ack:
    """Confirmación del colector"""

    report_id: str
    status: int
    duplicate: bool = False


class CollectorClient:
    """Entrega reportes al colector, un lote por petición."""

    def __init__(
        self,
        settings: Settings,
        credentials: Optional[CredentialStore] = None,
        install_id: str = "",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials or CredentialStore(settings)
        self.install_id = install_id
        self._session = session

    def _get_headers(self, report_id: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": report_id,
        }
        token = self.credentials.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.settings.APP_SECRET:
            headers["App-Secret"] = self.settings.APP_SECRET
        if self.install_id:
            headers["Install-ID"] = self.install_id
        return headers

    def _build_body(self, report: ReportRecord) -> Dict[str, Any]:
        # El id viaja como clave de deduplicación en el servidor
        return {
            "reports": [
                {
                    "id": report.id,
                    "sessionId": report.session_id,
                    "createdAt": report.created_at.isoformat() + "Z",
                    "attempt": report.attempts + 1,
                    "payload": report.payload,
                }
            ]
        }

    async def deliver(self, report: ReportRecord) -> Ack:
        """
        Envía un reporte.

        Raises:
            TransientUploadError: red, timeout, 408/429/5xx
            RejectedError: cualquier otro 4xx
        """
        status, text = await self._request(
            "POST",
            self.settings.COLLECTOR_ENDPOINT,
            json_body=self._build_body(report),
            headers=self._get_headers(report.id),
        )

        if status == DUPLICATE_STATUS:
            return Ack(report_id=report.id, status=status, duplicate=True)
        if 200 <= status < 300:
            return Ack(report_id=report.id, status=status)
        if status in TRANSIENT_STATUSES or status >= 500:
            raise TransientUploadError(f"Colector error {status}: {text}", status=status)
        raise RejectedError(f"Colector rechazó el reporte ({status}): {text}", status=status)

    async def _request(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str]:
        session = self._session or aiohttp.ClientSession()
        close_session = self._session is None
        timeout = aiohttp.ClientTimeout(total=self.settings.UPLOAD_TIMEOUT_SECONDS)
        try:
            async with session.request(
                method, url, json=json_body, headers=headers, timeout=timeout
            ) as resp:
                return resp.status, await resp.text()
        except asyncio.TimeoutError as e:
            raise TransientUploadError(f"Timeout contactando el colector: {url}") from e
        except aiohttp.ClientError as e:
            raise TransientUploadError(f"Error de red: {e}") from e
        finally:
            if close_session:
                await session.close()
