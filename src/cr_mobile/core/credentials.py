"""
Almacenamiento seguro del token del colector (keyring del SO)
"""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from cr_mobile.core.config import Settings

logger = logging.getLogger(__name__)

SERVICE_NAME = "crashreporter_mobile"


class CredentialStore:
    """Guarda y recupera el bearer token usado contra el colector"""

    def __init__(self, settings: Settings):
        self.settings = settings

    def get_token(self) -> Optional[str]:
        """Token de settings; si no hay, el guardado en keyring"""
        if self.settings.AUTH_TOKEN:
            return self.settings.AUTH_TOKEN
        try:
            return keyring.get_password(SERVICE_NAME, self.settings.TOKEN_STORAGE_KEY)
        except KeyringError as e:
            logger.warning(f"No se pudo leer el token desde keyring: {e}")
            return None

    def save_token(self, token: str) -> None:
        try:
            keyring.set_password(SERVICE_NAME, self.settings.TOKEN_STORAGE_KEY, token)
            logger.info("Token del colector guardado en keyring")
        except KeyringError as e:
            logger.warning(f"No se pudo guardar el token de forma segura: {e}")

    def clear_token(self) -> None:
        try:
            keyring.delete_password(SERVICE_NAME, self.settings.TOKEN_STORAGE_KEY)
        except PasswordDeleteError:
            logger.debug("No había token guardado")
        except KeyringError as e:
            logger.warning(f"No se pudo eliminar el token: {e}")
