"""
Exchange credential retrieval.

Credentials are fetched once per decision cycle, before any exchange call,
through a ``SecretProvider``:

- ``EnvSecretProvider`` reads the ``EXCHANGE_*`` settings (environment / .env)
- ``StaticSecretProvider`` hands out a fixed pair (paper trading)
- ``JsonFileSecretProvider`` reads a JSON secret document from disk, the layout
  a secrets manager exports::

      {"API_KEY": "...", "API_SECRET": "...",
       "TESTNET_API_KEY": "...", "TESTNET_API_SECRET": "..."}
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import orjson

from candlesync.config.settings import ExchangeSettings
from candlesync.trading.errors import CredentialError
from candlesync.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Credentials:
    """API key pair. ``repr`` never shows the secret."""

    key: str
    secret: str = field(repr=False)


class SecretProvider(Protocol):
    """Source of exchange credentials."""

    async def get_credentials(self, secret_id: str) -> Credentials:
        """Return the credentials stored under ``secret_id``.

        Raises:
            CredentialError: If the secret is missing, unreadable or empty
        """
        ...


def _require(key: str, secret: str, secret_id: str) -> Credentials:
    if not key or not secret:
        logger.error("credentials_missing", secret_id=secret_id)
        raise CredentialError(f"Credentials for {secret_id} are missing or empty")
    return Credentials(key=key, secret=secret)


class StaticSecretProvider:
    """Fixed credentials, whatever the secret id. Used for paper trading."""

    def __init__(self, credentials: Credentials) -> None:
        self.credentials = credentials

    async def get_credentials(self, secret_id: str) -> Credentials:
        return _require(self.credentials.key, self.credentials.secret, secret_id)


class EnvSecretProvider:
    """Credentials from ``ExchangeSettings`` (``EXCHANGE_API_KEY`` etc.)."""

    def __init__(self, settings: ExchangeSettings) -> None:
        self.settings = settings

    async def get_credentials(self, secret_id: str) -> Credentials:
        if self.settings.testnet:
            key = self.settings.testnet_api_key.get_secret_value()
            secret = self.settings.testnet_api_secret.get_secret_value()
        else:
            key = self.settings.api_key.get_secret_value()
            secret = self.settings.api_secret.get_secret_value()
        return _require(key, secret, secret_id)


class JsonFileSecretProvider:
    """
    Credentials from a JSON secret document.

    ``secret_id`` is the path of the document, resolved against ``base_dir``
    when relative.

    Attributes:
        testnet: Read the ``TESTNET_`` pair instead of the live pair
        base_dir: Directory relative secret ids are resolved against
    """

    def __init__(self, testnet: bool = True, base_dir: Path | None = None) -> None:
        self.testnet = testnet
        self.base_dir = base_dir

    def _resolve(self, secret_id: str) -> Path:
        path = Path(secret_id)
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        return path

    async def get_credentials(self, secret_id: str) -> Credentials:
        path = self._resolve(secret_id)
        try:
            document = orjson.loads(path.read_bytes())
        except OSError as e:
            logger.error("secret_read_failed", secret_id=secret_id, error=str(e))
            raise CredentialError(f"Cannot read secret {secret_id}") from e
        except orjson.JSONDecodeError as e:
            logger.error("secret_decode_failed", secret_id=secret_id, error=str(e))
            raise CredentialError(f"Secret {secret_id} is not valid JSON") from e

        if not isinstance(document, dict):
            raise CredentialError(f"Secret {secret_id} is not a JSON object")

        prefix = "TESTNET_" if self.testnet else ""
        key = document.get(f"{prefix}API_KEY") or ""
        secret = document.get(f"{prefix}API_SECRET") or ""
        return _require(str(key), str(secret), secret_id)


def create_secret_provider(settings: ExchangeSettings) -> SecretProvider:
    """
    Factory function to create the provider selected by ``secret_source``.

    Args:
        settings: Exchange settings

    Returns:
        Configured SecretProvider
    """
    if settings.secret_source == "file":
        return JsonFileSecretProvider(testnet=settings.testnet)
    return EnvSecretProvider(settings)
