"""
Environment configuration for the Lambda functions.

Read once per invocation into an immutable Settings object and passed to
whatever builds the clients; nothing here is kept in module state.
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from heic_batch.exceptions import ConfigurationError
from heic_batch.optimistic_updater import BackoffPolicy

logger = logging.getLogger(__name__)


def configure_logging(level_name: Optional[str] = None) -> logging.Logger:
    """Set the root logger level from LOG_LEVEL (defaults to INFO)."""
    level_name = (level_name or os.environ.get('LOG_LEVEL', 'INFO')).upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    return root


def _int(environ: Mapping[str, str], name: str, default: str) -> int:
    raw = environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _float(environ: Mapping[str, str], name: str, default: str) -> float:
    raw = environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    table_name: str
    bucket_name: str = ''
    queue_url: str = ''
    region: Optional[str] = None
    log_level: str = 'INFO'
    ttl_days: int = 1
    cas_max_attempts: int = 15
    cas_initial_delay_ms: float = 25.0
    cas_growth_factor: float = 1.5
    presign_expires_seconds: int = 600

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        environ = os.environ if environ is None else environ
        try:
            table_name = environ['TABLE_NAME']
        except KeyError as e:
            logger.error(f"Missing required environment variable: {e}")
            raise ConfigurationError(f"Missing required environment variable: {e}") from None

        settings = cls(
            table_name=table_name,
            bucket_name=environ.get('BUCKET_NAME', ''),
            queue_url=environ.get('QUEUE_URL', ''),
            region=environ.get('REGION') or environ.get('AWS_REGION') or None,
            log_level=environ.get('LOG_LEVEL', 'INFO'),
            ttl_days=_int(environ, 'TTL_DAYS', '1'),
            cas_max_attempts=_int(environ, 'CAS_MAX_ATTEMPTS', '15'),
            cas_initial_delay_ms=_float(environ, 'CAS_INITIAL_DELAY_MS', '25'),
            cas_growth_factor=_float(environ, 'CAS_GROWTH_FACTOR', '1.5'),
            presign_expires_seconds=_int(environ, 'PRESIGN_EXPIRES_SECONDS', '600'),
        )
        logger.debug(f"Configuration: TABLE_NAME={settings.table_name}, BUCKET_NAME={settings.bucket_name}, "
                     f"CAS_MAX_ATTEMPTS={settings.cas_max_attempts}, TTL_DAYS={settings.ttl_days}")
        return settings

    def require(self, attribute: str) -> str:
        value = getattr(self, attribute)
        if not value:
            raise ConfigurationError(f"{attribute.upper()} is not configured")
        return value

    def backoff_policy(self) -> BackoffPolicy:
        try:
            return BackoffPolicy(
                max_attempts=self.cas_max_attempts,
                initial_delay=self.cas_initial_delay_ms / 1000.0,
                growth_factor=self.cas_growth_factor,
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
