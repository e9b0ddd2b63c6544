"""Environment-driven configuration for the runtime and its connectors."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from .exceptions import ConfigurationError
from .governor import ResilienceGovernor
from .types import CircuitBreakerConfig, ConnectorConfig, RateLimitConfig
from .vault import DynamoTokenVault, LocalTokenVault, TokenVault

logger = logging.getLogger(__name__)

ENV_FILES = (".env.local", ".env")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_environment(directory: str | Path | None = None, override: bool = False) -> Path | None:
    """
    Load the first environment file found (.env.local, then .env).

    Returns:
        Path of the file loaded, or None when there is none
    """
    base = Path(directory) if directory else Path.cwd()
    for name in ENV_FILES:
        env_path = base / name
        if env_path.exists():
            load_dotenv(env_path, override=override)
            return env_path
    return None


def configure_logging(level: str | None = None) -> None:
    """Basic log setup; LOG_LEVEL wins when no level is given."""
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT)


def _env_number(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def env_prefix(provider: str) -> str:
    """"linked-in" -> "LINKED_IN"."""
    return provider.upper().replace("-", "_")


class RuntimeSettings(BaseModel):
    """Process-wide settings: governor defaults and the vault backend."""

    rate_limit_requests: int = 100
    rate_limit_window: float = 60.0
    circuit_failure_threshold: int = 5
    circuit_cooldown: float = 60.0
    max_queue_wait: float = 5.0

    vault_backend: str = "local"  # "local" or "dynamodb"
    encryption_key: str | None = None
    dynamodb_table: str = "bridgeport_tokens"
    kms_key_id: str | None = None
    aws_region: str = "us-east-1"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            rate_limit_requests=int(_env_number("BRIDGE_RATE_LIMIT_REQUESTS", 100)),
            rate_limit_window=_env_number("BRIDGE_RATE_LIMIT_WINDOW", 60.0),
            circuit_failure_threshold=int(_env_number("BRIDGE_CIRCUIT_FAILURE_THRESHOLD", 5)),
            circuit_cooldown=_env_number("BRIDGE_CIRCUIT_COOLDOWN", 60.0),
            max_queue_wait=_env_number("BRIDGE_MAX_QUEUE_WAIT", 5.0),
            vault_backend=os.getenv("BRIDGE_VAULT_BACKEND", "local").lower(),
            encryption_key=os.getenv("BRIDGE_ENCRYPTION_KEY") or None,
            dynamodb_table=os.getenv("DYNAMODB_TABLE", "bridgeport_tokens"),
            kms_key_id=os.getenv("KMS_KEY_ID") or None,
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
        )

    def rate_limit(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_requests=self.rate_limit_requests,
            time_window=self.rate_limit_window,
        )

    def circuit(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            cooldown_seconds=self.circuit_cooldown,
        )


def connector_config_from_env(provider: str, user_id: str | None = None) -> ConnectorConfig:
    """
    Build a ConnectorConfig from {PROVIDER}_* variables.

    Reads CLIENT_ID, CLIENT_SECRET, REDIRECT_URI, WEBHOOK_SECRET, SCOPES
    (space or comma separated) and API_BASE_URL.
    """
    prefix = env_prefix(provider)
    scopes = os.getenv(f"{prefix}_SCOPES", "").replace(",", " ").split()

    return ConnectorConfig(
        provider=provider,
        user_id=user_id,
        client_id=os.getenv(f"{prefix}_CLIENT_ID") or None,
        client_secret=os.getenv(f"{prefix}_CLIENT_SECRET") or None,
        redirect_uri=os.getenv(f"{prefix}_REDIRECT_URI") or None,
        webhook_secret=os.getenv(f"{prefix}_WEBHOOK_SECRET") or None,
        scopes=scopes,
        api_base_url=os.getenv(f"{prefix}_API_BASE_URL") or None,
    )


def build_governor(settings: RuntimeSettings) -> ResilienceGovernor:
    """Governor whose defaults apply to every provider without its own config."""
    governor = ResilienceGovernor(max_queue_wait=settings.max_queue_wait)
    governor.rate_limiter.default_config = settings.rate_limit()
    governor.circuit_breaker.default_config = settings.circuit()
    return governor


def build_vault(settings: RuntimeSettings) -> TokenVault:
    """
    Raises:
        ConfigurationError: Unknown backend, or local backend without a key
    """
    if settings.vault_backend == "dynamodb":
        logger.info("Using DynamoDB token vault (table=%s)", settings.dynamodb_table)
        return DynamoTokenVault(
            table_name=settings.dynamodb_table,
            kms_key_id=settings.kms_key_id,
            region_name=settings.aws_region,
        )

    if settings.vault_backend != "local":
        raise ConfigurationError(f"Unknown vault backend {settings.vault_backend!r}")

    if not settings.encryption_key:
        raise ConfigurationError("BRIDGE_ENCRYPTION_KEY is required for the local token vault")
    return LocalTokenVault(settings.encryption_key)
