from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from . import constants


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    stream_maxlen: int = 10000


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class LedgerConfig(BaseModel):
    """Where the owner-facing request ledger lives."""

    backend: Literal["inmemory", "file"] = "inmemory"
    path: str = constants.DEFAULT_LEDGER_PATH


class BreakerConfig(BaseModel):
    """Circuit breaker tuning."""

    window_size: int = constants.BREAKER_WINDOW_SIZE
    min_attempts: int = constants.BREAKER_MIN_ATTEMPTS
    failure_threshold: float = constants.BREAKER_FAILURE_THRESHOLD
    cooldown_seconds: float = constants.BREAKER_COOLDOWN_SECONDS
    max_cooldown_seconds: float = constants.BREAKER_MAX_COOLDOWN_SECONDS
    backoff_base: float = constants.BREAKER_BACKOFF_BASE


class OrchestratorConfig(BaseModel):
    """Limits and timer intervals for the orchestrator daemon."""

    max_concurrent_workflows: int = constants.MAX_CONCURRENT_WORKFLOWS
    max_decomposition_depth: int = constants.MAX_DECOMPOSITION_DEPTH
    scan_interval: float = constants.SCAN_INTERVAL_SECONDS
    progress_interval: float = constants.PROGRESS_INTERVAL_SECONDS
    heartbeat_interval: float = constants.HEARTBEAT_INTERVAL_SECONDS
    reconciliation_interval: float = constants.RECONCILIATION_INTERVAL_SECONDS
    max_workflow_duration: float = constants.MAX_WORKFLOW_DURATION_SECONDS
    heartbeat_timeout: float = constants.HEARTBEAT_TIMEOUT_SECONDS
    state_request_timeout: float = constants.STATE_REQUEST_TIMEOUT_SECONDS
    escalation_dir: str = constants.DEFAULT_ESCALATION_DIR


class StagecraftConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    ledger: LedgerConfig = LedgerConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    breaker: BreakerConfig = BreakerConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> StagecraftConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STAGECRAFT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STAGECRAFT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StagecraftConfig(**data)
    else:
        config = StagecraftConfig()

    env_db_url = os.getenv("STAGECRAFT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_transport = os.getenv("STAGECRAFT_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()  # type: ignore[assignment]

    env_ledger = os.getenv("STAGECRAFT_LEDGER_PATH")
    if env_ledger:
        config.ledger.backend = "file"
        config.ledger.path = env_ledger

    env_ceiling = os.getenv("STAGECRAFT_MAX_CONCURRENT_WORKFLOWS")
    if env_ceiling:
        config.orchestrator.max_concurrent_workflows = int(env_ceiling)

    env_escalations = os.getenv("STAGECRAFT_ESCALATION_DIR")
    if env_escalations:
        config.orchestrator.escalation_dir = env_escalations
    return config
