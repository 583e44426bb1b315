import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _optional(name: str, cast):
    raw = os.getenv(name, "")
    return cast(raw) if raw else None


def _parse_rpc_urls(raw: str) -> dict[str, str]:
    urls: dict[str, str] = {}
    for item in raw.split(","):
        if "=" not in item:
            continue
        name, url = item.split("=", 1)
        if name.strip() and url.strip():
            urls[name.strip().lower()] = url.strip()
    return urls


DATABASE_URL = os.getenv("DATABASE_URL", "")
ENVIRONMENT = os.getenv("ENVIRONMENT", "dev").lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CREATE_TABLES = _flag("CREATE_TABLES", "true")
WORKERS_IN_API = _flag("WORKERS_IN_API")

CHAIN_RPC_URLS = _parse_rpc_urls(os.getenv("CHAIN_RPC_URLS", ""))
DEFAULT_CHAIN = os.getenv("DEFAULT_CHAIN", "base").lower()
REQUIRED_CONFIRMATIONS = int(os.getenv("REQUIRED_CONFIRMATIONS", "2"))
RPC_TIMEOUT_SEC = int(os.getenv("RPC_TIMEOUT_SEC", "20"))
LOG_SCAN_CHUNK = int(os.getenv("LOG_SCAN_CHUNK", "2000"))

DEPOSIT_SESSION_TTL_MIN = int(os.getenv("DEPOSIT_SESSION_TTL_MIN", "60"))
DEPOSIT_AMOUNT_TOLERANCE = Decimal(os.getenv("DEPOSIT_AMOUNT_TOLERANCE", "0.05"))
MIN_DEPOSIT_AMOUNT = Decimal(os.getenv("MIN_DEPOSIT_AMOUNT", "1"))
DEPOSIT_CONFIRM_GRACE_SEC = int(os.getenv("DEPOSIT_CONFIRM_GRACE_SEC", "1800"))

SWAP_PROVIDER = os.getenv("SWAP_PROVIDER", "zerox").lower()
SWAP_NETWORK = os.getenv("SWAP_NETWORK", "ethereum").lower()
ZEROX_API_KEY = os.getenv("ZEROX_API_KEY", "")
ZEROX_API_BASE = os.getenv("ZEROX_API_BASE", "https://api.0x.org")
ONEINCH_API_KEY = os.getenv("ONEINCH_API_KEY", "")
ONEINCH_API_BASE = os.getenv("ONEINCH_API_BASE", "https://api.1inch.dev")
NODE_URL = os.getenv("NODE_URL", "")
SWAP_WALLET_PRIVATE_KEY = os.getenv("SWAP_WALLET_PRIVATE_KEY", "")
DEFAULT_SLIPPAGE = float(os.getenv("DEFAULT_SLIPPAGE", "1"))
HTTP_TIMEOUT_SEC = int(os.getenv("HTTP_TIMEOUT_SEC", "20"))

JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
JOB_BACKOFF_BASE_SEC = float(os.getenv("JOB_BACKOFF_BASE_SEC", "2"))
JOB_LEASE_SEC = int(os.getenv("JOB_LEASE_SEC", "120"))
JOB_MAX_STALLED = int(os.getenv("JOB_MAX_STALLED", "3"))
JOB_POLL_INTERVAL_SEC = float(os.getenv("JOB_POLL_INTERVAL_SEC", "1"))
DEPOSIT_COMPLETION_CONCURRENCY = int(os.getenv("DEPOSIT_COMPLETION_CONCURRENCY", "5"))
ONCHAIN_CONFIRMATION_CONCURRENCY = int(os.getenv("ONCHAIN_CONFIRMATION_CONCURRENCY", "3"))
SWAP_EXECUTION_CONCURRENCY = int(os.getenv("SWAP_EXECUTION_CONCURRENCY", "5"))
SWAP_CONFIRMATION_CONCURRENCY = int(os.getenv("SWAP_CONFIRMATION_CONCURRENCY", "3"))
ONCHAIN_POLL_INTERVAL_SEC = int(os.getenv("ONCHAIN_POLL_INTERVAL_SEC", "30"))
SWAP_POLL_INTERVAL_SEC = int(os.getenv("SWAP_POLL_INTERVAL_SEC", "30"))
ONCHAIN_POLL_LIMIT = int(os.getenv("ONCHAIN_POLL_LIMIT", "240"))
SWAP_POLL_LIMIT = int(os.getenv("SWAP_POLL_LIMIT", "60"))
SWEEP_INTERVAL_SEC = int(os.getenv("SWEEP_INTERVAL_SEC", "30"))
SHUTDOWN_GRACE_SEC = int(os.getenv("SHUTDOWN_GRACE_SEC", "30"))

# per task retry policy; unset falls back to JOB_MAX_ATTEMPTS and JOB_BACKOFF_BASE_SEC
DEPOSIT_COMPLETION_MAX_ATTEMPTS = _optional("DEPOSIT_COMPLETION_MAX_ATTEMPTS", int)
DEPOSIT_COMPLETION_BACKOFF_BASE_SEC = _optional("DEPOSIT_COMPLETION_BACKOFF_BASE_SEC", float)
ONCHAIN_CONFIRMATION_MAX_ATTEMPTS = _optional("ONCHAIN_CONFIRMATION_MAX_ATTEMPTS", int)
ONCHAIN_CONFIRMATION_BACKOFF_BASE_SEC = _optional("ONCHAIN_CONFIRMATION_BACKOFF_BASE_SEC", float)
SWAP_EXECUTION_MAX_ATTEMPTS = _optional("SWAP_EXECUTION_MAX_ATTEMPTS", int)
SWAP_EXECUTION_BACKOFF_BASE_SEC = _optional("SWAP_EXECUTION_BACKOFF_BASE_SEC", float)
SWAP_CONFIRMATION_MAX_ATTEMPTS = _optional("SWAP_CONFIRMATION_MAX_ATTEMPTS", int)
SWAP_CONFIRMATION_BACKOFF_BASE_SEC = _optional("SWAP_CONFIRMATION_BACKOFF_BASE_SEC", float)

ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_FAILURE_THRESHOLD = int(os.getenv("ALERT_FAILURE_THRESHOLD", "5"))
ALERT_STALLED_THRESHOLD = int(os.getenv("ALERT_STALLED_THRESHOLD", "3"))

REBALANCE_DRIFT_THRESHOLD = Decimal(os.getenv("REBALANCE_DRIFT_THRESHOLD", "5"))
MIN_REBALANCE_USD = Decimal(os.getenv("MIN_REBALANCE_USD", "1"))

if SWAP_PROVIDER not in {"zerox", "fusion", "classic"}:
    raise RuntimeError("SWAP_PROVIDER must be one of: zerox, fusion, classic")


@dataclass
class Settings:
    database_url: str = DATABASE_URL
    environment: str = ENVIRONMENT
    log_level: str = LOG_LEVEL
    create_tables: bool = CREATE_TABLES
    workers_in_api: bool = WORKERS_IN_API

    chain_rpc_urls: dict[str, str] = field(default_factory=lambda: dict(CHAIN_RPC_URLS))
    default_chain: str = DEFAULT_CHAIN
    required_confirmations: int = REQUIRED_CONFIRMATIONS
    rpc_timeout_sec: int = RPC_TIMEOUT_SEC
    log_scan_chunk: int = LOG_SCAN_CHUNK

    deposit_session_ttl_min: int = DEPOSIT_SESSION_TTL_MIN
    deposit_amount_tolerance: Decimal = DEPOSIT_AMOUNT_TOLERANCE
    min_deposit_amount: Decimal = MIN_DEPOSIT_AMOUNT
    deposit_confirm_grace_sec: int = DEPOSIT_CONFIRM_GRACE_SEC

    swap_provider: str = SWAP_PROVIDER
    swap_network: str = SWAP_NETWORK
    zerox_api_key: str = ZEROX_API_KEY
    zerox_api_base: str = ZEROX_API_BASE
    oneinch_api_key: str = ONEINCH_API_KEY
    oneinch_api_base: str = ONEINCH_API_BASE
    node_url: str = NODE_URL
    swap_wallet_private_key: str = SWAP_WALLET_PRIVATE_KEY
    default_slippage: float = DEFAULT_SLIPPAGE
    http_timeout_sec: int = HTTP_TIMEOUT_SEC

    job_max_attempts: int = JOB_MAX_ATTEMPTS
    job_backoff_base_sec: float = JOB_BACKOFF_BASE_SEC
    job_lease_sec: int = JOB_LEASE_SEC
    job_max_stalled: int = JOB_MAX_STALLED
    job_poll_interval_sec: float = JOB_POLL_INTERVAL_SEC
    deposit_completion_concurrency: int = DEPOSIT_COMPLETION_CONCURRENCY
    onchain_confirmation_concurrency: int = ONCHAIN_CONFIRMATION_CONCURRENCY
    swap_execution_concurrency: int = SWAP_EXECUTION_CONCURRENCY
    swap_confirmation_concurrency: int = SWAP_CONFIRMATION_CONCURRENCY
    onchain_poll_interval_sec: int = ONCHAIN_POLL_INTERVAL_SEC
    swap_poll_interval_sec: int = SWAP_POLL_INTERVAL_SEC
    onchain_poll_limit: int = ONCHAIN_POLL_LIMIT
    swap_poll_limit: int = SWAP_POLL_LIMIT
    sweep_interval_sec: int = SWEEP_INTERVAL_SEC
    shutdown_grace_sec: int = SHUTDOWN_GRACE_SEC
    deposit_completion_max_attempts: int | None = DEPOSIT_COMPLETION_MAX_ATTEMPTS
    deposit_completion_backoff_base_sec: float | None = DEPOSIT_COMPLETION_BACKOFF_BASE_SEC
    onchain_confirmation_max_attempts: int | None = ONCHAIN_CONFIRMATION_MAX_ATTEMPTS
    onchain_confirmation_backoff_base_sec: float | None = ONCHAIN_CONFIRMATION_BACKOFF_BASE_SEC
    swap_execution_max_attempts: int | None = SWAP_EXECUTION_MAX_ATTEMPTS
    swap_execution_backoff_base_sec: float | None = SWAP_EXECUTION_BACKOFF_BASE_SEC
    swap_confirmation_max_attempts: int | None = SWAP_CONFIRMATION_MAX_ATTEMPTS
    swap_confirmation_backoff_base_sec: float | None = SWAP_CONFIRMATION_BACKOFF_BASE_SEC

    alert_webhook_url: str = ALERT_WEBHOOK_URL
    alert_failure_threshold: int = ALERT_FAILURE_THRESHOLD
    alert_stalled_threshold: int = ALERT_STALLED_THRESHOLD

    rebalance_drift_threshold: Decimal = REBALANCE_DRIFT_THRESHOLD
    min_rebalance_usd: Decimal = MIN_REBALANCE_USD


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )


def load_settings() -> Settings:
    settings = Settings()
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL must be set (see .env.example)")
    return settings
