import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from settlement.config import Settings
from settlement.db import create_db_engine, create_session_factory, is_postgres
from settlement.jobs.processors import (
    deposit_completion,
    onchain_deposit_confirmation,
    swap_confirmation,
    swap_execution,
)
from settlement.jobs.queue import JobQueue, TaskOptions
from settlement.jobs.tasks import (
    DEPOSIT_COMPLETION,
    ONCHAIN_DEPOSIT_CONFIRMATION,
    SWAP_CONFIRMATION,
    SWAP_EXECUTION,
    Task,
    build_task_options,
)
from settlement.models import Base
from settlement.services.catalog import AssetCatalog
from settlement.services.chain_client import ChainClients
from settlement.services.monitoring import Alerter, QueueMonitor
from settlement.services.swap_factory import create_swap_provider
from settlement.services.swap_provider import SwapProvider

logger = logging.getLogger(__name__)


def build_tasks(options: dict[str, TaskOptions]) -> dict[str, Task]:
    return {
        DEPOSIT_COMPLETION: Task(options[DEPOSIT_COMPLETION], deposit_completion.process),
        ONCHAIN_DEPOSIT_CONFIRMATION: Task(
            options[ONCHAIN_DEPOSIT_CONFIRMATION],
            onchain_deposit_confirmation.process,
            onchain_deposit_confirmation.on_exhausted,
        ),
        SWAP_EXECUTION: Task(options[SWAP_EXECUTION], swap_execution.process),
        SWAP_CONFIRMATION: Task(options[SWAP_CONFIRMATION], swap_confirmation.process, swap_confirmation.on_exhausted),
    }


@dataclass
class AppContext:
    """Everything the API and the workers share: settings, storage, queue and outside clients."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    queue: JobQueue
    chain_clients: ChainClients
    swap_provider: SwapProvider
    monitor: QueueMonitor
    catalog: AssetCatalog = field(default_factory=AssetCatalog)
    clock: Callable[[], datetime] = datetime.utcnow
    tasks: dict[str, TaskOptions] = field(default_factory=dict)
    handlers: dict[str, Task] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.tasks:
            self.tasks = build_task_options(self.settings)
        if not self.handlers:
            self.handlers = build_tasks(self.tasks)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "AppContext":
        engine = overrides.pop("engine", None) or create_db_engine(settings.database_url)
        session_factory = create_session_factory(engine)
        clock = overrides.pop("clock", datetime.utcnow)
        queue = overrides.pop("queue", None) or JobQueue(
            session_factory,
            lease_sec=settings.job_lease_sec,
            max_stalled=settings.job_max_stalled,
            clock=clock,
            skip_locked=is_postgres(engine),
        )
        chain_clients = overrides.pop("chain_clients", None) or ChainClients(
            settings.chain_rpc_urls, settings.rpc_timeout_sec, settings.log_scan_chunk
        )
        swap_provider = overrides.pop("swap_provider", None) or create_swap_provider(settings)
        monitor = overrides.pop("monitor", None) or QueueMonitor(
            Alerter(settings.alert_webhook_url, settings.http_timeout_sec),
            failure_threshold=settings.alert_failure_threshold,
            stalled_threshold=settings.alert_stalled_threshold,
        )
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            queue=queue,
            chain_clients=chain_clients,
            swap_provider=swap_provider,
            monitor=monitor,
            clock=clock,
            **overrides,
        )

    def open(self) -> None:
        if self.settings.create_tables:
            Base.metadata.create_all(bind=self.engine)
        logger.info(
            "Context ready (env=%s, chains=%s, provider=%s)",
            self.settings.environment,
            ",".join(sorted(self.settings.chain_rpc_urls)) or "none",
            self.swap_provider.get_provider_name(),
        )

    def close(self) -> None:
        self.swap_provider.close()
        self.monitor.alerter.close()
        self.engine.dispose()
