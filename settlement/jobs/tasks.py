from dataclasses import dataclass
from typing import Callable

from settlement.config import Settings
from settlement.jobs.queue import TaskOptions

DEPOSIT_COMPLETION = "deposit-completion"
ONCHAIN_DEPOSIT_CONFIRMATION = "onchain-deposit-confirmation"
SWAP_EXECUTION = "swap-execution"
SWAP_CONFIRMATION = "swap-confirmation"


@dataclass
class Task:
    options: TaskOptions
    handler: Callable[..., None]
    on_exhausted: Callable[..., None] | None = None


def _retry_policy(settings: Settings, prefix: str) -> dict:
    max_attempts = getattr(settings, f"{prefix}_max_attempts")
    backoff = getattr(settings, f"{prefix}_backoff_base_sec")
    return {
        "max_attempts": settings.job_max_attempts if max_attempts is None else max_attempts,
        "backoff_base_sec": settings.job_backoff_base_sec if backoff is None else backoff,
    }


def build_task_options(settings: Settings) -> dict[str, TaskOptions]:
    return {
        DEPOSIT_COMPLETION: TaskOptions(
            DEPOSIT_COMPLETION,
            concurrency=settings.deposit_completion_concurrency,
            **_retry_policy(settings, "deposit_completion"),
        ),
        ONCHAIN_DEPOSIT_CONFIRMATION: TaskOptions(
            ONCHAIN_DEPOSIT_CONFIRMATION,
            concurrency=settings.onchain_confirmation_concurrency,
            repeat_every_sec=settings.onchain_poll_interval_sec,
            repeat_limit=settings.onchain_poll_limit,
            **_retry_policy(settings, "onchain_confirmation"),
        ),
        SWAP_EXECUTION: TaskOptions(
            SWAP_EXECUTION,
            concurrency=settings.swap_execution_concurrency,
            **_retry_policy(settings, "swap_execution"),
        ),
        SWAP_CONFIRMATION: TaskOptions(
            SWAP_CONFIRMATION,
            concurrency=settings.swap_confirmation_concurrency,
            repeat_every_sec=settings.swap_poll_interval_sec,
            repeat_limit=settings.swap_poll_limit,
            **_retry_policy(settings, "swap_confirmation"),
        ),
    }
