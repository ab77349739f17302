import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from shared.config import env_int
from shared.logging import get_logger

T = TypeVar("T")

# Statuses worth a second attempt. 4xx other than 429 are caller errors.
RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})

logger = get_logger(__name__)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 0.25
    max_delay_seconds: float = 5.0
    jitter_ratio: float = 0.30

    @classmethod
    def from_env(cls) -> "RetryConfig":
        return cls(max_attempts=max(1, env_int("HTTP_MAX_ATTEMPTS", cls.max_attempts)))


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


def _compute_sleep_seconds(attempt: int, config: RetryConfig) -> float:
    exponential = min(config.base_delay_seconds * (2 ** (attempt - 1)), config.max_delay_seconds)
    return exponential * (1 + random.uniform(0, config.jitter_ratio))


def call_with_retry(
    operation_name: str,
    fn: Callable[[], T],
    is_retryable_exception: Callable[[Exception], bool],
    is_retryable_result: Optional[Callable[[T], bool]] = None,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` until it succeeds, fails permanently, or attempts run out.

    A retryable result on the final attempt is returned as is so the caller can
    surface the upstream status; a retryable exception on the final attempt is
    re-raised.
    """
    cfg = config or RetryConfig()

    for attempt in range(1, cfg.max_attempts + 1):
        try:
            result = fn()
        except Exception as exc:  # noqa: BLE001
            if not is_retryable_exception(exc) or attempt == cfg.max_attempts:
                raise
            logger.warning(
                "Transient failure, retrying",
                extra={"extra": {"operation": operation_name, "attempt": attempt, "error": str(exc)}},
            )
            sleep(_compute_sleep_seconds(attempt, cfg))
            continue

        if is_retryable_result and is_retryable_result(result) and attempt < cfg.max_attempts:
            logger.warning(
                "Retryable response, retrying",
                extra={"extra": {"operation": operation_name, "attempt": attempt}},
            )
            sleep(_compute_sleep_seconds(attempt, cfg))
            continue
        return result

    raise RuntimeError(f"Retry loop exhausted unexpectedly for {operation_name}")
