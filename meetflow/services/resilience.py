from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

import requests


T = TypeVar("T")


class GatewayError(RuntimeError):
    """Base class for failures talking to an external provider."""

    kind = "gateway_failed"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayRateLimited(GatewayError):
    kind = "gateway_rate_limited"
    retryable = True


class GatewayUnavailable(GatewayError):
    kind = "gateway_unavailable"
    retryable = True


class GatewayTimeout(GatewayError):
    kind = "gateway_timeout"


class GatewayRejected(GatewayError):
    """Validation or auth failure; retrying would not help."""

    kind = "gateway_rejected"


class GatewayJobFailed(GatewayError):
    """The provider accepted an async job and later reported it as failed."""

    kind = "gateway_failed"


def raise_for_status(response: requests.Response, service: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    detail = ""
    try:
        detail = response.text[:300]
    except Exception:
        detail = ""
    message = f"{service} error: {status} {detail}".strip()
    if status == 429:
        raise GatewayRateLimited(message, status)
    if status >= 500:
        raise GatewayUnavailable(message, status)
    raise GatewayRejected(message, status)


def send(method: Callable[..., requests.Response], service: str, *args, **kwargs) -> requests.Response:
    """Issue one HTTP call and map transport/status failures onto gateway errors."""
    try:
        response = method(*args, **kwargs)
    except requests.RequestException as exc:
        raise GatewayUnavailable(f"Failed to reach {service}: {exc}") from exc
    raise_for_status(response, service)
    return response


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    poll_interval_seconds: float = 3.0
    max_poll_attempts: int = 200


def parse_retry_config(data: dict) -> RetryConfig:
    raw = data.get("retry", {}) if isinstance(data, dict) else {}
    if not isinstance(raw, dict):
        raw = {}
    return RetryConfig(
        max_attempts=max(1, int(raw.get("max_attempts", 3))),
        base_delay_seconds=float(raw.get("base_delay_seconds", 1.0)),
        poll_interval_seconds=float(raw.get("poll_interval_seconds", 3.0)),
        max_poll_attempts=max(1, int(raw.get("max_poll_attempts", 200))),
    )


class ResilientInvoker:
    """Bounded retry with exponential backoff, plus async job polling.

    ``sleep`` is injectable so tests can record delays without waiting.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._logger = logging.getLogger("meetflow.resilience")

    @property
    def config(self) -> RetryConfig:
        return self._config

    def invoke(
        self,
        op: Callable[[], T],
        name: str = "gateway",
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ) -> T:
        """Call ``op`` until it succeeds or a non-retryable error occurs.

        Retryable errors (rate limits, 5xx, transport) are retried with a delay
        of ``base_delay * 2 ** (attempt - 1)``; the last error is re-raised once
        ``max_attempts`` calls have been made.
        """
        attempts = max_attempts if max_attempts is not None else self._config.max_attempts
        delay_base = base_delay if base_delay is not None else self._config.base_delay_seconds
        attempts = max(1, attempts)

        for attempt in range(1, attempts + 1):
            try:
                return op()
            except GatewayError as exc:
                if not exc.retryable:
                    self._logger.warning("%s failed (not retryable): %s", name, exc)
                    raise
                if attempt >= attempts:
                    self._logger.warning(
                        "%s failed after %s attempts: %s", name, attempt, exc
                    )
                    raise
                delay = delay_base * (2 ** (attempt - 1))
                self._logger.info(
                    "%s attempt %s/%s failed (%s), retrying in %.2fs",
                    name,
                    attempt,
                    attempts,
                    exc.kind,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def poll(
        self,
        check: Callable[[], dict],
        name: str = "gateway",
        interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        completed_states: tuple[str, ...] = ("completed",),
        error_states: tuple[str, ...] = ("error",),
    ) -> dict:
        """Poll an async job until it reaches a terminal state.

        ``check`` returns the job document; its ``status`` field decides what
        happens next.  Each individual status request goes through ``invoke``
        so a transient 5xx while polling does not abandon the job.

        Raises:
            GatewayJobFailed: the job reached an error state
            GatewayTimeout: ``max_polls`` status checks passed without a terminal state
        """
        wait = interval if interval is not None else self._config.poll_interval_seconds
        ceiling = max_polls if max_polls is not None else self._config.max_poll_attempts

        for attempt in range(1, ceiling + 1):
            job = self.invoke(check, name=f"{name}.poll")
            status = str(job.get("status", "")).lower()
            if status in completed_states:
                self._logger.debug("%s completed after %s polls", name, attempt)
                return job
            if status in error_states:
                raise GatewayJobFailed(f"{name} job failed: {job.get('error') or status}")
            if attempt < ceiling:
                self._sleep(wait)
        raise GatewayTimeout(f"{name} did not complete after {ceiling} polls")


def error_kind(exc: BaseException, default: str = "gateway_failed") -> str:
    kind: Any = getattr(exc, "kind", None)
    return kind if isinstance(kind, str) else default
