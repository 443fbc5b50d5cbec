"""Broker connection with bounded, backed-off startup retries."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Final

import structlog
from kombu.exceptions import ConnectionError as AmqpConnectionError
from kombu.exceptions import OperationalError

from lane_router.broker.session import BrokerSession, open_kombu_connection
from lane_router.config.schema import mask_url
from lane_router.errors import BrokerUnavailableError

_MAX_BACKOFF_MS: Final[int] = 60_000
BROKER_CONNECTION_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OperationalError,
    AmqpConnectionError,
    OSError,
    TimeoutError,
)

Connector = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


def backoff_delays_ms(attempts: int, base_delay_ms: int) -> list[int]:
    """Delays slept between ``attempts`` connection tries, doubling up to one minute."""

    return [min(base_delay_ms * (2**index), _MAX_BACKOFF_MS) for index in range(attempts - 1)]


async def connect_session(url: str) -> BrokerSession:
    connection = await asyncio.to_thread(open_kombu_connection, url)
    return BrokerSession(connection)


async def connect_with_retry(
    url: str,
    *,
    attempts: int,
    reconnect_delay_ms: int,
    connector: Connector | None = None,
    sleep: Sleeper = asyncio.sleep,
    logger: Any | None = None,
) -> Any:
    """Return a connected session or raise :class:`BrokerUnavailableError`."""

    if attempts <= 0:
        raise ValueError("attempts must be > 0")
    log = logger if logger is not None else structlog.get_logger(__name__)
    connect = connector if connector is not None else connect_session
    masked = mask_url(url)
    delays = backoff_delays_ms(attempts, reconnect_delay_ms)

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            session = await connect(url)
        except BROKER_CONNECTION_ERRORS as exc:
            last_error = exc
            log.warning(
                "broker_connect_failed",
                url=masked,
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
            )
            if attempt < attempts:
                await sleep(delays[attempt - 1] / 1000)
            continue
        log.info("broker_connected", url=masked, attempt=attempt)
        return session

    raise BrokerUnavailableError(
        f"could not connect to broker at {masked} after {attempts} attempts: {last_error}"
    ) from last_error


__all__ = [
    "BROKER_CONNECTION_ERRORS",
    "Connector",
    "backoff_delays_ms",
    "connect_session",
    "connect_with_retry",
]
