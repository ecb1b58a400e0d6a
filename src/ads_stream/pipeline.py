"""
Host-facing surface of the streaming inputs: messages, batch inputs, the input
registry and a minimal host loop driving an input.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    AdsStreamError,
    Cancelled,
    IdleTimeout,
    NotConnected,
    TransportClosed,
)
from .logging import VerboseLogger, get_logger

logger = get_logger(__name__)

AckFunc = Callable[[Exception | None], Awaitable[None]]
BatchHandler = Callable[[list["StreamMessage"]], Awaitable[None]]


@dataclass(frozen=True)
class StreamMessage:
    """
    Define a message handed over to the host pipeline.
    """

    body: bytes
    """Serialised message content"""
    metadata: dict[str, str] = field(default_factory=dict)
    """Key/value annotations used by the host for routing"""

    def to_json(self) -> str:
        """
        Render the message as a single JSON line, with the body embedded as JSON.
        """
        return json.dumps(
            {"body": json.loads(self.body), "metadata": self.metadata},
            separators=(",", ":"),
        )


async def noop_ack(err: Exception | None = None) -> None:
    """
    Acknowledge a batch. Nothing can be replayed from the PLC, so negative
    acknowledgements are left to the host, which simply reads the next batch.
    """
    return None


class BatchInput(ABC):
    """
    Contract between a streaming input and the host runtime driving it.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection with the data source."""

    @abstractmethod
    async def read_batch(
        self, cancel: asyncio.Event | None = None
    ) -> tuple[list[StreamMessage], AckFunc]:
        """Wait for the next batch of messages and the function acknowledging it."""

    @abstractmethod
    async def close(self) -> None:
        """Release every resource held by the input."""


@dataclass(frozen=True)
class InputSpec:
    """
    Define a streaming input which can be built by name from a config mapping.
    """

    name: str
    summary: str
    description: str
    constructor: Callable[[Mapping[str, Any]], BatchInput]


INPUTS: dict[str, InputSpec] = {}
"""Registered streaming inputs, by name"""


def register_batch_input(name: str, summary: str, description: str):
    """
    Register the decorated constructor as the streaming input with the given name.

    :param name: the name used in pipeline configs to refer to the input
    :param summary: one-line summary of the input
    :param description: detailed description of the input

    :raises ValueError: if another input is already registered with this name
    """

    def decorator(
        constructor: Callable[[Mapping[str, Any]], BatchInput],
    ) -> Callable[[Mapping[str, Any]], BatchInput]:
        if name in INPUTS:
            raise ValueError(f"An input named '{name}' is already registered.")
        INPUTS[name] = InputSpec(name, summary, description, constructor)
        return constructor

    return decorator


def build_input(name: str, conf: Mapping[str, Any]) -> BatchInput:
    """
    Build a registered streaming input from its parsed configuration.

    :param name: the registered name of the input
    :param conf: the input configuration mapping

    :returns: the streaming input, not connected yet

    :raises KeyError: if no input is registered with this name
    """
    try:
        spec = INPUTS[name]
    except KeyError as err:
        raise KeyError(
            f"Unknown input '{name}', available inputs are {sorted(INPUTS)}."
        ) from err
    return spec.constructor(conf)


async def _wait_or_stop(stop: asyncio.Event, delay: float) -> bool:
    """Sleep for a delay; return True if the stop event was set meanwhile."""
    try:
        async with asyncio.timeout(delay):
            await stop.wait()
    except TimeoutError:
        return False
    return True


async def run_input(
    input: BatchInput,
    handler: BatchHandler,
    stop: asyncio.Event,
    retry_delay: float = 0.5,
    max_retry_delay: float = 30.0,
    log: VerboseLogger | None = None,
) -> None:
    """
    Drive a streaming input until the stop event is set.
    Connection failures are retried with an exponential back-off and the input is
    reconnected whenever its connection is lost. The input is always closed on exit.

    :param input: the streaming input to drive
    :param handler: coroutine function processing each batch of messages
    :param stop: event ending the loop once set
    :param retry_delay: initial delay in seconds between connection attempts
    :param max_retry_delay: upper bound of the delay between connection attempts

    :raises AdsStreamError: if the input fails with a non-retryable error
    """
    log = log or logger
    delay = retry_delay
    try:
        while not stop.is_set():
            try:
                await input.connect()
            except AdsStreamError as err:
                if not err.retryable:
                    raise
                log.warning(f"Connection failed -> {err}; retrying in {delay:.1f}s.")
                if await _wait_or_stop(stop, delay):
                    break
                delay = min(delay * 2, max_retry_delay)
                continue
            delay = retry_delay

            while not stop.is_set():
                try:
                    batch, ack = await input.read_batch(stop)
                except IdleTimeout:
                    continue
                except Cancelled:
                    return
                except (TransportClosed, NotConnected) as err:
                    log.warning(f"Connection lost -> {err}; reconnecting.")
                    break
                except AdsStreamError as err:
                    if not err.retryable:
                        raise
                    log.warning(f"Batch read failed -> {err}")
                    continue
                await handler(batch)
                await ack(None)
    finally:
        await input.close()
