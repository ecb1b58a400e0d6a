from __future__ import annotations

import asyncio
import json
import re

from .logging import VerboseLogger, get_logger
from .notifications import DeliveryChannel, Update
from .pipeline import StreamMessage
from .polling import PollScheduler

logger = get_logger(__name__)

SOFT_TIMEOUT = 1.0
"""Time in seconds a notification wait lasts before giving the host control back"""

_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9_-]")


def sanitise_name(name: str) -> str:
    """
    Make a symbol name safe to use as metadata, e.g. 'MAIN.flag' -> 'MAIN_flag'.

    :param name: the symbol name

    :returns: the name with every character outside [A-Za-z0-9_-] replaced by '_'
    """
    return _UNSAFE_CHARACTERS.sub("_", name)


def build_message(update: Update) -> StreamMessage:
    """
    Convert a symbol update into a host message.
    The body keeps the original symbol name, the metadata carries the sanitised one.

    :param update: the symbol update

    :returns: the host message
    """
    body = json.dumps(
        {"Variable": update.name, "Value": update.value, "TimeStamp": update.timestamp},
        separators=(",", ":"),
    )
    return StreamMessage(
        body=body.encode(), metadata={"symbol_name": sanitise_name(update.name)}
    )


async def next_notification(
    channel: DeliveryChannel,
    cancel: asyncio.Event | None = None,
    soft_timeout: float = SOFT_TIMEOUT,
    log: VerboseLogger | None = None,
) -> list[StreamMessage]:
    """
    Wait for the next notified update and wrap it into a one-message batch.

    :param channel: the delivery channel fed by the notification demultiplexer
    :param cancel: event set by the host to abandon the wait
    :param soft_timeout: time in seconds after which the wait is abandoned

    :returns: a batch holding a single message

    :raises Cancelled: if the wait is cancelled or the channel is closed
    :raises IdleTimeout: if no update arrived within the soft timeout
    """
    update = await channel.receive(cancel=cancel, timeout=soft_timeout)
    (log or logger).verbose(f"Delivering {update}")
    return [build_message(update)]


async def next_poll(
    scheduler: PollScheduler,
    cancel: asyncio.Event | None = None,
    log: VerboseLogger | None = None,
) -> list[StreamMessage]:
    """
    Poll every symbol and wrap the values into a batch, one message per symbol.

    :param scheduler: the poll scheduler of the session
    :param cancel: event set by the host to abandon the poll

    :returns: a batch of messages in configuration order

    :raises ReadFailed: if no symbol could be read
    :raises Cancelled: if the poll is cancelled or the input is closed
    :raises TransportClosed: if the connection with the PLC is lost
    """
    updates = await scheduler.poll(cancel)
    (log or logger).verbose(f"Delivering {len(updates)} polled values.")
    return [build_message(update) for update in updates]
