from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass

from .errors import AdsStreamError, Cancelled, DecodeError, IdleTimeout
from .logging import VerboseLogger, get_logger
from .messages import AmsHeader, iter_notification_samples
from .subscriptions import SubscriptionRegistry
from .values import PlcValue, filetime_to_unix_ns

logger = get_logger(__name__)


@dataclass(frozen=True)
class Update:
    """
    Define a new value of a PLC symbol, ready to be delivered to the host.
    """

    name: str
    """Fully qualified name of the symbol"""
    value: PlcValue
    """Decoded value of the symbol"""
    timestamp: int | None
    """Time of the value in nanoseconds since the Unix epoch"""


class DeliveryChannel:
    """
    Bounded FIFO channel between the notification demultiplexer (producer) and
    the delivery adapter (consumer).

    The producer waits while the channel is full, which stops the connection reader
    and lets TCP push back on the PLC. Once the channel is draining, i.e. the input
    is being closed, offered updates are discarded instead.
    """

    def __init__(self, capacity: int):
        self._queue: asyncio.Queue[Update] = asyncio.Queue(maxsize=max(1, capacity))
        self._stash: deque[Update] = deque()
        self._draining = asyncio.Event()
        self._closed = asyncio.Event()
        self._reason: AdsStreamError | None = None

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return len(self._stash) + self._queue.qsize()

    async def put(self, update: Update) -> bool:
        """
        Offer an update to the consumer, waiting while the channel is full.

        :param update: the update to deliver

        :returns: True if the update was queued, False if it was discarded \
            because the channel is draining
        """
        if self._draining.is_set():
            return False
        if not self._queue.full():
            self._queue.put_nowait(update)
            return True

        put_task = asyncio.create_task(self._queue.put(update))
        drain_task = asyncio.create_task(self._draining.wait())
        try:
            await asyncio.wait(
                {put_task, drain_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            drain_task.cancel()
            if not put_task.done():
                put_task.cancel()
        return put_task.done() and not put_task.cancelled()

    async def receive(
        self, cancel: asyncio.Event | None = None, timeout: float | None = None
    ) -> Update:
        """
        Wait for the next update; the first of an update, the cancellation event,
        the channel closing or the timeout ends the wait.

        :param cancel: event set by the host to abandon the wait
        :param timeout: time in seconds after which the wait is abandoned

        :returns: the oldest update in the channel

        :raises Cancelled: if the cancellation event is set or the channel is closed
        :raises IdleTimeout: if no update arrived within the timeout
        :raises AdsStreamError: the error the channel was closed with
        """
        if self._stash:
            return self._stash.popleft()
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._closed.is_set():
            raise self._closed_error()
        if cancel is not None and cancel.is_set():
            raise Cancelled("Wait for an update was cancelled.")

        get_task = asyncio.create_task(self._queue.get())
        closed_task = asyncio.create_task(self._closed.wait())
        cancel_task = (
            asyncio.create_task(cancel.wait()) if cancel is not None else None
        )
        waiters = {get_task, closed_task} | ({cancel_task} if cancel_task else set())
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            # The caller was cancelled: keep an update which was already dequeued.
            if get_task.done() and not get_task.cancelled():
                self._stash.appendleft(get_task.result())
            raise
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if get_task in done:
            return get_task.result()
        if closed_task in done:
            raise self._closed_error()
        if cancel_task is not None and cancel_task in done:
            raise Cancelled("Wait for an update was cancelled.")
        raise IdleTimeout(f"No update received within {timeout} seconds.")

    def drain(self) -> None:
        """
        Stop accepting updates: blocked and future offers are discarded.
        """
        self._draining.set()

    def close(self, reason: AdsStreamError | None = None) -> None:
        """
        Close the channel and wake up the consumer.
        Updates already queued can still be received.

        :param reason: the error raised to the consumer once the channel is empty; \
            Cancelled if None
        """
        if self._closed.is_set():
            return
        self._reason = reason
        self._draining.set()
        self._closed.set()

    def _closed_error(self) -> AdsStreamError:
        if self._reason is not None:
            return self._reason
        return Cancelled("Delivery channel is closed.")


class NotificationDemultiplexer:
    """
    Turn the device notification packets received from the PLC into updates.
    Each sample is matched to its symbol binding by notification handle, decoded
    according to the symbol's primitive type and offered to the delivery channel,
    in the order of the samples on the wire.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        channel: DeliveryChannel,
        log: VerboseLogger | None = None,
    ):
        self._registry = registry
        self._channel = channel
        self.log = log or logger

    async def __call__(self, header: AmsHeader, body: bytes) -> None:
        """
        Handle one device notification packet.

        :params header: the notification message header
        :params body: the notification message data

        :raises ProtocolError: if the notification data is malformed
        """
        for sample in iter_notification_samples(body):
            binding = self._registry.lookup(sample.handle)
            if binding is None:
                self.log.debug(
                    f"Discarded notification sample for unknown handle "
                    + f"{sample.handle:#x}."
                )
                continue
            try:
                value = binding.decode(sample.data)
            except DecodeError as err:
                self.log.warning(f"Dropped notification for {binding.name}: {err}")
                continue

            update = Update(
                name=binding.name,
                value=value,
                timestamp=filetime_to_unix_ns(sample.timestamp),
            )
            self.log.verbose(f"Notification {update}")
            if not await self._channel.put(update):
                self.log.debug(f"Discarded notification for {binding.name}: closing.")
