from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence

from .errors import (
    AdsDeviceError,
    AdsStreamError,
    Cancelled,
    DecodeError,
    ReadFailed,
    RequestTimeout,
    TransportClosed,
)
from .logging import VerboseLogger, get_logger
from .messages import AdsReadRequest, AdsReadResponse
from .notifications import Update
from .symbols import SymbolBinding
from .transport import AmsTransport

logger = get_logger(__name__)


class PollScheduler:
    """
    Read the value of every bound symbol at a fixed cadence.
    Each poll reads the symbols one after the other, in configuration order, then
    waits for the poll interval before handing the values back.
    """

    def __init__(
        self,
        transport: AmsTransport,
        bindings: Sequence[SymbolBinding],
        interval_ms: int,
        log: VerboseLogger | None = None,
    ):
        self._transport = transport
        self._bindings = list(bindings)
        self.interval = interval_ms / 1000
        """Time in seconds waited after each poll"""
        self.log = log or logger
        self._stopped = asyncio.Event()
        self._stop_error: AdsStreamError | None = None

    async def read(self, binding: SymbolBinding) -> Update:
        """
        Read the current value of a symbol.

        :param binding: the symbol binding to read

        :returns: the symbol update, timestamped with the host wall clock

        :raises AdsDeviceError: if the PLC refuses the read
        :raises DecodeError: if the value can't be decoded
        """
        response = await self._transport.request(
            AdsReadRequest.read_symbol_value(
                index_group=binding.index_group,
                index_offset=binding.index_offset,
                size=binding.size,
            )
        )
        assert isinstance(response, AdsReadResponse)
        value = binding.decode(response.data[: int(response.length)])
        return Update(name=binding.name, value=value, timestamp=time.time_ns())

    async def poll(self, cancel: asyncio.Event | None = None) -> list[Update]:
        """
        Read every symbol once, then sleep for the poll interval.
        A symbol which can't be read is left out of the batch; the interval is
        waited for even when every read failed.
        Cancelling, or stopping the scheduler, interrupts both the reads and the
        sleep; the values already read are then discarded.

        :param cancel: event set by the host to abandon the poll

        :returns: the updates of the symbols read successfully, in configuration order

        :raises ReadFailed: if no symbol could be read
        :raises Cancelled: if the poll is cancelled or the scheduler is stopped
        :raises TransportClosed: if the connection with the PLC is lost
        """
        self._check_stopped(cancel, "Poll scheduler is stopped.")
        reading = asyncio.create_task(self._read_all())
        try:
            await self._wait(cancel, None, reading)
        finally:
            if not reading.done():
                reading.cancel()
        if self._is_cancelled(cancel):
            # The reads may have failed because close() shut the connection.
            await asyncio.gather(reading, return_exceptions=True)
            self._check_stopped(cancel, "Poll was cancelled while reading.")
        updates = reading.result()

        await self._wait(cancel, self.interval)
        self._check_stopped(cancel, "Poll interval was cancelled.")
        if not updates:
            raise ReadFailed(f"All {len(self._bindings)} symbol reads failed.")
        return updates

    def stop(self, error: AdsStreamError | None = None) -> None:
        """
        Abandon the current and future polls, e.g. when the input closes.

        :param error: the connection error to raise from the polls instead of \
            Cancelled, when the connection with the PLC was lost
        """
        if not self._stopped.is_set():
            self._stop_error = error
        self._stopped.set()

    async def _read_all(self) -> list[Update]:
        updates: list[Update] = []
        for binding in self._bindings:
            try:
                updates.append(await self.read(binding))
            except (AdsDeviceError, RequestTimeout, DecodeError) as err:
                self.log.warning(f"Read of {binding.name} failed -> {err}")
        self.log.verbose(f"Polled {len(updates)}/{len(self._bindings)} symbols.")
        return updates

    def _is_cancelled(self, cancel: asyncio.Event | None) -> bool:
        return self._stopped.is_set() or (cancel is not None and cancel.is_set())

    def _check_stopped(self, cancel: asyncio.Event | None, message: str) -> None:
        if self._stop_error is not None:
            raise TransportClosed(str(self._stop_error)) from self._stop_error
        if self._is_cancelled(cancel):
            raise Cancelled(message)

    async def _wait(
        self,
        cancel: asyncio.Event | None,
        timeout: float | None,
        *work: asyncio.Task,
    ) -> None:
        """
        Wait until the timeout expires, any of the work completes, the host
        cancels or the scheduler is stopped, whichever comes first.
        """
        waiters = [asyncio.create_task(self._stopped.wait())]
        if cancel is not None:
            waiters.append(asyncio.create_task(cancel.wait()))
        try:
            await asyncio.wait(
                [*waiters, *work], timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
