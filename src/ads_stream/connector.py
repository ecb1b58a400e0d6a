from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

from ._constants import ADS_TCP_PORT, AdsState
from ._types import AmsNetId
from .config import INPUT_NAME, AdsInputConfig, ReadType
from .delivery import SOFT_TIMEOUT, next_notification, next_poll
from .errors import AdsStreamError, NotConnected, TransportClosed
from .logging import connector_logger
from .messages import (
    AdsReadDeviceInfoRequest,
    AdsReadDeviceInfoResponse,
    AdsReadStateRequest,
    AdsReadStateResponse,
)
from .notifications import DeliveryChannel, NotificationDemultiplexer
from .pipeline import (
    AckFunc,
    BatchInput,
    StreamMessage,
    noop_ack,
    register_batch_input,
)
from .polling import PollScheduler
from .subscriptions import SubscriptionRegistry
from .symbols import SymbolBinding, SymbolResolver
from .transport import AmsTransport


class SessionState(str, Enum):
    """Lifecycle states of an ADS streaming input."""

    NEW = "New"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    CLOSING = "Closing"
    CLOSED = "Closed"


@dataclass
class Session:
    """
    Define the resources of one connection with the PLC.
    A session is owned by its input and is never reused once closed.
    """

    transport: AmsTransport
    resolver: SymbolResolver
    registry: SubscriptionRegistry
    channel: DeliveryChannel
    bindings: list[SymbolBinding] = field(default_factory=list)
    poller: PollScheduler | None = None

    @property
    def local_net_id(self) -> AmsNetId:
        return self.transport.local_net_id


class AdsInput(BatchInput):
    """
    Streaming input reading symbol values from a Beckhoff PLC over ADS.

    In notification mode, the PLC pushes every value change of the subscribed
    symbols and each batch holds a single update. In interval mode, each batch holds
    the current value of every symbol, read at a fixed cadence.
    Connect and close are serialised and idempotent; a batch can be read
    concurrently with a close, which makes the read return promptly.
    """

    def __init__(
        self,
        config: AdsInputConfig,
        ads_port: int = ADS_TCP_PORT,
        soft_timeout: float = SOFT_TIMEOUT,
    ):
        self.config = config
        self.log = connector_logger(config.label, config.log_level)
        """Logger dedicated to this input, at the configured log level"""
        self._ads_port = ads_port
        self._soft_timeout = soft_timeout
        self._lock = asyncio.Lock()
        self._state = SessionState.NEW
        self._session: Session | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        """The current connection resources, if connected."""
        return self._session

    @property
    def bindings(self) -> list[SymbolBinding]:
        """The symbol bindings of the current connection, in configuration order."""
        return list(self._session.bindings) if self._session else []

    #################################################################
    ### LIFECYCLE ---------------------------------------------------
    #################################################################

    async def connect(self) -> None:
        """
        Connect to the PLC, resolve every symbol and, in notification mode,
        subscribe to their changes. Nothing is left behind if any step fails.
        Connecting an input which is already connected has no effect.

        :raises TransportClosed: if the PLC can't be reached
        :raises RequestTimeout: if the PLC doesn't answer in time
        :raises UnknownSymbol: if a configured symbol doesn't exist
        :raises NotificationRegistrationFailed: if a subscription is refused
        """
        async with self._lock:
            if self._state is SessionState.CONNECTED:
                return
            if self._session is not None:
                # Leftovers of a session whose connection was dropped.
                await self._teardown(self._session)
                self._session = None

            self._state = SessionState.CONNECTING
            self.log.debug(
                f"Connecting to {self.config.target_ip} ({self.config.target_ams}), "
                + f"port {self.config.port}."
            )
            try:
                session = await self._open_session()
            except BaseException:
                self._state = SessionState.CLOSED
                raise
            self._session = session
            self._state = SessionState.CONNECTED
            self.log.info(
                f"Reading {len(session.bindings)} symbols by "
                + f"{self.config.read_type.value} as {session.local_net_id}."
            )

    async def _open_session(self) -> Session:
        config = self.config
        transport = await AmsTransport.connected_to(
            target_ip=config.target_ip,
            target_net_id=config.target_net_id,
            target_port=config.port,
            local_net_id=config.host_net_id,
            ads_port=self._ads_port,
            timeout=config.timeout,
            log=self.log,
        )
        registry = SubscriptionRegistry(transport, self.log)
        session = Session(
            transport=transport,
            resolver=SymbolResolver(transport, self.log),
            registry=registry,
            channel=DeliveryChannel(len(config.symbols)),
        )
        try:
            await self._check_device(transport)
            session.bindings = await session.resolver.resolve_all(config.symbols)

            if config.read_type is ReadType.notification:
                transport.register_notification_sink(
                    NotificationDemultiplexer(registry, session.channel, self.log)
                )
                for binding in session.bindings:
                    await registry.register(
                        binding,
                        cycle_time_ms=config.cycle_time,
                        max_delay_ms=config.max_delay,
                    )
            else:
                session.poller = PollScheduler(
                    transport, session.bindings, config.interval_time, self.log
                )

            transport.add_close_callback(partial(self._on_transport_closed, session))
            if transport.is_closed:
                raise TransportClosed("Connection with the PLC lost while connecting.")
        except BaseException:
            await self._teardown(session)
            raise
        return session

    async def _check_device(self, transport: AmsTransport) -> None:
        """
        Log the identity and the state of the ADS device.
        """
        info = await transport.request(AdsReadDeviceInfoRequest())
        assert isinstance(info, AdsReadDeviceInfoResponse)
        self.log.info(
            f'Connected to "{info.name}" version {info.major_version}.'
            + f"{info.minor_version} (build {info.version_build})"
        )
        state = await transport.request(AdsReadStateRequest())
        assert isinstance(state, AdsReadStateResponse)
        try:
            ads_state = AdsState(int(state.ads_state)).name
        except ValueError:
            ads_state = f"unknown state {int(state.ads_state)}"
        if int(state.ads_state) != AdsState.ADSSTATE_RUN:
            self.log.warning(f"ADS device is not running: {ads_state}.")
        else:
            self.log.debug(f"ADS device state is {ads_state}.")

    def _on_transport_closed(self, session: Session, error: AdsStreamError) -> None:
        """
        Terminate the session when its connection ends without being closed.
        The PLC drops the notifications of a lost connection by itself.
        """
        if session is not self._session or self._state is not SessionState.CONNECTED:
            return
        self._state = SessionState.CLOSED
        if session.poller is not None:
            session.poller.stop(error)
        session.registry.forget_all()
        session.channel.close(error)
        self.log.warning(f"Session terminated: {error}")

    async def close(self) -> None:
        """
        Delete every notification subscription from the PLC, then close the
        delivery channel and the connection. Closing twice has no effect.
        """
        async with self._lock:
            session = self._session
            if session is None:
                self._state = SessionState.CLOSED
                return
            self._state = SessionState.CLOSING
            try:
                await self._teardown(session)
            finally:
                self._session = None
                self._state = SessionState.CLOSED

    async def _teardown(self, session: Session) -> None:
        """
        Release the resources of a session: notification handles first, then
        the delivery channel, then the connection.
        """
        # Blocked notifications are discarded so that the reader can get the
        # responses to the deletion requests.
        session.channel.drain()
        if session.poller is not None:
            session.poller.stop()
        try:
            if not session.transport.is_closed:
                await session.registry.release_all()
        finally:
            session.registry.forget_all()
            session.channel.close()
            await session.transport.close()

    #################################################################
    ### DELIVERY ----------------------------------------------------
    #################################################################

    async def read_batch(
        self, cancel: asyncio.Event | None = None
    ) -> tuple[list[StreamMessage], AckFunc]:
        """
        Wait for the next batch of symbol values.

        :param cancel: event set by the host to abandon the wait

        :returns: the batch of messages and its acknowledgement function

        :raises NotConnected: if the input isn't connected
        :raises Cancelled: if the wait is cancelled or the input is closed
        :raises IdleTimeout: if no notification arrived within the soft timeout
        :raises ReadFailed: if no symbol could be polled
        :raises TransportClosed: if the connection with the PLC is lost
        """
        session = self._session
        if self._state is not SessionState.CONNECTED or session is None:
            raise NotConnected(
                f"ADS input for {self.config.target_ip} is {self._state.value}."
            )
        if session.poller is not None:
            batch = await next_poll(session.poller, cancel, self.log)
        else:
            batch = await next_notification(
                session.channel, cancel, self._soft_timeout, self.log
            )
        return batch, noop_ack


@register_batch_input(
    INPUT_NAME,
    summary="Creates an input that reads data from Beckhoff PLCs using ADS.",
    description=(
        "Reads symbol values directly from a Beckhoff PLC using the ADS protocol, "
        + "either as change notifications pushed by the PLC or by polling every "
        + "symbol at a fixed interval. Each value is delivered as a JSON message "
        + "{Variable, Value, TimeStamp} with the sanitised symbol name as "
        + "'symbol_name' metadata."
    ),
)
def build_ads_input(conf: Mapping[str, Any]) -> AdsInput:
    """
    Build an ADS streaming input from a parsed configuration mapping.

    :param conf: mapping using the pipeline configuration keys, e.g. 'targetIP'

    :returns: the input, not connected yet

    :raises ConfigInvalid: if the configuration is rejected
    """
    return AdsInput(AdsInputConfig.parse(conf))
