"""
ADS communication protocol over AMS/TCP
https://infosys.beckhoff.com/english.php?content=../content/1033/tcinfosys3/11291871243.html&id=6446904803799887467
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ._constants import (
    ADS_TCP_PORT,
    AMS_HEADER_LENGTH,
    AMS_TCP_HEADER_LENGTH,
    LOCAL_AMS_PORT,
    CommandId,
    ErrorCode,
    StateFlag,
)
from ._types import AmsNetId
from .errors import (
    AdsDeviceError,
    AdsStreamError,
    ProtocolError,
    RequestTimeout,
    TransportClosed,
)
from .logging import VerboseLogger, get_logger
from .messages import (
    REQUEST_CLASS,
    RESPONSE_CLASS,
    AmsHeader,
    MessageRequest,
    MessageResponse,
    make_ams_frame,
)
from .utils import get_local_netid_str

# Frames larger than this are considered corrupted.
MAX_FRAME_LENGTH = 16 * 1024 * 1024

MessageT = TypeVar("MessageT", bound=MessageResponse)
NotificationSink = Callable[[AmsHeader, bytes], Awaitable[None]]
CloseCallback = Callable[[AdsStreamError], None]

logger = get_logger(__name__)


class ResponseEvent:
    """
    Define an event object which wait asynchronously for an ADS response to be received.

    Instance attributes:
        __event: an asynchronous event object whose flag can be set or cleared
        __value: a Message object associated with the received response
        __error: the error which prevented a response from being received
    """

    def __init__(self):
        self.__event = asyncio.Event()
        self.__value: MessageResponse | None = None
        self.__error: AdsStreamError | None = None

    def set(self, response: MessageResponse) -> None:
        """
        Save the response message and trigger the event flag.

        :param response: the ADS message comprised in the response
        """
        self.__value = response
        self.__event.set()

    def fail(self, error: AdsStreamError) -> None:
        """
        Save the error which terminated the wait and trigger the event flag.

        :param error: the error to raise in the waiting coroutine
        """
        if not self.__event.is_set():
            self.__error = error
            self.__event.set()

    async def get(self, cls: type[MessageT]) -> MessageT:
        """
        Asynchronously wait for the response event to be set, then check the response
        message type is as expected.

        :param cls: type of ADS message associated with this response event

        :returns: the received ADS message

        :raises AdsStreamError: the error the wait was failed with
        """
        await self.__event.wait()
        if self.__error is not None:
            raise self.__error
        if not isinstance(self.__value, cls):
            raise ProtocolError(f"Expected {cls.__name__}, got {self.__value!r}")
        return self.__value


class AmsTransport:
    """
    Single TCP connection with an ADS server.
    Requests are framed with an AMS/TCP header and an AMS header, tagged with a
    unique invoke id and written by a single writer task. A single reader task
    matches the responses back to their request by invoke id and hands unsolicited
    device notifications over to the registered notification sink.

    Instance attributes:
        __reader: reader object used to read data asynchronously from the IO stream
        __writer: writer object used to write data asynchronously to the IO stream
        __outgoing: queue of complete frames waiting to be written to the stream
        __current_invoke_id: \
            id assigned to the last message request and used to map the responses
        __response_events: \
            dictionary which associates a pending response to a unique request id
        __notification_sink: coroutine function receiving device notifications
        __close_callbacks: functions called once when the connection terminates
        __error: the error which terminated the connection, if any
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        target_net_id: AmsNetId,
        target_port: int,
        local_net_id: AmsNetId,
        local_port: int = LOCAL_AMS_PORT,
        timeout: float = 10.0,
        log: VerboseLogger | None = None,
    ):
        self.__reader = reader
        self.__writer = writer
        self.__target_net_id = target_net_id
        self.__target_port = target_port
        self.__local_net_id = local_net_id
        self.__local_port = local_port
        self.timeout = timeout
        """Time in seconds to wait for the response to a request"""
        self.log = log or logger
        """Logger used for all transport activity"""

        self.__outgoing: asyncio.Queue[bytes] = asyncio.Queue()
        self.__current_invoke_id = 0
        self.__response_events: dict[int, ResponseEvent] = {}
        self.__notification_sink: NotificationSink | None = None
        self.__close_callbacks: list[CloseCallback] = []
        self.__error: AdsStreamError | None = None
        self.__send_task = asyncio.create_task(self._send_forever())
        self.__receive_task = asyncio.create_task(self._recv_forever())

    #################################################################
    ### CLIENT CONNECTION -------------------------------------------
    #################################################################

    @classmethod
    async def connected_to(
        cls,
        target_ip: str,
        target_net_id: AmsNetId,
        target_port: int,
        local_net_id: AmsNetId | None = None,
        ads_port: int = ADS_TCP_PORT,
        timeout: float = 10.0,
        log: VerboseLogger | None = None,
    ) -> AmsTransport:
        """
        Create an asynchronous ADS connection to a given ADS server.

        :param target_ip: IP of the ADS server
        :param target_net_id: netid of the ADS server
        :param target_port: AMS port of the ADS device (e.g. the PLC runtime)
        :param local_net_id: netid of this client; if None, it is derived from \
            the local IP address of the TCP connection by appending '.1.1'
        :param ads_port: unencrypted ADS port for TCP connections
        :param timeout: time in seconds allowed for connecting and for each request

        :returns: an asynchronous ADS connection

        :raises TransportClosed: if the TCP connection can't be established
        :raises RequestTimeout: if the TCP connection isn't established in time
        """
        log = log or logger
        try:
            async with asyncio.timeout(timeout):
                reader, writer = await asyncio.open_connection(target_ip, ads_port)
        except TimeoutError as err:
            raise RequestTimeout(
                f"No TCP connection to {target_ip}:{ads_port} after {timeout} seconds."
            ) from err
        except OSError as err:
            raise TransportClosed(
                f"Failed to connect to {target_ip}:{ads_port}: {err}"
            ) from err

        if local_net_id is None:
            local_ip = writer.get_extra_info("sockname")[0]
            local_net_id = AmsNetId.from_string(
                get_local_netid_str(local_ip if ":" not in local_ip else None)
            )
        log.info(
            f"Opened client communication with ADS server {target_ip} "
            + f"as {local_net_id} at {time.strftime('%X')}"
        )
        return cls(
            reader,
            writer,
            target_net_id,
            target_port,
            local_net_id,
            timeout=timeout,
            log=log,
        )

    @property
    def local_net_id(self) -> AmsNetId:
        """The AMS netid written as source in every outgoing AMS header."""
        return self.__local_net_id

    @property
    def is_closed(self) -> bool:
        """Whether the connection has terminated."""
        return self.__error is not None

    @property
    def pending_requests(self) -> int:
        """Number of requests still waiting for their response."""
        return len(self.__response_events)

    def register_notification_sink(self, sink: NotificationSink | None) -> None:
        """
        Route the ADS device notifications received on this connection.

        :param sink: coroutine function awaited by the reader task for each \
            notification packet; None discards notifications
        """
        self.__notification_sink = sink

    def add_close_callback(self, callback: CloseCallback) -> None:
        """
        Register a function called once with the terminating error when the \
            connection ends, whether it was closed or dropped.

        :param callback: function taking the terminating error
        """
        self.__close_callbacks.append(callback)

    async def close(self) -> None:
        """
        Close the established ADS connection.
        Pending requests fail with TransportClosed.
        """
        self._shutdown(TransportClosed("Connection closed by the client."))
        await asyncio.gather(
            self.__send_task, self.__receive_task, return_exceptions=True
        )
        try:
            await self.__writer.wait_closed()
        except OSError as err:
            self.log.debug(f"Error while closing the TCP connection: {err}")
        self.log.info(
            f"Closed client communication with ADS server at {time.strftime('%X')}"
        )

    def _shutdown(self, error: AdsStreamError) -> None:
        """
        Terminate the connection once: fail every pending request with the given
        error, close the stream and notify the close callbacks.

        :param error: the error which terminates the connection
        """
        if self.__error is not None:
            return
        self.__error = error
        pending = list(self.__response_events.values())
        self.__response_events.clear()
        for response_ev in pending:
            response_ev.fail(error)
        current = asyncio.current_task()
        for task in (self.__send_task, self.__receive_task):
            if task is not current:
                task.cancel()
        if not self.__writer.is_closing():
            self.__writer.close()
        if isinstance(error, TransportClosed):
            self.log.info(f"ADS connection terminated: {error}")
        else:
            self.log.error(f"ADS connection terminated: {error}")
        for callback in self.__close_callbacks:
            callback(error)

    #################################################################
    ### ADS COMMUNICATION -------------------------------------------
    #################################################################

    def _next_invoke_id(self) -> int:
        """
        Get the next free invoke id; ids wrap around the 32-bit range and skip 0.
        """
        while True:
            self.__current_invoke_id = (self.__current_invoke_id + 1) & 0xFFFFFFFF
            if self.__current_invoke_id and (
                self.__current_invoke_id not in self.__response_events
            ):
                return self.__current_invoke_id

    async def request(self, message: MessageRequest) -> MessageResponse:
        """
        Send an ADS request to the server and wait for the matching response.

        :param message: the ADS message request

        :returns: the ADS message response

        :raises TransportClosed: if the connection is or gets closed
        :raises RequestTimeout: if no response arrives within the request timeout
        :raises ProtocolError: if the response can't be parsed
        :raises AdsDeviceError: if the server reports an ADS error
        """
        if self.__error is not None:
            raise TransportClosed(
                f"ADS connection is closed: {self.__error}"
            ) from self.__error

        command = REQUEST_CLASS[type(message)]
        invoke_id = self._next_invoke_id()
        payload = message.to_bytes()
        ams_header = AmsHeader(
            target_net_id=self.__target_net_id.to_bytes(),
            target_port=self.__target_port,
            source_net_id=self.__local_net_id.to_bytes(),
            source_port=self.__local_port,
            command_id=command,
            state_flags=StateFlag.request(),
            length=len(payload),
            error_code=ErrorCode.ERR_NOERROR,
            invoke_id=invoke_id,
        )
        response_ev = ResponseEvent()
        self.__response_events[invoke_id] = response_ev
        self.log.verbose(f"Sending {command.name} invoke_id={invoke_id}: {message!r}")
        try:
            self.__outgoing.put_nowait(make_ams_frame(ams_header, payload))
            try:
                async with asyncio.timeout(self.timeout):
                    response = await response_ev.get(RESPONSE_CLASS[command])
            except TimeoutError as err:
                if isinstance(err, AdsStreamError):
                    raise
                raise RequestTimeout(
                    f"No response to {command.name} (invoke_id={invoke_id}) "
                    + f"after {self.timeout} seconds."
                ) from err
        finally:
            self.__response_events.pop(invoke_id, None)

        if int(response.result) != ErrorCode.ERR_NOERROR:
            raise AdsDeviceError(int(response.result), command.name)
        return response

    async def _send_forever(self) -> None:
        """
        Write the queued frames onto the stream, one at a time.
        """
        try:
            while True:
                frame = await self.__outgoing.get()
                self.__writer.write(frame)
                await self.__writer.drain()
        except ConnectionError as err:
            self._shutdown(TransportClosed(f"Failed to send to the ADS server: {err}"))

    async def _recv_ams_message(
        self,
    ) -> tuple[AmsHeader, bytes]:
        """
        Receive an ADS message from the ADS server.
        The message format includes an AMS/TCP Header, an AMS Header and ADS Data:
        https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115883019.html#115972107&id=

        :returns: the AMS Header and ADS data as a tuple

        :raises ProtocolError: if the frame is malformed
        :raises asyncio.IncompleteReadError: if the stream ends within a frame
        """
        msg_bytes = await self.__reader.readexactly(AMS_TCP_HEADER_LENGTH)
        if msg_bytes[:2] != b"\x00\x00":
            raise ProtocolError(f"Received an invalid TCP header: {msg_bytes.hex()}")
        length = int.from_bytes(msg_bytes[2:], byteorder="little", signed=False)
        if not AMS_HEADER_LENGTH <= length <= MAX_FRAME_LENGTH:
            raise ProtocolError(f"Received an invalid AMS/TCP frame length: {length}")
        packet = await self.__reader.readexactly(length)
        header = AmsHeader.from_bytes(packet[:AMS_HEADER_LENGTH])
        body = packet[AMS_HEADER_LENGTH:]
        if int(header.length) != len(body):
            raise ProtocolError(
                f"AMS header announces {header.length} data bytes, got {len(body)}."
            )
        return header, body

    async def _recv_forever(self) -> None:
        """
        Receive ADS messages asynchronously until the client connection has ended.
        Device notifications are handed over to the notification sink, other
        messages are matched to their pending request by invoke id.
        """
        try:
            while True:
                header, body = await self._recv_ams_message()
                self.log.verbose(
                    f"Received cmd={header.command_id} invoke_id={header.invoke_id} "
                    + f"len={len(body)}"
                )
                if header.command_id == CommandId.ADSSRVID_DEVICENOTE:
                    if self.__notification_sink is None:
                        self.log.debug("Discarded notification: no sink registered.")
                        continue
                    await self.__notification_sink(header, body)
                else:
                    self._dispatch_response(header, body)

        except (asyncio.IncompleteReadError, ConnectionError) as err:
            self._shutdown(
                TransportClosed(f"Remote connection to the device has ended: {err!r}")
            )
        except ProtocolError as err:
            self._shutdown(err)

    def _dispatch_response(self, header: AmsHeader, body: bytes) -> None:
        """
        Complete the pending request matching a received response.

        :params header: the response message header
        :params body: the response message data
        """
        invoke_id = int(header.invoke_id)
        if not header.is_response:
            self.log.warning(
                f"Ignored unexpected request cmd={header.command_id} from the server."
            )
            return
        response_ev = self.__response_events.get(invoke_id)
        if response_ev is None:
            self.log.warning(f"Ignored response with unknown invoke_id={invoke_id}.")
            return

        if int(header.error_code) != ErrorCode.ERR_NOERROR:
            response_ev.fail(AdsDeviceError(int(header.error_code), "AMS header"))
            return
        try:
            cls = RESPONSE_CLASS[CommandId(int(header.command_id))]
            response_ev.set(cls.from_bytes(body))
        except (KeyError, ValueError) as err:
            response_ev.fail(
                ProtocolError(
                    f"ADS command with id {header.command_id} is not implemented."
                )
            )
            self.log.debug(f"Unhandled response: {err!r}")
        except ProtocolError as err:
            response_ev.fail(err)
