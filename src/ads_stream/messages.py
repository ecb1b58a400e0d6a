from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from functools import cache, cached_property

import numpy as np
from typing_extensions import Any, Self, dataclass_transform, get_type_hints

from ._constants import (
    AMS_HEADER_LENGTH,
    CommandId,
    ErrorCode,
    IndexGroup,
    StateFlag,
    TransmissionMode,
)
from ._types import BYTES16, NETID, UDINT, UINT, ULINT, USINT, AmsNetId
from .errors import ProtocolError
from .utils import bytes_to_string


def _get_field_values(
    cls, fields: Sequence[str], kwargs: dict[str, Any]
) -> Iterator[Any]:
    """
    :params cls: the Message object type to extract values from
    :params fields: the names of the various fields which characterize this Message object
    :param kwargs: map of available fields and their associated values which define this Message object

    :raises KeyError: exception arising when a required field was expected but not found in the Message data structure
    """
    for field in fields:
        # Try first from kwargs
        value = kwargs.get(field, None)
        if value is None:
            # If not get it from class defaults
            value = cls.__dict__.get(field, None)
        if value is None:
            # It was required but not passed
            raise KeyError(f"{field} is a required argument")
        yield value


@cache
def _message_dtype(cls: type) -> np.dtype:
    hints = get_type_hints(cls)
    hints.pop("data")
    return np.dtype(list(hints.items()))


@dataclass_transform(kw_only_default=True)
class Message:
    """
    Define a generic ADS message type which the various ADS message structures conform to.

    Instance attributes:
        _value: numpy NDArray based on the specific structure of the ADS message type

    :raises TypeError: exception arising when trying to instantiate a Message object with both buffer and kwargs.
    """

    data: bytes
    """Array of bytes representing the value of the data associated with the ADS message"""

    def __init__(self, buffer: bytes = b"", *, data: bytes = b"", **kwargs):
        if buffer and kwargs:
            raise TypeError(
                "Can't have a Message class instantiated with both buffer and kwargs."
            )
        elif buffer:
            if len(buffer) < self.dtype.itemsize:
                raise ProtocolError(
                    f"{type(self).__name__} needs {self.dtype.itemsize} bytes, "
                    + f"got {len(buffer)}."
                )
            self._value = np.frombuffer(buffer, self.dtype, count=1)
            self.data = bytes(buffer[self._value.nbytes :])
        elif not self.dtype.fields:
            self._value = np.zeros(1, dtype=self.dtype)
            self.data = data
        else:
            fields = self.dtype.fields
            values = tuple(_get_field_values(type(self), list(fields.keys()), kwargs))
            self._value = np.array([values], dtype=self.dtype)
            self.data = data

    def __getattr__(self, name: str) -> Any:
        """
        Overriding method used to access the value of the Message object attributes.
        """
        if name.startswith("_") or name not in (self.dtype.names or ()):
            raise AttributeError(name)
        return self._value[name][0]

    @cached_property
    def dtype(
        self,
    ) -> np.dtype:
        """
        Get the type of the Message object as a numpy data type.
        It includes all the fields specific to that Message, except for the 'data' field.
        Its value is computed once and then cached as a normal attribute for the life of the instance.

        :returns: the ADS message data type
        """
        return _message_dtype(type(self))

    @classmethod
    def from_bytes(cls, buffer: bytes) -> Self:
        """
        Create a Message object whose value is a numpy NDArray defined from the given array of bytes.

        :param buffer: the array of bytes characterising the type of Message

        :returns: an instance of the Message class

        :raises ProtocolError: if the buffer is shorter than the message structure
        """
        if not buffer and _message_dtype(cls).itemsize:
            raise ProtocolError(f"Empty buffer received for {cls.__name__}.")
        return cls(buffer)

    def to_bytes(self, include_data: bool = True) -> bytes:
        """
        Convert a Message object into an array of bytes.

        :returns: a byte array representing the ADS message and its associated data
        """
        return (
            (self._value.tobytes() + self.data)
            if include_data
            else self._value.tobytes()
        )

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{name}={self._value[name][0]!r}" for name in (self.dtype.names or ())
        )
        return f"{type(self).__name__}({fields})"


class MessageRequest(Message):
    """Message interface for an ADS request to the server."""

    ...


class MessageResponse(Message):
    """Message interface for an ADS response from the server."""

    ...


class AmsHeader(Message):
    """
    AMS Header structure included in all ADS communications.
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115847307.html&id=7738940192708835096
    """

    target_net_id: NETID
    """The AMS netid of the station for which the packet is intended"""
    target_port: UINT
    """The AMS port of the station for which the packet is intended"""
    source_net_id: NETID
    """The AMS netid of the station from which the packet is sent"""
    source_port: UINT
    """The AMS port of the station from which the packet is sent"""
    command_id: UINT
    """ADS command id"""
    state_flags: UINT
    """Defines the protocol (bit7: TCP/UDP), interface (bit3: ADS) and message type (bit1: request/response)"""
    length: UDINT
    """Length of the data in bytes attached to this header"""
    error_code: UDINT
    """ADS error number"""
    invoke_id: UDINT
    """Id used to map a received response to a sent request"""

    @property
    def source(self) -> AmsNetId:
        """The AMS netid of the sender as an AmsNetId object."""
        return AmsNetId.from_bytes(self._value["source_net_id"][0].tobytes())

    @property
    def target(self) -> AmsNetId:
        """The AMS netid of the receiver as an AmsNetId object."""
        return AmsNetId.from_bytes(self._value["target_net_id"][0].tobytes())

    @property
    def is_response(self) -> bool:
        return bool(int(self.state_flags) & StateFlag.AMSCMDSF_RESPONSE)


assert _message_dtype(AmsHeader).itemsize == AMS_HEADER_LENGTH


def make_ams_frame(header: AmsHeader, payload: bytes) -> bytes:
    """
    Wrap an AMS header and its ADS payload with the 6-byte AMS/TCP header.

    :param header: the AMS header of the packet
    :param payload: the ADS command data

    :returns: the complete frame to write onto the TCP stream
    """
    header_raw = header.to_bytes(include_data=False)
    total_length = len(header_raw) + len(payload)
    length_bytes = total_length.to_bytes(4, byteorder="little", signed=False)
    return b"\x00\x00" + length_bytes + header_raw + payload


# ===================================================================
# ===== INFO
# ===================================================================


class AdsReadDeviceInfoRequest(MessageRequest):
    """
    ADS Read device Info packet
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115875851.html
    """

    pass  # No additional data required


class AdsReadDeviceInfoResponse(MessageResponse):
    """
    ADS Read Device Info data structure received in response to an ADS Read Device Info request.
    """

    result: UDINT
    """ADS error number"""
    major_version: USINT
    """Major version number of the ADS device"""
    minor_version: USINT
    """Minor version number of the ADS device"""
    version_build: UINT
    """Build number"""
    device_name: BYTES16
    """Name of the ADS device"""

    @property
    def name(self) -> str:
        return bytes_to_string(self._value["device_name"][0].tobytes())


# ===================================================================
# ===== STATE
# ===================================================================


class AdsReadStateRequest(MessageRequest):
    """
    ADS Read State packet
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115878923.html&id=6874981934243835072
    """

    pass  # No additional data required


class AdsReadStateResponse(MessageResponse):
    """
    ADS Read State data structure received in response to an ADS Read State request.
    """

    result: UDINT
    """ADS error number"""
    ads_state: UINT
    """ADS status"""
    device_state: UINT
    """Device status"""


# ===================================================================
# ===== READ
# ===================================================================


class AdsReadRequest(MessageRequest):
    """
    ADS Read packet
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115876875.html&id=4960931295000833536
    """

    index_group: UDINT
    """Index group of the data"""
    index_offset: UDINT
    """Index offset of the data"""
    read_length: UDINT
    """Length of the data in bytes which is read"""

    @classmethod
    def read_symbol_value(
        cls, index_group: int, index_offset: int, size: int
    ) -> Self:
        """
        An ADS request to read the current value of a resolved PLC symbol.

        :param index_group: the index group of the symbol
        :param index_offset: the index offset of the symbol
        :param size: the size of the symbol value in bytes

        :returns: an AdsReadRequest message
        """
        return cls(
            index_group=index_group,
            index_offset=index_offset,
            read_length=size,
        )


class AdsReadResponse(MessageResponse):
    """
    ADS Read data structure received in response to an ADS Read request.
    """

    result: UDINT
    """ADS error number"""
    length: UDINT
    """Length of the data supplied back from the ADS device"""
    data: bytes
    """Data supplied back from the ADS device"""


# ===================================================================
# ===== READ/WRITE
# ===================================================================


class AdsReadWriteRequest(MessageRequest):
    """
    ADS ReadWrite packet
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115884043.html
    """

    index_group: UDINT
    """Index group of the data"""
    index_offset: UDINT
    """Index offset of the data"""
    read_length: UDINT
    """Length of the data in bytes which is read"""
    write_length: UDINT
    """Length of the data in bytes which is written"""
    data: bytes
    """Data written to the ADS device"""

    @classmethod
    def symbol_info_by_name(cls, name: str) -> Self:
        """
        An ADS request to get the extended symbol information of a named PLC symbol.

        :param name: the fully qualified name of the symbol, e.g. 'MAIN.counter'

        :returns: an AdsReadWriteRequest message
        """
        payload = name.encode("utf-8") + b"\x00"
        return cls(
            index_group=IndexGroup.SYM_INFOBYNAMEEX,
            index_offset=0x0,
            read_length=0xFFFF,
            write_length=len(payload),
            data=payload,
        )


class AdsReadWriteResponse(MessageResponse):
    """
    ADS ReadWrite data structure received in response to an ADS ReadWrite request.
    """

    result: UDINT
    """ADS error number"""
    length: UDINT
    """Length of the data supplied back from the ADS device"""
    data: bytes
    """Data supplied back from the ADS device"""


class AdsSymbolEntry(Message):
    """
    Extended symbol information returned for a SYM_INFOBYNAMEEX request.
    The fixed part is followed by the NUL-terminated name, type name and comment.
    https://infosys.beckhoff.com/english.php?content=../content/1033/tcadsdll2/117589131.html
    """

    entry_length: UDINT
    """Length of the complete symbol entry"""
    index_group: UDINT
    """Index group of the symbol"""
    index_offset: UDINT
    """Index offset of the symbol"""
    size: UDINT
    """Size of the symbol in bytes (0 = bit)"""
    data_type: UDINT
    """ADS data type id of the symbol"""
    flags: UDINT
    """Symbol flags"""
    name_length: UINT
    """Length of the symbol name (without the NUL terminator)"""
    type_length: UINT
    """Length of the type name (without the NUL terminator)"""
    comment_length: UINT
    """Length of the comment (without the NUL terminator)"""

    def _text_field(self, start: int, length: int) -> str:
        if start + length > len(self.data):
            raise ProtocolError("Truncated ADS symbol entry.")
        return bytes_to_string(self.data[start : start + length], strip=False)

    @property
    def name(self) -> str:
        return self._text_field(0, int(self.name_length))

    @property
    def type_name(self) -> str:
        return self._text_field(int(self.name_length) + 1, int(self.type_length))

    @property
    def comment(self) -> str:
        return self._text_field(
            int(self.name_length) + int(self.type_length) + 2,
            int(self.comment_length),
        )


# ===================================================================
# ===== NOTIFICATIONS
# ===================================================================


class AdsAddDeviceNotificationRequest(MessageRequest):
    """
    ADS Add Device Notification packet
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115880971.html
    """

    index_group: UDINT
    """Index group of the data"""
    index_offset: UDINT
    """Index offset of the data"""
    length: UDINT
    """Length of the data in bytes expected in each notification"""
    transmission_mode: UDINT
    """ADSTRANSMODE value which defines when notifications are sent"""
    max_delay: UDINT
    """Latest time (in 100ns units) after which the notification is sent"""
    cycle_time: UDINT
    """Period (in 100ns units) at which the ADS server checks for changes"""
    reserved: BYTES16
    """Must be set to zero"""

    reserved = bytes(16)

    @classmethod
    def on_change(
        cls,
        index_group: int,
        index_offset: int,
        size: int,
        max_delay_ms: int,
        cycle_time_ms: int,
    ) -> Self:
        """
        An ADS request to subscribe to value changes of a resolved PLC symbol.

        :param index_group: the index group of the symbol
        :param index_offset: the index offset of the symbol
        :param size: the size of the symbol value in bytes
        :param max_delay_ms: maximum time in milliseconds the PLC may buffer a change
        :param cycle_time_ms: period in milliseconds at which the PLC samples the value

        :returns: an AdsAddDeviceNotificationRequest message
        """
        return cls(
            index_group=index_group,
            index_offset=index_offset,
            length=size,
            transmission_mode=TransmissionMode.ADSTRANS_SERVERONCHA,
            max_delay=int(max_delay_ms * 1e4),
            cycle_time=int(cycle_time_ms * 1e4),
        )


class AdsAddDeviceNotificationResponse(MessageResponse):
    """
    ADS Add Device Notification data structure received in response to the request.
    """

    result: UDINT
    """ADS error number"""
    handle: UDINT
    """Notification handle assigned by the ADS server"""


class AdsDeleteDeviceNotificationRequest(MessageRequest):
    """
    ADS Delete Device Notification packet
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115881995.html
    """

    handle: UDINT
    """Notification handle to release"""


class AdsDeleteDeviceNotificationResponse(MessageResponse):
    """
    ADS Delete Device Notification data structure received in response to the request.
    """

    result: UDINT
    """ADS error number"""


class AdsNotificationStream(Message):
    """
    ADS Device Notification packet sent by the server without a request.
    The stream comprises a number of stamps, each followed by its samples.
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115883019.html
    """

    length: UDINT
    """Size of the stamps data in bytes"""
    stamps: UDINT
    """Number of stamp headers in the stream"""


class AdsStampHeader(Message):
    """Stamp header of a notification stream."""

    timestamp: ULINT
    """Windows FILETIME of the samples (100ns intervals since 01.01.1601)"""
    samples: UDINT
    """Number of samples following this stamp"""


class AdsNotificationSample(Message):
    """Single notification sample; its value bytes follow the fixed part."""

    handle: UDINT
    """Notification handle the sample belongs to"""
    size: UDINT
    """Size of the sample value in bytes"""


@dataclass(frozen=True)
class NotificationSample:
    """Decoded sample of a device notification frame."""

    handle: int
    """Notification handle the sample belongs to"""
    timestamp: int
    """PLC timestamp as a Windows FILETIME"""
    data: bytes
    """Raw value bytes"""


def iter_notification_samples(body: bytes) -> Iterator[NotificationSample]:
    """
    Walk through a device notification payload, stamp by stamp and sample by sample.

    :param body: the ADS data of a device notification packet

    :returns: an iterator over the samples in wire order

    :raises ProtocolError: if the payload is truncated or inconsistent
    """
    stream = AdsNotificationStream.from_bytes(body)
    if int(stream.length) > len(stream.data) + stream.dtype["stamps"].itemsize:
        raise ProtocolError(
            f"Notification stream announces {stream.length} bytes, "
            + f"got {len(stream.data) + stream.dtype['stamps'].itemsize}."
        )
    rest = stream.data
    for _ in range(int(stream.stamps)):
        stamp = AdsStampHeader.from_bytes(rest)
        rest = stamp.data
        for _ in range(int(stamp.samples)):
            sample = AdsNotificationSample.from_bytes(rest)
            size = int(sample.size)
            if size > len(sample.data):
                raise ProtocolError(
                    f"Notification sample for handle {sample.handle} announces "
                    + f"{size} bytes, got {len(sample.data)}."
                )
            yield NotificationSample(
                handle=int(sample.handle),
                timestamp=int(stamp.timestamp),
                data=sample.data[:size],
            )
            rest = sample.data[size:]


# ===================================================================
# ===== MESSAGE MAPPING
# ===================================================================

# Dictionary of all available ADS messages.
MESSAGE_CLASS: dict[type[MessageRequest], type[MessageResponse]] = {
    AdsReadDeviceInfoRequest: AdsReadDeviceInfoResponse,
    AdsReadStateRequest: AdsReadStateResponse,
    AdsReadRequest: AdsReadResponse,
    AdsReadWriteRequest: AdsReadWriteResponse,
    AdsAddDeviceNotificationRequest: AdsAddDeviceNotificationResponse,
    AdsDeleteDeviceNotificationRequest: AdsDeleteDeviceNotificationResponse,
}

# Dictionary of all available ADS requests and associated commands.
REQUEST_CLASS: dict[type[MessageRequest], CommandId] = {
    AdsReadDeviceInfoRequest: CommandId.ADSSRVID_READDEVICEINFO,
    AdsReadStateRequest: CommandId.ADSSRVID_READSTATE,
    AdsReadRequest: CommandId.ADSSRVID_READ,
    AdsReadWriteRequest: CommandId.ADSSRVID_READWRITE,
    AdsAddDeviceNotificationRequest: CommandId.ADSSRVID_ADDDEVICENOTE,
    AdsDeleteDeviceNotificationRequest: CommandId.ADSSRVID_DELETEDEVICENOTE,
}

# Dictionary of all available ADS commands and associated responses.
RESPONSE_CLASS: dict[CommandId, type[MessageResponse]] = {
    CommandId.ADSSRVID_READDEVICEINFO: AdsReadDeviceInfoResponse,
    CommandId.ADSSRVID_READSTATE: AdsReadStateResponse,
    CommandId.ADSSRVID_READ: AdsReadResponse,
    CommandId.ADSSRVID_READWRITE: AdsReadWriteResponse,
    CommandId.ADSSRVID_ADDDEVICENOTE: AdsAddDeviceNotificationResponse,
    CommandId.ADSSRVID_DELETEDEVICENOTE: AdsDeleteDeviceNotificationResponse,
}

SUCCESS = ErrorCode.ERR_NOERROR
