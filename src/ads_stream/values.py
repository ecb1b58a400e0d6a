"""
Decoding of raw PLC values into plain Python values.
https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_plc_intro/2529388939.html&id=3451082169760117126
"""

from __future__ import annotations

import re
from enum import Enum

import numpy as np

from ._constants import FILETIME_EPOCH_OFFSET, AdsDataType
from .errors import DecodeError
from .utils import bytes_to_string

PlcValue = bool | int | float | str


class Primitive(str, Enum):
    """PLC primitive types which values can be decoded for."""

    BOOL = "BOOL"
    USINT = "USINT"
    SINT = "SINT"
    UINT = "UINT"
    INT = "INT"
    UDINT = "UDINT"
    DINT = "DINT"
    ULINT = "ULINT"
    LINT = "LINT"
    REAL = "REAL"
    LREAL = "LREAL"
    STRING = "STRING"
    TIME = "TIME"
    TOD = "TOD"
    DATE = "DATE"
    DT = "DT"
    UNSUPPORTED = "UNSUPPORTED"

    @property
    def dtype(self) -> np.dtype | None:
        """
        Get the little-endian numpy data type of a fixed-width primitive.

        :returns: the numpy data type, or None for strings and unsupported types
        """
        return _DTYPES.get(self)

    @classmethod
    def resolve(cls, type_name: str, data_type: int | None = None) -> Primitive:
        """
        Find the primitive matching a PLC type name, e.g. 'DINT' or 'STRING(80)'.
        Type names which are not recognised fall back to the ADS data type id, \
            which covers user aliases of primitive types.

        :param type_name: the type name reported by the PLC
        :param data_type: the ADS data type id reported by the PLC

        :returns: the matching primitive, or UNSUPPORTED
        """
        name = type_name.strip().upper()
        if _STRING_TYPE.fullmatch(name):
            return cls.STRING
        if name in _ALIASES:
            return _ALIASES[name]
        if name in cls.__members__ and name != cls.UNSUPPORTED.value:
            return cls[name]
        if data_type is not None:
            return _FROM_ADS_TYPE.get(int(data_type), cls.UNSUPPORTED)
        return cls.UNSUPPORTED


_STRING_TYPE = re.compile(r"STRING(\(\d+\))?")

_DTYPES: dict[Primitive, np.dtype] = {
    Primitive.BOOL: np.dtype("<u1"),
    Primitive.USINT: np.dtype("<u1"),
    Primitive.SINT: np.dtype("<i1"),
    Primitive.UINT: np.dtype("<u2"),
    Primitive.INT: np.dtype("<i2"),
    Primitive.UDINT: np.dtype("<u4"),
    Primitive.DINT: np.dtype("<i4"),
    Primitive.ULINT: np.dtype("<u8"),
    Primitive.LINT: np.dtype("<i8"),
    Primitive.REAL: np.dtype("<f4"),
    Primitive.LREAL: np.dtype("<f8"),
    # TIME and TOD count milliseconds, DATE and DT count seconds since 1970.
    Primitive.TIME: np.dtype("<u4"),
    Primitive.TOD: np.dtype("<u4"),
    Primitive.DATE: np.dtype("<u4"),
    Primitive.DT: np.dtype("<u4"),
}

_ALIASES: dict[str, Primitive] = {
    "BIT": Primitive.BOOL,
    "BYTE": Primitive.USINT,
    "WORD": Primitive.UINT,
    "DWORD": Primitive.UDINT,
    "LWORD": Primitive.ULINT,
    "TIME_OF_DAY": Primitive.TOD,
    "DATE_AND_TIME": Primitive.DT,
}

_FROM_ADS_TYPE: dict[int, Primitive] = {
    AdsDataType.BIT: Primitive.BOOL,
    AdsDataType.INT8: Primitive.SINT,
    AdsDataType.UINT8: Primitive.USINT,
    AdsDataType.INT16: Primitive.INT,
    AdsDataType.UINT16: Primitive.UINT,
    AdsDataType.INT32: Primitive.DINT,
    AdsDataType.UINT32: Primitive.UDINT,
    AdsDataType.INT64: Primitive.LINT,
    AdsDataType.UINT64: Primitive.ULINT,
    AdsDataType.REAL32: Primitive.REAL,
    AdsDataType.REAL64: Primitive.LREAL,
    AdsDataType.STRING: Primitive.STRING,
}


def decode_value(primitive: Primitive, raw: bytes) -> PlcValue:
    """
    Decode the raw bytes of a PLC value according to its primitive type.

    :param primitive: the primitive type of the value
    :param raw: the value bytes as sent by the PLC

    :returns: a bool, int, float or str value

    :raises DecodeError: if the type is unsupported or the payload width is wrong
    """
    if primitive is Primitive.STRING:
        try:
            return bytes_to_string(raw)
        except UnicodeDecodeError as err:
            raise DecodeError(f"Invalid STRING payload: {raw.hex(' ')}") from err

    dtype = primitive.dtype
    if dtype is None:
        raise DecodeError(f"Values of type {primitive.value} can't be decoded.")
    if len(raw) != dtype.itemsize:
        raise DecodeError(
            f"{primitive.value} value needs {dtype.itemsize} bytes, got {len(raw)}."
        )
    if primitive is Primitive.BOOL:
        return raw[0] != 0
    return np.frombuffer(raw, dtype=dtype, count=1)[0].item()


def filetime_to_unix_ns(filetime: int) -> int:
    """
    Convert a Windows FILETIME (100ns intervals since 01.01.1601 UTC) \
        into nanoseconds since the Unix epoch.

    :param filetime: the FILETIME value

    :returns: the timestamp in Unix nanoseconds
    """
    return (int(filetime) - FILETIME_EPOCH_OFFSET) * 100
