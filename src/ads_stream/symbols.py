from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ._constants import ErrorCode
from .errors import AdsDeviceError, UnknownSymbol
from .logging import VerboseLogger, get_logger
from .messages import AdsReadWriteRequest, AdsReadWriteResponse, AdsSymbolEntry
from .transport import AmsTransport
from .values import PlcValue, Primitive, decode_value

logger = get_logger(__name__)

# ADS codes meaning the symbol name is unknown to the PLC
_NOT_FOUND_CODES = (
    ErrorCode.ADSERR_DEVICE_SYMBOLNOTFOUND,
    ErrorCode.ADSERR_DEVICE_NOTFOUND,
)


@dataclass
class SymbolBinding:
    """
    Define a configured PLC symbol bound to its location in the PLC memory.
    """

    name: str
    """Fully qualified name of the symbol, e.g. 'MAIN.counter'"""
    index_group: int
    """Index group used by the ADS protocol to address the symbol"""
    index_offset: int
    """Index offset used by the ADS protocol to address the symbol"""
    size: int
    """Size of the symbol value in bytes"""
    primitive: Primitive
    """Primitive type used to decode the symbol value"""
    type_name: str = ""
    """Type name reported by the PLC"""
    handle: int | None = None
    """Notification handle assigned by the PLC while subscribed"""

    def decode(self, raw: bytes) -> PlcValue:
        """
        Decode raw value bytes of this symbol.

        :param raw: the value bytes as sent by the PLC

        :returns: the decoded value

        :raises DecodeError: if the value can't be decoded
        """
        return decode_value(self.primitive, raw)

    def __str__(self) -> str:
        return (
            f"{self.name} ({self.type_name or self.primitive.value}, "
            + f"group={self.index_group:#x}, offset={self.index_offset:#x}, "
            + f"size={self.size})"
        )


class SymbolResolver:
    """
    Resolve textual symbol names into symbol bindings.
    The symbol information obtained from the PLC is cached by name for the
    lifetime of the resolver, i.e. of one connection.
    """

    def __init__(self, transport: AmsTransport, log: VerboseLogger | None = None):
        self._transport = transport
        self._entries: dict[str, AdsSymbolEntry] = {}
        self.log = log or logger

    async def _get_symbol_entry(self, name: str) -> AdsSymbolEntry:
        """
        Get the extended symbol information of a named PLC symbol.

        :param name: the fully qualified symbol name

        :returns: the symbol entry sent back by the PLC

        :raises UnknownSymbol: if the PLC doesn't know the symbol
        """
        entry = self._entries.get(name)
        if entry is not None:
            return entry
        try:
            response = await self._transport.request(
                AdsReadWriteRequest.symbol_info_by_name(name)
            )
        except AdsDeviceError as err:
            if err.code in _NOT_FOUND_CODES:
                raise UnknownSymbol(name) from err
            raise
        assert isinstance(response, AdsReadWriteResponse)
        entry = AdsSymbolEntry.from_bytes(response.data[: int(response.length)])
        self._entries[name] = entry
        return entry

    async def resolve(self, name: str) -> SymbolBinding:
        """
        Resolve a symbol name into a new symbol binding.
        Each call returns a distinct binding, so that duplicated names are
        subscribed to independently.

        :param name: the fully qualified symbol name

        :returns: the symbol binding

        :raises UnknownSymbol: if the PLC doesn't know the symbol
        """
        entry = await self._get_symbol_entry(name)
        type_name = entry.type_name
        primitive = Primitive.resolve(type_name, int(entry.data_type))
        size = int(entry.size)
        if primitive is Primitive.BOOL:
            # Bit-addressed symbols report a size of 0.
            size = max(size, 1)
        if primitive is Primitive.UNSUPPORTED:
            self.log.warning(
                f"Symbol '{name}' has type '{type_name}' whose values can't be decoded."
            )
        binding = SymbolBinding(
            name=name,
            index_group=int(entry.index_group),
            index_offset=int(entry.index_offset),
            size=size,
            primitive=primitive,
            type_name=type_name,
        )
        self.log.debug(f"Resolved symbol {binding}")
        return binding

    async def resolve_all(self, names: Sequence[str]) -> list[SymbolBinding]:
        """
        Resolve all symbol names, in order.

        :param names: the fully qualified symbol names

        :returns: the symbol bindings, one per name

        :raises UnknownSymbol: on the first name unknown to the PLC
        """
        return [await self.resolve(name) for name in names]
