# ADS Data Types
# https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_plc_intro/2529388939.html&id=3451082169760117126

from dataclasses import dataclass
from typing import Self

import numpy as np

# All numeric fields on the wire are little-endian, whatever the host byte order.
USINT = np.dtype("<u1")
UINT = np.dtype("<u2")
UDINT = np.dtype("<u4")
ULINT = np.dtype("<u8")
NETID = np.dtype("V6")
BYTES16 = np.dtype("V16")


@dataclass(frozen=True)
class AmsNetId:
    """
    AmsNetId class representing the unique AmsNetId identifier of an AMS endpoint on
    the network which messages will be routed to using the ADS communication protocol.

    The 4-byte root is usually the IP address of the device, while the 2-byte mask is
    used to identify the sub-network of the AMS router (commonly `.1.1`).

    The AmsNetId can be converted to and from a byte stream or from a string in the
    standard dot-notation format (x.x.x.x.x.x).
    """

    root: tuple[int, int, int, int]
    """4-byte root of the AmsNetId"""
    mask: tuple[int, int]
    """2-byte mask of the AmsNetId"""

    @classmethod
    def from_bytes(cls, net_id: bytes) -> Self:
        """
        Convert a netid byte stream into a AmsNetId object.

        :param net_id: the netid value expressed as 6 bytes

        :returns: the AmsNetId expressed as tuples of integers

        :raises ValueError: if the netid is not exactly 6 bytes long
        """
        if len(net_id) != 6:
            raise ValueError("AMS NetID must be exactly 6 bytes long.")
        parts = [int(x) for x in np.frombuffer(net_id, dtype=USINT)]
        return cls((parts[0], parts[1], parts[2], parts[3]), (parts[4], parts[5]))

    @classmethod
    def from_string(cls, net_id: str) -> Self:
        """
        Convert a netid string from the standard dot-notation to a AmsNetId object.

        :param net_id: the netid value expressed as a string of format x.x.x.x.x.x

        :returns: the AmsNetId expressed as tuples of integers

        :raises ValueError: if the netid is not exactly 6 dot-separated octets
        """
        try:
            parts = [int(x) for x in net_id.strip().split(".")]
        except ValueError as err:
            raise ValueError(f"Invalid AMS NetID '{net_id}'.") from err
        if len(parts) != 6:
            raise ValueError("AMS NetID must be exactly 6 dot-separated octets.")
        if any(not 0 <= part <= 255 for part in parts):
            raise ValueError(f"AMS NetID '{net_id}' has an octet outside 0-255.")
        return cls((parts[0], parts[1], parts[2], parts[3]), (parts[4], parts[5]))

    @classmethod
    def from_ip(cls, ip: str) -> Self:
        """
        Derive the AmsNetId of a host from its IPv4 address by appending `.1.1`.

        :param ip: the IPv4 address in dot-notation

        :returns: the derived AmsNetId
        """
        return cls.from_string(ip + ".1.1")

    def to_bytes(self) -> bytes:
        """
        Convert the AmsNetId object into a 6-byte array.

        :returns: the netid expressed as a byte stream
        """
        return bytes(self.root + self.mask)

    def to_string(self) -> str:
        """
        Convert the AmsNetId object into the standard dot-notation string.

        :returns: the netid expressed as a string of format x.x.x.x.x.x
        """
        return ".".join(map(str, self.root + self.mask))

    def __repr__(self) -> str:
        return f"AmsNetId(root={self.root}, mask={self.mask})"

    def __str__(self) -> str:
        return self.to_string()
