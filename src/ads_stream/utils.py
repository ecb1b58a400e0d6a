from __future__ import annotations

import socket

from ._constants import TWINCAT_STRING_ENCODING


def get_local_netid_str(local_ip: str | None = None) -> str:
    """
    Create the ams netid string value of the Ads client (localhost).

    :param local_ip: the local IPv4 address used to reach the PLC; \
        if None, the address the host name resolves to is used

    :return
        rtype: str
        the string representing the local client netid
    """
    if local_ip is None:
        local_ip = socket.gethostbyname(socket.gethostname())
    return local_ip + ".1.1"


def bytes_to_string(raw_data: bytes, strip: bool = True) -> str:
    """
    Convert a bytes object into a unicode string.

    :param raw_data: an array of bytes to convert to string
    :param strip: boolean indicating whether bytes from the first NUL onwards \
        must be removed

    :returns: the decoded string
    """
    if strip:
        null_index = raw_data.find(0)
        if null_index != -1:
            raw_data = raw_data[:null_index]
    return raw_data.decode(encoding=TWINCAT_STRING_ENCODING)
