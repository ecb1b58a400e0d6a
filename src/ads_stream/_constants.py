"""
ADS/AMS protocol constants
https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115847307.html&id=7738940192708835096
"""

from enum import IntEnum, IntFlag

# https://infosys.beckhoff.com/content/1033/ipc_security_win7/11019143435.html
ADS_TCP_PORT = 48898
# Default runtime port of a TwinCAT 2 PLC (TwinCAT 3 uses 851)
PLC_RUNTIME_PORT = 801
# Source port announced in the AMS header of every request
LOCAL_AMS_PORT = 32905

AMS_TCP_HEADER_LENGTH = 6
AMS_HEADER_LENGTH = 32

# 100ns intervals between the Windows epoch (01.01.1601) and the Unix epoch
FILETIME_EPOCH_OFFSET = 116444736000000000

TWINCAT_STRING_ENCODING = "cp1252"


class CommandId(IntEnum):
    """
    ADS command identifiers.
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/115847307.html&id=7738940192708835096
    """

    ADSSRVID_INVALID = 0x0
    ADSSRVID_READDEVICEINFO = 0x1
    ADSSRVID_READ = 0x2
    ADSSRVID_WRITE = 0x3
    ADSSRVID_READSTATE = 0x4
    ADSSRVID_WRITECTRL = 0x5
    ADSSRVID_ADDDEVICENOTE = 0x6
    ADSSRVID_DELETEDEVICENOTE = 0x7
    ADSSRVID_DEVICENOTE = 0x8
    ADSSRVID_READWRITE = 0x9


class StateFlag(IntFlag):
    """AMS state flags: bit0 marks a response, bit2 marks an ADS command."""

    AMSCMDSF_RESPONSE = 0x1
    AMSCMDSF_NORETURN = 0x2
    AMSCMDSF_ADSCMD = 0x4
    AMSCMDSF_SYSCMD = 0x8
    AMSCMDSF_UDP = 0x40

    @classmethod
    def request(cls) -> "StateFlag":
        return cls.AMSCMDSF_ADSCMD

    @classmethod
    def response(cls) -> "StateFlag":
        return cls.AMSCMDSF_ADSCMD | cls.AMSCMDSF_RESPONSE


class ErrorCode(IntEnum):
    """
    ADS return codes.
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/374277003.html
    """

    ERR_NOERROR = 0x0
    ERR_INTERNAL = 0x1
    ERR_TARGETPORTNOTFOUND = 0x6
    ERR_TARGETMACHINENOTFOUND = 0x7
    ERR_UNKNOWNCMDID = 0x8
    ERR_PORTNOTCONNECTED = 0x12
    ERR_INVALIDAMSLENGTH = 0xE
    ADSERR_DEVICE_ERROR = 0x700
    ADSERR_DEVICE_SRVNOTSUPP = 0x701
    ADSERR_DEVICE_INVALIDGRP = 0x702
    ADSERR_DEVICE_INVALIDOFFSET = 0x703
    ADSERR_DEVICE_INVALIDACCESS = 0x704
    ADSERR_DEVICE_INVALIDSIZE = 0x705
    ADSERR_DEVICE_INVALIDDATA = 0x706
    ADSERR_DEVICE_NOTREADY = 0x707
    ADSERR_DEVICE_BUSY = 0x708
    ADSERR_DEVICE_NOMEMORY = 0x70A
    ADSERR_DEVICE_NOTFOUND = 0x70C
    ADSERR_DEVICE_SYMBOLNOTFOUND = 0x710
    ADSERR_DEVICE_INVALIDSTATE = 0x712
    ADSERR_DEVICE_NOTIFYHNDINVALID = 0x714
    ADSERR_DEVICE_TIMEOUT = 0x719
    ADSERR_DEVICE_INVALIDPARM = 0x70B
    ADSERR_CLIENT_ERROR = 0x740
    ADSERR_CLIENT_SYNCTIMEOUT = 0x745

    @classmethod
    def describe(cls, code: int) -> str:
        """
        Get a readable name for an ADS return code, including unlisted codes.

        :param code: the ADS return code

        :returns: the enum member name, or the code in hexadecimal
        """
        try:
            return cls(code).name
        except ValueError:
            return f"{code:#x}"


class IndexGroup(IntEnum):
    """
    ADS index groups used to address PLC symbols.
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_ads_intro/117241867.html
    """

    SYM_HNDBYNAME = 0xF003
    SYM_VALBYNAME = 0xF004
    SYM_VALBYHND = 0xF005
    SYM_RELEASEHND = 0xF006
    SYM_INFOBYNAME = 0xF007
    SYM_VERSION = 0xF008
    SYM_INFOBYNAMEEX = 0xF009
    SYM_UPLOAD = 0xF00B
    SYM_UPLOADINFO = 0xF00C
    PLC_MEMORY = 0x4020
    PLC_MEMORY_BITS = 0x4021


class TransmissionMode(IntEnum):
    """
    Notification transmission modes (ADSTRANSMODE).
    https://infosys.beckhoff.com/english.php?content=../content/1033/tc3_adsdll2/117553803.html
    """

    ADSTRANS_NOTRANS = 0
    ADSTRANS_CLIENTCYCLE = 1
    ADSTRANS_CLIENT1REQ = 2
    ADSTRANS_SERVERCYCLE = 3
    ADSTRANS_SERVERONCHA = 4


class AdsState(IntEnum):
    """ADS device states reported by ReadState."""

    ADSSTATE_INVALID = 0
    ADSSTATE_IDLE = 1
    ADSSTATE_RESET = 2
    ADSSTATE_INIT = 3
    ADSSTATE_START = 4
    ADSSTATE_RUN = 5
    ADSSTATE_STOP = 6
    ADSSTATE_SAVECFG = 7
    ADSSTATE_LOADCFG = 8
    ADSSTATE_POWERFAILURE = 9
    ADSSTATE_POWERGOOD = 10
    ADSSTATE_ERROR = 11
    ADSSTATE_SHUTDOWN = 12
    ADSSTATE_SUSPEND = 13
    ADSSTATE_RESUME = 14
    ADSSTATE_CONFIG = 15
    ADSSTATE_RECONFIG = 16


class AdsDataType(IntEnum):
    """
    ADS data type identifiers.
    https://infosys.beckhoff.com/english.php?content=../content/1033/tcplclib_tc2_utilities/35330059.html
    """

    VOID = 0
    INT16 = 2
    INT32 = 3
    REAL32 = 4
    REAL64 = 5
    INT8 = 16
    UINT8 = 17
    UINT16 = 18
    UINT32 = 19
    INT64 = 20
    UINT64 = 21
    STRING = 30
    WSTRING = 31
    REAL80 = 32
    BIT = 33
    MAXTYPES = 34
    BIGTYPE = 65
