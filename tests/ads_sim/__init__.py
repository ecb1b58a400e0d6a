"""
ADS Simulation Server for testing ads_stream client connections.

This package provides a mock ADS (Automation Device Specification) server that
simulates the PLC runtime of a Beckhoff TwinCAT device, enabling testing without
real hardware.
"""

from .server import ADSSimServer, AdsEvent, CommandId, DataType, ErrorCode, SimSymbol

__all__ = [
    "ADSSimServer",
    "AdsEvent",
    "CommandId",
    "DataType",
    "ErrorCode",
    "SimSymbol",
]
