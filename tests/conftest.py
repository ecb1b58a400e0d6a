"""
Provides pytest fixtures for the mock ADS server infrastructure:
- `ads_server` - Async fixture that starts and stops a simulated PLC automatically
- `transport` - An AMS/TCP connection to the simulated PLC
- `make_config` / `make_input` - Factories of input configurations and inputs
"""

import os
import struct
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest

from ads_sim import ADSSimServer, DataType, SimSymbol
from ads_stream._types import AmsNetId
from ads_stream.config import AdsInputConfig
from ads_stream.connector import AdsInput
from ads_stream.transport import AmsTransport

# Prevent pytest from catching exceptions when debugging in vscode so that break on
# exception works correctly (see: https://github.com/pytest-dev/pytest/issues/7409)
if os.getenv("PYTEST_RAISE", "0") == "1":

    @pytest.hookimpl(tryfirst=True)
    def pytest_exception_interact(call: pytest.CallInfo[Any]):
        if call.excinfo is not None:
            raise call.excinfo.value
        else:
            raise RuntimeError(
                f"{call} has no exception data, an unknown error has occurred"
            )

    @pytest.hookimpl(tryfirst=True)
    def pytest_internalerror(excinfo: pytest.ExceptionInfo[Any]):
        raise excinfo.value


PLC_NETID = "10.0.0.5.1.1"
PLC_PORT = 851


def plc_symbols() -> list[SimSymbol]:
    """Symbol table of the simulated PLC program."""
    return [
        SimSymbol("MAIN.flag", "BOOL", DataType.BIT, b"\x01", index_offset=0),
        SimSymbol(
            "MAIN.a", "DINT", DataType.INT32, struct.pack("<i", 7), index_offset=4
        ),
        SimSymbol(
            ".gb", "DINT", DataType.INT32, struct.pack("<i", -3), index_offset=8
        ),
        SimSymbol(
            "MAIN.counter",
            "UDINT",
            DataType.UINT32,
            struct.pack("<I", 42),
            index_offset=12,
        ),
        SimSymbol(
            "MAIN.speed",
            "LREAL",
            DataType.REAL64,
            struct.pack("<d", 1.5),
            index_offset=16,
        ),
        SimSymbol(
            "MAIN.text",
            "STRING(80)",
            DataType.STRING,
            b"hello\x00" + bytes(75),
            index_offset=24,
        ),
        SimSymbol(
            "MAIN.motor", "ST_Motor", DataType.BIGTYPE, bytes(12), index_offset=112
        ),
    ]


@pytest.fixture
async def ads_server() -> AsyncGenerator[ADSSimServer]:
    """Fixture that provides a running simulated PLC on a free port."""
    server = ADSSimServer(symbols=plc_symbols(), netid=PLC_NETID)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def transport(ads_server: ADSSimServer) -> AsyncGenerator[AmsTransport]:
    """Fixture that provides an AMS/TCP connection to the simulated PLC."""
    connection = await AmsTransport.connected_to(
        "127.0.0.1",
        AmsNetId.from_string(PLC_NETID),
        PLC_PORT,
        ads_port=ads_server.port,
        timeout=1.0,
    )
    yield connection
    await connection.close()


@pytest.fixture
def make_config() -> Callable[..., AdsInputConfig]:
    """Fixture that builds input configurations targeting the simulated PLC."""

    def factory(**overrides: Any) -> AdsInputConfig:
        conf: dict[str, Any] = {
            "targetIP": "127.0.0.1",
            "targetAMS": PLC_NETID,
            "port": PLC_PORT,
            "hostAMS": "auto",
            "readType": "notification",
            "cycleTime": 100,
            "maxDelay": 0,
            "intervalTime": 50,
            "timeout": 1,
            "symbols": ["MAIN.flag"],
            "logLevel": "debug",
        }
        conf.update(overrides)
        return AdsInputConfig.parse(conf)

    return factory


@pytest.fixture
async def make_input(
    ads_server: ADSSimServer, make_config: Callable[..., AdsInputConfig]
) -> AsyncGenerator[Callable[..., AdsInput]]:
    """Fixture that builds inputs connecting to the simulated PLC."""
    inputs: list[AdsInput] = []

    def factory(soft_timeout: float = 1.0, **overrides: Any) -> AdsInput:
        ads_input = AdsInput(
            make_config(**overrides),
            ads_port=ads_server.port,
            soft_timeout=soft_timeout,
        )
        inputs.append(ads_input)
        return ads_input

    yield factory
    for ads_input in inputs:
        await ads_input.close()
