import asyncio
import json
import logging
import struct
import time
from collections.abc import Callable

import pytest

from ads_sim import ADSSimServer, CommandId, ErrorCode
from ads_stream.config import AdsInputConfig
from ads_stream.connector import AdsInput, SessionState
from ads_stream.errors import (
    Cancelled,
    IdleTimeout,
    NotConnected,
    NotificationRegistrationFailed,
    ReadFailed,
    RequestTimeout,
    TransportClosed,
    UnknownSymbol,
)
from ads_stream.logging import VERBOSE

FILETIME = 133444736000000000
UNIX_NS = 1700000000000000000

MakeInput = Callable[..., AdsInput]


def _bodies(batch) -> list[dict]:
    return [json.loads(message.body) for message in batch]


class TestNotificationMode:
    """Tests for the delivery of values pushed by the PLC."""

    async def test_single_bool_notification(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.flag"], cycleTime=100, maxDelay=0)
        await ads_input.connect()
        assert ads_input.state is SessionState.CONNECTED
        assert ads_server.added_handles == [0x1001]
        (event,) = ads_server.commands(CommandId.ADSSRVID_ADDDEVICENOTE)
        assert struct.unpack("<II", event.payload[16:24]) == (0, 1_000_000)

        await ads_server.notify([(0x1001, b"\x01")], timestamp=FILETIME)
        batch, ack = await ads_input.read_batch()

        assert len(batch) == 1
        assert batch[0].body == (
            b'{"Variable":"MAIN.flag","Value":true,"TimeStamp":1700000000000000000}'
        )
        assert batch[0].metadata == {"symbol_name": "MAIN_flag"}
        await ack(None)

    async def test_values_of_every_type(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.counter", "MAIN.speed", "MAIN.text"])
        await ads_input.connect()
        await ads_server.notify(
            [
                (ads_server.handle_of("MAIN.counter"), struct.pack("<I", 43)),
                (ads_server.handle_of("MAIN.speed"), struct.pack("<d", -0.5)),
                (ads_server.handle_of("MAIN.text"), b"hi\x00" + bytes(78)),
            ],
            timestamp=FILETIME,
        )
        bodies = [_bodies((await ads_input.read_batch())[0])[0] for _ in range(3)]
        assert [(b["Variable"], b["Value"]) for b in bodies] == [
            ("MAIN.counter", 43),
            ("MAIN.speed", -0.5),
            ("MAIN.text", "hi"),
        ]
        assert {b["TimeStamp"] for b in bodies} == {UNIX_NS}

    async def test_order_is_kept_under_backpressure(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.a"])
        await ads_input.connect()
        for value in range(1, 6):
            await ads_server.notify_value("MAIN.a", struct.pack("<i", value))

        values = []
        for _ in range(5):
            batch, _ = await ads_input.read_batch()
            values.extend(body["Value"] for body in _bodies(batch))
        assert values == [1, 2, 3, 4, 5]

    async def test_undecodable_and_unknown_samples_are_dropped(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(soft_timeout=0.1, symbols=["MAIN.a"])
        await ads_input.connect()
        await ads_server.notify(
            [
                (0x1001, b"\x01\x02"),
                (0x7777, struct.pack("<i", 1)),
                (0x1001, struct.pack("<i", 9)),
            ]
        )
        batch, _ = await ads_input.read_batch()
        assert _bodies(batch)[0]["Value"] == 9
        with pytest.raises(IdleTimeout):
            await ads_input.read_batch()

    async def test_soft_timeout(self, make_input: MakeInput):
        ads_input = make_input(soft_timeout=0.1)
        await ads_input.connect()
        start = time.monotonic()
        with pytest.raises(IdleTimeout):
            await ads_input.read_batch()
        assert time.monotonic() - start < 1

    async def test_cancel_while_waiting(self, make_input: MakeInput):
        ads_input = make_input(soft_timeout=5.0)
        await ads_input.connect()
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        start = time.monotonic()
        with pytest.raises(Cancelled):
            await ads_input.read_batch(cancel)
        assert time.monotonic() - start < 0.5
        assert ads_input.state is SessionState.CONNECTED

    async def test_duplicate_symbols_are_subscribed_twice(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.a", "MAIN.a"])
        await ads_input.connect()
        assert ads_server.added_handles == [0x1001, 0x1002]
        await ads_input.close()
        assert ads_server.deleted_handles == [0x1001, 0x1002]


class TestIntervalMode:
    """Tests for the polling of symbol values."""

    async def test_poll_batch(self, make_input: MakeInput, ads_server: ADSSimServer):
        ads_input = make_input(
            readType="interval", intervalTime=500, symbols=["MAIN.a", ".gb"]
        )
        await ads_input.connect()
        assert ads_server.commands(CommandId.ADSSRVID_ADDDEVICENOTE) == []

        start = time.monotonic()
        batch, _ = await ads_input.read_batch()
        assert time.monotonic() - start >= 0.49

        bodies = _bodies(batch)
        assert [(b["Variable"], b["Value"]) for b in bodies] == [
            ("MAIN.a", 7),
            (".gb", -3),
        ]
        assert [m.metadata["symbol_name"] for m in batch] == ["MAIN_a", "_gb"]
        assert all(isinstance(b["TimeStamp"], int) for b in bodies)

    async def test_failed_symbol_is_left_out(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(readType="interval", symbols=["MAIN.a", ".gb"])
        await ads_input.connect()
        ads_server.read_errors["MAIN.a"] = ErrorCode.ADSERR_DEVICE_NOTREADY
        batch, _ = await ads_input.read_batch()
        assert [b["Variable"] for b in _bodies(batch)] == [".gb"]

    async def test_every_symbol_failing(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(readType="interval", symbols=["MAIN.a"])
        await ads_input.connect()
        ads_server.read_errors["MAIN.a"] = ErrorCode.ADSERR_DEVICE_NOTREADY
        with pytest.raises(ReadFailed):
            await ads_input.read_batch()
        assert ads_input.state is SessionState.CONNECTED

    async def test_cancel_during_interval(self, make_input: MakeInput):
        ads_input = make_input(readType="interval", intervalTime=5000)
        await ads_input.connect()
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        with pytest.raises(Cancelled):
            await ads_input.read_batch(cancel)

    async def test_close_during_interval(self, make_input: MakeInput):
        ads_input = make_input(readType="interval", intervalTime=5000)
        await ads_input.connect()
        reading = asyncio.create_task(ads_input.read_batch())
        await asyncio.sleep(0.05)
        await ads_input.close()
        with pytest.raises(Cancelled):
            await asyncio.wait_for(reading, timeout=1)

    async def test_cancel_while_reading_symbols(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(
            readType="interval", symbols=["MAIN.a", ".gb", "MAIN.counter"]
        )
        await ads_input.connect()
        ads_server.silent_commands.add(CommandId.ADSSRVID_READ)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)
        start = time.monotonic()
        with pytest.raises(Cancelled):
            await ads_input.read_batch(cancel)
        assert time.monotonic() - start < 0.5
        assert ads_input.state is SessionState.CONNECTED

    async def test_close_while_reading_symbols(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(readType="interval", symbols=["MAIN.a", ".gb"])
        await ads_input.connect()
        ads_server.silent_commands.add(CommandId.ADSSRVID_READ)
        reading = asyncio.create_task(ads_input.read_batch())
        await asyncio.sleep(0.05)
        await ads_input.close()
        with pytest.raises(Cancelled):
            await asyncio.wait_for(reading, timeout=0.5)
        assert ads_input.state is SessionState.CLOSED

    async def test_drop_while_reading_symbols(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(readType="interval", symbols=["MAIN.a"])
        await ads_input.connect()
        ads_server.silent_commands.add(CommandId.ADSSRVID_READ)
        reading = asyncio.create_task(ads_input.read_batch())
        await asyncio.sleep(0.05)
        await ads_server.drop_connections()
        with pytest.raises(TransportClosed):
            await asyncio.wait_for(reading, timeout=0.5)
        assert ads_input.state is SessionState.CLOSED


class TestConnect:
    """Tests for the establishment of a session."""

    def test_inputs_have_their_own_logger(
        self, make_config: Callable[..., AdsInputConfig]
    ):
        quiet = AdsInput(make_config(logLevel="error"))
        chatty = AdsInput(make_config(logLevel="trace"))
        assert quiet.log is not chatty.log
        assert quiet.log.getEffectiveLevel() == logging.ERROR
        assert chatty.log.isEnabledFor(VERBOSE)
        assert not quiet.log.isEnabledFor(logging.WARNING)

    async def test_read_before_connect(self, make_input: MakeInput):
        with pytest.raises(NotConnected):
            await make_input().read_batch()

    async def test_connect_is_idempotent(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input()
        await ads_input.connect()
        await ads_input.connect()
        assert len(ads_server.commands(CommandId.ADSSRVID_ADDDEVICENOTE)) == 1

    async def test_device_identity_is_logged(
        self, make_input: MakeInput, caplog: pytest.LogCaptureFixture
    ):
        ads_input = make_input()
        with caplog.at_level(logging.DEBUG):
            await ads_input.connect()
        assert 'Connected to "Plc30 App" version 3.1 (build 4024)' in caplog.text
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    async def test_stopped_plc_is_reported(
        self,
        make_input: MakeInput,
        ads_server: ADSSimServer,
        caplog: pytest.LogCaptureFixture,
    ):
        ads_server.ads_state = 6
        ads_input = make_input()
        with caplog.at_level(logging.DEBUG):
            await ads_input.connect()
        assert "ADS device is not running: ADSSTATE_STOP." in caplog.text
        assert ads_input.state is SessionState.CONNECTED

    async def test_unknown_symbol(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.a", "MAIN.nope"])
        with pytest.raises(UnknownSymbol) as exc_info:
            await ads_input.connect()
        assert exc_info.value.name == "MAIN.nope"
        assert ads_input.state is SessionState.CLOSED
        assert ads_input.session is None
        assert ads_server.commands(CommandId.ADSSRVID_ADDDEVICENOTE) == []
        assert ads_server.notification_handles == {}

    async def test_registration_failure_rolls_back(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_server.add_errors[".gb"] = ErrorCode.ADSERR_DEVICE_NOTREADY
        ads_input = make_input(symbols=["MAIN.a", ".gb"])
        with pytest.raises(NotificationRegistrationFailed):
            await ads_input.connect()
        assert ads_server.deleted_handles == [0x1001]
        assert ads_server.notification_handles == {}
        assert ads_input.state is SessionState.CLOSED

    async def test_registration_timeout_is_retryable(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_server.silent_commands.add(CommandId.ADSSRVID_ADDDEVICENOTE)
        ads_input = make_input(symbols=["MAIN.a"])
        with pytest.raises(RequestTimeout) as exc_info:
            await ads_input.connect()
        assert exc_info.value.retryable
        assert ads_input.state is SessionState.CLOSED
        assert ads_input.session is None

        ads_server.silent_commands.clear()
        await ads_input.connect()
        assert ads_input.state is SessionState.CONNECTED

    async def test_unreachable_plc(self, make_config: Callable[..., AdsInputConfig]):
        ads_input = AdsInput(make_config(), ads_port=1)
        with pytest.raises(TransportClosed):
            await ads_input.connect()
        assert ads_input.state is SessionState.CLOSED

    async def test_automatic_host_netid(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(hostAMS="auto")
        await ads_input.connect()
        assert {event.source_netid for event in ads_server.events} == {
            "127.0.0.1.1.1"
        }

    async def test_explicit_host_netid(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(hostAMS="192.168.1.42.1.1")
        await ads_input.connect()
        await ads_input.close()
        assert {event.source_netid for event in ads_server.events} == {
            "192.168.1.42.1.1"
        }
        assert {event.target_netid for event in ads_server.events} == {
            "10.0.0.5.1.1"
        }


class TestClose:
    """Tests for the release of a session."""

    async def test_close_deletes_every_handle(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.flag", "MAIN.a"])
        await ads_input.connect()
        await ads_input.close()
        assert ads_server.deleted_handles == [0x1001, 0x1002]
        assert ads_server.notification_handles == {}
        assert ads_input.state is SessionState.CLOSED

    async def test_close_is_idempotent(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input()
        await ads_input.close()
        await ads_input.connect()
        await ads_input.close()
        await ads_input.close()
        assert ads_server.deleted_handles == [0x1001]

    async def test_close_despite_failed_deletion(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.flag", "MAIN.a"])
        await ads_input.connect()
        ads_server.delete_errors[0x1001] = ErrorCode.ADSERR_DEVICE_ERROR
        await ads_input.close()
        assert ads_server.deleted_handles == [0x1001, 0x1002]
        assert ads_input.state is SessionState.CLOSED

    async def test_close_while_reading(self, make_input: MakeInput):
        ads_input = make_input(soft_timeout=5.0)
        await ads_input.connect()
        reading = asyncio.create_task(ads_input.read_batch())
        await asyncio.sleep(0.05)
        await ads_input.close()
        with pytest.raises(Cancelled):
            await asyncio.wait_for(reading, timeout=1)

    async def test_close_with_a_full_channel(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(symbols=["MAIN.a"])
        await ads_input.connect()
        for value in range(3):
            await ads_server.notify_value("MAIN.a", struct.pack("<i", value))
        await asyncio.sleep(0.05)
        await asyncio.wait_for(ads_input.close(), timeout=2)
        assert ads_server.deleted_handles == [0x1001]

    async def test_read_after_close(self, make_input: MakeInput):
        ads_input = make_input()
        await ads_input.connect()
        await ads_input.close()
        with pytest.raises(NotConnected):
            await ads_input.read_batch()


class TestConnectionLoss:
    """Tests for the behaviour of an input whose connection is dropped."""

    async def test_drop_then_reconnect(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(soft_timeout=5.0, symbols=["MAIN.flag"])
        await ads_input.connect()
        reading = asyncio.create_task(ads_input.read_batch())
        await asyncio.sleep(0.05)
        await ads_server.drop_connections()

        with pytest.raises(TransportClosed):
            await asyncio.wait_for(reading, timeout=1)
        assert ads_input.state is SessionState.CLOSED
        with pytest.raises(NotConnected):
            await ads_input.read_batch()

        await ads_input.connect()
        assert ads_input.state is SessionState.CONNECTED
        assert ads_server.added_handles == [0x1001, 0x1002]
        assert ads_server.deleted_handles == []

        await ads_server.notify_value("MAIN.flag", b"\x00", timestamp=FILETIME)
        batch, _ = await ads_input.read_batch()
        assert _bodies(batch) == [
            {"Variable": "MAIN.flag", "Value": False, "TimeStamp": UNIX_NS}
        ]

    async def test_drop_while_reading(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input(soft_timeout=5.0)
        await ads_input.connect()
        reading = asyncio.create_task(ads_input.read_batch())
        await asyncio.sleep(0.05)
        await ads_server.drop_connections()
        with pytest.raises(TransportClosed):
            await asyncio.wait_for(reading, timeout=1)

    async def test_close_after_drop(
        self, make_input: MakeInput, ads_server: ADSSimServer
    ):
        ads_input = make_input()
        await ads_input.connect()
        await ads_server.drop_connections()
        await asyncio.sleep(0.05)
        await ads_input.close()
        assert ads_input.state is SessionState.CLOSED
        assert ads_server.deleted_handles == []
