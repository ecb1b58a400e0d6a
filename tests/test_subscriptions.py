import struct

import pytest

from ads_sim import ADSSimServer, CommandId, ErrorCode
from ads_stream._types import AmsNetId
from ads_stream.errors import NotificationRegistrationFailed, RequestTimeout
from ads_stream.subscriptions import SubscriptionRegistry
from ads_stream.symbols import SymbolBinding, SymbolResolver
from ads_stream.transport import AmsTransport


@pytest.fixture
def registry(transport: AmsTransport) -> SubscriptionRegistry:
    return SubscriptionRegistry(transport)


async def _bindings(transport: AmsTransport, *names: str) -> list[SymbolBinding]:
    return await SymbolResolver(transport).resolve_all(names)


async def test_register_assigns_handle(
    transport: AmsTransport, registry: SubscriptionRegistry
):
    (binding,) = await _bindings(transport, "MAIN.flag")
    handle = await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    assert handle == 0x1001
    assert binding.handle == 0x1001
    assert registry.lookup(0x1001) is binding
    assert registry.lookup(0x2002) is None
    assert 0x1001 in registry
    assert len(registry) == 1


async def test_register_request_parameters(
    transport: AmsTransport, registry: SubscriptionRegistry, ads_server: ADSSimServer
):
    (binding,) = await _bindings(transport, "MAIN.counter")
    await registry.register(binding, cycle_time_ms=100, max_delay_ms=20)
    (event,) = ads_server.commands(CommandId.ADSSRVID_ADDDEVICENOTE)
    assert struct.unpack("<IIIIII", event.payload[:24]) == (
        0x4020,
        12,
        4,
        4,
        200_000,
        1_000_000,
    )


async def test_handles_in_registration_order(
    transport: AmsTransport, registry: SubscriptionRegistry
):
    for binding in await _bindings(transport, "MAIN.flag", "MAIN.a", "MAIN.a"):
        await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    assert registry.handles == [0x1001, 0x1002, 0x1003]
    assert [b.name for b in registry] == ["MAIN.flag", "MAIN.a", "MAIN.a"]


async def test_register_again_releases_previous_handle(
    transport: AmsTransport, registry: SubscriptionRegistry, ads_server: ADSSimServer
):
    (binding,) = await _bindings(transport, "MAIN.a")
    await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    assert ads_server.deleted_handles == [0x1001]
    assert registry.handles == [0x1002]


async def test_register_failure(
    transport: AmsTransport, registry: SubscriptionRegistry, ads_server: ADSSimServer
):
    ads_server.add_errors["MAIN.a"] = ErrorCode.ADSERR_DEVICE_NOTREADY
    (binding,) = await _bindings(transport, "MAIN.a")
    with pytest.raises(NotificationRegistrationFailed) as exc_info:
        await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    assert exc_info.value.name == "MAIN.a"
    assert binding.handle is None
    assert len(registry) == 0


async def test_register_timeout_is_not_a_refusal(
    transport: AmsTransport, registry: SubscriptionRegistry, ads_server: ADSSimServer
):
    ads_server.silent_commands.add(CommandId.ADSSRVID_ADDDEVICENOTE)
    transport.timeout = 0.1
    (binding,) = await _bindings(transport, "MAIN.a")
    with pytest.raises(RequestTimeout):
        await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    assert binding.handle is None
    assert len(registry) == 0


async def test_duplicate_handle_is_rejected(ads_server: ADSSimServer):
    server = ADSSimServer(symbols=ads_server.symbols.values(), handles=[5, 5])
    await server.start()
    try:
        connection = await AmsTransport.connected_to(
            "127.0.0.1",
            AmsNetId.from_string("10.0.0.5.1.1"),
            851,
            ads_port=server.port,
            timeout=1.0,
        )
        registry = SubscriptionRegistry(connection)
        first, second = await _bindings(connection, "MAIN.a", ".gb")
        await registry.register(first, cycle_time_ms=100, max_delay_ms=0)
        with pytest.raises(NotificationRegistrationFailed):
            await registry.register(second, cycle_time_ms=100, max_delay_ms=0)
        assert registry.handles == [5]
        assert second.handle is None
        await connection.close()
    finally:
        await server.stop()


async def test_release(
    transport: AmsTransport, registry: SubscriptionRegistry, ads_server: ADSSimServer
):
    (binding,) = await _bindings(transport, "MAIN.a")
    await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    await registry.release(binding)
    assert ads_server.deleted_handles == [0x1001]
    assert binding.handle is None
    assert len(registry) == 0


async def test_release_unregistered_binding(
    transport: AmsTransport, registry: SubscriptionRegistry
):
    (binding,) = await _bindings(transport, "MAIN.a")
    with pytest.raises(KeyError):
        await registry.release(binding)


async def test_release_all_is_best_effort(
    transport: AmsTransport, registry: SubscriptionRegistry, ads_server: ADSSimServer
):
    for binding in await _bindings(transport, "MAIN.flag", "MAIN.a", ".gb"):
        await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    ads_server.delete_errors[0x1002] = ErrorCode.ADSERR_DEVICE_ERROR

    assert await registry.release_all() == 1
    assert ads_server.deleted_handles == [0x1001, 0x1002, 0x1003]
    assert len(registry) == 0


async def test_forget_all_sends_nothing(
    transport: AmsTransport, registry: SubscriptionRegistry, ads_server: ADSSimServer
):
    bindings = await _bindings(transport, "MAIN.flag", "MAIN.a")
    for binding in bindings:
        await registry.register(binding, cycle_time_ms=100, max_delay_ms=0)
    registry.forget_all()
    assert len(registry) == 0
    assert all(binding.handle is None for binding in bindings)
    assert ads_server.deleted_handles == []
