from __future__ import annotations

from collections.abc import Iterator

from .errors import AdsDeviceError, AdsStreamError, NotificationRegistrationFailed
from .logging import VerboseLogger, get_logger
from .messages import (
    AdsAddDeviceNotificationRequest,
    AdsAddDeviceNotificationResponse,
    AdsDeleteDeviceNotificationRequest,
)
from .symbols import SymbolBinding
from .transport import AmsTransport

logger = get_logger(__name__)


class SubscriptionRegistry:
    """
    Own the device notifications registered with the PLC for one connection.
    The registry maps each notification handle assigned by the PLC to the symbol
    binding it was registered for, and is the only place where handles are
    created and released.
    """

    def __init__(self, transport: AmsTransport, log: VerboseLogger | None = None):
        self._transport = transport
        self._bindings: dict[int, SymbolBinding] = {}
        self.log = log or logger

    def __len__(self) -> int:
        return len(self._bindings)

    def __contains__(self, handle: object) -> bool:
        return handle in self._bindings

    def __iter__(self) -> Iterator[SymbolBinding]:
        return iter(list(self._bindings.values()))

    @property
    def handles(self) -> list[int]:
        """The notification handles currently registered, in registration order."""
        return list(self._bindings)

    def lookup(self, handle: int) -> SymbolBinding | None:
        """
        Get the symbol binding a notification handle was registered for.

        :param handle: the notification handle

        :returns: the symbol binding, or None for an unknown handle
        """
        return self._bindings.get(handle)

    async def register(
        self,
        binding: SymbolBinding,
        cycle_time_ms: int,
        max_delay_ms: int,
    ) -> int:
        """
        Subscribe to value changes of a symbol.
        A binding which is already subscribed has its previous handle released first.

        :param binding: the symbol binding to subscribe to
        :param cycle_time_ms: period in milliseconds at which the PLC checks \
            whether the value changed
        :param max_delay_ms: maximum time in milliseconds the PLC may delay \
            the notification of a change

        :returns: the notification handle assigned by the PLC

        :raises NotificationRegistrationFailed: if the PLC refuses the subscription
        :raises TransportClosed: if the connection is or gets closed
        :raises RequestTimeout: if the PLC doesn't answer in time
        """
        if binding.handle is not None:
            await self.release(binding)

        request = AdsAddDeviceNotificationRequest.on_change(
            index_group=binding.index_group,
            index_offset=binding.index_offset,
            size=binding.size,
            max_delay_ms=max_delay_ms,
            cycle_time_ms=cycle_time_ms,
        )
        try:
            response = await self._transport.request(request)
        except AdsDeviceError as err:
            raise NotificationRegistrationFailed(binding.name, str(err)) from err
        assert isinstance(response, AdsAddDeviceNotificationResponse)

        handle = int(response.handle)
        if handle in self._bindings:
            raise NotificationRegistrationFailed(
                binding.name,
                f"handle {handle:#x} is already assigned to "
                + f"'{self._bindings[handle].name}'",
            )
        binding.handle = handle
        self._bindings[handle] = binding
        self.log.debug(
            f"Notification subscription for {binding.name} "
            + f"completed with handle {handle:#x}."
        )
        return handle

    async def release(self, binding: SymbolBinding) -> None:
        """
        Remove the notification subscription of a symbol from the PLC.
        The handle is forgotten even if the PLC request fails.

        :param binding: the subscribed symbol binding

        :raises KeyError: if the binding has no active subscription
        :raises AdsStreamError: if the PLC request fails
        """
        handle = binding.handle
        if handle is None or handle not in self._bindings:
            raise KeyError(
                f"{binding.name} notifications are not registered as an active "
                + "ADS subscription."
            )
        try:
            await self._transport.request(
                AdsDeleteDeviceNotificationRequest(handle=handle)
            )
            self.log.debug(
                f"Deleted notification handle {handle:#x} for symbol {binding.name}"
            )
        finally:
            del self._bindings[handle]
            binding.handle = None

    async def release_all(self) -> int:
        """
        Remove every notification subscription from the PLC.
        A failed deletion is logged and doesn't prevent the others from being deleted.

        :returns: the number of subscriptions which failed to be deleted
        """
        bindings = list(self._bindings.values())
        err_counter = 0
        for binding in bindings:
            try:
                await self.release(binding)
            except AdsStreamError as err:
                err_counter += 1
                self.log.error(
                    f"Notification deletion for {binding.name} failed -> {err}."
                )

        if err_counter:
            self.log.error(
                f"Failed to unsubscribe notifications for {err_counter} "
                + f"symbols out of {len(bindings)}."
            )
        elif bindings:
            self.log.info(
                f"Successfully deleted client subscription to {len(bindings)} "
                + "symbol notifications."
            )
        return err_counter

    def forget_all(self) -> None:
        """
        Drop every handle without contacting the PLC, which releases the
        notifications of a connection by itself once the connection is lost.
        """
        for binding in self._bindings.values():
            binding.handle = None
        self._bindings.clear()
