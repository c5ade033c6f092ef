"""Connection lifecycle for the AC Infinity controller.

One ``ConnectionManager`` supervises the link to a single peripheral for
the lifetime of the process. Each cycle walks the same phases:

    IDLE -> SCANNING -> CONNECTING -> DISCOVERING_SERVICES -> SUBSCRIBING
         -> MONITORING -> DISCONNECTING -> IDLE

A scan that times out returns straight to IDLE. Any failure along the way
is logged and routed to DISCONNECTING, which releases whatever the cycle
acquired. After every cycle the supervisor waits the reconnect delay and
starts over. Only a stop request (``stop()``) or cancellation of the
supervising task ends the loop. Shutdown always finishes with
DISCONNECTING -> STOPPED, whichever phase it interrupted.

Every wait (advertisement, link setup, enumeration, liveness poll,
reconnect delay) races the stop event, so shutdown never waits out a
timer.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .adapter import (
    Advertisement,
    BleAdapter,
    CharacteristicInfo,
    DeviceHandle,
    NotificationCallback,
    ScanHandle,
    Subscription,
)
from .telemetry import TelemetryCache

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_NAME = "ACI-E"
DEFAULT_SCAN_TIMEOUT = 5.0
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_TEARDOWN_TIMEOUT = 5.0

T = TypeVar("T")


class ConnectionState(enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering_services"
    SUBSCRIBING = "subscribing"
    MONITORING = "monitoring"
    DISCONNECTING = "disconnecting"
    STOPPED = "stopped"


StateListener = Callable[[ConnectionState, ConnectionState], None]


class NotifyCharacteristicNotFound(RuntimeError):
    """The connected device exposes no characteristic with notify support."""


class _StopRequested(Exception):
    """Raised inside a cycle when the stop event interrupts a wait."""


class ConnectionManager:
    """Scan, connect, subscribe and monitor, forever.

    Args:
        adapter: BLE stack boundary.
        on_notification: Receives each notification payload. Called from
            whatever context the adapter delivers in.
        cache: Telemetry cache; the RSSI slot is written on every match.
        device_name: Exact advertisement name to look for.
        scan_timeout: Seconds to wait for a matching advertisement.
        reconnect_delay: Seconds between cycles.
        poll_interval: Seconds between link liveness checks.
        teardown_timeout: Upper bound for each best-effort teardown call.
        state_listener: Optional ``(old, new)`` callback on every state
            change, for diagnostics.

    Attributes:
        cycles: Connection cycles started so far, including ones that
            found no device.
    """

    def __init__(
        self,
        adapter: BleAdapter,
        on_notification: NotificationCallback,
        cache: TelemetryCache,
        *,
        device_name: str = DEFAULT_DEVICE_NAME,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
        state_listener: Optional[StateListener] = None,
    ) -> None:
        self._adapter = adapter
        self._on_notification = on_notification
        self._cache = cache
        self._device_name = device_name
        self._scan_timeout = scan_timeout
        self._reconnect_delay = reconnect_delay
        self._poll_interval = poll_interval
        self._teardown_timeout = teardown_timeout
        self._state_listener = state_listener

        self._state = ConnectionState.IDLE
        self._stop_event = asyncio.Event()
        self._cancelled = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Per-cycle resources, released by _teardown.
        self._device: Optional[DeviceHandle] = None
        self._link: Any = None
        self._notify_characteristic: Optional[CharacteristicInfo] = None
        self._subscription: Optional[Subscription] = None

        self._cycles = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def device(self) -> Optional[DeviceHandle]:
        return self._device

    @property
    def notify_characteristic(self) -> Optional[CharacteristicInfo]:
        return self._notify_characteristic

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request cooperative shutdown. Safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._stop_event.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._stop_event.set()
        else:
            loop.call_soon_threadsafe(self._stop_event.set)

    async def run(self) -> None:
        """Supervision loop. Returns once a stop was requested."""
        self._loop = asyncio.get_running_loop()
        logger.info("Bluetooth supervision started for device '%s'", self._device_name)
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_cycle()
                except Exception:
                    logger.exception("Error in Bluetooth connection cycle")

                if await self._wait_before_reconnect():
                    break
        finally:
            # No-op if the last teardown already left the manager in DISCONNECTING.
            self._set_state(ConnectionState.DISCONNECTING)
            self._set_state(ConnectionState.STOPPED)
            logger.info("Bluetooth supervision stopped")

    async def run_cycle(self) -> None:
        """One scan-to-disconnect pass. Recoverable errors are logged here."""
        self._cycles += 1
        try:
            adv = await self._discover()
            if adv is None:
                if not self._stop_event.is_set():
                    logger.warning("AC Infinity device not found, will retry")
                return

            self._device = DeviceHandle.from_advertisement(adv)
            logger.info(
                "Found AC Infinity device: %s (%s)",
                self._device.name,
                self._device.device_id,
            )
            self._cache.rssi.write(adv.rssi)

            await self._connect(self._device)
            characteristic = await self._find_notify_characteristic()
            if characteristic is None:
                raise NotifyCharacteristicNotFound(
                    f"No notify characteristic found on {self._device.device_id}"
                )
            await self._subscribe(characteristic)
            await self._monitor()
        except _StopRequested:
            logger.debug("Connection cycle interrupted by shutdown")
        except asyncio.CancelledError:
            self._cancelled = True
            raise
        except Exception as e:
            logger.error(
                "Connection cycle failed in %s: %s: %s",
                self._state.value,
                type(e).__name__,
                e,
            )
            logger.debug("Connection cycle failure details", exc_info=True)
        finally:
            await self._teardown()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _discover(self) -> Optional[Advertisement]:
        self._set_state(ConnectionState.SCANNING)
        logger.info("Scanning for AC Infinity device '%s'", self._device_name)

        loop = asyncio.get_running_loop()
        found: asyncio.Future[Advertisement] = loop.create_future()

        def resolve(adv: Advertisement) -> None:
            # First match wins; later advertisements never replace it.
            if not found.done():
                found.set_result(adv)

        def on_advertisement(adv: Advertisement) -> None:
            if adv.name != self._device_name:
                return
            logger.debug(
                "Found matching device: %s (%s), RSSI: %d dBm",
                adv.name,
                adv.device_id,
                adv.rssi,
            )
            if not loop.is_closed():
                loop.call_soon_threadsafe(resolve, adv)

        handle = await self._adapter.start_scan(on_advertisement, accept_all=True)
        started = loop.time()
        try:
            adv = await self._interruptible(found, timeout=self._scan_timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            await self._release_scan(handle)

        logger.debug("Scan completed in %.2fs", loop.time() - started)
        return adv

    async def _release_scan(self, handle: ScanHandle) -> None:
        handle.detach()
        try:
            await asyncio.wait_for(
                self._adapter.stop_scan(handle), self._teardown_timeout
            )
        except Exception:
            logger.warning("Failed to stop BLE scan", exc_info=True)

    async def _connect(self, device: DeviceHandle) -> None:
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to %s", device.device_id)
        self._link = await self._interruptible(self._adapter.open_link(device))
        logger.info("Connected to device successfully")

    async def _find_notify_characteristic(self) -> Optional[CharacteristicInfo]:
        self._set_state(ConnectionState.DISCOVERING_SERVICES)
        services = await self._interruptible(self._adapter.list_services(self._link))
        for service in services:
            characteristics = await self._interruptible(
                self._adapter.list_characteristics(self._link, service)
            )
            for characteristic in characteristics:
                if characteristic.supports_notify:
                    logger.debug(
                        "Found notify characteristic: %s (service %s)",
                        characteristic.uuid,
                        service.uuid,
                    )
                    return characteristic
        return None

    async def _subscribe(self, characteristic: CharacteristicInfo) -> None:
        self._set_state(ConnectionState.SUBSCRIBING)
        self._notify_characteristic = characteristic
        self._subscription = await self._adapter.subscribe(
            self._link, characteristic, self._on_notification
        )
        logger.info("Subscribed to notifications")

    async def _monitor(self) -> None:
        self._set_state(ConnectionState.MONITORING)
        while not self._stop_event.is_set():
            if not self._adapter.is_link_connected(self._link):
                logger.warning("Device disconnected, will attempt to reconnect")
                return
            if await self._wait_for_stop(self._poll_interval):
                return

    def _shutting_down(self) -> bool:
        return self._stop_event.is_set() or self._cancelled

    async def _teardown(self) -> None:
        """Release the cycle's resources.

        Ends in IDLE, or stays in DISCONNECTING when shutting down so the
        supervisor can move on to STOPPED.
        """
        if self._device is None and self._link is None and self._subscription is None:
            if self._shutting_down():
                self._set_state(ConnectionState.DISCONNECTING)
            else:
                self._set_state(ConnectionState.IDLE)
            return

        self._set_state(ConnectionState.DISCONNECTING)
        try:
            subscription = self._subscription
            if subscription is not None:
                subscription.detach()
                try:
                    stopped = await asyncio.wait_for(
                        self._adapter.unsubscribe(self._link, subscription),
                        self._teardown_timeout,
                    )
                except Exception:
                    logger.warning("Failed to stop notifications", exc_info=True)
                else:
                    if stopped:
                        logger.info("Unsubscribed from notifications")
                    else:
                        logger.debug(
                            "Stopping notifications not supported on this platform, skipping"
                        )

            if self._link is not None:
                try:
                    await asyncio.wait_for(
                        self._adapter.close_link(self._link), self._teardown_timeout
                    )
                    logger.info("Disconnected from device")
                except Exception:
                    logger.warning("Error during disconnect", exc_info=True)
        finally:
            self._subscription = None
            self._notify_characteristic = None
            self._link = None
            self._device = None
            if not self._shutting_down():
                self._set_state(ConnectionState.IDLE)

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def _wait_before_reconnect(self) -> bool:
        """Sleep the reconnect delay. Returns True if a stop was requested."""
        if self._stop_event.is_set():
            return True
        logger.info(
            "Waiting %.1fs before reconnection attempt", self._reconnect_delay
        )
        await self._wait_for_stop(self._reconnect_delay)
        return self._stop_event.is_set()

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Wait up to timeout seconds for a stop request."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _interruptible(
        self, aw: Awaitable[T], timeout: Optional[float] = None
    ) -> T:
        """Await aw unless the stop event fires first.

        Raises:
            _StopRequested: The stop event fired first; aw is cancelled.
            asyncio.TimeoutError: Neither finished within timeout.
        """
        task = asyncio.ensure_future(aw)
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, stop_waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task in done:
            return task.result()
        if stop_waiter in done:
            raise _StopRequested()
        raise asyncio.TimeoutError()

    def _set_state(self, state: ConnectionState) -> None:
        old = self._state
        if old is state:
            return
        self._state = state
        logger.debug("Connection state: %s -> %s", old.value, state.value)
        if self._state_listener is not None:
            try:
                self._state_listener(old, state)
            except Exception:
                logger.exception("State listener failed")
