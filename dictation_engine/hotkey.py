"""Toggle triggers: evdev hotkeys and standard input."""

import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from evdev import InputDevice, ecodes

from dictation_engine.config import InputConfig

logger = logging.getLogger(__name__)


@dataclass
class TriggerEvent:
    """A request to toggle dictation.

    ``timestamp`` is the monotonic time at which the press was read.
    """

    source: str
    timestamp: float


class HotkeyListener:
    """Emits a TriggerEvent for every press of the configured key(s).

    Releases and auto-repeat are ignored. Several devices can be monitored at
    once; duplicate presses are left to the session's toggle debounce.
    """

    def __init__(self, device_path: str | Sequence[str], key_code: str | Sequence[str]):
        """Initialize hotkey listener.

        Args:
            device_path: Path(s) to /dev/input/by-id/* device(s)
            key_code: Symbolic key name(s) (e.g., KEY_F9, BTN_EXTRA)

        Raises:
            ValueError: If no device or key is given, or a key name is unknown
        """
        self.device_paths = (device_path,) if isinstance(device_path, str) else tuple(device_path)
        if not self.device_paths:
            raise ValueError("At least one device path must be provided")

        key_codes = (key_code,) if isinstance(key_code, str) else tuple(key_code)
        if not key_codes:
            raise ValueError("At least one key code must be provided")

        self.key_values: dict[int, str] = {}
        invalid = []
        for name in key_codes:
            value = getattr(ecodes, name, None)
            if value is None:
                invalid.append(name)
            else:
                self.key_values[value] = name
        if invalid:
            raise ValueError(f"Invalid key code(s): {', '.join(invalid)}")

        self._devices: list[InputDevice] = []
        logger.info(
            "HotkeyListener initialized for %d device(s) with key codes: %s",
            len(self.device_paths),
            ", ".join(key_codes),
        )

    @classmethod
    def from_config(cls, config: InputConfig) -> "HotkeyListener":
        return cls(device_path=config.devices, key_code=config.key_codes)

    async def __aenter__(self) -> "HotkeyListener":
        """Open every configured device.

        Raises:
            RuntimeError: If any device cannot be opened
        """
        self._devices = []
        for dev_path in self.device_paths:
            try:
                self._devices.append(InputDevice(dev_path))
                logger.debug("Opened input device: %s", dev_path)
            except (OSError, PermissionError) as e:
                self._close_devices()
                raise RuntimeError(f"Cannot open input device {dev_path}: {e}") from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self._close_devices()

    def _close_devices(self) -> None:
        for device in self._devices:
            try:
                device.close()
                logger.debug("Closed input device: %s", device.path)
            except Exception as e:
                logger.warning("Error closing device %s: %s", device.path, e)
        self._devices = []

    async def _read_presses(self, device: InputDevice, queue: asyncio.Queue) -> None:
        """Forward key presses from one device into the shared queue."""
        try:
            async for event in device.async_read_loop():
                # event.value: 0 = release, 1 = press, 2 = repeat
                if event.type == ecodes.EV_KEY and event.value == 1 and event.code in self.key_values:
                    trigger = TriggerEvent(source=self.key_values[event.code], timestamp=time.monotonic())
                    await queue.put(("press", trigger))
        except (OSError, PermissionError) as e:
            logger.error("Device access failed for %s: %s", device.path, e)
            await queue.put(("error", RuntimeError(f"Device access failed for {device.path}: {e}")))
        finally:
            await queue.put(("done", None))

    async def listen(self) -> AsyncIterator[TriggerEvent]:
        """Yield a TriggerEvent per key press across all devices.

        Raises:
            RuntimeError: If the listener is not open or a device fails
        """
        if not self._devices:
            raise RuntimeError("No devices opened. Use HotkeyListener as async context manager.")

        queue: asyncio.Queue = asyncio.Queue()
        readers = [asyncio.create_task(self._read_presses(dev, queue)) for dev in self._devices]
        active = len(readers)

        try:
            while active > 0:
                kind, payload = await queue.get()
                if kind == "press":
                    logger.debug("Hotkey pressed: %s", payload.source)
                    yield payload
                elif kind == "done":
                    active -= 1
                elif kind == "error":
                    raise payload
        finally:
            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)


async def stdin_triggers(stream=None) -> AsyncIterator[TriggerEvent]:
    """Yield a TriggerEvent for every line read from standard input."""
    stream = stream or sys.stdin
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, stream.readline)
        if not line:
            return
        yield TriggerEvent(source="stdin", timestamp=time.monotonic())
