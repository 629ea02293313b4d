"""Clipboard writes and auto-typing into the focused window."""

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path

from dictation_engine.config import InjectorConfig

logger = logging.getLogger(__name__)


class InjectionError(Exception):
    """Base exception for paste failures."""

    pass


class CommandNotFoundError(InjectionError):
    """Required binary (wtype/ydotool/xdotool/clipboard helper) unavailable."""

    pass


class TimeoutError(InjectionError):
    """Subprocess execution timed out."""

    pass


CLIPBOARD_BINARIES = {
    "wtype": "wl-copy",
    "ydotool": "wl-copy",
    "xdotool": "xclip",
}


class Injector:
    """Copies final text to the clipboard and optionally types it.

    Supports wtype (default), ydotool, or xdotool for typing; wl-copy or xclip
    for the clipboard. Subprocesses run in the default executor.
    """

    def __init__(self, config: InjectorConfig):
        """Initialize injector and validate binary availability.

        Args:
            config: InjectorConfig instance

        Raises:
            CommandNotFoundError: If a required binary is unavailable
        """
        self.config = config
        self.backend = config.backend
        self.auto_paste = config.auto_paste
        self.typing_delay = config.typing_delay
        self.timeout = config.timeout
        self.dry_run = config.dry_run
        self._binary_cache: dict[str, Path] = {}

        if self.backend not in CLIPBOARD_BINARIES:
            raise ValueError(f"Unknown backend: {self.backend}")
        self.clipboard_binary = CLIPBOARD_BINARIES[self.backend]

        logger.info(
            "Injector initialized: backend=%s, clipboard=%s, auto_paste=%s, "
            "typing_delay=%dms, timeout=%.1fs, dry_run=%s",
            self.backend,
            self.clipboard_binary,
            self.auto_paste,
            self.typing_delay,
            self.timeout,
            self.dry_run,
        )

        if not self.dry_run:
            self._validate_binary(self.clipboard_binary)
            self._validate_binary(self.backend)

    def _validate_binary(self, binary_name: str) -> Path:
        """Validate that binary exists and is executable.

        Raises:
            CommandNotFoundError: If binary not found or not executable
        """
        if binary_name in self._binary_cache:
            return self._binary_cache[binary_name]

        binary_path = shutil.which(binary_name)
        if not binary_path:
            raise CommandNotFoundError(
                f"Binary '{binary_name}' not found in PATH. "
                f"Install it to enable clipboard and paste support."
            )

        resolved = Path(binary_path)
        self._binary_cache[binary_name] = resolved
        logger.debug("Validated binary: %s -> %s", binary_name, resolved)
        return resolved

    def _binary(self, name: str) -> str:
        if self.dry_run:
            return name
        return str(self._validate_binary(name))

    def _resolve_clipboard_command(self) -> list[str]:
        cmd = [self._binary(self.clipboard_binary)]
        if self.clipboard_binary == "xclip":
            cmd.extend(["-selection", "clipboard"])
        return cmd

    def _resolve_type_command(self, text: str) -> list[str]:
        """Build the typing command for the configured backend."""
        if self.backend == "wtype":
            cmd = [self._binary("wtype")]
            if self.typing_delay > 0:
                cmd.extend(["-d", str(self.typing_delay)])
            cmd.append(text)
            return cmd

        cmd = [self._binary(self.backend), "type"]
        if self.typing_delay > 0:
            cmd.extend(["--delay", str(self.typing_delay)])
        if self.backend == "xdotool":
            cmd.append("--clearmodifiers")
        cmd.append(text)
        return cmd

    def _effective_timeout(self, text_length: int) -> float:
        """Base timeout stretched to cover the expected typing duration."""
        typing_seconds = max(self.typing_delay, 0) / 1000.0 * max(text_length, 0)
        return max(self.timeout, typing_seconds + 2.0)

    async def paste_text(self, text: str, auto_paste: bool | None = None) -> None:
        """Write text to the clipboard, then type it when auto-paste is on.

        Args:
            text: Final normalized text
            auto_paste: Overrides the configured auto-paste preference

        Raises:
            CommandNotFoundError: If binary is unavailable
            TimeoutError: If subprocess exceeds its timeout
            InjectionError: If subprocess exits with non-zero code
        """
        if not text:
            return

        should_type = self.auto_paste if auto_paste is None else auto_paste
        clipboard_cmd = self._resolve_clipboard_command()
        type_cmd = self._resolve_type_command(text) if should_type else None

        if self.dry_run:
            logger.info("[DRY-RUN] Would copy %d chars via: %s", len(text), " ".join(clipboard_cmd))
            if type_cmd:
                logger.info("[DRY-RUN] Would execute: %s", " ".join(type_cmd))
            return

        logger.info("Copying text to clipboard (%d chars)", len(text))
        await self._run(clipboard_cmd, self.clipboard_binary, self.timeout, stdin=text.encode("utf-8"))

        if type_cmd:
            await self._run(type_cmd, self.backend, self._effective_timeout(len(text)))
            logger.debug("Auto-paste via %s succeeded", self.backend)

    async def _run(
        self,
        cmd: list[str],
        label: str,
        timeout: float,
        stdin: bytes | None = None,
    ) -> None:
        """Execute a subprocess in the executor with a timeout."""
        logger.debug("Executing %s: %s", label, " ".join(cmd))
        loop = asyncio.get_running_loop()

        def _run_subprocess():
            return subprocess.run(
                cmd,
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, _run_subprocess),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"{label} timed out after {timeout}s") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace") if result.stderr else ""
            raise InjectionError(
                f"{label} failed with exit code {result.returncode}. stderr: {stderr}"
            )
