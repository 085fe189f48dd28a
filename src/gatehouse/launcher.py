"""Remote desktop client detection and launch."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from collections.abc import Callable

import structlog

from gatehouse.models import RemoteClient

logger = structlog.get_logger(component="launcher")

# Each table lists the platform's preferred client first.
WINDOWS_CLIENTS: tuple[tuple[str, str, str], ...] = (
    ("Royal TS", r"C:\Program Files\Royal TS V6\RoyalTS.exe", "third_party"),
    (
        "Remote Desktop Manager",
        r"C:\Program Files\Devolutions\Remote Desktop Manager\RemoteDesktopManager.exe",
        "third_party",
    ),
    ("Jump Desktop", r"C:\Program Files\Jump Desktop\JumpDesktop.exe", "third_party"),
)

MACOS_CLIENTS: tuple[tuple[str, str, str], ...] = (
    (
        "Microsoft Remote Desktop",
        "/Applications/Microsoft Remote Desktop.app/Contents/MacOS/Microsoft Remote Desktop",
        "microsoft",
    ),
    ("Royal TSX", "/Applications/Royal TSX.app/Contents/MacOS/Royal TSX", "third_party"),
    ("Jump Desktop", "/Applications/Jump Desktop.app/Contents/MacOS/Jump Desktop", "third_party"),
    (
        "Screens for Organizations",
        "/Applications/Screens for Organizations.app/Contents/MacOS/Screens for Organizations",
        "third_party",
    ),
)

LINUX_CLIENTS: tuple[tuple[str, str], ...] = (
    ("xfreerdp", "freerdp"),
    ("rdesktop", "rdesktop"),
    ("remmina", "remmina"),
    ("vinagre", "vinagre"),
    ("tsclient", "tsclient"),
)


def current_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    return "unknown"


class SystemLauncher:
    """Finds installed RDP clients and starts them against a local proxy.

    Args:
        fullscreen: Ask the client for a fullscreen window
        resolution: "auto" or WIDTHxHEIGHT
        platform: Override platform detection ("windows", "macos", "linux")
        which: Executable lookup, shutil.which by default
        exists: File existence check, os.path.exists by default
    """

    protocols = frozenset({"rdp"})

    def __init__(
        self,
        fullscreen: bool = False,
        resolution: str = "auto",
        platform: str | None = None,
        which: Callable[[str], str | None] = shutil.which,
        exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        self.fullscreen = fullscreen
        self.resolution = resolution
        self.platform = platform or current_platform()
        self._which = which
        self._exists = exists
        self._children: set[asyncio.Task] = set()

    def supports(self, protocol: str) -> bool:
        return protocol.lower() in self.protocols

    async def detect(self) -> list[RemoteClient]:
        if self.platform == "windows":
            clients = self._detect_windows()
        elif self.platform == "macos":
            clients = self._detect_paths(MACOS_CLIENTS)
        elif self.platform == "linux":
            clients = self._detect_linux()
        else:
            logger.warning("Unsupported platform for client detection", platform=self.platform)
            clients = []
        logger.info(
            "Detected remote clients",
            platform=self.platform,
            clients=[c.name for c in clients],
        )
        return clients

    def _detect_windows(self) -> list[RemoteClient]:
        clients = []
        mstsc = self._which("mstsc")
        if mstsc:
            clients.append(
                RemoteClient(
                    name="Microsoft Terminal Services Client",
                    executable_path=mstsc,
                    client_type="builtin",
                    platform="windows",
                )
            )
        return clients + self._detect_paths(WINDOWS_CLIENTS)

    def _detect_paths(self, table: tuple[tuple[str, str, str], ...]) -> list[RemoteClient]:
        return [
            RemoteClient(name=name, executable_path=path, client_type=kind, platform=self.platform)
            for name, path, kind in table
            if self._exists(path)
        ]

    def _detect_linux(self) -> list[RemoteClient]:
        clients = []
        for command, kind in LINUX_CLIENTS:
            path = self._which(command)
            if path:
                clients.append(
                    RemoteClient(name=command, executable_path=path, client_type=kind, platform="linux")
                )
        return clients

    def _size(self) -> tuple[str, str] | None:
        if self.resolution == "auto":
            return None
        width, _, height = self.resolution.partition("x")
        return width, height

    def build_argv(self, client: RemoteClient, address: str, port: int) -> list[str]:
        """Command line for `client` pointed at address:port."""
        endpoint = f"{address}:{port}"
        argv = [client.executable_path]
        size = self._size()

        if client.client_type == "builtin":
            argv.append(endpoint)
            if self.fullscreen:
                argv.append("/f")
            if size:
                argv.extend(["/w", size[0], "/h", size[1]])
        elif client.name == "Microsoft Remote Desktop":
            argv.extend(["rdp://", endpoint])
        elif client.name == "xfreerdp":
            argv.append(f"/v:{endpoint}")
            if self.fullscreen:
                argv.append("/f")
            if size:
                argv.append(f"/size:{self.resolution}")
        elif client.name == "rdesktop":
            argv.append(endpoint)
            if self.fullscreen:
                argv.append("-f")
            if size:
                argv.extend(["-g", self.resolution])
        elif client.name == "remmina":
            argv.append(f"rdp://{endpoint}")
        else:
            argv.append(endpoint)
        return argv

    async def launch(self, client: RemoteClient, address: str, port: int, target_name: str) -> None:
        """Start the client detached; it outlives this call.

        Raises:
            OSError: The client executable could not be started
        """
        argv = self.build_argv(client, address, port)
        logger.info("Launching remote client", client=client.name, target=target_name, argv=argv)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=self.platform != "windows",
        )
        task = asyncio.create_task(self._reap(client, proc))
        self._children.add(task)
        task.add_done_callback(self._children.discard)

    async def _reap(self, client: RemoteClient, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        logger.info("Remote client exited", client=client.name, exit_code=code)
