#!/usr/bin/env python3
"""
aitotype overlay - floating status card for shortcut-triggered sessions.

Shows whether the current background session is listening or transcribing,
and disappears when the session ends.

Communicates with aitotype.py via Unix socket (length-prefixed JSON):
    {"type": "overlay-status", "status": "recording" | "transcribing"}
    {"type": "hide"}

Run it in a small terminal window (kept on top by your window manager):
    python3 aitotype_overlay.py
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import struct
import sys
from asyncio import CancelledError
from collections.abc import Callable, Mapping
from contextlib import suppress
from pathlib import Path
from typing import Any, NamedTuple

from rich.align import Align
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from aitotype import BackendError, Comm, Events, OverlayStatus, debug, errprint

# ── Paths ──────────────────────────────────────────────────────────────

DATA_DIR = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")) / "aitotype"
SOCKET_PATH = DATA_DIR / "overlay.sock"
PID_FILE = DATA_DIR / "overlay.pid"


# ── IPC Protocol ──────────────────────────────────────────────────────


class OverlayProtocol:
    """Length-prefixed JSON message protocol over Unix sockets."""

    HEADER = struct.Struct("!I")

    @classmethod
    def encode_message(cls, msg: Mapping[str, Any]) -> bytes:
        payload = json.dumps(dict(msg), default=str).encode("utf-8")
        return cls.HEADER.pack(len(payload)) + payload

    @classmethod
    def decode_messages(cls, buffer: bytes) -> tuple[list[dict], bytes]:
        messages = []
        offset = 0
        size = cls.HEADER.size
        while offset + size <= len(buffer):
            (length,) = cls.HEADER.unpack_from(buffer, offset)
            end = offset + size + length
            if end > len(buffer):
                break  # incomplete message
            try:
                msg = json.loads(buffer[offset + size : end].decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                msg = None
            if isinstance(msg, dict):
                messages.append(msg)
            else:
                debug("[OVERLAY] skipping malformed message")
            offset = end
        return messages, buffer[offset:]


# ── Presenter ─────────────────────────────────────────────────────────


class OverlayView(NamedTuple):
    visible: bool
    status: OverlayStatus
    label: str
    active: bool
    processing: bool


class OverlayPresenter:
    LABELS = {
        OverlayStatus.RECORDING: "Listening...",
        OverlayStatus.TRANSCRIBING: "Transcribing...",
    }

    def __init__(self, on_change: Callable[[OverlayView], None] | None = None):
        self.status = OverlayStatus.RECORDING
        self.visible = False
        self.on_change = on_change
        self._unlisten: Callable[[], None] | None = None

    @staticmethod
    def parse_status(payload: Any) -> OverlayStatus:
        raw = payload.get("status") if isinstance(payload, Mapping) else payload
        try:
            return OverlayStatus(raw)
        except ValueError:
            return OverlayStatus.RECORDING

    def attach(self, comm: Comm) -> None:
        self._unlisten = comm.listen(Events.OVERLAY_STATUS, self.on_status)

    def detach(self) -> None:
        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None

    def on_status(self, payload: Any) -> None:
        self.status = self.parse_status(payload)
        self.visible = True
        self._changed()

    def hide(self) -> None:
        self.visible = False
        self._changed()

    def handle_message(self, msg: Mapping[str, Any]) -> None:
        match msg.get("type"):
            case Events.OVERLAY_STATUS:
                self.on_status(msg)
            case "hide":
                self.hide()
            case other:
                debug(f"[OVERLAY] unknown message type {other!r}")

    @property
    def view(self) -> OverlayView:
        return OverlayView(
            visible=self.visible,
            status=self.status,
            label=self.LABELS[self.status],
            active=True,
            processing=self.status is OverlayStatus.TRANSCRIBING,
        )

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.view)


def render_card(view: OverlayView):
    if not view.visible:
        return Text("")
    if view.processing:
        label = Text.assemble(("◌ ", "bold yellow"), (view.label, "yellow"))
        border = "yellow"
    else:
        label = Text.assemble(("● ", "bold red"), (view.label, "red"))
        border = "red"
    return Panel(Align.center(label), border_style=border, width=28)


# ── Socket server / client ────────────────────────────────────────────


class OverlayServer:
    def __init__(self, presenter: OverlayPresenter, socket_path: Path = SOCKET_PATH):
        self.presenter = presenter
        self.socket_path = socket_path
        self._server: asyncio.AbstractServer | None = None

    async def start(self):
        self.socket_path.unlink(missing_ok=True)
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self._server = await asyncio.start_unix_server(self._handle_client, path=str(self.socket_path))

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        buffer = b""
        try:
            while data := await reader.read(4096):
                buffer += data
                messages, buffer = OverlayProtocol.decode_messages(buffer)
                for msg in messages:
                    self.presenter.handle_message(msg)
        except (ConnectionResetError, BrokenPipeError):
            pass
        finally:
            writer.close()
            # a session can't end without a client, so a lost client hides the card
            self.presenter.hide()

    async def close(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.socket_path.unlink(missing_ok=True)


class OverlayClient:
    """Sends overlay messages from the main process; a missing overlay is not an error."""

    def __init__(self, socket_path: Path = SOCKET_PATH):
        self.socket_path = socket_path
        self._writer: asyncio.StreamWriter | None = None
        self._lock = asyncio.Lock()

    async def send(self, msg: Mapping[str, Any]) -> bool:
        async with self._lock:
            for attempt in range(2):
                try:
                    if self._writer is None or self._writer.is_closing():
                        if not self.socket_path.exists():
                            debug("[OVERLAY] not running")
                            return False
                        _, self._writer = await asyncio.open_unix_connection(str(self.socket_path))
                    self._writer.write(OverlayProtocol.encode_message(msg))
                    await self._writer.drain()
                    return True
                except (FileNotFoundError, ConnectionRefusedError):
                    self._writer = None
                    debug("[OVERLAY] not running")
                    return False
                except (ConnectionResetError, BrokenPipeError) as exc:
                    self._writer = None
                    if attempt:
                        raise BackendError(f"Overlay connection lost: {exc}") from exc
        return False

    async def show_status(self, status: str) -> bool:
        return await self.send({"type": Events.OVERLAY_STATUS.value, "status": status})

    async def hide(self) -> bool:
        return await self.send({"type": "hide"})

    async def close(self):
        if self._writer is not None:
            self._writer.close()
            with suppress(ConnectionError):
                await self._writer.wait_closed()
            self._writer = None


# ── Entry Point ───────────────────────────────────────────────────────


async def run_overlay(socket_path: Path, console: Console):
    with Live(Text(""), console=console, auto_refresh=False, transient=True) as live:
        presenter = OverlayPresenter(on_change=lambda view: live.update(render_card(view), refresh=True))
        server = OverlayServer(presenter, socket_path)
        await server.start()
        debug(f"[OVERLAY] listening on {socket_path}")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            await stop.wait()
        except CancelledError:
            pass
        finally:
            await server.close()


def main():
    parser = argparse.ArgumentParser(
        prog="aitotype-overlay",
        description="aitotype recording status overlay",
    )
    parser.add_argument(
        "-s",
        "--socket",
        default=SOCKET_PATH.as_posix(),
        help=f"Path of the Unix socket to listen on (default: {SOCKET_PATH})",
    )
    args = parser.parse_args()

    PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    PID_FILE.write_text(str(os.getpid()))
    try:
        asyncio.run(run_overlay(Path(args.socket).expanduser(), Console()))
    except OSError as exc:
        errprint(f"ERROR: Unable to start overlay: {exc}")
        return 1
    finally:
        PID_FILE.unlink(missing_ok=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
