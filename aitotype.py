#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "numpy",
#     "sounddevice",
#     "soundfile",
#     "pyperclipfix",
#     "evdev",
#     "python-dotenv",
#     "platformdirs",
#     "python-ydotool",
#     "openai",
#     "janus",
#     "rich",
# ]
# ///

from __future__ import annotations

import argparse
import asyncio
import inspect
import math
import os
import sys
import time
from asyncio import CancelledError, Queue, create_task
from collections import deque
from collections.abc import Callable, Mapping
from contextlib import suppress
from datetime import datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import Any, NamedTuple

from dotenv import dotenv_values, load_dotenv
from platformdirs import user_config_dir
from rich.console import Console, Group
from rich.live import Live
from rich.rule import Rule
from rich.text import Text

APP_NAME = "aitotype"


class ConsoleWithLogging:
    """Console wrapper that outputs to both stdout and a log file"""

    def __init__(self, log_file, default_log_width=5000):
        self.console = Console()
        self.log_console = Console(
            file=log_file,
            force_terminal=False,
            legacy_windows=False,
            width=default_log_width,
        )

    def print_and_log(self, *objects, log_max_width=None, **kwargs):
        """Print to both console and log file

        Args:
            *objects: What to display
            log_max_width: If specified, limits width in log (must be <= default_log_width)
            **kwargs: Other arguments passed to print()
        """
        self.console.print(*objects, **kwargs)
        self.log_console.print(*objects, **kwargs, width=log_max_width)

    def print(self, *objects, **kwargs):
        """Print only to console, not to log"""
        self.console.print(*objects, **kwargs)

    def log(self, *objects, **kwargs):
        """Print only to the log file (the console is owned by the live display)"""
        self.log_console.print(f"[{datetime.now():%Y-%m-%d %H:%M:%S}]", *objects, markup=False, **kwargs)


DEBUG_TO_STDOUT = os.getenv("AITOTYPE_DEBUG", "false").lower() == "true"


def debug(*args) -> None:
    if not DEBUG_TO_STDOUT:
        return
    print(f"[{datetime.now()}]", *args, file=sys.stdout)


def errprint(*args) -> None:
    print(*args, file=sys.stderr)


class BackendError(RuntimeError):
    pass


class InvalidTransition(RuntimeError):
    pass


class Status(StrEnum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_busy(self) -> bool:
        return self in (Status.RECORDING, Status.TRANSCRIBING)

    @property
    def is_presentation(self) -> bool:
        return self in (Status.SUCCESS, Status.ERROR)


class OverlayStatus(StrEnum):
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"


class RecordMode(StrEnum):
    TOGGLE = "toggle"
    HOLD = "hold"

    @classmethod
    def parse(cls, value: str | RecordMode | None) -> RecordMode:
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.TOGGLE


class Events(StrEnum):
    TOGGLE_RECORDING = "toggle-recording-event"
    ENHANCEMENT_FALLBACK = "enhancement-fallback-event"
    OVERLAY_STATUS = "overlay-status"
    KEYDOWN = "keydown"


class ProviderInfo(NamedTuple):
    label: str
    base_url: str
    env_key: str
    default_model: str
    default_enhancement_model: str


class Provider(Enum):
    OPENROUTER = "openrouter"
    SILICONFLOW = "siliconflow"

    @classmethod
    def normalize(cls, value: str | Provider | None) -> Provider:
        if isinstance(value, Provider):
            return value
        return cls.SILICONFLOW if (value or "").strip().lower() == cls.SILICONFLOW.value else cls.OPENROUTER

    @property
    def info(self) -> ProviderInfo:
        return PROVIDERS[self]

    @property
    def default_model(self) -> str:
        return self.info.default_model

    @property
    def default_enhancement_model(self) -> str:
        return self.info.default_enhancement_model

    def default_for(self, enhancement: bool) -> str:
        return self.default_enhancement_model if enhancement else self.default_model


PROVIDERS: dict[Provider, ProviderInfo] = {
    Provider.OPENROUTER: ProviderInfo(
        label="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        env_key="OPENROUTER_API_KEY",
        default_model="google/gemini-3-flash-preview",
        default_enhancement_model="google/gemini-2.5-flash-lite",
    ),
    Provider.SILICONFLOW: ProviderInfo(
        label="SiliconFlow",
        base_url="https://api.siliconflow.cn/v1",
        env_key="SILICONFLOW_API_KEY",
        default_model="TeleAI/TeleSpeechASR",
        default_enhancement_model="Qwen/Qwen2.5-7B-Instruct",
    ),
}

DEFAULT_ENHANCEMENT_PROMPT = (
    "Clean up this dictated text: fix punctuation, casing and obvious recognition mistakes. "
    "Keep the original language and meaning. Output only the corrected text."
)


class Config:
    class Enhancement(NamedTuple):
        enabled: bool
        provider: Provider
        model: str
        prompt: str
        api_key: str

    class Stt(NamedTuple):
        provider: Provider
        api_key: str
        model: str
        base_url: str
        auto_write: bool
        record_mode: RecordMode
        enhancement: Config.Enhancement

        @classmethod
        def default(cls) -> Config.Stt:
            return cls.from_payload({})

        def to_payload(self) -> dict[str, Any]:
            return {
                "provider": self.provider.value,
                "api_key": self.api_key,
                "model": self.model,
                "base_url": self.base_url,
                "auto_write": self.auto_write,
                "record_mode": self.record_mode.value,
                "enhancement": {
                    "enabled": self.enhancement.enabled,
                    "provider": self.enhancement.provider.value,
                    "model": self.enhancement.model,
                    "prompt": self.enhancement.prompt,
                    "api_key": self.enhancement.api_key,
                },
            }

        @classmethod
        def from_payload(cls, data: Mapping[str, Any]) -> Config.Stt:
            provider = Provider.normalize(data.get("provider"))
            enhancement = data.get("enhancement") or {}
            enhancement_provider = Provider.normalize(enhancement.get("provider"))
            return cls(
                provider=provider,
                api_key=str(data.get("api_key") or "").strip(),
                model=str(data.get("model") or "").strip() or provider.default_model,
                base_url=str(data.get("base_url") or "").strip().rstrip("/") or provider.info.base_url,
                auto_write=bool(data.get("auto_write", False)),
                record_mode=RecordMode.parse(data.get("record_mode")),
                enhancement=Config.Enhancement(
                    enabled=bool(enhancement.get("enabled", False)),
                    provider=enhancement_provider,
                    model=str(enhancement.get("model") or "").strip() or enhancement_provider.default_enhancement_model,
                    prompt=str(enhancement.get("prompt") or "").strip() or DEFAULT_ENHANCEMENT_PROMPT,
                    api_key=str(enhancement.get("api_key") or "").strip(),
                ),
            )

    class Backend(NamedTuple):
        config_dir: Path
        keyboard: str | None
        microphone: str | None
        gain: float
        overlay: bool

    class Ui(NamedTuple):
        shortcut: str | None
        overrides: dict[str, Any]

    class App(NamedTuple):
        console: ConsoleWithLogging
        config_dir: Path
        backend: Config.Backend
        ui: Config.Ui


class ConnectionResult(NamedTuple):
    success: bool
    message: str
    provider: str
    model: str
    latency_ms: float


class KeyPress(NamedTuple):
    key: str
    modifiers: frozenset[str] = frozenset()


class Backend:
    """Command boundary towards capture, transcription and the OS.

    Each coroutine is one backend command. Failures are raised as exceptions,
    their message is what the user gets to see.
    """

    async def start_recording(self) -> None:
        raise NotImplementedError

    async def stop_recording(self) -> None:
        raise NotImplementedError

    async def stop_and_transcribe(self) -> str:
        raise NotImplementedError

    async def get_stt_config(self) -> Config.Stt:
        raise NotImplementedError

    async def save_stt_config(self, config: Config.Stt) -> None:
        raise NotImplementedError

    async def test_connection(self) -> ConnectionResult:
        raise NotImplementedError

    async def copy_to_clipboard(self, text: str) -> None:
        raise NotImplementedError

    async def paste_text(self, text: str) -> None:
        raise NotImplementedError

    async def check_accessibility_permissions(self) -> bool:
        raise NotImplementedError

    async def request_accessibility_permissions(self) -> bool:
        raise NotImplementedError

    async def open_accessibility_settings(self) -> None:
        raise NotImplementedError

    async def update_shortcut(self, shortcut: str) -> None:
        raise NotImplementedError

    async def is_shortcut_ready(self) -> bool:
        raise NotImplementedError

    async def show_overlay_status(self, status: str) -> None:
        raise NotImplementedError

    async def hide_overlay(self) -> None:
        raise NotImplementedError

    async def get_audio_level(self) -> float:
        raise NotImplementedError


class Comm:
    def __init__(self, display_enabled: bool = False):
        self._listeners: dict[str, list[Callable[[Any], Any]]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._display_enabled = display_enabled
        self._display_commands: Queue[TerminalDisplayTask.Commands.Command] = Queue()
        self._shutting_down = asyncio.Event()

    def listen(self, event: str, handler: Callable[[Any], Any]) -> Callable[[], None]:
        self._listeners.setdefault(event, []).append(handler)

        def unlisten():
            with suppress(ValueError):
                self._listeners.get(event, []).remove(handler)

        return unlisten

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: Any = None) -> None:
        debug("[EVENT]", event, payload)
        for handler in list(self._listeners.get(event, [])):
            result = handler(payload)
            if inspect.isawaitable(result):
                self.spawn(result)

    def spawn(self, awaitable) -> asyncio.Task:
        task = create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            errprint(f"WARNING: Event handler failed: {exc!r}")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def queue_display_command(self, cmd: TerminalDisplayTask.Commands.Command) -> None:
        if not self._display_enabled:
            return
        with suppress(RuntimeError):
            self._display_commands.put_nowait(cmd)

    async def dequeue_display_command(self) -> TerminalDisplayTask.Commands.Command:
        return await self._display_commands.get()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down.is_set()

    async def wait_for_shutdown(self):
        await self._shutting_down.wait()

    async def shutdown(self):
        if self._shutting_down.is_set():
            return
        self._shutting_down.set()
        self.queue_display_command(TerminalDisplayTask.Commands.Shutdown())
        for task in list(self._tasks):
            task.cancel()


class Preferences:
    """Small persisted key/value store for the local UI preferences."""

    FILE_NAME = "preferences.env"
    SHORTCUT = "AITOTYPE_SHORTCUT"
    AUTO_COPY = "AITOTYPE_AUTO_COPY"
    RECORD_MODE = "AITOTYPE_RECORD_MODE"

    def __init__(self, path: Path | None = None):
        self.path = path
        self._values: dict[str, str] = {}
        if path is not None and path.is_file():
            self._values = {key: value for key, value in dotenv_values(path).items() if value is not None}

    @staticmethod
    def api_key_name(provider: Provider, enhancement: bool = False) -> str:
        namespace = "ENHANCE_API_KEY" if enhancement else "API_KEY"
        return f"AITOTYPE_{namespace}_{provider.value.upper()}"

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._values.get(key, default)

    def set(self, key: str, value: str | None) -> None:
        if value:
            if self._values.get(key) == value:
                return
            self._values[key] = value
        elif key in self._values:
            del self._values[key]
        else:
            return
        self._write(key)

    def get_api_key(self, provider: Provider, enhancement: bool = False) -> str:
        return self.get(self.api_key_name(provider, enhancement)) or ""

    def set_api_key(self, provider: Provider, value: str, enhancement: bool = False) -> None:
        self.set(self.api_key_name(provider, enhancement), value)

    @property
    def shortcut(self) -> str | None:
        return self.get(self.SHORTCUT)

    @shortcut.setter
    def shortcut(self, value: str | None) -> None:
        self.set(self.SHORTCUT, value)

    @property
    def auto_copy(self) -> bool:
        value = self.get(self.AUTO_COPY)
        return True if value is None else value.strip().lower() in {"1", "true", "yes", "on"}

    @auto_copy.setter
    def auto_copy(self, flag: bool) -> None:
        self.set(self.AUTO_COPY, "true" if flag else "false")

    @property
    def record_mode(self) -> RecordMode | None:
        value = self.get(self.RECORD_MODE)
        return RecordMode.parse(value) if value else None

    @record_mode.setter
    def record_mode(self, mode: RecordMode) -> None:
        self.set(self.RECORD_MODE, mode.value)

    @staticmethod
    def _format_env_value(value: str) -> str:
        if value == "":
            return ""
        special_chars = set(" #\"'\\\n\r\t=")
        if any(char in special_chars for char in value):
            escaped = value.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r").replace('"', '\\"')
            return f'"{escaped}"'
        return value

    def _write(self, changed_key: str) -> None:
        if self.path is None:
            return
        remaining = {key: self._format_env_value(value) for key, value in self._values.items()}
        lines: list[str] = []
        if self.path.exists():
            for line in self.path.read_text(encoding="utf-8").splitlines():
                stripped = line.strip()
                key, sep, _ = line.partition("=")
                key_clean = key.strip()
                if not stripped or stripped.startswith("#") or not sep:
                    lines.append(line)
                elif key_clean in remaining:
                    lines.append(f"{key_clean}={remaining.pop(key_clean)}")
                elif key_clean != changed_key:
                    lines.append(line)
        for key, value in remaining.items():
            lines.append(f"{key}={value}")
        content = "\n".join(lines).rstrip("\n")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(content + "\n" if content else "", encoding="utf-8")


class SettingsForm:
    """Current values of the settings widgets, as the user left them."""

    def __init__(self):
        self.provider = Provider.OPENROUTER
        self.api_key = ""
        self.model = ""
        self.base_url = ""
        self.auto_write = False
        self.record_mode = RecordMode.TOGGLE
        self.enhancement_enabled = False
        self.enhancement_provider = Provider.OPENROUTER
        self.enhancement_api_key = ""
        self.enhancement_model = ""
        self.enhancement_prompt = ""


class ConfigSynchronizer:
    """Merges form, preferences and backend configuration into one ``Config.Stt``.

    The two credential namespaces (transcription and enhancement) have their own
    per-provider caches. Switching provider first flushes the displayed credential
    to the cache of the provider being left, then shows the cached one of the new
    provider, so going back and forth never loses what was typed.
    """

    ACCESSIBILITY_OK = "Accessibility Permission OK"
    ACCESSIBILITY_MISSING = "Need Accessibility Permission to Auto-Write"

    def __init__(self, backend: Backend, preferences: Preferences, form: SettingsForm | None = None):
        self.backend = backend
        self.preferences = preferences
        self.form = form or SettingsForm()
        self.snapshot: Config.Stt | None = None
        self.accessibility_hint = ""
        self._api_keys = {provider: preferences.get_api_key(provider) for provider in Provider}
        self._enhancement_api_keys = {provider: preferences.get_api_key(provider, enhancement=True) for provider in Provider}
        if (record_mode := preferences.record_mode) is not None:
            self.form.record_mode = record_mode

    def api_key_for(self, provider: Provider, enhancement: bool = False) -> str:
        return (self._enhancement_api_keys if enhancement else self._api_keys)[provider]

    @property
    def auto_write_enabled(self) -> bool:
        return bool(self.snapshot is not None and self.snapshot.auto_write) or self.form.auto_write

    @staticmethod
    def should_reset_model(model: str, enhancement: bool = False) -> bool:
        model = (model or "").strip()
        return not model or model in {provider.default_for(enhancement) for provider in Provider}

    @staticmethod
    def should_reset_base_url(base_url: str) -> bool:
        base_url = (base_url or "").strip().rstrip("/")
        return not base_url or base_url in {provider.info.base_url for provider in Provider}

    def on_api_key_input(self, value: str) -> None:
        self.form.api_key = value or ""
        self._api_keys[self.form.provider] = self.form.api_key

    def on_enhancement_api_key_input(self, value: str) -> None:
        self.form.enhancement_api_key = value or ""
        self._enhancement_api_keys[self.form.enhancement_provider] = self.form.enhancement_api_key

    def on_provider_change(self, provider: str | Provider) -> None:
        self._flush_api_key()
        provider = Provider.normalize(provider)
        if self.should_reset_model(self.form.model):
            self.form.model = provider.default_model
        if self.should_reset_base_url(self.form.base_url):
            self.form.base_url = ""
        self.form.provider = provider
        self.form.api_key = self._api_keys[provider]

    def on_enhancement_provider_change(self, provider: str | Provider) -> None:
        self._flush_enhancement_api_key()
        provider = Provider.normalize(provider)
        if self.should_reset_model(self.form.enhancement_model, enhancement=True):
            self.form.enhancement_model = provider.default_enhancement_model
        self.form.enhancement_provider = provider
        self.form.enhancement_api_key = self._enhancement_api_keys[provider]

    def set_record_mode(self, mode: str | RecordMode) -> RecordMode:
        self.form.record_mode = RecordMode.parse(mode)
        self.preferences.record_mode = self.form.record_mode
        return self.form.record_mode

    def set_auto_copy(self, flag: bool) -> None:
        self.preferences.auto_copy = flag

    def _flush_api_key(self) -> None:
        value = self.form.api_key or ""
        self._api_keys[self.form.provider] = value
        self.preferences.set_api_key(self.form.provider, value)

    def _flush_enhancement_api_key(self) -> None:
        value = self.form.enhancement_api_key or ""
        self._enhancement_api_keys[self.form.enhancement_provider] = value
        self.preferences.set_api_key(self.form.enhancement_provider, value, enhancement=True)

    def build_config(self) -> Config.Stt:
        self._flush_api_key()
        self._flush_enhancement_api_key()
        form = self.form
        provider = form.provider
        enhancement_provider = form.enhancement_provider
        return Config.Stt(
            provider=provider,
            api_key=self._api_keys[provider].strip(),
            model=form.model.strip() or provider.default_model,
            base_url=form.base_url.strip().rstrip("/") or provider.info.base_url,
            auto_write=form.auto_write,
            record_mode=form.record_mode,
            enhancement=Config.Enhancement(
                enabled=form.enhancement_enabled,
                provider=enhancement_provider,
                model=form.enhancement_model.strip() or enhancement_provider.default_enhancement_model,
                prompt=form.enhancement_prompt.strip() or DEFAULT_ENHANCEMENT_PROMPT,
                api_key=self._enhancement_api_keys[enhancement_provider].strip(),
            ),
        )

    async def commit(self, config: Config.Stt) -> None:
        await self.backend.save_stt_config(config)
        self.snapshot = config

    async def sync_before_session(self) -> Config.Stt:
        config = self.build_config()
        await self.commit(config)
        return config

    async def load(self) -> Config.Stt | None:
        try:
            config = await self.backend.get_stt_config()
        except Exception as exc:
            errprint(f"WARNING: Unable to load configuration: {exc}")
            return None

        provider = config.provider
        if config.api_key and not self._api_keys[provider]:
            self._api_keys[provider] = config.api_key
            self.preferences.set_api_key(provider, config.api_key)
        enhancement = config.enhancement
        if enhancement.api_key and not self._enhancement_api_keys[enhancement.provider]:
            self._enhancement_api_keys[enhancement.provider] = enhancement.api_key
            self.preferences.set_api_key(enhancement.provider, enhancement.api_key, enhancement=True)

        self.snapshot = config
        form = self.form
        form.provider = provider
        form.api_key = self._api_keys[provider]
        form.model = config.model or provider.default_model
        form.base_url = "" if self.should_reset_base_url(config.base_url) else config.base_url
        form.auto_write = config.auto_write
        if self.preferences.record_mode is None:
            form.record_mode = config.record_mode
        form.enhancement_enabled = enhancement.enabled
        form.enhancement_provider = enhancement.provider
        form.enhancement_api_key = self._enhancement_api_keys[enhancement.provider]
        form.enhancement_model = enhancement.model or enhancement.provider.default_enhancement_model
        form.enhancement_prompt = enhancement.prompt
        return config

    def apply_overrides(self, overrides: Mapping[str, Any]) -> None:
        if "provider" in overrides:
            self.on_provider_change(overrides["provider"])
        if "api_key" in overrides:
            self.on_api_key_input(overrides["api_key"])
        if "model" in overrides:
            self.form.model = overrides["model"]
        if "auto_write" in overrides:
            self.form.auto_write = bool(overrides["auto_write"])
        if "record_mode" in overrides:
            self.set_record_mode(overrides["record_mode"])
        if "enhancement_enabled" in overrides:
            self.form.enhancement_enabled = bool(overrides["enhancement_enabled"])
        if "enhancement_provider" in overrides:
            self.on_enhancement_provider_change(overrides["enhancement_provider"])
        if "enhancement_model" in overrides:
            self.form.enhancement_model = overrides["enhancement_model"]
        if "enhancement_prompt" in overrides:
            self.form.enhancement_prompt = overrides["enhancement_prompt"]

    async def save_settings(self) -> str:
        try:
            await self.commit(self.build_config())
        except Exception as exc:
            errprint(f"WARNING: Saving configuration failed: {exc}")
            return "Save failed"
        await self.load()
        return "Saved"

    async def check_accessibility(self) -> bool:
        try:
            trusted = bool(await self.backend.check_accessibility_permissions())
        except Exception as exc:
            errprint(f"WARNING: Check accessibility failed: {exc}")
            return False
        self.accessibility_hint = self.ACCESSIBILITY_OK if trusted else self.ACCESSIBILITY_MISSING
        return trusted

    async def set_auto_write(self, flag: bool) -> bool:
        self.form.auto_write = flag
        if flag:
            try:
                if not await self.backend.check_accessibility_permissions():
                    await self.backend.request_accessibility_permissions()
            except Exception as exc:
                errprint(f"WARNING: Accessibility permission request failed: {exc}")
        try:
            await self.commit(self.build_config())
        except Exception as exc:
            errprint(f"WARNING: Saving configuration failed: {exc}")
        return await self.check_accessibility()

    async def test_connection(self) -> ConnectionResult:
        config = self.build_config()
        try:
            await self.commit(config)
            return await self.backend.test_connection()
        except Exception as exc:
            return ConnectionResult(
                success=False,
                message=str(exc),
                provider=config.provider.value,
                model=config.model,
                latency_ms=0.0,
            )


class ShortcutCoordinator:
    READY_PROBE_ATTEMPTS = 30
    READY_PROBE_DELAY_S = 0.1
    CAPTURE_LABEL = "Press keys..."

    MODIFIER_ALIASES = (
        ("Cmd", {"cmd", "command", "meta", "super"}),
        ("Control", {"ctrl", "control"}),
        ("Alt", {"alt", "option"}),
        ("Shift", {"shift"}),
    )
    MODIFIER_KEYS = {alias for _, aliases in MODIFIER_ALIASES for alias in aliases}
    SPECIAL_KEYS = {
        " ": "Space",
        "space": "Space",
        "escape": "Esc",
        "enter": "Enter",
        "tab": "Tab",
        "backspace": "Backspace",
        "delete": "Delete",
        "arrowup": "Up",
        "arrowdown": "Down",
        "arrowleft": "Left",
        "arrowright": "Right",
    }

    def __init__(
        self,
        comm: Comm,
        backend: Backend,
        preferences: Preferences,
        default_shortcut: str | None = None,
        is_blocked: Callable[[], bool] | None = None,
    ):
        self.comm = comm
        self.backend = backend
        self.preferences = preferences
        self.default_shortcut = default_shortcut or self.platform_default()
        self.is_blocked = is_blocked
        self.label = ""
        self._ready = False
        self._capture_active = False
        self._previous_shortcut: str | None = None
        self._unlisten: Callable[[], None] | None = None

    @staticmethod
    def platform_default() -> str:
        return "Control+Shift+Space" if sys.platform == "win32" else "Alt+Space"

    @classmethod
    def normalize(cls, modifiers, raw_key: str | None) -> str | None:
        if not raw_key or raw_key.lower() in cls.MODIFIER_KEYS:
            return None
        pressed = {str(modifier).lower() for modifier in modifiers}
        ordered = [name for name, aliases in cls.MODIFIER_ALIASES if pressed & aliases]
        key = cls.SPECIAL_KEYS.get(raw_key.lower(), raw_key)
        if len(key) == 1:
            key = key.upper()
        return "+".join([*ordered, key])

    @property
    def is_capturing(self) -> bool:
        return self._capture_active

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def current(self) -> str:
        return self.preferences.shortcut or self.default_shortcut

    async def ensure_ready(self) -> bool:
        if self._ready:
            return True
        for attempt in range(self.READY_PROBE_ATTEMPTS):
            try:
                ready = await self.backend.is_shortcut_ready()
            except Exception as exc:
                debug(f"[SHORTCUT] readiness probe {attempt + 1} failed: {exc}")
                ready = False
            if ready:
                self._ready = True
                return True
            if attempt + 1 < self.READY_PROBE_ATTEMPTS:
                await asyncio.sleep(self.READY_PROBE_DELAY_S)
        errprint(
            f"WARNING: Global shortcut subsystem not ready after {self.READY_PROBE_ATTEMPTS} attempts; "
            "shortcut registration abandoned"
        )
        return False

    async def init(self, shortcut: str | None = None) -> bool:
        shortcut = shortcut or self.current
        self.label = shortcut
        return await self.set_shortcut(shortcut)

    async def set_shortcut(self, shortcut: str) -> bool:
        shortcut = (shortcut or "").strip()
        if not shortcut:
            return False
        if not await self.ensure_ready():
            return False
        try:
            await self.backend.update_shortcut(shortcut)
        except Exception as exc:
            errprint(f"WARNING: Shortcut update failed: {exc}")
            return False
        self.preferences.shortcut = shortcut
        debug(f"[SHORTCUT] registered {shortcut}")
        return True

    async def disable(self) -> bool:
        if not await self.ensure_ready():
            return False
        try:
            await self.backend.update_shortcut("")
        except Exception as exc:
            errprint(f"WARNING: Disable shortcut failed: {exc}")
            return False
        return True

    async def start_capture(self) -> bool:
        if self._capture_active:
            return False
        if self.is_blocked is not None and self.is_blocked():
            debug("[SHORTCUT] capture refused while a recording is in progress")
            return False
        self._capture_active = True
        self._previous_shortcut = self.current
        self.label = self.CAPTURE_LABEL
        await self.disable()
        if self._unlisten is None:
            self._unlisten = self.comm.listen(Events.KEYDOWN, self._on_capture_key)
        return True

    def _end_capture(self, label: str) -> None:
        if self._unlisten is not None:
            self._unlisten()
            self._unlisten = None
        self._capture_active = False
        self.label = label

    async def _on_capture_key(self, press: KeyPress) -> None:
        if not self._capture_active:
            return
        if press.key in ("Escape", "Esc"):
            previous = self._previous_shortcut or self.default_shortcut
            self._end_capture(previous)
            await self.set_shortcut(previous)
            return
        if press.key.lower() in self.MODIFIER_KEYS:
            return
        shortcut = self.normalize(press.modifiers, press.key)
        if not shortcut:
            return
        self._end_capture(shortcut)
        if not await self.set_shortcut(shortcut):
            previous = self._previous_shortcut or self.default_shortcut
            self.label = previous
            await self.set_shortcut(previous)


class HistoryCache:
    MAX_ENTRIES = 20

    class Entry(NamedTuple):
        time: str
        text: str

    def __init__(self, backend: Backend, max_entries: int = MAX_ENTRIES, now: Callable[[], datetime] = datetime.now):
        self.backend = backend
        self._now = now
        self._entries: deque[HistoryCache.Entry] = deque(maxlen=max_entries)

    def add(self, text: str) -> HistoryCache.Entry:
        entry = self.Entry(time=self._now().strftime("%H:%M"), text=text)
        self._entries.appendleft(entry)
        return entry

    @property
    def entries(self) -> tuple[HistoryCache.Entry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    async def copy(self, index: int) -> bool:
        try:
            text = self._entries[index].text
        except IndexError:
            return False
        try:
            await self.backend.copy_to_clipboard(text)
        except Exception as exc:
            errprint(f"WARNING: Clipboard copy failed: {exc}")
            return False
        return True


class SessionState:
    def __init__(self):
        self.status = Status.IDLE
        self.message = ""
        self.last_result_text = ""
        self.background_session = False
        self.pending_shortcut_context: dict[str, Any] | None = None
        self.last_shortcut_toggle_at: float | None = None
        self.hold_started_at: float | None = None
        self.audio_level = 0.0
        self.hint: str | None = None


class View(NamedTuple):
    status: Status
    pill: str
    instruction: str
    result: str | None
    hint: str | None
    audio_level: float
    orb_active: bool
    orb_processing: bool


def render(state: SessionState) -> View:
    result = None
    match state.status:
        case Status.RECORDING:
            pill, instruction = "Recording", "Listening..."
        case Status.TRANSCRIBING:
            pill, instruction = "Processing", "Transcribing..."
        case Status.SUCCESS:
            pill, instruction = "Success", "Complete"
            result = state.message
        case Status.ERROR:
            pill, instruction = "Error", state.message or "Failed"
        case _:
            pill, instruction = "Ready", state.message or "Tap orb to capture"
    return View(
        status=state.status,
        pill=pill,
        instruction=instruction,
        result=result,
        hint=state.hint,
        audio_level=state.audio_level if state.status is Status.RECORDING else 0.0,
        orb_active=state.status.is_busy,
        orb_processing=state.status is Status.TRANSCRIBING,
    )


class SessionController:
    """Record -> transcribe -> deliver state machine.

    Only this class mutates ``SessionState``. A start is refused while a cycle
    is recording, transcribing or still starting; ``background_session`` is
    latched at start and cleared on every exit of the cycle.
    """

    TOGGLE_DEBOUNCE_S = 0.45
    HOLD_MIN_DURATION_S = 0.2
    AUDIO_LEVEL_INTERVAL_S = 0.08
    OVERLAY_TIMEOUT_S = 0.8
    FALLBACK_HINT_DURATION_S = 4.2
    FALLBACK_REASON_MAX_CHARS = 120
    PASTE_FAILED_MESSAGE = "Paste failed. Check Accessibility permissions."

    TRANSITIONS = {
        Status.IDLE: {Status.RECORDING, Status.ERROR},
        Status.RECORDING: {Status.TRANSCRIBING, Status.IDLE},
        Status.TRANSCRIBING: {Status.SUCCESS, Status.ERROR},
        Status.SUCCESS: {Status.IDLE},
        Status.ERROR: {Status.IDLE},
    }

    def __init__(
        self,
        comm: Comm,
        backend: Backend,
        config_sync: ConfigSynchronizer,
        history: HistoryCache,
        shortcuts: ShortcutCoordinator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.comm = comm
        self.backend = backend
        self.config_sync = config_sync
        self.history = history
        self.shortcuts = shortcuts
        self.clock = clock
        self.state = SessionState()
        self._starting = False
        self._stopping = False
        self._stop_requested = False
        self._level_cycle = 0
        self._level_task: asyncio.Task | None = None
        self._hint_handle: asyncio.TimerHandle | None = None
        self._unlisteners: list[Callable[[], None]] = []

    def attach(self) -> None:
        self._unlisteners = [
            self.comm.listen(Events.TOGGLE_RECORDING, self.on_toggle_recording_event),
            self.comm.listen(Events.ENHANCEMENT_FALLBACK, self.on_enhancement_fallback_event),
        ]

    async def aclose(self) -> None:
        for unlisten in self._unlisteners:
            unlisten()
        self._unlisteners = []
        self._stop_level_polling()
        if self._hint_handle is not None:
            self._hint_handle.cancel()
            self._hint_handle = None

    @property
    def status(self) -> Status:
        return self.state.status

    @property
    def record_mode(self) -> RecordMode:
        return self.config_sync.form.record_mode

    @property
    def is_busy(self) -> bool:
        return self.state.status.is_busy or self._starting

    def view(self) -> View:
        return render(self.state)

    def _set_status(self, status: Status, message: str = "") -> None:
        previous = self.state.status
        if status not in self.TRANSITIONS[previous]:
            raise InvalidTransition(f"{previous.value} -> {status.value}")
        self.state.status = status
        self.state.message = message
        debug(f"[SESSION] {previous.value} -> {status.value}", message)
        if status is Status.RECORDING:
            self._start_level_polling()
        elif previous is Status.RECORDING:
            self._stop_level_polling()
        self._publish()

    def _publish(self) -> None:
        self.comm.queue_display_command(TerminalDisplayTask.Commands.Render(view=render(self.state), history=self.history.entries))

    def dismiss(self) -> None:
        if self.state.status.is_presentation:
            self._set_status(Status.IDLE)

    async def toggle(self) -> None:
        match self.state.status:
            case Status.TRANSCRIBING:
                return
            case Status.RECORDING:
                await self.stop()
            case _:
                await self.start()

    async def press(self) -> None:
        await self.start()

    async def release(self) -> None:
        await self.stop()

    async def start(self) -> bool:
        if self.is_busy:
            debug("[SESSION] start ignored, session busy")
            return False
        self._starting = True
        self._stop_requested = False
        try:
            self.dismiss()
            context = self.state.pending_shortcut_context
            self.state.pending_shortcut_context = None
            self.state.background_session = bool(context and context.get("background"))
            try:
                await self.config_sync.sync_before_session()
                await self.backend.start_recording()
            except Exception as exc:
                await self._rollback_start(exc)
                return False
            self.state.hold_started_at = self.clock() if self.record_mode is RecordMode.HOLD else None
            self._set_status(Status.RECORDING)
            if self.state.background_session:
                self._show_overlay(OverlayStatus.RECORDING)
        finally:
            self._starting = False
        if self._stop_requested:
            self._stop_requested = False
            await self.stop()
        return True

    async def _rollback_start(self, exc: Exception) -> None:
        errprint(f"ERROR: Unable to start recording: {exc}")
        try:
            await self.backend.stop_recording()
        except Exception as stop_exc:
            debug(f"[SESSION] rollback stop_recording failed: {stop_exc}")
        background = self.state.background_session
        self.state.background_session = False
        self.state.pending_shortcut_context = None
        self.state.hold_started_at = None
        self._set_status(Status.ERROR, self._describe(exc))
        if background:
            self._hide_overlay()

    async def stop(self) -> bool:
        if self.state.status is not Status.RECORDING:
            if self._starting:
                self._stop_requested = True
            return False
        if self._stopping:
            return False
        self._stopping = True
        try:
            held_since = self.state.hold_started_at
            if (
                self.record_mode is RecordMode.HOLD
                and held_since is not None
                and self.clock() - held_since < self.HOLD_MIN_DURATION_S
            ):
                await self._cancel_short_press()
                return False
            return await self._transcribe()
        finally:
            self._stopping = False

    async def _cancel_short_press(self) -> None:
        debug("[SESSION] press too short, capture cancelled")
        background = self.state.background_session
        self.state.background_session = False
        self.state.hold_started_at = None
        try:
            await self.backend.stop_recording()
        except Exception as exc:
            errprint(f"WARNING: Unable to cancel recording: {exc}")
        self._set_status(Status.IDLE)
        if background:
            self._hide_overlay()

    async def _transcribe(self) -> bool:
        background = self.state.background_session
        self.state.hold_started_at = None
        self._set_status(Status.TRANSCRIBING)
        if background:
            self._show_overlay(OverlayStatus.TRANSCRIBING)

        try:
            text = await self.backend.stop_and_transcribe()
        except Exception as exc:
            errprint(f"ERROR: Transcription failed: {exc}")
            self._finish(Status.ERROR, self._describe(exc), background)
            return False

        text = text or ""
        self.state.last_result_text = text
        self.history.add(text)
        if self.config_sync.preferences.auto_copy:
            await self._copy(text)

        if text and (background or self.config_sync.auto_write_enabled):
            if background:
                # focus must be back on the target window before keystrokes are injected
                await self._best_effort("hide overlay", self.backend.hide_overlay())
                background = False
            try:
                await self.backend.paste_text(text)
            except Exception as exc:
                errprint(f"WARNING: Paste failed: {exc}")
                self._finish(Status.ERROR, self.PASTE_FAILED_MESSAGE, background)
                return False

        self._finish(Status.SUCCESS, text, background)
        return True

    def _finish(self, status: Status, message: str, background: bool) -> None:
        self.state.background_session = False
        self.state.pending_shortcut_context = None
        self._set_status(status, message)
        if background:
            self._hide_overlay()

    async def _copy(self, text: str) -> bool:
        if not text:
            return False
        try:
            await self.backend.copy_to_clipboard(text)
        except Exception as exc:
            errprint(f"WARNING: Clipboard copy failed: {exc}")
            return False
        return True

    async def copy_last_result(self) -> bool:
        return await self._copy(self.state.last_result_text)

    @staticmethod
    def _describe(exc: BaseException) -> str:
        return str(exc) or exc.__class__.__name__

    async def on_toggle_recording_event(self, payload: Mapping[str, Any] | None) -> None:
        payload = dict(payload or {})
        if self.shortcuts is not None and self.shortcuts.is_capturing:
            return
        match payload.get("action") or "toggle":
            case "start":
                if self.is_busy:
                    return
                self.state.pending_shortcut_context = payload
                await self.start()
            case "stop":
                await self.stop()
            case _:
                now = self.clock()
                last = self.state.last_shortcut_toggle_at
                if last is not None and now - last < self.TOGGLE_DEBOUNCE_S:
                    debug("[SESSION] toggle debounced")
                    return
                self.state.last_shortcut_toggle_at = now
                if self.state.status is Status.RECORDING:
                    await self.stop()
                elif not self.is_busy:
                    self.state.pending_shortcut_context = payload
                    await self.start()

    def on_enhancement_fallback_event(self, payload: Mapping[str, Any] | None) -> None:
        reason = str((payload or {}).get("reason") or "unknown reason").strip()
        if len(reason) > self.FALLBACK_REASON_MAX_CHARS:
            reason = reason[: self.FALLBACK_REASON_MAX_CHARS - 1].rstrip() + "…"
        self.state.hint = f"Enhancement unavailable, raw transcript used: {reason}"
        if self._hint_handle is not None:
            self._hint_handle.cancel()
        self._hint_handle = asyncio.get_running_loop().call_later(self.FALLBACK_HINT_DURATION_S, self._clear_hint)
        self._publish()

    def _clear_hint(self) -> None:
        self._hint_handle = None
        self.state.hint = None
        self._publish()

    def _show_overlay(self, status: OverlayStatus) -> None:
        self.comm.spawn(self._best_effort("show overlay", self.backend.show_overlay_status(status.value)))

    def _hide_overlay(self) -> None:
        self.comm.spawn(self._best_effort("hide overlay", self.backend.hide_overlay()))

    async def _best_effort(self, label: str, call) -> None:
        try:
            await asyncio.wait_for(call, timeout=self.OVERLAY_TIMEOUT_S)
        except TimeoutError:
            debug(f"[SESSION] {label} timed out")
        except Exception as exc:
            errprint(f"WARNING: {label.capitalize()} failed: {exc}")

    def _start_level_polling(self) -> None:
        self._level_cycle += 1
        if self._level_task is not None:
            self._level_task.cancel()
        self._level_task = create_task(self._poll_audio_level(self._level_cycle))

    def _stop_level_polling(self) -> None:
        self._level_cycle += 1
        self.state.audio_level = 0.0
        if self._level_task is not None:
            self._level_task.cancel()
            self._level_task = None

    async def _poll_audio_level(self, cycle: int) -> None:
        pending: asyncio.Task | None = None
        with suppress(CancelledError):
            while self.state.status is Status.RECORDING and cycle == self._level_cycle:
                if pending is None or pending.done():
                    pending = self.comm.spawn(self._read_audio_level(cycle))
                await asyncio.sleep(self.AUDIO_LEVEL_INTERVAL_S)

    async def _read_audio_level(self, cycle: int) -> None:
        try:
            level = float(await self.backend.get_audio_level())
        except Exception as exc:
            debug(f"[SESSION] audio level poll failed: {exc}")
            return
        if cycle != self._level_cycle or self.state.status is not Status.RECORDING:
            return
        self.state.audio_level = min(max(level, 0.0), 1.0) if math.isfinite(level) else 0.0
        self._publish()


class TerminalDisplayTask:
    LEVEL_BAR_WIDTH = 30
    HISTORY_LINES = 3

    class Commands:
        class Render(NamedTuple):
            view: View
            history: tuple[HistoryCache.Entry, ...]

        class Notice(NamedTuple):
            text: str

        class Shutdown(NamedTuple):
            pass

        Command = Render | Notice | Shutdown

    STATUS_STYLES = {
        Status.IDLE: "bold white",
        Status.RECORDING: "bold red",
        Status.TRANSCRIBING: "bold yellow",
        Status.SUCCESS: "bold green",
        Status.ERROR: "bold magenta",
    }

    def __init__(self, comm: Comm, config: Config.App):
        self.comm = comm
        self.console = config.console
        self.live: Live | None = None
        self.view = render(SessionState())
        self.history: tuple[HistoryCache.Entry, ...] = ()
        self.notice = ""

    async def run(self):
        try:
            with Live(
                self._renderable(),
                console=self.console.console,
                refresh_per_second=8,
                auto_refresh=False,
                transient=False,
            ) as live:
                self.live = live
                while True:
                    cmd = await self.comm.dequeue_display_command()
                    if not self._handle_cmd(cmd):
                        break
                    live.update(self._renderable(), refresh=True)
        except CancelledError:
            pass
        finally:
            self.live = None

    def _handle_cmd(self, cmd: TerminalDisplayTask.Commands.Command) -> bool:
        match cmd:
            case self.Commands.Render(view=view, history=history):
                if view.status is not self.view.status and view.status.is_presentation:
                    self.console.log(f"{view.pill}: {view.result if view.result is not None else view.instruction}")
                self.view = view
                self.history = history
            case self.Commands.Notice(text=text):
                self.notice = text
            case self.Commands.Shutdown():
                return False
        return True

    def _renderable(self):
        view = self.view
        parts = [
            Text.assemble(
                (f" {view.pill} ", self.STATUS_STYLES[view.status]),
                "  ",
                view.instruction,
            )
        ]
        if view.status is Status.RECORDING:
            filled = round(view.audio_level * self.LEVEL_BAR_WIDTH)
            parts.append(Text("▮" * filled + "▯" * (self.LEVEL_BAR_WIDTH - filled), style="red"))
        if view.result:
            parts.append(Text(view.result))
        if view.hint:
            parts.append(Text(view.hint, style="italic yellow"))
        if self.history:
            parts.append(Rule("History", style="dim"))
            for entry in self.history[: self.HISTORY_LINES]:
                parts.append(Text.assemble((f"{entry.time} ", "dim"), entry.text))
        if self.notice:
            parts.append(Rule(style="dim"))
            parts.append(Text(self.notice, style="cyan"))
        return Group(*parts)


class InputTask:
    HELP = (
        "Enter: start/stop recording | c: copy last | h: history | k: capture shortcut | "
        "p <provider>: switch provider | w: auto-write | m: record mode | t: test connection | s: save | q: quit"
    )
    KEY_ALIASES = {"esc": "Escape", "escape": "Escape", "space": " "}

    def __init__(
        self,
        comm: Comm,
        controller: SessionController,
        config_sync: ConfigSynchronizer,
        shortcuts: ShortcutCoordinator,
    ):
        self.comm = comm
        self.controller = controller
        self.config_sync = config_sync
        self.shortcuts = shortcuts

    def _notice(self, text: str) -> None:
        self.comm.queue_display_command(TerminalDisplayTask.Commands.Notice(text))

    async def run(self):
        loop = asyncio.get_running_loop()
        lines: Queue[str] = Queue()
        fd = sys.stdin.fileno()
        loop.add_reader(fd, lambda: lines.put_nowait(sys.stdin.readline()))
        self._notice(self.HELP)
        try:
            while not self.comm.is_shutting_down:
                line = await lines.get()
                if not line:
                    await self.comm.shutdown()
                    break
                if not await self.handle_line(line.rstrip("\n")):
                    break
        except CancelledError:
            pass
        finally:
            loop.remove_reader(fd)

    @classmethod
    def parse_key_press(cls, text: str) -> KeyPress:
        parts = [part.strip() for part in text.strip().split("+")]
        if len(parts) > 1 and not parts[-1]:
            parts = [*parts[:-2], "+"]
        key = parts[-1] if parts else ""
        key = cls.KEY_ALIASES.get(key.lower(), key)
        return KeyPress(key=key, modifiers=frozenset(part.capitalize() for part in parts[:-1] if part))

    async def handle_line(self, line: str) -> bool:
        if self.shortcuts.is_capturing:
            self.comm.emit(Events.KEYDOWN, self.parse_key_press(line))
            await self.comm.drain()
            self._notice(f"Shortcut: {self.shortcuts.label}")
            return True

        command, _, argument = line.strip().partition(" ")
        match command.lower():
            case "":
                await self.controller.toggle()
            case "c":
                copied = await self.controller.copy_last_result()
                self._notice("Copied" if copied else "Nothing copied")
            case "h":
                entries = self.controller.history.entries
                self._notice("\n".join(f"{entry.time}  {entry.text}" for entry in entries) or "No recordings yet")
            case "k":
                if await self.shortcuts.start_capture():
                    self._notice(f"{self.shortcuts.label} (type a combination like ctrl+shift+a, or esc)")
            case "p":
                self.config_sync.on_provider_change(argument)
                self._notice(f"Provider: {self.config_sync.form.provider.info.label} ({self.config_sync.form.model})")
            case "w":
                await self.config_sync.set_auto_write(not self.config_sync.form.auto_write)
                self._notice(f"Auto-write: {'on' if self.config_sync.form.auto_write else 'off'} - {self.config_sync.accessibility_hint}")
            case "m":
                current = self.config_sync.form.record_mode
                mode = self.config_sync.set_record_mode(RecordMode.HOLD if current is RecordMode.TOGGLE else RecordMode.TOGGLE)
                self._notice(f"Record mode: {mode.value}")
            case "t":
                result = await self.config_sync.test_connection()
                self._notice(f"{'OK' if result.success else 'FAILED'}: {result.message}")
            case "s":
                self._notice(await self.config_sync.save_settings())
            case "q":
                await self.comm.shutdown()
                return False
            case _:
                self._notice(self.HELP)
        return True


class CommandLineParser:
    ENV_PREFIX = "AITOTYPE_"
    _UNDEFINED = object()

    @classmethod
    def get_env(cls, name: str, default: str | None = None):
        return os.getenv(f"{cls.ENV_PREFIX}{name}", default)

    @classmethod
    def get_env_bool(cls, name: str, default: bool | None = None):
        value = cls.get_env(name)
        if value is None:
            return default
        return cls._env_truthy(value)

    @staticmethod
    def _env_truthy(val: str | None) -> bool:
        if not val:
            return False
        return val.strip().lower() in {"1", "true", "yes", "on"}

    @classmethod
    def _create_arguments(cls, parser: argparse.ArgumentParser, default: dict[str, Any]):
        prefix = cls.ENV_PREFIX
        parser.add_argument(
            "-c",
            "--config",
            default=default.get("CONFIG_PATH", cls._UNDEFINED),
            help=f"Path to config file to load instead of the default user config ({default.get('CONFIG_PATH')})",
        )
        parser.add_argument(
            "--provider",
            default=default.get("PROVIDER", cls._UNDEFINED),
            choices=[provider.value for provider in Provider],
            help=f"Transcription provider (env: {prefix}PROVIDER)",
        )
        parser.add_argument(
            "-m",
            "--model",
            default=default.get("MODEL", cls._UNDEFINED),
            help=f"Transcription model, empty for the provider default (env: {prefix}MODEL)",
        )
        parser.add_argument(
            "-k",
            "--api-key",
            default=default.get("API_KEY", cls._UNDEFINED),
            help=f"API key for the transcription provider (env: {prefix}API_KEY)",
        )
        parser.add_argument(
            "-w",
            "--auto-write",
            action=argparse.BooleanOptionalAction,
            default=default.get("AUTO_WRITE", cls._UNDEFINED),
            help=f"Paste the transcript into the focused application (env: {prefix}AUTO_WRITE)",
        )
        parser.add_argument(
            "-r",
            "--record-mode",
            default=default.get("RECORD_MODE", cls._UNDEFINED),
            choices=[mode.value for mode in RecordMode],
            help=f"toggle: press to start and again to stop, hold: record while the shortcut is held (env: {prefix}RECORD_MODE)",
        )
        parser.add_argument(
            "-s",
            "--shortcut",
            default=default.get("SHORTCUT", cls._UNDEFINED),
            help=f"Global shortcut, like Alt+Space or Control+Shift+D (env: {prefix}SHORTCUT)",
        )
        parser.add_argument(
            "-e",
            "--enhance",
            action=argparse.BooleanOptionalAction,
            default=default.get("ENHANCE", cls._UNDEFINED),
            help=f"Enhance the transcript with a text model (env: {prefix}ENHANCE)",
        )
        parser.add_argument(
            "-ep",
            "--enhance-provider",
            default=default.get("ENHANCE_PROVIDER", cls._UNDEFINED),
            choices=[provider.value for provider in Provider],
            help=f"Provider for enhancement (env: {prefix}ENHANCE_PROVIDER)",
        )
        parser.add_argument(
            "-em",
            "--enhance-model",
            default=default.get("ENHANCE_MODEL", cls._UNDEFINED),
            help=f"Model for enhancement (env: {prefix}ENHANCE_MODEL)",
        )
        parser.add_argument(
            "-eP",
            "--enhance-prompt",
            default=default.get("ENHANCE_PROMPT", cls._UNDEFINED),
            help=f"Enhancement instructions (env: {prefix}ENHANCE_PROMPT)",
        )
        parser.add_argument(
            "-kb",
            "--keyboard",
            default=default.get("KEYBOARD", cls._UNDEFINED),
            help=f"Text filter for selecting the keyboard input device used by the global shortcut (env: {prefix}KEYBOARD)",
        )
        parser.add_argument(
            "-mic",
            "--microphone",
            default=default.get("MICROPHONE", cls._UNDEFINED),
            help=f"Text filter for selecting the microphone input device (env: {prefix}MICROPHONE)",
        )
        parser.add_argument(
            "-g",
            "--gain",
            type=float,
            default=default.get("GAIN", cls._UNDEFINED),
            help=f"Microphone amplification factor, 1.0=normal, 2.0=double (env: {prefix}GAIN)",
        )
        parser.add_argument(
            "--overlay",
            action=argparse.BooleanOptionalAction,
            default=default.get("OVERLAY", cls._UNDEFINED),
            help=f"Show the overlay for shortcut-triggered sessions (env: {prefix}OVERLAY)",
        )
        parser.add_argument(
            "--log",
            default=default.get("LOG", cls._UNDEFINED),
            help=f"Path to log file. Default: {default.get('LOG_DEFAULT')} (env: {prefix}LOG)",
        )

    @classmethod
    def _load_env_files(cls, config_path: Path) -> list[Path]:
        loaded_files = []
        for directory in {Path.cwd(), Path(__file__).parent}:
            if (env_path := (directory / ".env")).exists() and env_path.is_file():
                load_dotenv(env_path, override=False)
                loaded_files.append(env_path.resolve())
        if config_path.exists() and config_path.is_file():
            load_dotenv(dotenv_path=config_path, override=False)
            loaded_files.append(config_path.resolve())
        return loaded_files

    @classmethod
    def _extract_config_path_from_argv(cls, argv: list[str] | None = None) -> str | None:
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("-c", "--config")
        args = parser.parse_known_args(argv)[0]
        return None if args.config is None else args.config.strip()

    @classmethod
    def parse(cls, argv: list[str] | None = None) -> Config.App | None:
        config_dir = Path(user_config_dir(APP_NAME, ensure_exists=False))
        config_path_str = cls._extract_config_path_from_argv(argv) or (os.getenv(f"{cls.ENV_PREFIX}CONFIG") or "").strip()
        config_path = Path(config_path_str).expanduser() if config_path_str else config_dir / "config.env"
        if config_path_str and not config_path.is_file():
            errprint(f"ERROR: Config file {config_path} does not exist or is not a file")
            return None

        loaded_files = cls._load_env_files(config_path)
        debug("[CONFIG] loaded", *loaded_files)

        gain = cls.get_env("GAIN")
        default: dict[str, Any] = {
            "PROVIDER": cls.get_env("PROVIDER"),
            "MODEL": cls.get_env("MODEL"),
            "API_KEY": cls.get_env("API_KEY"),
            "AUTO_WRITE": cls.get_env_bool("AUTO_WRITE"),
            "RECORD_MODE": cls.get_env("RECORD_MODE"),
            "SHORTCUT": cls.get_env("SHORTCUT"),
            "ENHANCE": cls.get_env_bool("ENHANCE"),
            "ENHANCE_PROVIDER": cls.get_env("ENHANCE_PROVIDER"),
            "ENHANCE_MODEL": cls.get_env("ENHANCE_MODEL"),
            "ENHANCE_PROMPT": cls.get_env("ENHANCE_PROMPT"),
            "KEYBOARD": cls.get_env("KEYBOARD"),
            "MICROPHONE": cls.get_env("MICROPHONE"),
            "GAIN": float(gain) if gain else 1.0,
            "OVERLAY": cls.get_env_bool("OVERLAY", True),
            "LOG": cls.get_env("LOG"),
            "LOG_DEFAULT": (config_dir / f"{APP_NAME}.log").as_posix(),
            "CONFIG_PATH": config_path.as_posix(),
        }

        parser = argparse.ArgumentParser(
            description="Voice dictation: record, transcribe, then copy and paste into the focused application",
            epilog=(
                "Configuration files:\n"
                "  .env files in the current and script directories, then the user config file\n"
                f"  ({config_dir / 'config.env'}). Each option can be set via environment variable\n"
                f"  using the {cls.ENV_PREFIX} prefix. Command-line arguments have the highest priority."
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        cls._create_arguments(parser, default)
        args = parser.parse_args(argv)

        def given(value) -> bool:
            return value is not cls._UNDEFINED and value is not None

        overrides: dict[str, Any] = {}
        for dest, key in (
            ("provider", "provider"),
            ("model", "model"),
            ("api_key", "api_key"),
            ("auto_write", "auto_write"),
            ("record_mode", "record_mode"),
            ("enhance", "enhancement_enabled"),
            ("enhance_provider", "enhancement_provider"),
            ("enhance_model", "enhancement_model"),
            ("enhance_prompt", "enhancement_prompt"),
        ):
            if given(value := getattr(args, dest)):
                overrides[key] = value

        log_path = Path(args.log if given(args.log) else default["LOG_DEFAULT"]).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = log_path.open("a", encoding="utf-8", buffering=1)

        return Config.App(
            console=ConsoleWithLogging(log_file),
            config_dir=config_dir,
            backend=Config.Backend(
                config_dir=config_dir,
                keyboard=args.keyboard if given(args.keyboard) else None,
                microphone=args.microphone if given(args.microphone) else None,
                gain=args.gain if given(args.gain) else 1.0,
                overlay=bool(args.overlay) if given(args.overlay) else True,
            ),
            ui=Config.Ui(
                shortcut=args.shortcut if given(args.shortcut) else None,
                overrides=overrides,
            ),
        )


async def main_async():
    app_config = CommandLineParser.parse()
    if app_config is None:
        return

    from aitotype_backend import LocalBackend

    comm = Comm(display_enabled=True)
    backend = LocalBackend(comm, app_config.backend)
    preferences = Preferences(app_config.config_dir / Preferences.FILE_NAME)
    config_sync = ConfigSynchronizer(backend, preferences)
    history = HistoryCache(backend)
    shortcuts = ShortcutCoordinator(comm, backend, preferences)
    controller = SessionController(comm, backend, config_sync, history, shortcuts)
    shortcuts.is_blocked = lambda: controller.is_busy

    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(TerminalDisplayTask(comm, app_config).run())
            tg.create_task(backend.run())
            await config_sync.load()
            config_sync.apply_overrides(app_config.ui.overrides)
            controller.attach()
            tg.create_task(shortcuts.init(app_config.ui.shortcut))
            tg.create_task(InputTask(comm, controller, config_sync, shortcuts).run())

    except* (KeyboardInterrupt, CancelledError):
        print("\nExit.")
    except* Exception as eg:
        print(f"\nError in tasks: {eg.exceptions}")

    finally:
        await controller.aclose()
        await comm.shutdown()


def main():
    asyncio.run(main_async())


if __name__ == "__main__":
    # the backend module imports "aitotype", both must share the same classes
    from aitotype import main as _main

    _main()
