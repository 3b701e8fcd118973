import asyncio

import pytest

from aitotype import (
    Backend,
    Comm,
    Config,
    ConfigSynchronizer,
    ConnectionResult,
    HistoryCache,
    Preferences,
    SessionController,
    ShortcutCoordinator,
)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend(Backend):
    """Records every command; `failures` and `delays` are keyed by command name."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.transcript = "hello world"
        self.stored = Config.Stt.default()
        self.shortcut_ready = True
        self.not_ready_probes = 0
        self.accessibility = True
        self.audio_levels = [0.5]

    async def _call(self, name: str, *args):
        self.calls.append((name, args))
        if delay := self.delays.get(name):
            await asyncio.sleep(delay)
        if (exc := self.failures.get(name)) is not None:
            raise exc

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def args_of(self, name: str) -> list[tuple]:
        return [args for call_name, args in self.calls if call_name == name]

    async def start_recording(self):
        await self._call("start_recording")

    async def stop_recording(self):
        await self._call("stop_recording")

    async def stop_and_transcribe(self):
        await self._call("stop_and_transcribe")
        return self.transcript

    async def get_stt_config(self):
        await self._call("get_stt_config")
        return self.stored

    async def save_stt_config(self, config):
        await self._call("save_stt_config", config)
        self.stored = config

    async def test_connection(self):
        await self._call("test_connection")
        return ConnectionResult(True, "Connected", self.stored.provider.value, self.stored.model, 12.0)

    async def copy_to_clipboard(self, text):
        await self._call("copy_to_clipboard", text)

    async def paste_text(self, text):
        await self._call("paste_text", text)

    async def check_accessibility_permissions(self):
        await self._call("check_accessibility_permissions")
        return self.accessibility

    async def request_accessibility_permissions(self):
        await self._call("request_accessibility_permissions")
        return self.accessibility

    async def open_accessibility_settings(self):
        await self._call("open_accessibility_settings")

    async def update_shortcut(self, shortcut):
        await self._call("update_shortcut", shortcut)

    async def is_shortcut_ready(self):
        await self._call("is_shortcut_ready")
        if self.not_ready_probes > 0:
            self.not_ready_probes -= 1
            return False
        return self.shortcut_ready

    async def show_overlay_status(self, status):
        await self._call("show_overlay_status", status)

    async def hide_overlay(self):
        await self._call("hide_overlay")

    async def get_audio_level(self):
        await self._call("get_audio_level")
        return self.audio_levels.pop(0) if len(self.audio_levels) > 1 else self.audio_levels[0]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def comm():
    return Comm()


@pytest.fixture
def preferences(tmp_path):
    return Preferences(tmp_path / Preferences.FILE_NAME)


@pytest.fixture
def config_sync(backend, preferences):
    return ConfigSynchronizer(backend, preferences)


@pytest.fixture
def history(backend):
    return HistoryCache(backend)


@pytest.fixture
def shortcuts(comm, backend, preferences):
    coordinator = ShortcutCoordinator(comm, backend, preferences, default_shortcut="Alt+Space")
    coordinator.READY_PROBE_DELAY_S = 0
    return coordinator


@pytest.fixture
async def controller(comm, backend, config_sync, history, shortcuts, clock):
    controller = SessionController(comm, backend, config_sync, history, shortcuts, clock=clock)
    shortcuts.is_blocked = lambda: controller.is_busy
    controller.attach()
    yield controller
    await controller.aclose()
    await comm.drain()
