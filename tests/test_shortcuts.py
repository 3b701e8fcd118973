import pytest

from aitotype import BackendError, Events, KeyPress, ShortcutCoordinator


@pytest.mark.parametrize(
    ("modifiers", "key", "expected"),
    [
        ({"Shift", "Control"}, "a", "Control+Shift+A"),
        (set(), " ", "Space"),
        ({"Alt"}, "Escape", "Alt+Esc"),
        ({"Shift"}, "Shift", None),
        ({"Meta", "Alt"}, "ArrowUp", "Cmd+Alt+Up"),
        ({"Ctrl"}, "F5", "Control+F5"),
        ({"Control"}, "", None),
    ],
)
def test_normalize(modifiers, key, expected):
    assert ShortcutCoordinator.normalize(modifiers, key) == expected


async def test_readiness_is_probed_until_ready_then_cached(shortcuts, backend):
    backend.not_ready_probes = 3

    assert await shortcuts.ensure_ready() is True
    assert backend.names().count("is_shortcut_ready") == 4

    assert await shortcuts.ensure_ready() is True
    assert backend.names().count("is_shortcut_ready") == 4


async def test_registration_abandoned_when_never_ready(shortcuts, backend, preferences, capsys):
    backend.shortcut_ready = False

    assert await shortcuts.set_shortcut("Control+Shift+D") is False

    assert backend.names().count("is_shortcut_ready") == ShortcutCoordinator.READY_PROBE_ATTEMPTS
    assert "update_shortcut" not in backend.names()
    assert preferences.shortcut is None
    assert "WARNING" in capsys.readouterr().err


async def test_rejected_shortcut_is_not_persisted(shortcuts, backend, preferences):
    preferences.shortcut = "Alt+D"
    backend.failures["update_shortcut"] = BackendError("plugin not ready")

    assert await shortcuts.set_shortcut("Alt+K") is False
    assert preferences.shortcut == "Alt+D"


async def test_init_registers_default_shortcut(shortcuts, backend):
    assert await shortcuts.init() is True

    assert backend.args_of("update_shortcut") == [("Alt+Space",)]
    assert shortcuts.label == "Alt+Space"


async def test_init_prefers_persisted_shortcut(shortcuts, backend, preferences):
    preferences.shortcut = "Control+Alt+R"

    await shortcuts.init()

    assert backend.args_of("update_shortcut") == [("Control+Alt+R",)]


async def test_capture_commits_combination(shortcuts, comm, backend, preferences):
    assert await shortcuts.start_capture() is True
    assert backend.args_of("update_shortcut") == [("",)]
    assert shortcuts.label == ShortcutCoordinator.CAPTURE_LABEL
    assert comm.listener_count(Events.KEYDOWN) == 1

    comm.emit(Events.KEYDOWN, KeyPress("Shift", frozenset({"Shift"})))
    await comm.drain()
    assert shortcuts.is_capturing

    comm.emit(Events.KEYDOWN, KeyPress("a", frozenset({"Control", "Shift"})))
    await comm.drain()

    assert not shortcuts.is_capturing
    assert comm.listener_count(Events.KEYDOWN) == 0
    assert backend.args_of("update_shortcut")[-1] == ("Control+Shift+A",)
    assert preferences.shortcut == "Control+Shift+A"
    assert shortcuts.label == "Control+Shift+A"


async def test_capture_escape_restores_previous(shortcuts, comm, backend, preferences):
    preferences.shortcut = "Alt+D"

    await shortcuts.start_capture()
    comm.emit(Events.KEYDOWN, KeyPress("Escape"))
    await comm.drain()

    assert not shortcuts.is_capturing
    assert comm.listener_count(Events.KEYDOWN) == 0
    assert backend.args_of("update_shortcut") == [("",), ("Alt+D",)]
    assert shortcuts.label == "Alt+D"


async def test_capture_cannot_be_started_twice(shortcuts, comm):
    assert await shortcuts.start_capture() is True
    assert await shortcuts.start_capture() is False
    assert comm.listener_count(Events.KEYDOWN) == 1


async def test_capture_refused_while_blocked(shortcuts, comm, backend):
    shortcuts.is_blocked = lambda: True

    assert await shortcuts.start_capture() is False
    assert not shortcuts.is_capturing
    assert "update_shortcut" not in backend.names()
    assert comm.listener_count(Events.KEYDOWN) == 0


async def test_capture_rejected_by_backend_restores_previous(shortcuts, comm, backend, preferences, monkeypatch):
    preferences.shortcut = "Alt+D"
    register = backend.update_shortcut

    async def update_shortcut(shortcut):
        await register(shortcut)
        if "/" in shortcut:
            raise BackendError("Unknown key: /")

    monkeypatch.setattr(backend, "update_shortcut", update_shortcut)

    await shortcuts.start_capture()
    comm.emit(Events.KEYDOWN, KeyPress("/", frozenset({"Control"})))
    await comm.drain()

    assert not shortcuts.is_capturing
    assert backend.args_of("update_shortcut") == [("",), ("Control+/",), ("Alt+D",)]
    assert preferences.shortcut == "Alt+D"
    assert shortcuts.label == "Alt+D"


async def test_capture_keeps_previous_when_backend_keeps_failing(shortcuts, comm, backend, preferences):
    preferences.shortcut = "Alt+D"

    await shortcuts.start_capture()
    backend.failures["update_shortcut"] = BackendError("listener unavailable")
    comm.emit(Events.KEYDOWN, KeyPress("/", frozenset({"Control"})))
    await comm.drain()

    assert preferences.shortcut == "Alt+D"
    assert shortcuts.label == "Alt+D"
