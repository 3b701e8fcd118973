from aitotype import Comm, Events, OverlayStatus, SessionState, Status, render
from aitotype_overlay import OverlayPresenter, OverlayProtocol, render_card


def test_overlay_defaults_to_recording():
    presenter = OverlayPresenter()

    presenter.on_status({})
    assert presenter.view.status is OverlayStatus.RECORDING
    assert presenter.view.label == "Listening..."

    presenter.on_status({"status": "bogus"})
    assert presenter.view.status is OverlayStatus.RECORDING


def test_overlay_transcribing_and_hide():
    views = []
    presenter = OverlayPresenter(on_change=views.append)

    presenter.handle_message({"type": "overlay-status", "status": "transcribing"})
    assert views[-1].visible is True
    assert views[-1].processing is True
    assert views[-1].label == "Transcribing..."

    presenter.handle_message({"type": "hide"})
    assert views[-1].visible is False
    assert render_card(views[-1]).plain == ""


def test_overlay_follows_event_hub():
    comm = Comm()
    presenter = OverlayPresenter()
    presenter.attach(comm)

    comm.emit(Events.OVERLAY_STATUS, {"status": "transcribing"})
    assert presenter.status is OverlayStatus.TRANSCRIBING

    presenter.detach()
    comm.emit(Events.OVERLAY_STATUS, {"status": "recording"})
    assert presenter.status is OverlayStatus.TRANSCRIBING


def test_protocol_keeps_incomplete_tail():
    first = OverlayProtocol.encode_message({"type": "overlay-status", "status": "recording"})
    second = OverlayProtocol.encode_message({"type": "hide"})
    buffer = first + second[:5]

    messages, rest = OverlayProtocol.decode_messages(buffer)
    assert messages == [{"type": "overlay-status", "status": "recording"}]
    assert rest == second[:5]

    messages, rest = OverlayProtocol.decode_messages(rest + second[5:])
    assert messages == [{"type": "hide"}]
    assert rest == b""


def test_protocol_skips_malformed_messages():
    bad = OverlayProtocol.HEADER.pack(3) + b"{x]"
    good = OverlayProtocol.encode_message({"type": "hide"})

    messages, rest = OverlayProtocol.decode_messages(bad + good)

    assert messages == [{"type": "hide"}]
    assert rest == b""


def test_render_projection():
    state = SessionState()
    view = render(state)
    assert (view.pill, view.instruction, view.result) == ("Ready", "Tap orb to capture", None)

    state.status = Status.RECORDING
    state.audio_level = 0.4
    view = render(state)
    assert (view.pill, view.instruction, view.orb_active, view.audio_level) == ("Recording", "Listening...", True, 0.4)

    state.status = Status.TRANSCRIBING
    view = render(state)
    assert (view.pill, view.instruction, view.orb_processing, view.audio_level) == ("Processing", "Transcribing...", True, 0.0)

    state.status = Status.SUCCESS
    state.message = "done text"
    view = render(state)
    assert (view.pill, view.instruction, view.result) == ("Success", "Complete", "done text")

    state.status = Status.ERROR
    state.message = ""
    assert render(state).instruction == "Failed"
