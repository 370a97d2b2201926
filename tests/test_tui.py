import io
import os

import pytest
from rich.console import Console

from termotp import tui
from termotp.io import config_utils
from termotp.otp import otp_utils

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTerminal:
    """Stands in for TerminalSession; records calls in order."""

    height = 12

    def __init__(self, keys=(), draw_error=None, read_error=None):
        self.keys = list(keys)
        self.draw_error = draw_error
        self.read_error = read_error
        self.events = []
        self.frames = []
        self.exits = 0

    def __enter__(self):
        self.events.append("enter")
        return self

    def __exit__(self, exc_type, exc, traceback):
        self.events.append("exit")
        self.exits += 1

    def draw(self, renderable):
        self.events.append("draw")
        if self.draw_error:
            raise self.draw_error
        self.frames.append(renderable)

    def read_key(self, timeout):
        self.events.append(("read", timeout))
        if self.read_error:
            raise self.read_error
        if not self.keys:
            raise RuntimeError("ran out of scripted keys")
        return self.keys.pop(0)


class FakeStream:
    def fileno(self):
        return 0


def _config(*names, theme=None):
    accounts = {name: otp_utils.Account.from_secret(name, RFC_SECRET) for name in names}
    return config_utils.Config(theme=theme or config_utils.Theme(), accounts=accounts)


def _scheduler(now=59):
    return otp_utils.OTPScheduler(clock=FakeClock(now))


def _render(renderable, width=40, height=12):
    console = Console(file=io.StringIO(), width=width, height=height, record=True)
    console.print(renderable)
    return console.export_text()


@pytest.mark.parametrize(
    "percent, expected",
    [
        (0.0, tui.Urgency.URGENT),
        (4.9, tui.Urgency.URGENT),
        (5.0, tui.Urgency.WARNING),
        (9.9, tui.Urgency.WARNING),
        (10.0, tui.Urgency.NOTICE),
        (19.9, tui.Urgency.NOTICE),
        (20.0, tui.Urgency.CALM),
        (100.0, tui.Urgency.CALM),
    ],
)
def test_urgency_tiers(percent, expected):
    assert tui.urgency_for(percent) is expected


def test_code_styles_follow_tier():
    theme = config_utils.Theme(code="cyan")

    urgent = tui.Urgency.URGENT.code_style(theme)
    assert urgent.color.name == "red"
    assert urgent.blink2 and not urgent.blink

    warning = tui.Urgency.WARNING.code_style(theme)
    assert warning.color.name == "bright_red"
    assert warning.blink2

    notice = tui.Urgency.NOTICE.code_style(theme)
    assert notice.color.name == "yellow"
    assert notice.blink and not notice.blink2

    calm = tui.Urgency.CALM.code_style(theme)
    assert calm.color.name == "cyan"
    assert not calm.blink and not calm.blink2


def test_gauge_color_is_green_when_calm():
    assert tui.Urgency.CALM.gauge_color == "green"
    assert tui.Urgency.NOTICE.gauge_color == "yellow"


def test_max_label_width():
    config = _config("email", "bank")
    config.accounts["bank"].digits = 8
    assert tui.max_label_width(config.accounts) == len("email") + 6
    assert tui.max_label_width({}) == 0


def test_frame_lists_accounts_with_codes():
    config = _config("email", "bank")
    _scheduler().force_update(config.accounts.values())
    text = _render(tui.build_frame(config, 80.0, tui.max_label_width(config.accounts), 12))
    assert "EMAIL 287082" in text
    assert "BANK  287082" in text


def test_frame_centers_accounts_vertically():
    config = _config("email")
    _scheduler().force_update(config.accounts.values())
    lines = _render(tui.build_frame(config, 50.0, tui.max_label_width(config.accounts), 12)).splitlines()
    # Top border, then four blank rows above the single account.
    assert "EMAIL" in lines[5]
    assert all("EMAIL" not in line for line in lines[:5])


def test_loop_quits_on_q():
    terminal = FakeTerminal(keys=[None, "a", "q"])
    config = _config("email")
    tui.run(config, terminal=terminal, scheduler=_scheduler())

    assert len(terminal.frames) == 3
    assert terminal.exits == 1
    assert config.accounts["email"].current_code == "287082"


def test_loop_quits_on_escape():
    terminal = FakeTerminal(keys=[tui.ESCAPE])
    tui.run(_config("email"), terminal=terminal, scheduler=_scheduler())
    assert len(terminal.frames) == 1
    assert terminal.exits == 1


def test_draw_precedes_poll_each_iteration():
    terminal = FakeTerminal(keys=["x", "q"])
    tui.run(_config("email"), terminal=terminal, scheduler=_scheduler())
    assert terminal.events == [
        "enter",
        "draw",
        ("read", tui.EVENT_TIMEOUT),
        "draw",
        ("read", tui.EVENT_TIMEOUT),
        "exit",
    ]


def test_draw_error_still_restores_terminal_once():
    terminal = FakeTerminal(keys=["q"], draw_error=tui.TerminalError("Could not draw to terminal"))
    with pytest.raises(tui.TerminalError):
        tui.run(_config("email"), terminal=terminal, scheduler=_scheduler())
    assert terminal.exits == 1
    assert terminal.events[-1] == "exit"


def test_poll_error_still_restores_terminal_once():
    terminal = FakeTerminal(read_error=tui.TerminalError("Could not wait for next event"))
    with pytest.raises(tui.TerminalError):
        tui.run(_config("email"), terminal=terminal, scheduler=_scheduler())
    assert terminal.exits == 1


def test_session_rejects_non_terminal_input():
    session = tui.TerminalSession(Console(file=io.StringIO()), stream=io.StringIO())
    with pytest.raises(tui.TerminalError):
        with session:
            pass


def _patch_termios(monkeypatch):
    restored = []
    monkeypatch.setattr(tui.termios, "tcgetattr", lambda fd: ["saved"])
    monkeypatch.setattr(tui.termios, "tcsetattr", lambda fd, when, attrs: restored.append(attrs))
    monkeypatch.setattr(tui.tty, "setcbreak", lambda fd: None)
    return restored


def test_session_releases_raw_mode_when_screen_setup_fails(monkeypatch):
    restored = _patch_termios(monkeypatch)
    session = tui.TerminalSession(Console(file=io.StringIO()), stream=FakeStream())
    with pytest.raises(tui.TerminalError):
        with session:
            pass
    assert restored == [["saved"]]


def test_session_run_restores_everything(monkeypatch):
    restored = _patch_termios(monkeypatch)
    output = io.StringIO()
    console = Console(file=output, force_terminal=True, width=40, height=12)
    session = tui.TerminalSession(console, stream=FakeStream())
    monkeypatch.setattr(session, "read_key", lambda timeout: "q")

    tui.run(_config("email"), terminal=session, scheduler=_scheduler())

    written = output.getvalue()
    assert "\x1b[?1049h" in written
    assert written.rstrip().endswith("\x1b[?25h")
    assert "\x1b[?1049l" in written
    assert "EMAIL" in written
    assert restored == [["saved"]]
    assert not console.is_alt_screen


def _session_on_pipe():
    read_fd, write_fd = os.pipe()
    session = tui.TerminalSession(Console(file=io.StringIO()))
    session._fd = read_fd
    return session, read_fd, write_fd


@pytest.mark.parametrize(
    "typed, expected",
    [
        (b"q", "q"),
        (b"a", "a"),
        (b"\x1b", tui.ESCAPE),
        (b"\x1b[A", "\x1b[A"),
    ],
)
def test_read_key_decodes_input(typed, expected):
    session, read_fd, write_fd = _session_on_pipe()
    try:
        os.write(write_fd, typed)
        assert session.read_key(0.1) == expected
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_read_key_times_out():
    session, read_fd, write_fd = _session_on_pipe()
    try:
        assert session.read_key(0.01) is None
    finally:
        os.close(read_fd)
        os.close(write_fd)
