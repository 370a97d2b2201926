"""Full-screen terminal interface for termotp.

The loop is single threaded: each iteration advances the scheduler, paints a
frame and then waits briefly for a key press.
"""

from __future__ import annotations

import enum
import logging
import os
import select
import sys
import termios
import tty
from contextlib import ExitStack
from typing import Dict, Optional

from rich import box
from rich.console import Console, RenderableType
from rich.layout import Layout
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.style import Style
from rich.text import Text

from .io.config_utils import Config, Theme
from .otp.otp_utils import Account, OTPScheduler

logger = logging.getLogger(__name__)

EVENT_TIMEOUT: float = 0.1
ESCAPE = "escape"
QUIT_KEYS = frozenset({"q", ESCAPE})


class TerminalError(Exception):
    """Raised when the terminal could not be set up, drawn to, or read from."""


class Blink(enum.Enum):
    NONE = "none"
    SLOW = "slow"
    FAST = "fast"


class Urgency(enum.Enum):
    """Styling tiers for the code and gauge as the step runs out."""

    URGENT = ("red", Blink.FAST)
    WARNING = ("bright_red", Blink.FAST)
    NOTICE = ("yellow", Blink.SLOW)
    CALM = (None, Blink.NONE)

    def __init__(self, color: Optional[str], blink: Blink) -> None:
        self.color = color
        self.blink = blink

    def code_style(self, theme: Theme) -> Style:
        return Style(
            color=self.color or theme.code,
            blink=self.blink is Blink.SLOW,
            blink2=self.blink is Blink.FAST,
        )

    @property
    def gauge_color(self) -> str:
        return self.color or "green"


def urgency_for(percent: float) -> Urgency:
    if percent < 5.0:
        return Urgency.URGENT
    if percent < 10.0:
        return Urgency.WARNING
    if percent < 20.0:
        return Urgency.NOTICE
    return Urgency.CALM


def max_label_width(accounts: Dict[str, Account]) -> int:
    return max((len(name) + account.digits for name, account in accounts.items()), default=0)


def _account_lines(config: Config, percent: float, max_width: int, rows: int) -> Text:
    accounts = config.accounts
    name_style = Style(color=config.theme.name, bold=True)
    code_style = urgency_for(percent).code_style(config.theme)

    text = Text(justify="center", no_wrap=True)
    if rows > len(accounts):
        text.append("\n" * ((rows - len(accounts)) // 2))
    for index, (name, account) in enumerate(accounts.items()):
        if index:
            text.append("\n")
        spaces = " " * (max_width - (len(name) + account.digits) + 1)
        text.append(name.upper(), style=name_style)
        text.append(spaces)
        text.append(account.current_code, style=code_style)
    return text


def build_frame(config: Config, percent: float, max_width: int, height: int) -> RenderableType:
    """Build one screen: the bordered account panel above a one-row gauge."""

    panel_rows = max(height - 1 - 2, 0)
    panel = Panel(
        _account_lines(config, percent, max_width, panel_rows),
        box=box.SQUARE,
        style=Style(bold=True),
    )
    gauge_color = urgency_for(percent).gauge_color
    gauge = ProgressBar(
        total=100.0,
        completed=max(0.0, min(percent, 100.0)),
        complete_style=gauge_color,
        finished_style=gauge_color,
    )

    layout = Layout()
    layout.split_column(Layout(panel, name="accounts"), Layout(gauge, name="gauge", size=1))
    return layout


class TerminalSession:
    """Scoped terminal setup: cbreak input, alternate screen, hidden cursor.

    Everything acquired in ``__enter__`` is released on exit, including when
    a later setup step fails.
    """

    def __init__(self, console: Optional[Console] = None, stream=None) -> None:
        self.console = console or Console()
        self._stream = stream or sys.stdin
        self._fd: Optional[int] = None
        self._saved_attributes = None
        self._stack: Optional[ExitStack] = None

    def __enter__(self) -> "TerminalSession":
        with ExitStack() as stack:
            self._enable_raw_mode()
            stack.callback(self._restore_mode)
            self._enter_screen()
            stack.callback(self._leave_screen)
            self._stack = stack.pop_all()
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        stack, self._stack = self._stack, None
        if stack is not None:
            stack.close()

    def _enable_raw_mode(self) -> None:
        try:
            self._fd = self._stream.fileno()
            self._saved_attributes = termios.tcgetattr(self._fd)
            tty.setcbreak(self._fd)
        except (OSError, ValueError, termios.error) as exc:
            raise TerminalError(f"Could not enable terminal raw mode: {exc}") from exc

    def _restore_mode(self) -> None:
        try:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attributes)
        except (OSError, termios.error) as exc:
            raise TerminalError(f"Could not disable terminal raw mode: {exc}") from exc

    def _enter_screen(self) -> None:
        try:
            if not self.console.set_alt_screen(True):
                raise TerminalError("Could not prepare to setup terminal: output is not a terminal")
            self.console.show_cursor(False)
        except OSError as exc:
            raise TerminalError(f"Could not prepare to setup terminal: {exc}") from exc

    def _leave_screen(self) -> None:
        try:
            self.console.set_alt_screen(False)
            self.console.show_cursor(True)
        except OSError as exc:
            raise TerminalError(f"Could not undo terminal setup: {exc}") from exc

    @property
    def height(self) -> int:
        return self.console.size.height

    def draw(self, renderable: RenderableType) -> None:
        try:
            self.console.update_screen(renderable)
        except Exception as exc:
            raise TerminalError(f"Could not draw to terminal: {exc}") from exc

    def read_key(self, timeout: float) -> Optional[str]:
        """Return the next key press, or ``None`` if none arrives within ``timeout``."""

        if not self._ready(timeout, "Could not wait for next event"):
            return None
        first = self._read("Could not read next event")
        if first != "\x1b":
            return first
        # A lone ESC is the Escape key; anything queued behind it is a sequence.
        sequence = first
        while self._ready(0, "Could not read next event"):
            sequence += self._read("Could not read next event")
        return ESCAPE if sequence == first else sequence

    def _ready(self, timeout: float, context: str) -> bool:
        try:
            readable, _, _ = select.select([self._fd], [], [], timeout)
        except (OSError, ValueError) as exc:
            raise TerminalError(f"{context}: {exc}") from exc
        return bool(readable)

    def _read(self, context: str) -> str:
        try:
            data = os.read(self._fd, 1)
        except OSError as exc:
            raise TerminalError(f"{context}: {exc}") from exc
        if not data:
            raise TerminalError(f"{context}: input stream closed")
        return data.decode("utf-8", errors="replace")


def event_loop(terminal, config: Config, scheduler: Optional[OTPScheduler] = None) -> None:
    """Poll, tick and draw until a quit key is pressed.

    ``terminal`` needs ``height``, ``draw(renderable)`` and
    ``read_key(timeout)``; :class:`TerminalSession` provides them.
    """

    scheduler = scheduler or OTPScheduler()
    max_width = max_label_width(config.accounts)
    scheduler.force_update(config.accounts.values())
    while True:
        _seconds, percent = scheduler.tick(config.accounts.values())
        terminal.draw(build_frame(config, percent, max_width, terminal.height))
        key = terminal.read_key(EVENT_TIMEOUT)
        if key in QUIT_KEYS:
            logger.debug("Quit key %r pressed", key)
            return


def run(config: Config, terminal=None, scheduler: Optional[OTPScheduler] = None) -> None:
    """Run the interface; the terminal is restored on every exit path."""

    terminal = terminal or TerminalSession()
    with terminal:
        event_loop(terminal, config, scheduler)
