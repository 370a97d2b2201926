"""Time-based One-Time Password utilities for termotp.

These helpers model configured accounts, decode their Base32 secrets and keep
each account's current code in step with the 30-second TOTP window. Code
generation itself is delegated to the pyotp library.
"""

from __future__ import annotations

import base64
import datetime
import enum
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

import pyotp

logger = logging.getLogger(__name__)

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

STEP_SECONDS: int = 30
ROLLOVER_WINDOW: float = 2.0
DEFAULT_DIGITS: int = 6


class SecretDecodeError(ValueError):
    """Raised when an account secret is not usable Base32 text."""


class Algorithm(enum.Enum):
    """Hash algorithms an account may be configured with."""

    SHA1 = "SHA1"

    @property
    def digest(self) -> Callable:
        return _DIGESTS[self]

    @classmethod
    def from_name(cls, name: str) -> "Algorithm":
        try:
            return cls(str(name).upper())
        except ValueError as exc:
            supported = ", ".join(member.value for member in cls)
            raise ValueError(f"Unsupported algorithm {name!r} (supported: {supported}).") from exc


_DIGESTS = {
    Algorithm.SHA1: hashlib.sha1,
}


@dataclass
class Account:
    """A configured TOTP account and the last code computed for it."""

    name: str
    secret: str
    secret_bytes: bytes
    digits: int = DEFAULT_DIGITS
    algorithm: Algorithm = Algorithm.SHA1
    current_code: str = ""

    @classmethod
    def from_secret(
        cls,
        name: str,
        secret: str,
        digits: int = DEFAULT_DIGITS,
        algorithm: Algorithm = Algorithm.SHA1,
    ) -> "Account":
        text, raw = decode_secret(secret)
        return cls(name=name, secret=text, secret_bytes=raw, digits=digits, algorithm=algorithm)


def decode_secret(text: str) -> Tuple[str, bytes]:
    """Return the secret text alongside its decoded bytes.

    Padding is optional and letters are matched case-insensitively, the way
    authenticator apps hand secrets out.
    """

    if not text:
        raise SecretDecodeError("Secret must be a non-empty Base32 string.")
    try:
        raw = pyotp.TOTP(text).byte_secret()
    except (ValueError, TypeError) as exc:  # binascii.Error is a ValueError
        raise SecretDecodeError(f"Secret is not valid Base32: {exc}") from exc
    if not raw:
        raise SecretDecodeError("Secret decodes to zero bytes.")
    return text, raw


def compute_code(account: Account, for_time: Optional[float] = None) -> str:
    """Return the TOTP code for ``account`` at Unix time ``for_time`` (default: now)."""

    if for_time is None:
        for_time = time.time()
    # pyotp only accepts Base32 text.
    totp = pyotp.TOTP(
        base64.b32encode(account.secret_bytes).decode("ascii"),
        digits=account.digits,
        digest=account.algorithm.digest,
        interval=STEP_SECONDS,
    )
    moment = datetime.datetime.fromtimestamp(int(for_time), tz=datetime.timezone.utc)
    return totp.at(moment)


def percent_remaining(seconds_into_epoch: float) -> float:
    return 100.0 - (100.0 / STEP_SECONDS) * seconds_into_epoch


class OTPScheduler:
    """Keeps account codes valid for the current step.

    Codes are recomputed while the clock sits in the first
    ``ROLLOVER_WINDOW`` seconds of a step, and whenever a tick lands in a
    step that has not been computed yet (a poll slower than the window).
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._computed_step: Optional[int] = None

    def tick(self, accounts: Iterable[Account]) -> Tuple[float, float]:
        now = self._clock()
        seconds = now % STEP_SECONDS
        step = int(now // STEP_SECONDS)
        if seconds < ROLLOVER_WINDOW or step != self._computed_step:
            self._update(accounts, now)
        percent = percent_remaining(seconds)
        logger.log(TRACE, "Tick at %.3fs into step %d, %.1f%% remaining", seconds, step, percent)
        return seconds, percent

    def force_update(self, accounts: Iterable[Account]) -> None:
        self._update(accounts, self._clock())

    def _update(self, accounts: Iterable[Account], now: float) -> None:
        count = 0
        for account in accounts:
            account.current_code = compute_code(account, now)
            count += 1
        self._computed_step = int(now // STEP_SECONDS)
        logger.debug("Refreshed %d account code(s) for step %d", count, self._computed_step)
