"""QR code helpers for provisioning termotp accounts.

Scanning uses OpenCV's QR detector on webcam frames or image files; export
prints an ``otpauth://`` URI and an ASCII QR code with the qrcode library.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Optional, TextIO

import pyotp
import qrcode

from .otp_utils import STEP_SECONDS, Account, Algorithm, SecretDecodeError

logger = logging.getLogger(__name__)


class QRScanError(ValueError):
    """Raised when a QR code is missing or does not describe a TOTP account."""


class CameraError(QRScanError):
    """Raised when the camera cannot be opened or stops delivering frames."""


def parse_otpauth_uri(uri: str) -> Account:
    """Turn an ``otpauth://totp/...`` URI into an :class:`Account`."""

    try:
        otp = pyotp.parse_uri(uri)
    except ValueError as exc:
        raise QRScanError(f"Not a usable otpauth URI: {exc}") from exc
    if not isinstance(otp, pyotp.TOTP):
        raise QRScanError("Only time-based (totp) URIs are supported.")
    if otp.interval != STEP_SECONDS:
        raise QRScanError(f"Unsupported period {otp.interval}s (only {STEP_SECONDS}s is supported).")

    algorithm = next((member for member in Algorithm if member.digest == otp.digest), None)
    if algorithm is None:
        raise QRScanError(f"Unsupported algorithm {getattr(otp.digest, '__name__', otp.digest)}.")

    label = otp.name or ""
    if otp.issuer and not label.lower().startswith(otp.issuer.lower()):
        label = f"{otp.issuer}:{label}" if label else otp.issuer
    name = label.strip().lower().replace(" ", "_") or "account"
    try:
        return Account.from_secret(name, otp.secret, digits=otp.digits, algorithm=algorithm)
    except SecretDecodeError as exc:
        raise QRScanError(str(exc)) from exc


def provisioning_uri(account: Account, issuer: Optional[str] = None) -> str:
    totp = pyotp.TOTP(
        account.secret,
        digits=account.digits,
        digest=account.algorithm.digest,
        interval=STEP_SECONDS,
    )
    return totp.provisioning_uri(name=account.name, issuer_name=issuer)


def print_qr(data: str, out: TextIO = sys.stdout) -> None:
    qr = qrcode.QRCode(border=2)
    qr.add_data(data)
    qr.make(fit=True)
    qr.print_ascii(out=out)


def _default_detector():
    import cv2

    return cv2.QRCodeDetector()


def scan_image(path: str, detector=None) -> str:
    """Decode the QR code found in the image at ``path``."""

    import cv2

    image = cv2.imread(str(path))
    if image is None:
        raise FileNotFoundError(f"Could not read image {path}.")
    detector = detector or _default_detector()
    text, _points, _straight = detector.detectAndDecode(image)
    if not text:
        raise QRScanError(f"No QR code found in {path}.")
    return text


def scan_webcam(
    device_index: int,
    on_text: Callable[[str], None],
    capture=None,
    detector=None,
) -> None:
    """Call ``on_text`` for every new QR payload seen by the camera.

    Runs until a frame cannot be read, which raises :class:`CameraError`.
    The capture is released on every exit path.
    """

    if capture is None:
        import cv2

        capture = cv2.VideoCapture(device_index)
    detector = detector or _default_detector()
    try:
        if not capture.isOpened():
            raise CameraError(f"Could not open webcam with index {device_index}.")
        logger.info("Scanning webcam %d for QR codes", device_index)
        last_text = None
        while True:
            ok, frame = capture.read()
            if not ok:
                raise CameraError(f"Could not get frame from webcam {device_index}.")
            text, _points, _straight = detector.detectAndDecode(frame)
            if text and text != last_text:
                last_text = text
                on_text(text)
    finally:
        capture.release()
