"""Command-line interface for termotp.

Runs the live TOTP viewer by default; ``scan`` and ``export`` help move
accounts in and out of the configuration file through QR codes.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
from pathlib import Path
from typing import Optional

from . import tui
from .io import config_utils
from .otp import qr_utils
from .otp.otp_utils import TRACE

logger = logging.getLogger(__name__)


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=None,
        help="TOML configuration file (defaults to the platform config directory).",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="termotp", description="Show rolling TOTP codes in the terminal.")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--trace", action="store_true", help="Enables tracing.")
    verbosity.add_argument("--debug", action="store_true", help="Enables debug info.")
    verbosity.add_argument("--quiet", action="store_true", help="No logging at all.")
    parser.add_argument("--log-file", help="Write log records to this file instead of stderr.")
    subparsers = parser.add_subparsers(dest="command")

    tui_parser = subparsers.add_parser("tui", help="Run the TUI from the provided or default configuration file.")
    tui_parser.add_argument(
        "config_file",
        nargs="?",
        default=None,
        help="A TOML configuration file containing accounts and secrets.",
    )

    scan_parser = subparsers.add_parser("scan", help="Detect account info from a webcam or an image.")
    source = scan_parser.add_mutually_exclusive_group()
    source.add_argument("--device", type=int, default=0, help="Webcam device index (defaults to 0).")
    source.add_argument("--image", help="Decode a QR code from this image file instead of the webcam.")
    scan_parser.add_argument(
        "--save",
        action="store_true",
        help="Append scanned otpauth:// accounts to the configuration file.",
    )
    _add_config_argument(scan_parser)

    export_parser = subparsers.add_parser("export", help="Print the provisioning URI and QR code of an account.")
    export_parser.add_argument("name", help="Account name as written in the configuration file.")
    export_parser.add_argument("--issuer", default=None, help="Issuer label embedded in the URI.")
    export_parser.add_argument("--no-qr", action="store_true", help="Skip ASCII QR output.")
    _add_config_argument(export_parser)

    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    if args.quiet:
        logging.disable(logging.CRITICAL)
        return
    level = logging.WARNING
    if args.debug:
        level = logging.DEBUG
    elif args.trace:
        level = TRACE
    logging.basicConfig(
        level=level,
        filename=args.log_file,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config_path(value: Optional[str]) -> Path:
    return Path(value) if value else config_utils.default_config_path()


@contextlib.contextmanager
def _detached_console_logging():
    """Detach plain stream handlers so log records do not paint over the TUI."""

    root = logging.getLogger()
    detached = [handler for handler in root.handlers if type(handler) is logging.StreamHandler]
    if detached and root.isEnabledFor(logging.INFO):
        logger.warning("Console logging is paused while the TUI runs; use --log-file to keep records.")
    for handler in detached:
        root.removeHandler(handler)
    try:
        yield
    finally:
        for handler in detached:
            root.addHandler(handler)


def handle_tui(config_file: Optional[str]) -> None:
    config = config_utils.ensure_config(_config_path(config_file))
    with _detached_console_logging():
        tui.run(config)


def handle_scan(device: int, image: Optional[str], save: bool, config_file: Optional[str]) -> None:
    config_path = _config_path(config_file)

    def on_text(text: str) -> None:
        print(text)
        if not save:
            return
        try:
            account = qr_utils.parse_otpauth_uri(text)
        except qr_utils.QRScanError as exc:
            logger.warning("Skipping QR code: %s", exc)
            return
        try:
            config_utils.append_account(config_path, account)
        except config_utils.ConfigError as exc:
            logger.warning("Skipping QR code: %s", exc)
            return
        print(f"Account {account.name!r} added to {config_path}.")

    if image:
        on_text(qr_utils.scan_image(image))
        return
    qr_utils.scan_webcam(device, on_text)


def handle_export(name: str, issuer: Optional[str], show_qr: bool, config_file: Optional[str]) -> None:
    config_path = _config_path(config_file)
    config = config_utils.load_config(config_path)
    account = config.accounts.get(name)
    if account is None:
        raise ValueError(f"No account named {name!r} in {config_path}.")
    uri = qr_utils.provisioning_uri(account, issuer=issuer)
    print("Provisioning URI (store securely, do not share):")
    print(uri)
    if show_qr:
        qr_utils.print_qr(uri)


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)

    try:
        if args.command in (None, "tui"):
            handle_tui(getattr(args, "config_file", None))
            return 0
        if args.command == "scan":
            handle_scan(args.device, args.image, args.save, args.config)
            return 0
        if args.command == "export":
            handle_export(args.name, args.issuer, not args.no_qr, args.config)
            return 0
    except (config_utils.ConfigError, tui.TerminalError, ValueError, FileNotFoundError) as exc:
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        return 130

    parser.error("Unknown command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
