"""Configuration file handling for termotp.

The configuration is a human-edited TOML file. An optional ``[THEME]`` table
sets display colors; every other top-level table describes one account.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

from rich.color import Color, ColorParseError

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib

from ..otp.otp_utils import DEFAULT_DIGITS, Account, Algorithm, SecretDecodeError, decode_secret

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "termotp.toml"
THEME_TABLE = "THEME"
MAX_DIGITS = 10

DEFAULT_CONFIG_TEMPLATE = """\
# termotp configuration.
#
# Optional display colors (any rich color name such as "blue", "bright_cyan"
# or a hex value like "#ff8800"):
#
# [THEME]
# name = "blue"
# code = "white"
#
# Every other table is an account. Only the Base32 secret is required:
#
# [github]
# secret = "JBSWY3DPEHPK3PXP"
# algorithm = "SHA1"
# length = 6

[example]
secret = "JBSWY3DPEHPK3PXP"
"""


class ConfigError(Exception):
    """Base class for configuration failures."""


class ConfigWriteError(ConfigError):
    """Raised when the default configuration could not be written."""


class ConfigReadError(ConfigError):
    """Raised when the configuration file could not be read."""


class ConfigDecodeError(ConfigError):
    """Raised when the configuration file contents are malformed."""


@dataclass
class Theme:
    name: str = "blue"
    code: str = "white"


@dataclass
class Config:
    """Display theme plus the accounts keyed by name."""

    theme: Theme = field(default_factory=Theme)
    accounts: Dict[str, Account] = field(default_factory=dict)


def default_config_path() -> Path:
    """Return the platform configuration location for ``termotp.toml``."""

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / CONFIG_FILE_NAME
    if sys.platform == "win32" and os.environ.get("APPDATA"):
        return Path(os.environ["APPDATA"]) / CONFIG_FILE_NAME
    return Path.home() / ".config" / CONFIG_FILE_NAME


def ensure_config(path: Path | str) -> Config:
    """Create ``path`` from the default template when missing, then load it."""

    config_file = Path(path)
    if not config_file.exists():
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            config_file.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
        except OSError as exc:
            raise ConfigWriteError(f"Could not write default config inside {config_file}: {exc}") from exc
        logger.warning("Default configuration created at %s", config_file)
    return load_config(config_file)


def load_config(path: Path | str) -> Config:
    """Read and decode the configuration file at ``path``."""

    config_file = Path(path)
    try:
        contents = config_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigReadError(f"Could not read configuration file {config_file}: {exc}") from exc
    try:
        return parse_config(contents)
    except ConfigDecodeError as exc:
        raise ConfigDecodeError(f"Could not decode configuration from {config_file}: {exc}") from exc


def parse_config(contents: str) -> Config:
    try:
        data = tomllib.loads(contents)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigDecodeError(str(exc)) from exc

    theme = _parse_theme(data.pop(THEME_TABLE, {}))
    accounts: Dict[str, Account] = {}
    for name, table in data.items():
        accounts[name] = _parse_account(name, table)
    logger.debug("Loaded %d account(s)", len(accounts))
    return Config(theme=theme, accounts=accounts)


def _parse_theme(table: Any) -> Theme:
    if not isinstance(table, dict):
        raise ConfigDecodeError(f"[{THEME_TABLE}] must be a table.")
    theme = Theme()
    for key in ("name", "code"):
        if key not in table:
            continue
        value = table[key]
        try:
            Color.parse(str(value))
        except ColorParseError as exc:
            raise ConfigDecodeError(f"[{THEME_TABLE}] {key}: {exc}") from exc
        setattr(theme, key, str(value))
    return theme


def _parse_account(name: str, table: Any) -> Account:
    if not isinstance(table, dict):
        raise ConfigDecodeError(f"Account {name!r} must be a table with at least a 'secret' key.")
    if "secret" not in table:
        raise ConfigDecodeError(f"Account {name!r} is missing its 'secret'.")
    secret = table["secret"]
    if not isinstance(secret, str):
        raise ConfigDecodeError(f"Account {name!r}: secret must be a Base32 string.")
    try:
        text, raw = decode_secret(secret)
    except SecretDecodeError as exc:
        raise ConfigDecodeError(f"Account {name!r}: {exc}") from exc

    try:
        algorithm = Algorithm.from_name(table.get("algorithm", Algorithm.SHA1.value))
    except ValueError as exc:
        raise ConfigDecodeError(f"Account {name!r}: {exc}") from exc

    digits = table.get("length", DEFAULT_DIGITS)
    if isinstance(digits, bool) or not isinstance(digits, int) or not 1 <= digits <= MAX_DIGITS:
        raise ConfigDecodeError(f"Account {name!r}: length must be an integer between 1 and {MAX_DIGITS}.")

    return Account(name=name, secret=text, secret_bytes=raw, digits=digits, algorithm=algorithm)


def append_account(path: Path | str, account: Account) -> None:
    """Append ``account`` as a new table at the end of the configuration file."""

    config = ensure_config(path)
    if account.name in config.accounts or account.name == THEME_TABLE:
        raise ConfigError(f"Account {account.name!r} already exists in {path}.")
    # JSON strings are valid TOML basic strings and quoted keys.
    block = (
        f"\n[{json.dumps(account.name)}]\n"
        f"secret = {json.dumps(account.secret)}\n"
        f"algorithm = {json.dumps(account.algorithm.value)}\n"
        f"length = {account.digits}\n"
    )
    try:
        with open(path, "a", encoding="utf-8") as config_file:
            config_file.write(block)
    except OSError as exc:
        raise ConfigWriteError(f"Could not append account to {path}: {exc}") from exc
    logger.info("Added account %r to %s", account.name, path)
