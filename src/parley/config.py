"""
Parley - Configuration

Settings come from three layers, later ones winning: the built-in
defaults below, an optional TOML file, and ``PARLEY_<SECTION>_<KEY>``
environment variables. Environment values are converted to the type of
the default they replace; a value that does not convert is ignored.
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    ATTACHMENT_URL_PREFIX,
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_HOST,
    DEFAULT_SERVER_PORT,
    MAX_FILE_SIZE,
    MAX_GROUP_NAME_LENGTH,
    MAX_TEXT_MESSAGE_LENGTH,
    NOTICE_LIFETIME,
    READ_TIMEOUT,
    RSA_KEY_SIZE,
    UPLOADS_DIRNAME,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "PARLEY"

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "server": {
        "host": DEFAULT_HOST,
        "port": DEFAULT_SERVER_PORT,
        "read_timeout": READ_TIMEOUT,
    },
    "storage": {
        "data_dir": DEFAULT_DATA_DIR,
        # Empty means "<data_dir>/uploads" and "/uploads"
        "upload_dir": "",
        "public_url": "",
    },
    "limits": {
        "max_text_length": MAX_TEXT_MESSAGE_LENGTH,
        "max_file_size": MAX_FILE_SIZE,
        "max_group_name_length": MAX_GROUP_NAME_LENGTH,
    },
    "crypto": {
        "rsa_key_size": RSA_KEY_SIZE,
        "argon2_time_cost": ARGON2_TIME_COST,
        "argon2_memory_cost": ARGON2_MEMORY_COST,
        "argon2_parallelism": ARGON2_PARALLELISM,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
    "notifications": {
        "notice_lifetime": NOTICE_LIFETIME,
    },
}

_TRUE_WORDS = ("1", "true", "yes", "on")


def _overlay(base: Dict[str, Any], layer: Dict[str, Any]) -> None:
    """Merge ``layer`` into ``base`` in place, descending into tables."""
    for key, value in layer.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _overlay(current, value)
        else:
            base[key] = value


def _coerce(raw: str, like: Any) -> Any:
    # bool first: bool is a subclass of int
    if isinstance(like, bool):
        return raw.strip().lower() in _TRUE_WORDS
    if isinstance(like, int):
        return int(raw)
    if isinstance(like, float):
        return float(raw)
    return raw


def _toml_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return None


def _dump_toml(data: Dict[str, Any], out: TextIO) -> None:
    """Write the flat section/key layout Parley uses; other values are skipped."""
    for section, table in data.items():
        if not isinstance(table, dict):
            continue
        out.write(f"[{section}]\n")
        for key, value in table.items():
            rendered = _toml_value(value)
            if rendered is not None:
                out.write(f"{key} = {rendered}\n")
        out.write("\n")


class Config:
    """Layered Parley settings.

    Attributes:
        config_path: TOML file read at construction and written by save()
        data: Effective settings, by section
    """

    def __init__(self, config_path: Optional[Path] = None):
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME
        self.config_path = Path(config_path)

        self.data: Dict[str, Dict[str, Any]] = copy.deepcopy(DEFAULT_CONFIG)
        file_layer = self._read_file()
        if file_layer:
            _overlay(self.data, file_layer)
        self._apply_environment()

    def _read_file(self) -> Dict[str, Any]:
        """
        Parse the TOML file, if there is one.

        Raises:
            ConfigError: E701 if the file cannot be read, E704 if it is not valid TOML
        """
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(
                ErrorCode.E704_CONFIG_PARSE_ERROR,
                f"Failed to parse configuration file: {e}",
                {"path": str(self.config_path)},
            ) from e
        except OSError as e:
            raise ConfigError(
                ErrorCode.E701_CONFIG_LOAD_FAILED,
                f"Failed to read configuration file: {e}",
                {"path": str(self.config_path)},
            ) from e

    def _apply_environment(self) -> None:
        # Only keys with a built-in default can be overridden
        for section, defaults in DEFAULT_CONFIG.items():
            for key, default in defaults.items():
                raw = os.environ.get(f"{ENV_PREFIX}_{section.upper()}_{key.upper()}")
                if raw is None:
                    continue
                table = self.data.get(section)
                if not isinstance(table, dict):
                    continue
                try:
                    table[key] = _coerce(raw, default)
                except ValueError:
                    continue

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        self.data.setdefault(section, {})[key] = value

    @property
    def data_dir(self) -> Path:
        return Path(self.get("storage", "data_dir") or DEFAULT_DATA_DIR).expanduser()

    @property
    def upload_dir(self) -> Path:
        configured = self.get("storage", "upload_dir")
        if configured:
            return Path(configured).expanduser()
        return self.data_dir / UPLOADS_DIRNAME

    @property
    def public_url(self) -> str:
        return self.get("storage", "public_url") or ATTACHMENT_URL_PREFIX

    def save(self) -> None:
        """
        Write the effective settings back to ``config_path``.

        Raises:
            ConfigError: If the file cannot be written
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                _dump_toml(self.data, f)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path)},
            ) from e

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)
