"""Project-wide configuration constants and config-file loading.

Central place for tuneable parameters shared across modules.  The
serial link settings live in ``LinkConfig``; ``load_config`` reads them
from a TOML file and applies ``RS485_*`` environment overrides.

Example:
    >>> from rs485link.config import load_config
    >>> cfg = load_config("rs485link.toml")
    >>> cfg["link"].port
    '/dev/serial0'
"""

import os
import tomllib
from dataclasses import dataclass

# Default reply timeout for TransactionManager.request().
REQUEST_TIMEOUT_MS = 500

# Remote device is considered gone after this long without hello/heartbeat.
HEARTBEAT_TIMEOUT_MS = 15000

# Lower bound for the heartbeat monitor tick.
MONITOR_MIN_INTERVAL_MS = 1000

PARITIES = ("none", "even", "odd", "mark", "space")

CONFIG_NAME = "rs485link.toml"

# Searched in order when no config file is named.
CONFIG_DIRS = (".", "/etc/rs485link")


@dataclass
class LinkConfig:
    """Serial port, framing and direction-control settings.

    ``enable_pin`` selects the legacy single-line mode (DE and RE tied
    together) and takes precedence over the separate pins.  A pin set
    to None leaves that line uncontrolled.
    """

    port: str = "/dev/serial0"
    baudrate: int = 115200
    bytesize: int = 8
    stopbits: int = 1
    parity: str = "none"
    delimiter: str = "\n"
    enable_pin: int | None = None
    driver_enable_pin: int | None = 18
    receiver_enable_pin: int | None = 23
    receiver_enable_active_low: bool = True
    turnaround_ms: int = 2
    auto_reconnect: bool = True
    reconnect_interval_ms: int = 5000
    log_traffic: bool = False


def find_config(path: str | None = None, environ=None) -> str | None:
    """Locate the config file to load.

    A *path* given by the caller wins, then ``RS485_CONFIG``; either
    must name an existing file.  Otherwise ``rs485link.toml`` is looked
    up in ``CONFIG_DIRS`` and None means the built-in defaults apply.

    Returns:
        str | None: Absolute path of the file, or None.

    Raises:
        FileNotFoundError: If a named file does not exist.

    Example:
        >>> find_config(environ={"RS485_CONFIG": "/etc/rs485link/bench.toml"})
        '/etc/rs485link/bench.toml'
    """
    environ = os.environ if environ is None else environ
    named = path or environ.get("RS485_CONFIG")
    if named:
        if not os.path.isfile(named):
            raise FileNotFoundError("config file not found: %s" % named)
        return os.path.abspath(named)

    for directory in CONFIG_DIRS:
        candidate = os.path.join(directory, CONFIG_NAME)
        if os.path.isfile(candidate):
            return os.path.abspath(candidate)
    return None


def load_config(path: str | None = None, environ=None) -> dict:
    """Read a TOML config file, validate it and apply env overrides.

    Top-level keys: ``heartbeat_timeout_ms`` (int), ``request_timeout_ms``
    (int).  The ``[rs485]`` section maps onto ``LinkConfig`` fields.
    Every key is optional; *path* None uses defaults only.

    Returns:
        dict: ``link`` (LinkConfig), ``heartbeat_timeout_ms`` (int),
            ``request_timeout_ms`` (int).

    Raises:
        ValueError: If any key has the wrong type or an invalid value.

    Example:
        >>> cfg = load_config(None, environ={"RS485_PORT": "/dev/ttyUSB0"})
        >>> cfg["link"].port, cfg["heartbeat_timeout_ms"]
        ('/dev/ttyUSB0', 15000)
    """
    raw = {}
    if path is not None:
        with open(path, "rb") as f:
            raw = tomllib.load(f)

    result = {
        "heartbeat_timeout_ms": HEARTBEAT_TIMEOUT_MS,
        "request_timeout_ms": REQUEST_TIMEOUT_MS,
    }
    for key in ("heartbeat_timeout_ms", "request_timeout_ms"):
        if key in raw:
            _require_int(raw, key)
            result[key] = raw[key]
    if result["request_timeout_ms"] <= 0:
        raise ValueError("request_timeout_ms must be positive")

    section = raw.get("rs485", {})
    if not isinstance(section, dict):
        raise ValueError("[rs485] must be a table")
    link = _parse_link(section)

    apply_env(link, result, os.environ if environ is None else environ)
    result["link"] = link
    return result


def apply_env(link: LinkConfig, result: dict, environ) -> None:
    """Apply ``RS485_*`` environment overrides in place.

    ``RS485_ENABLE_PIN`` switches to legacy single-line mode and clears
    the separate DE/RE pins.  Values that are not numbers are ignored.
    """
    if environ.get("RS485_PORT"):
        link.port = environ["RS485_PORT"]

    baudrate = _env_int(environ, "RS485_BAUD")
    if baudrate is not None:
        link.baudrate = baudrate

    enable_pin = _env_int(environ, "RS485_ENABLE_PIN")
    driver_pin = _env_int(environ, "RS485_DRIVER_PIN", "RS485_DE_PIN")
    receiver_pin = _env_int(environ, "RS485_RECEIVER_PIN", "RS485_RE_PIN")
    if enable_pin is not None:
        link.enable_pin = enable_pin
        link.driver_enable_pin = None
        link.receiver_enable_pin = None
    else:
        if driver_pin is not None:
            link.driver_enable_pin = driver_pin
        if receiver_pin is not None:
            link.receiver_enable_pin = receiver_pin

    if environ.get("RS485_RE_ACTIVE_LOW"):
        link.receiver_enable_active_low = environ["RS485_RE_ACTIVE_LOW"] != "0"

    if environ.get("RS485_DEBUG"):
        link.log_traffic = environ["RS485_DEBUG"] != "0"

    heartbeat = _env_int(environ, "RS485_HEARTBEAT_TIMEOUT_MS")
    if heartbeat is not None:
        result["heartbeat_timeout_ms"] = heartbeat


def _parse_link(section: dict[str, object]) -> LinkConfig:
    """Build a LinkConfig from the ``[rs485]`` table."""
    link = LinkConfig()

    for key in ("port", "delimiter"):
        if key in section:
            _require_str(section, key)
            setattr(link, key, section[key])

    for key in ("baudrate", "bytesize", "stopbits", "turnaround_ms",
                "reconnect_interval_ms"):
        if key in section:
            _require_int(section, key)
            setattr(link, key, section[key])

    for key in ("receiver_enable_active_low", "auto_reconnect", "log_traffic"):
        if key in section:
            _require_bool(section, key)
            setattr(link, key, section[key])

    for key in ("enable_pin", "driver_enable_pin", "receiver_enable_pin"):
        if key in section:
            setattr(link, key, _pin(section, key))

    if "parity" in section:
        _require_str(section, "parity")
        if section["parity"] not in PARITIES:
            raise ValueError(
                "parity must be one of %s, got '%s'"
                % (", ".join(PARITIES), section["parity"])
            )
        link.parity = section["parity"]

    if link.baudrate <= 0:
        raise ValueError("baudrate must be positive, got %d" % link.baudrate)
    if link.bytesize not in (5, 6, 7, 8):
        raise ValueError("bytesize must be 5-8, got %d" % link.bytesize)
    if link.stopbits not in (1, 2):
        raise ValueError("stopbits must be 1 or 2, got %d" % link.stopbits)
    if link.turnaround_ms < 0:
        raise ValueError("turnaround_ms must not be negative")
    if link.reconnect_interval_ms <= 0:
        raise ValueError("reconnect_interval_ms must be positive")

    return link


def _pin(raw: dict[str, object], key: str) -> int | None:
    """Validate a GPIO pin number; ``false`` disables the line."""
    value = raw[key]
    if value is False:
        return None
    _require_int(raw, key)
    if value < 0:
        raise ValueError("%s must not be negative, got %d" % (key, value))
    return value


def _env_int(environ, *names: str) -> int | None:
    """Return the first of *names* set in *environ* that parses as int."""
    for name in names:
        value = environ.get(name)
        if value:
            try:
                return int(value)
            except ValueError:
                return None
    return None


def _require_str(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a str."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], str):
        raise ValueError("%s must be str, got %s" % (key, type(raw[key]).__name__))


def _require_int(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is an int."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if isinstance(raw[key], bool) or not isinstance(raw[key], int):
        raise ValueError("%s must be int, got %s" % (key, type(raw[key]).__name__))


def _require_bool(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a bool."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], bool):
        raise ValueError("%s must be bool, got %s" % (key, type(raw[key]).__name__))
