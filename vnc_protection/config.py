import json
import os
from datetime import datetime

from vnc_protection.errors import ConfigError

DEFAULT_CONFIG_PATH = "/etc/vnc-protection/config.json"
ENV_PREFIX = "VNC_PROTECTION_"
CONFIG_DEFAULTS = {
    "PROTECTED_PORT": 9901,
    "PROTOCOL": "tcp",
    "FAILURE_LOG": "/home/desktop/.vnc/ubuntu:1.log",
    "FAILURE_SIGNATURES": ["authentication failed"],
    "AUDIT_LOG": "/var/log/vnc-protection.log",
    "LOGFILE": "/var/log/vnc-protection-daemon.log",
    "ALLOW_LIST": "/etc/vnc-protection-whitelist",
    "DENY_LIST": "/etc/vnc-protection-blacklist",
    "MAX_ATTEMPTS": 1,
    "IPTABLES_PATH": "iptables",
    "CHAIN": "INPUT",
    "COMMAND_TIMEOUT": 10.0,
    "DISARM": False,
    "DEBUG_PRINT": True,
    "LOG_LEVEL": "INFO",
    "LOCK_FILE": "/run/vnc-protection.lock",
    "PID_FILE": "/run/vnc-protection.pid",
    "POLL_INTERVAL": 0.5,
    "REOPEN_BACKOFF_INITIAL": 1.0,
    "REOPEN_BACKOFF_MAX": 30.0,
    "WATCHDOG_INTERVAL": 10.0,
}
TRUE_STRINGS = ("1", "true", "yes", "y", "on")
FALSE_STRINGS = ("0", "false", "no", "n", "off", "")


def default_config_path(environ=None):
    environ = os.environ if environ is None else environ
    return environ.get(ENV_PREFIX + "CONFIG") or DEFAULT_CONFIG_PATH


def coerce(key, value):
    default = CONFIG_DEFAULTS.get(key)
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ConfigError(f"{key}: expected a boolean, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key}: expected an integer, got {value!r}") from None
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key}: expected a number, got {value!r}") from None
    if isinstance(default, list):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise ConfigError(f"{key}: expected a list, got {value!r}")
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"{key}: expected a string, got {value!r}")
    return value


def validate_config(config):
    port = config["PROTECTED_PORT"]
    if not 1 <= port <= 65535:
        raise ConfigError(f"PROTECTED_PORT out of range: {port}")
    if config["MAX_ATTEMPTS"] < 1:
        raise ConfigError(f"MAX_ATTEMPTS must be at least 1, got {config['MAX_ATTEMPTS']}")
    if config["PROTOCOL"].lower() not in ("tcp", "udp"):
        raise ConfigError(f"PROTOCOL must be tcp or udp, got {config['PROTOCOL']!r}")
    if not config["FAILURE_SIGNATURES"]:
        raise ConfigError("FAILURE_SIGNATURES must name at least one signature")
    for key in ("ALLOW_LIST", "DENY_LIST", "FAILURE_LOG"):
        if not config[key]:
            raise ConfigError(f"{key} must not be empty")
    if os.path.abspath(config["ALLOW_LIST"]) == os.path.abspath(config["DENY_LIST"]):
        raise ConfigError("ALLOW_LIST and DENY_LIST must be different files")
    for key in ("POLL_INTERVAL", "REOPEN_BACKOFF_INITIAL", "REOPEN_BACKOFF_MAX", "WATCHDOG_INTERVAL", "COMMAND_TIMEOUT"):
        if config[key] <= 0:
            raise ConfigError(f"{key} must be positive, got {config[key]}")
    return config


def load_config(path=None, environ=None):
    """
    Build the runtime configuration.

    Defaults are overlaid with the JSON object in `path` (if the file
    exists) and then with VNC_PROTECTION_<KEY> environment variables.
    String values may use {PORT} and {timestamp} placeholders.

    Returns: dict keyed like CONFIG_DEFAULTS, plus CONFIG_PATH and
    CONFIG_FOUND describing where it came from.
    """
    environ = os.environ if environ is None else environ
    path = path or default_config_path(environ)
    config = {key: (list(value) if isinstance(value, list) else value) for key, value in CONFIG_DEFAULTS.items()}
    found = os.path.exists(path)
    if found:
        try:
            with open(path, "r", encoding="utf-8") as f:
                overrides = json.load(f)
        except OSError as e:
            raise ConfigError(f"load_config(): cannot read {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"load_config(): {path} is not valid JSON: {e}") from e
        if not isinstance(overrides, dict):
            raise ConfigError(f"load_config(): {path} must contain a JSON object")
        for key, value in overrides.items():
            if key not in CONFIG_DEFAULTS:
                raise ConfigError(f"load_config(): unknown setting {key!r} in {path}")
            config[key] = coerce(key, value)
    for key in CONFIG_DEFAULTS:
        env_key = ENV_PREFIX + key
        if env_key in environ:
            config[key] = coerce(key, environ[env_key])
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    for key, value in config.items():
        if isinstance(value, str):
            try:
                config[key] = value.format(PORT=config["PROTECTED_PORT"], timestamp=timestamp)
            except (KeyError, IndexError, ValueError) as e:
                raise ConfigError(f"{key}: bad placeholder in {value!r}: {e}") from None
    config["PROTOCOL"] = config["PROTOCOL"].lower()
    validate_config(config)
    config["CONFIG_PATH"] = path
    config["CONFIG_FOUND"] = found
    return config
