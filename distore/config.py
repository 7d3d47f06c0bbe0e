"""
Configuration Management

Two kinds of configuration:

1. Credentials (token, channel) - stored in a JSON file so users set them
   once. The file has a global section and one section per directory:

       {
         "global": {"token": "...", "channel": "123"},
         "directories": {
           "/home/me/photos": {"channel": "456"}
         }
       }

   Resolution priority (highest to lowest):
   1. Command-line flags
   2. Environment variables (DISTORE_TOKEN, DISTORE_CHANNEL, .env supported)
   3. Section for the current directory
   4. Global section

2. Tuning (chunk size, concurrency, retry budgets, backend limits) - from
   DISTORE_* environment variables with defaults suited to Discord.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .transfer.retry import RetryPolicy
from .transport.base import DEFAULT_FRAMING_OVERHEAD, DEFAULT_MAX_ATTACHMENT_SIZE, BackendLimits

CONFIG_KEYS = ('token', 'channel')
CONFIG_FILE_NAME = 'config.json'


def default_config_dir() -> Path:
    """Platform config directory (XDG on Linux)."""
    xdg = os.getenv('XDG_CONFIG_HOME')
    return Path(xdg) if xdg else Path.home() / '.config'


@dataclass
class Credentials:
    """Resolved token and channel."""
    token: str
    channel: str


@dataclass
class Settings:
    """Tuning values, overridable from the environment."""
    chunk_size: Optional[int] = None  # None: backend maximum
    concurrency: int = 4
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_rate_limit_retries: int = 10
    request_timeout: float = 120.0
    max_attachment_size: int = DEFAULT_MAX_ATTACHMENT_SIZE
    framing_overhead: int = DEFAULT_FRAMING_OVERHEAD
    max_manifest_size: Optional[int] = None
    api_port: int = 8080
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Settings':
        """Load settings from DISTORE_* environment variables."""
        load_dotenv()

        config = cls()
        config.chunk_size = _env('DISTORE_CHUNK_SIZE', int, config.chunk_size)
        config.concurrency = _env('DISTORE_CONCURRENCY', int, config.concurrency)
        config.max_attempts = _env('DISTORE_MAX_ATTEMPTS', int, config.max_attempts)
        config.base_delay = _env('DISTORE_BASE_DELAY', float, config.base_delay)
        config.max_delay = _env('DISTORE_MAX_DELAY', float, config.max_delay)
        config.max_rate_limit_retries = _env(
            'DISTORE_MAX_RATE_LIMIT_RETRIES', int, config.max_rate_limit_retries
        )
        config.request_timeout = _env('DISTORE_REQUEST_TIMEOUT', float, config.request_timeout)
        config.max_attachment_size = _env(
            'DISTORE_MAX_ATTACHMENT_SIZE', int, config.max_attachment_size
        )
        config.framing_overhead = _env('DISTORE_FRAMING_OVERHEAD', int, config.framing_overhead)
        config.max_manifest_size = _env(
            'DISTORE_MAX_MANIFEST_SIZE', int, config.max_manifest_size
        )
        config.api_port = _env('DISTORE_API_PORT', int, config.api_port)
        config.log_level = os.getenv('DISTORE_LOG_LEVEL', config.log_level).upper()
        return config

    def limits(self) -> BackendLimits:
        return BackendLimits(
            max_attachment_size=self.max_attachment_size,
            framing_overhead=self.framing_overhead,
            max_manifest_size=self.max_manifest_size,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            max_rate_limit_retries=self.max_rate_limit_retries,
        )


def _env(name: str, type_, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return type_(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a {type_.__name__}, got {raw!r}") from None


class ConfigStore:
    """Token and channel settings, global and per directory."""

    def __init__(self, config_dir: Optional[Path] = None):
        base = Path(config_dir) if config_dir else default_config_dir()
        self.path = base / 'distore' / CONFIG_FILE_NAME

    def _load(self) -> dict:
        if not self.path.exists():
            return {'global': {}, 'directories': {}}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Cannot read config file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.path} is not a JSON object")
        data.setdefault('global', {})
        data.setdefault('directories', {})
        return data

    def _save(self, data: dict):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            raise ConfigError(f"Cannot write config file {self.path}: {e}") from e

    def set(self, key: str, value: str, directory: Optional[Path] = None):
        """
        Set a value globally (directory=None) or for one directory.

        Raises:
            ConfigError: unknown key or invalid channel id
        """
        key = key.lower()
        if key not in CONFIG_KEYS:
            raise ConfigError(f"Invalid key: {key} (expected one of {', '.join(CONFIG_KEYS)})")
        if key == 'channel':
            validate_channel(value)

        data = self._load()
        if directory is None:
            section = data['global']
        else:
            section = data['directories'].setdefault(str(Path(directory).resolve()), {})
        section[key] = str(value)
        self._save(data)

    def get_global(self) -> Dict[str, str]:
        return dict(self._load()['global'])

    def get_current(self, cwd: Optional[Path] = None) -> Dict[str, str]:
        """Global values overlaid with the current directory's section."""
        data = self._load()
        cwd = str(Path(cwd or Path.cwd()).resolve())
        values = dict(data['global'])
        values.update(data['directories'].get(cwd, {}))
        return values

    def resolve(self, token: Optional[str] = None, channel: Optional[str] = None,
                cwd: Optional[Path] = None) -> Credentials:
        """
        Resolve token and channel from flags, environment and the config file.

        Raises:
            ConfigError: token or channel missing, or channel not numeric
        """
        load_dotenv()
        stored = self.get_current(cwd)

        token = token or os.getenv('DISTORE_TOKEN') or stored.get('token')
        channel = channel or os.getenv('DISTORE_CHANNEL') or stored.get('channel')

        if not token:
            raise ConfigError("No token set; run `distore config token <TOKEN>`")
        if not channel:
            raise ConfigError("No channel set; run `distore config channel <CHANNEL_ID>`")
        return Credentials(token=token, channel=validate_channel(channel))


def validate_channel(channel) -> str:
    """Channel ids are numeric snowflakes."""
    channel = str(channel).strip()
    if not channel.isdigit():
        raise ConfigError(f"Channel must be a numeric id, got {channel!r}")
    return channel
