# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating Kestrel-TUI configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/kestrel-tui/  (default: ~/.config/kestrel-tui/)
#   - Data:    $XDG_DATA_HOME/kestrel-tui/    (default: ~/.local/share/kestrel-tui/)
#   - Cache:   $XDG_CACHE_HOME/kestrel-tui/   (default: ~/.cache/kestrel-tui/)
#   - State:   $XDG_STATE_HOME/kestrel-tui/   (default: ~/.local/state/kestrel-tui/)
#
# Files:
#   - config.toml: Account identity, OAuth client, sync/input preferences
#   - kestrel-tui.db: SQLite mail cache (in data directory)
#   - kestrel.log: Application log (in state directory)
#
# Tokens are never written here; they live in the system keyring.
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from kestrel_tui.core import Account


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "kestrel-tui"


def _xdg_dir(env_var: str, *default: str) -> Path:
    value = os.environ.get(env_var)
    base = Path(value) if value else Path.home().joinpath(*default)
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """Config directory (config.toml). Respects $XDG_CONFIG_HOME."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_xdg_data_home() -> Path:
    """Data directory (SQLite cache). Respects $XDG_DATA_HOME."""
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_cache_home() -> Path:
    """Cache directory, safe to delete. Respects $XDG_CACHE_HOME."""
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def get_xdg_state_home() -> Path:
    """State directory (logs). Respects $XDG_STATE_HOME."""
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "cache": get_xdg_cache_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class AccountConfig:
    """
    The Gmail account and the OAuth client registered for it.

    Attributes:
        email: Gmail address to sign in as.
        display_name: Name for the From header (defaults to email).
        client_id: OAuth "installed application" client id.
        client_secret: OAuth client secret.
    """
    email: str = ""
    display_name: str = ""
    client_id: str = ""
    client_secret: str = ""

    def to_account(self) -> Account:
        return Account(
            email=self.email,
            display_name=self.display_name,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )


@dataclass
class SyncConfig:
    """
    Configuration for background synchronization and remote retries.

    Attributes:
        check_interval_seconds: Polling period (0 = manual refresh only).
        use_idle: Use IMAP IDLE on INBOX as an extra sync trigger.
        initial_backoff_seconds: First retry delay after a transient failure.
        max_backoff_seconds: Cap for the doubling retry delay.
        max_attempts: Attempts before a transient failure is surfaced.
        attempt_timeout_seconds: Timeout for a single network attempt.
        refresh_margin_seconds: Refresh tokens this long before they expire.
        persist_cache: Keep a SQLite copy of the cache for warm starts.
    """
    check_interval_seconds: int = 300
    use_idle: bool = True
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    max_attempts: int = 5
    attempt_timeout_seconds: float = 20.0
    refresh_margin_seconds: int = 120
    persist_cache: bool = True


@dataclass
class InputConfig:
    """
    Modal input settings.

    Attributes:
        prefix_timeout_ms: How long a pending prefix key (g) waits for its
                           second key before being discarded.
    """
    prefix_timeout_ms: int = 500


@dataclass
class UIConfig:
    """
    Configuration for the user interface.

    Attributes:
        theme: Textual theme ("dark" or "light").
        date_format: strftime format for dates older than a week.
        banner_seconds: How long a transient banner stays up.
    """
    theme: str = "dark"
    date_format: str = "%b %d"
    banner_seconds: float = 5.0


@dataclass
class LoggingConfig:
    """
    Attributes:
        level: Root log level name.
        file: Log file path; empty means <state dir>/kestrel.log.
    """
    level: str = "INFO"
    file: str = ""


@dataclass
class Config:
    """
    Main configuration container for Kestrel-TUI.

    Usage:
        >>> config = Config.load()
        >>> config.account.email
        'user@gmail.com'
    """
    account: AccountConfig = field(default_factory=AccountConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    input: InputConfig = field(default_factory=InputConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the path to the SQLite cache database."""
        return get_xdg_data_home() / "kestrel-tui.db"

    def log_file_path(self) -> Path:
        """Returns the log file path, honoring [logging] file."""
        if self.logging.file:
            return Path(self.logging.file).expanduser()
        return get_xdg_state_home() / "kestrel.log"

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """
        Check the settings a session cannot start without.

        Raises:
            ConfigError: If the account or OAuth client is missing, or a
                         numeric setting is out of range.
        """
        missing = [
            name for name in ("email", "client_id", "client_secret")
            if not getattr(self.account, name)
        ]
        if missing:
            raise ConfigError(
                f"Missing [account] settings in {self.config_file_path()}: {', '.join(missing)}\n"
                "Example:\n"
                "  [account]\n"
                '  email = "you@gmail.com"\n'
                '  client_id = "your-client-id.apps.googleusercontent.com"\n'
                '  client_secret = "your-client-secret"'
            )
        if self.sync.max_attempts < 1:
            raise ConfigError("[sync] max_attempts must be at least 1")
        if self.sync.initial_backoff_seconds <= 0 or self.sync.max_backoff_seconds <= 0:
            raise ConfigError("[sync] backoff values must be positive")
        if self.input.prefix_timeout_ms <= 0:
            raise ConfigError("[input] prefix_timeout_ms must be positive")

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.
        Creates necessary directories if they don't exist.

        Args:
            path: Alternate config file (defaults to the XDG location).

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        ensure_directories()

        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Save configuration to the config file."""
        ensure_directories()

        config_path = path or self.config_file_path()
        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Unknown keys are ignored; missing keys keep their defaults.
        """
        config = cls()

        account = data.get("account", {})
        config.account = AccountConfig(
            email=account.get("email", ""),
            display_name=account.get("display_name", ""),
            client_id=account.get("client_id", ""),
            client_secret=account.get("client_secret", ""),
        )

        sync = data.get("sync", {})
        defaults = SyncConfig()
        try:
            config.sync = SyncConfig(
                check_interval_seconds=int(sync.get("check_interval_seconds", defaults.check_interval_seconds)),
                use_idle=bool(sync.get("use_idle", defaults.use_idle)),
                initial_backoff_seconds=float(sync.get("initial_backoff_seconds", defaults.initial_backoff_seconds)),
                max_backoff_seconds=float(sync.get("max_backoff_seconds", defaults.max_backoff_seconds)),
                max_attempts=int(sync.get("max_attempts", defaults.max_attempts)),
                attempt_timeout_seconds=float(sync.get("attempt_timeout_seconds", defaults.attempt_timeout_seconds)),
                refresh_margin_seconds=int(sync.get("refresh_margin_seconds", defaults.refresh_margin_seconds)),
                persist_cache=bool(sync.get("persist_cache", defaults.persist_cache)),
            )
            config.input = InputConfig(
                prefix_timeout_ms=int(data.get("input", {}).get("prefix_timeout_ms", 500)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        ui = data.get("ui", {})
        config.ui = UIConfig(
            theme=ui.get("theme", "dark"),
            date_format=ui.get("date_format", "%b %d"),
            banner_seconds=float(ui.get("banner_seconds", 5.0)),
        )

        logging_section = data.get("logging", {})
        config.logging = LoggingConfig(
            level=str(logging_section.get("level", "INFO")).upper(),
            file=logging_section.get("file", ""),
        )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        return {
            "account": {
                "email": self.account.email,
                "display_name": self.account.display_name,
                "client_id": self.account.client_id,
                "client_secret": self.account.client_secret,
            },
            "sync": {
                "check_interval_seconds": self.sync.check_interval_seconds,
                "use_idle": self.sync.use_idle,
                "initial_backoff_seconds": self.sync.initial_backoff_seconds,
                "max_backoff_seconds": self.sync.max_backoff_seconds,
                "max_attempts": self.sync.max_attempts,
                "attempt_timeout_seconds": self.sync.attempt_timeout_seconds,
                "refresh_margin_seconds": self.sync.refresh_margin_seconds,
                "persist_cache": self.sync.persist_cache,
            },
            "input": {
                "prefix_timeout_ms": self.input.prefix_timeout_ms,
            },
            "ui": {
                "theme": self.ui.theme,
                "date_format": self.ui.date_format,
                "banner_seconds": self.ui.banner_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"Cache:   {get_xdg_cache_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
    print(f"Log file:     {Config().log_file_path()}")
