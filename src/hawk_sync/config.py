# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating Hawk-Sync configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/hawk-sync/  (default: ~/.config/hawk-sync/)
#   - Data:    $XDG_DATA_HOME/hawk-sync/    (default: ~/.local/share/hawk-sync/)
#
# Files:
#   - config.toml: Accounts and engine tuning
#   - hawk-sync.db: SQLite message index (in data directory)
#
# Precedence: built-in defaults < config.toml < environment variables.
# Environment overrides exist so the engine can run in a container with no
# config file at all (EMAIL_SYNC_DAYS, GOOGLE_CLIENT_ID, ...).
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomli_w  # For writing TOML (tomllib is read-only)

from hawk_sync.core import Category, Provider


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "hawk-sync"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for Hawk-Sync.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/hawk-sync/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for Hawk-Sync.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/hawk-sync/
    This is where the SQLite message index lives.
    """
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base = Path(xdg_data)
    else:
        base = Path.home() / ".local" / "share"
    return base / APP_NAME


def ensure_directories() -> dict[str, Path]:
    """
    Creates the XDG directories we use if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

# Never look further back than this, whatever the config says
MAX_SYNC_DAYS = 30


@dataclass
class SyncConfig:
    """
    Volume and pacing limits for pulling mail.

    Attributes:
        sync_days: How far back to sync. Clamped to MAX_SYNC_DAYS.
        initial_sync_limit: Most recent messages pulled synchronously on connect.
        background_batch_size: Messages per background backfill batch.
        max_messages_per_account: Hard cap on messages processed per account
                                  by initial + background sync.
        background_delay_seconds: Pause between initial sync and first batch.
        background_cooldown_seconds: Pause between background batches.
        idle_refresh_seconds: Re-issue IDLE this often (servers drop
                              connections idling for ~30 minutes).
        poll_interval_seconds: NOOP polling interval for servers without IDLE.
    """
    sync_days: int = 30
    initial_sync_limit: int = 50
    background_batch_size: int = 100
    max_messages_per_account: int = 300
    background_delay_seconds: float = 2.0
    background_cooldown_seconds: float = 300.0
    idle_refresh_seconds: float = 600.0
    poll_interval_seconds: float = 300.0

    @property
    def horizon_days(self) -> int:
        """Effective sync window in days (1 to MAX_SYNC_DAYS)."""
        return max(1, min(self.sync_days, MAX_SYNC_DAYS))


@dataclass
class ReconnectConfig:
    """
    Backoff settings for automatic reconnection.

    delay(attempt) = base_delay_seconds * 2**attempt + uniform(0, jitter_seconds)
    """
    base_delay_seconds: float = 30.0
    max_attempts: int = 5
    jitter_seconds: float = 5.0


@dataclass
class ConnectionConfig:
    """Transport timeouts, in seconds."""
    connection_timeout: float = 60.0
    greeting_timeout: float = 30.0
    command_timeout: float = 30.0


@dataclass
class OAuthConfig:
    """OAuth2 client registrations used for refreshing tokens."""
    google_client_id: str = ""
    google_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant: str = "common"


@dataclass
class NotificationConfig:
    """
    Where to send notifications for high-priority messages.

    Attributes:
        webhook_url: Generic JSON webhook (empty = disabled).
        slack_webhook_url: Default Slack incoming webhook (empty = disabled).
                           Accounts may override it individually.
        priority_categories: Categories that trigger notifications.
    """
    webhook_url: str = ""
    slack_webhook_url: str = ""
    priority_categories: list[str] = field(default_factory=lambda: [Category.INTERESTED.value])


@dataclass
class AccountConfig:
    """
    One [accounts.<id>] table. Tokens are not here, they live in the keyring.
    """
    id: str
    email: str
    provider: Provider
    active: bool = True
    slack_webhook_url: str = ""


@dataclass
class Config:
    """
    Main configuration container for Hawk-Sync.

    Usage:
        >>> config = Config.load()
        >>> config.sync.initial_sync_limit
        50
    """
    accounts: dict[str, AccountConfig] = field(default_factory=dict)

    sync: SyncConfig = field(default_factory=SyncConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    # Where this config was loaded from (None = defaults only)
    path: Path | None = field(default=None, compare=False)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the path to the SQLite message index."""
        return get_xdg_data_home() / "hawk-sync.db"

    @property
    def priority_categories(self) -> frozenset[Category]:
        return frozenset(Category(name) for name in self.notifications.priority_categories)

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "Config":
        """
        Load configuration from a TOML file, then apply environment overrides.

        If the config file doesn't exist, defaults are used.

        Args:
            path: Config file to read (defaults to the XDG location).
            environ: Environment to read overrides from (defaults to os.environ).

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file or an override is invalid.
        """
        if path is None:
            ensure_directories()
            path = cls.config_file_path()

        if path.exists():
            try:
                with open(path, "rb") as f:
                    data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Invalid config file {path}: {e}") from e
            config = cls._from_dict(data)
        else:
            config = cls()

        config.path = path
        config.apply_env(os.environ if environ is None else environ)
        return config

    def save(self, path: Path | None = None) -> None:
        """
        Save configuration to a TOML file.

        Creates the parent directory if it doesn't exist.
        """
        path = path or self.path or self.config_file_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """
        Apply environment variable overrides in place.

        Raises:
            ConfigError: If a numeric variable doesn't parse or is out of range.
        """
        self.sync.sync_days = _env_int(environ, "EMAIL_SYNC_DAYS", self.sync.sync_days)
        self.sync.initial_sync_limit = _env_int(
            environ, "INITIAL_SYNC_LIMIT", self.sync.initial_sync_limit, minimum=1
        )
        self.sync.background_batch_size = _env_int(
            environ, "BACKGROUND_BATCH_SIZE", self.sync.background_batch_size, minimum=1
        )
        self.sync.max_messages_per_account = _env_int(
            environ, "MAX_EMAILS_PER_SYNC", self.sync.max_messages_per_account, minimum=1
        )

        self.reconnect.base_delay_seconds = _env_float(
            environ, "RECONNECT_BASE_DELAY", self.reconnect.base_delay_seconds
        )
        self.reconnect.max_attempts = _env_int(
            environ, "MAX_RECONNECT_ATTEMPTS", self.reconnect.max_attempts, minimum=0
        )

        self.oauth.google_client_id = environ.get("GOOGLE_CLIENT_ID", self.oauth.google_client_id)
        self.oauth.google_client_secret = environ.get(
            "GOOGLE_CLIENT_SECRET", self.oauth.google_client_secret
        )
        self.oauth.microsoft_client_id = environ.get(
            "MICROSOFT_CLIENT_ID", self.oauth.microsoft_client_id
        )
        self.oauth.microsoft_client_secret = environ.get(
            "MICROSOFT_CLIENT_SECRET", self.oauth.microsoft_client_secret
        )
        self.oauth.microsoft_tenant = environ.get("MICROSOFT_TENANT_ID", self.oauth.microsoft_tenant)

        self.notifications.webhook_url = environ.get(
            "EXTERNAL_WEBHOOK_URL", self.notifications.webhook_url
        )
        self.notifications.slack_webhook_url = environ.get(
            "SLACK_WEBHOOK_URL", self.notifications.slack_webhook_url
        )

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Unknown keys are ignored so older binaries can read newer files.
        """
        config = cls()

        sync = data.get("sync", {})
        config.sync = SyncConfig(
            sync_days=_int(sync, "sync_days", 30),
            initial_sync_limit=_int(sync, "initial_sync_limit", 50, minimum=1),
            background_batch_size=_int(sync, "background_batch_size", 100, minimum=1),
            max_messages_per_account=_int(sync, "max_messages_per_account", 300, minimum=1),
            background_delay_seconds=_float(sync, "background_delay_seconds", 2.0),
            background_cooldown_seconds=_float(sync, "background_cooldown_seconds", 300.0),
            idle_refresh_seconds=_float(sync, "idle_refresh_seconds", 600.0),
            poll_interval_seconds=_float(sync, "poll_interval_seconds", 300.0),
        )

        reconnect = data.get("reconnect", {})
        config.reconnect = ReconnectConfig(
            base_delay_seconds=_float(reconnect, "base_delay_seconds", 30.0),
            max_attempts=_int(reconnect, "max_attempts", 5, minimum=0),
            jitter_seconds=_float(reconnect, "jitter_seconds", 5.0),
        )

        connection = data.get("connection", {})
        config.connection = ConnectionConfig(
            connection_timeout=_float(connection, "connection_timeout", 60.0),
            greeting_timeout=_float(connection, "greeting_timeout", 30.0),
            command_timeout=_float(connection, "command_timeout", 30.0),
        )

        oauth = data.get("oauth", {})
        config.oauth = OAuthConfig(
            google_client_id=oauth.get("google_client_id", ""),
            google_client_secret=oauth.get("google_client_secret", ""),
            microsoft_client_id=oauth.get("microsoft_client_id", ""),
            microsoft_client_secret=oauth.get("microsoft_client_secret", ""),
            microsoft_tenant=oauth.get("microsoft_tenant", "common"),
        )

        notifications = data.get("notifications", {})
        priority = notifications.get("priority_categories", [Category.INTERESTED.value])
        try:
            for name in priority:
                Category(name)
        except ValueError as e:
            raise ConfigError(f"Unknown priority category: {e}") from e
        config.notifications = NotificationConfig(
            webhook_url=notifications.get("webhook_url", ""),
            slack_webhook_url=notifications.get("slack_webhook_url", ""),
            priority_categories=list(priority),
        )

        # Accounts - each key under [accounts] is an account id
        for account_id, acct_data in data.get("accounts", {}).items():
            try:
                provider = Provider(acct_data.get("provider", "gmail"))
            except ValueError as e:
                raise ConfigError(f"Account {account_id}: unknown provider") from e
            if not acct_data.get("email"):
                raise ConfigError(f"Account {account_id}: email is required")
            config.accounts[account_id] = AccountConfig(
                id=account_id,
                email=acct_data["email"],
                provider=provider,
                active=acct_data.get("active", True),
                slack_webhook_url=acct_data.get("slack_webhook_url", ""),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.
        """
        data: dict[str, Any] = {}

        data["sync"] = {
            "sync_days": self.sync.sync_days,
            "initial_sync_limit": self.sync.initial_sync_limit,
            "background_batch_size": self.sync.background_batch_size,
            "max_messages_per_account": self.sync.max_messages_per_account,
            "background_delay_seconds": self.sync.background_delay_seconds,
            "background_cooldown_seconds": self.sync.background_cooldown_seconds,
            "idle_refresh_seconds": self.sync.idle_refresh_seconds,
            "poll_interval_seconds": self.sync.poll_interval_seconds,
        }

        data["reconnect"] = {
            "base_delay_seconds": self.reconnect.base_delay_seconds,
            "max_attempts": self.reconnect.max_attempts,
            "jitter_seconds": self.reconnect.jitter_seconds,
        }

        data["connection"] = {
            "connection_timeout": self.connection.connection_timeout,
            "greeting_timeout": self.connection.greeting_timeout,
            "command_timeout": self.connection.command_timeout,
        }

        # Client secrets stay out of the file; they belong in the environment
        data["oauth"] = {
            "google_client_id": self.oauth.google_client_id,
            "microsoft_client_id": self.oauth.microsoft_client_id,
            "microsoft_tenant": self.oauth.microsoft_tenant,
        }

        data["notifications"] = {
            "webhook_url": self.notifications.webhook_url,
            "slack_webhook_url": self.notifications.slack_webhook_url,
            "priority_categories": list(self.notifications.priority_categories),
        }

        data["accounts"] = {}
        for account_id, account in self.accounts.items():
            data["accounts"][account_id] = {
                "email": account.email,
                "provider": account.provider.value,
                "active": account.active,
                "slack_webhook_url": account.slack_webhook_url,
            }

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def _int(
    section: Mapping[str, Any], key: str, default: int, minimum: int | None = None
) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    return _at_least(key, value, minimum)


def _float(section: Mapping[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    return float(value)


def _env_int(
    environ: Mapping[str, str], name: str, default: int, minimum: int | None = None
) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    return _at_least(name, value, minimum)


def _at_least(name: str, value: int, minimum: int | None) -> int:
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
