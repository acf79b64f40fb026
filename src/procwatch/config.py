"""Configuration system for procwatch."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class SamplingConfig:
    """Sampling loop configuration."""

    interval: float = 1.0  # Seconds between the end of one cycle and the start of the next
    top_count: int = 30  # Rows shown by `procwatch monitor`


@dataclass
class FallbackConfig:
    """Unprivileged fallback source configuration."""

    command: list[str] = field(default_factory=lambda: ["top", "-bn1", "-m", "30"])
    timeout: float = 5.0  # Seconds before the listing command is killed


@dataclass
class HelperConfig:
    """Privileged helper and channel configuration."""

    socket_mode: int = 0o660  # Socket file mode; group members may connect
    socket_group: str = ""  # Group that owns the socket ("" keeps root's group)
    connect_timeout: float = 2.0
    call_timeout: float = 5.0
    watch_interval: float = 1.0  # Seconds between socket availability checks
    heartbeat_seconds: float = 60.0  # Helper heartbeat log interval


@dataclass
class SystemConfig:
    """Logging and housekeeping configuration."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    helper: HelperConfig = field(default_factory=HelperConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "procwatch"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "procwatch"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the helper socket and PID file.

        Shared between the root helper and unprivileged monitors, so it is not
        under any user's home.
        """
        return Path("/run/procwatch")

    @property
    def log_path(self) -> Path:
        """Log file path."""
        return self.state_dir / "procwatch.log"

    @property
    def pid_path(self) -> Path:
        """Helper PID file path."""
        return self.runtime_dir / "helper.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path of the privileged helper."""
        return self.runtime_dir / "helper.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.dumps())

    def dumps(self) -> str:
        """Render the config as a TOML document."""
        doc = tomlkit.document()
        for name in ("sampling", "fallback", "helper", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())
        return tomlkit.dumps(doc)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree.

        Raises:
            ValueError: If the file cannot be parsed or holds an invalid value
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            sampling=_load_sampling_config(data.get("sampling", {})),
            fallback=_load_fallback_config(data.get("fallback", {})),
            helper=_load_helper_config(data.get("helper", {})),
            system=_load_system_config(data.get("system", {})),
        )


def _load_sampling_config(data: dict) -> SamplingConfig:
    """Load sampling config from TOML data, using dataclass defaults for missing fields."""
    defaults = SamplingConfig()
    interval = data.get("interval", defaults.interval)
    top_count = data.get("top_count", defaults.top_count)

    if interval <= 0:
        raise ValueError(f"sampling.interval must be > 0, got {interval}")
    if top_count < 1:
        raise ValueError(f"sampling.top_count must be >= 1, got {top_count}")

    return SamplingConfig(interval=float(interval), top_count=int(top_count))


def _load_fallback_config(data: dict) -> FallbackConfig:
    """Load fallback config from TOML data."""
    defaults = FallbackConfig()
    command = data.get("command", defaults.command)
    timeout = data.get("timeout", defaults.timeout)

    if isinstance(command, str) or not command:
        raise ValueError(f"fallback.command must be a non-empty list, got {command!r}")
    if timeout <= 0:
        raise ValueError(f"fallback.timeout must be > 0, got {timeout}")

    return FallbackConfig(command=[str(part) for part in command], timeout=float(timeout))


def _load_helper_config(data: dict) -> HelperConfig:
    """Load helper config from TOML data."""
    d = HelperConfig()
    config = HelperConfig(
        socket_mode=int(data.get("socket_mode", d.socket_mode)),
        socket_group=str(data.get("socket_group", d.socket_group)),
        connect_timeout=float(data.get("connect_timeout", d.connect_timeout)),
        call_timeout=float(data.get("call_timeout", d.call_timeout)),
        watch_interval=float(data.get("watch_interval", d.watch_interval)),
        heartbeat_seconds=float(data.get("heartbeat_seconds", d.heartbeat_seconds)),
    )

    if not 0 <= config.socket_mode <= 0o777:
        raise ValueError(f"helper.socket_mode must be a file mode, got {config.socket_mode:o}")
    for name in ("connect_timeout", "call_timeout", "watch_interval", "heartbeat_seconds"):
        if getattr(config, name) <= 0:
            raise ValueError(f"helper.{name} must be > 0, got {getattr(config, name)}")
    return config


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    log_max_bytes = data.get("log_max_bytes", d.log_max_bytes)
    log_backup_count = data.get("log_backup_count", d.log_backup_count)

    if log_max_bytes < 1024:
        raise ValueError(f"system.log_max_bytes must be >= 1024, got {log_max_bytes}")
    if log_backup_count < 0:
        raise ValueError(f"system.log_backup_count must be >= 0, got {log_backup_count}")

    return SystemConfig(log_max_bytes=int(log_max_bytes), log_backup_count=int(log_backup_count))
