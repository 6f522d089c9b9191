# -----------------------------------------------------------------------------
# STACK SETTINGS
# -----------------------------------------------------------------------------
# Responsibility: Load the rebuild configuration.
#
# Precedence (highest first):
#   CLI flags > environment (.env via python-dotenv) > stack.yaml > defaults
#
# stack.yaml is optional. Without it the built-in defaults describe the
# standard filesystem + memory server stack.
# -----------------------------------------------------------------------------

import os
import platform
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from rich.console import Console

from mcpstack.domain.errors import SettingsError
from mcpstack.domain.models import ManagedServer, PackageSpec

console = Console()

SETTINGS_PATH = Path(os.getenv("MCPSTACK_SETTINGS", "stack.yaml"))

DESKTOP_CONFIG_NAME = "claude_desktop_config.json"

DEFAULT_DIRECTORIES = [
    "workspace",
    "repos",
    "npm-cache",
    "npm-prefix",
    "plugins",
    "servers",
    "logs",
    "backups",
]

# Secrets the filesystem server is never allowed to touch
FILESYSTEM_DENY = [
    "Read(./.env)",
    "Read(./.env.*)",
    "Write(./.env)",
    "Read(./config/secrets.*)",
    "Write(./config/secrets.*)",
]

# Prior-state directories displaced into quarantine on every run
DEFAULT_QUARANTINE_TARGETS = ["npm-prefix", "plugins", "servers"]

# Environment variable -> settings field
ENV_OVERRIDES = {
    "MCPSTACK_ROOT": "stack_root",
    "MCPSTACK_PACKAGES_DIR": "packages_dir",
    "MCPSTACK_CONFIG_PATH": "config_path",
    "MCPSTACK_RUNTIME": "runtime",
    "MCPSTACK_HANDSHAKE_TIMEOUT": "handshake_timeout_seconds",
}


def default_desktop_config_path(
    system: str | None = None,
    environ: dict | None = None,
    home: Path | None = None,
) -> Path:
    """
    Location of claude_desktop_config.json for the host platform.

    macOS:   ~/Library/Application Support/Claude/
    Windows: %APPDATA%/Claude/
    Linux:   ~/.config/Claude/
    """
    system = system or platform.system()
    environ = os.environ if environ is None else environ
    home = home or Path.home()

    if system == "Darwin":
        return home / "Library" / "Application Support" / "Claude" / DESKTOP_CONFIG_NAME
    if system == "Windows":
        appdata = environ.get("APPDATA") or str(home / "AppData" / "Roaming")
        return Path(appdata) / "Claude" / DESKTOP_CONFIG_NAME
    return home / ".config" / "Claude" / DESKTOP_CONFIG_NAME


def _default_packages() -> list[PackageSpec]:
    return [
        PackageSpec(name="filesystem", pattern="server-filesystem-*.tgz"),
        PackageSpec(name="memory", pattern="server-memory-*.tgz"),
    ]


def _default_servers() -> list[ManagedServer]:
    return [
        ManagedServer(
            name="filesystem",
            package="filesystem",
            extra_args=["{workspace}"],
            deny=list(FILESYSTEM_DENY),
        ),
        ManagedServer(name="memory", package="memory"),
    ]


class StackSettings(BaseModel):
    """
    Pydantic model for the rebuild configuration.

    Loaded from stack.yaml at startup; every field has a default.
    """

    stack_root: Path = Field(default_factory=lambda: Path.home() / "claude-stack")
    packages_dir: Path = Field(default_factory=lambda: Path.home() / "claude-stack-offline")
    config_path: Path = Field(default_factory=default_desktop_config_path)
    runtime: str | None = None
    npm: str | None = None
    min_runtime_major: int = 18
    handshake_timeout_seconds: float = Field(default=15.0, gt=0)
    install_timeout_seconds: int = Field(default=300, gt=0)
    directories: list[str] = Field(default_factory=lambda: list(DEFAULT_DIRECTORIES))
    quarantine_targets: list[str] = Field(default_factory=lambda: list(DEFAULT_QUARANTINE_TARGETS))
    packages: list[PackageSpec] = Field(default_factory=_default_packages)
    servers: list[ManagedServer] = Field(default_factory=_default_servers)
    prune_unmanaged_servers: bool = False
    skip_validation: bool = False

    @model_validator(mode="after")
    def _check_references(self) -> "StackSettings":
        package_names = [p.name for p in self.packages]
        if len(set(package_names)) != len(package_names):
            raise ValueError(f"Duplicate package names: {package_names}")

        server_names = [s.name for s in self.servers]
        if len(set(server_names)) != len(server_names):
            raise ValueError(f"Duplicate server names: {server_names}")

        for server in self.servers:
            if server.package not in package_names:
                raise ValueError(
                    f"Server '{server.name}' references unknown package '{server.package}'"
                )

        for required in ("logs", "backups"):
            if required not in self.directories:
                raise ValueError(f"'{required}' must be listed in directories")
        return self

    def resolve_paths(self) -> "StackSettings":
        """Return a copy with user-relative paths expanded to absolute ones."""
        return self.model_copy(
            update={
                "stack_root": self.stack_root.expanduser().absolute(),
                "packages_dir": self.packages_dir.expanduser().absolute(),
                "config_path": self.config_path.expanduser().absolute(),
            }
        )


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SettingsError(f"{path} must contain a mapping at the top level")
    return data


def load_settings(
    path: Path | None = None,
    overrides: dict | None = None,
    environ: dict | None = None,
) -> StackSettings:
    """
    Load settings from YAML, then apply environment and explicit overrides.

    Args:
        path: stack.yaml location (defaults to SETTINGS_PATH).
        overrides: Values from the CLI; None entries are ignored.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        StackSettings with absolute paths.

    Raises:
        SettingsError: On unreadable YAML or invalid values.
    """
    path = Path(path) if path else SETTINGS_PATH
    environ = os.environ if environ is None else environ

    if path.exists():
        data = _read_yaml(path)
        console.print(f"[green][SETTINGS] Loaded {path}[/green]")
    else:
        console.print(f"[yellow][SETTINGS] {path} not found, using defaults[/yellow]")
        data = {}

    for env_name, field in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            data[field] = value

    for field, value in (overrides or {}).items():
        if value is not None:
            data[field] = value

    try:
        settings = StackSettings(**data)
    except ValidationError as e:
        raise SettingsError(f"Invalid settings: {e}")

    return settings.resolve_paths()
