# -----------------------------------------------------------------------------
# DOMAIN LAYER
# -----------------------------------------------------------------------------
# Contains the records passed between rebuild phases (Pydantic models) and
# the fatal error taxonomy.
# -----------------------------------------------------------------------------

from .errors import (
    ArchiveResolutionError,
    BackupError,
    ConfigValidationError,
    ConfigWriteError,
    EntryPointError,
    InstallError,
    LayoutError,
    PreflightError,
    QuarantineLockedError,
    SettingsError,
    StackError,
)
from .models import (
    SERVERS_KEY,
    InstalledPackage,
    ManagedServer,
    PackageSpec,
    RebuildLog,
    RebuildStatus,
    ServerDefinition,
    ValidationOutcome,
    to_forward_slashes,
)

__all__ = [
    "SERVERS_KEY", "InstalledPackage", "ManagedServer", "PackageSpec",
    "RebuildLog", "RebuildStatus", "ServerDefinition", "ValidationOutcome",
    "to_forward_slashes",
    "ArchiveResolutionError", "BackupError", "ConfigValidationError",
    "ConfigWriteError", "EntryPointError", "InstallError", "LayoutError", "PreflightError",
    "QuarantineLockedError", "SettingsError", "StackError",
]
