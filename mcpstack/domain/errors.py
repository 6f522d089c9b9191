# -----------------------------------------------------------------------------
# ERROR TAXONOMY
# -----------------------------------------------------------------------------
# Every fatal condition of a rebuild derives from StackError. The CLI turns
# any StackError into exit code 1. Handshake failures are NOT errors: they
# are recorded as ValidationOutcome entries in the RebuildLog.
# -----------------------------------------------------------------------------


class StackError(Exception):
    """Base class for fatal rebuild errors (abort the whole run)."""

    pass


class SettingsError(StackError):
    """Raised when stack.yaml or an override is invalid."""

    pass


class PreflightError(StackError):
    """Raised on an unsupported host platform or runtime version."""

    pass


class ArchiveResolutionError(StackError):
    """
    Raised when a PackageSpec does not resolve to exactly one archive.

    Carries the matches found so the message can list them.
    """

    def __init__(self, message: str, pattern: str, matches: list[str]) -> None:
        super().__init__(message)
        self.pattern = pattern
        self.matches = matches


class BackupError(StackError):
    """Raised when the pre-run backup archive is missing or empty."""

    pass


class QuarantineLockedError(StackError):
    """Raised when a prior-state directory cannot be moved (lock held)."""

    def __init__(self, message: str, target: str) -> None:
        super().__init__(message)
        self.target = target


class LayoutError(StackError):
    """Raised when a stack directory cannot be created (e.g. a file is in the way)."""

    pass


class InstallError(StackError):
    """Raised when the offline npm install of an archive fails."""

    pass


class EntryPointError(StackError):
    """Raised when an installed package has no resolvable entry point."""

    pass


class ConfigValidationError(StackError):
    """Raised when the merged Desktop config fails the round-trip check."""

    pass


class ConfigWriteError(StackError):
    """Raised when the Desktop config or its backup cannot be written."""

    pass
