# -----------------------------------------------------------------------------
# DIRECTORY REBUILD
# -----------------------------------------------------------------------------
# Responsibility: Recreate the fixed stack directory tree.
#
# Every directory is created with create-if-missing semantics on every run.
# No "already exists" branch: fresh and repeat runs take the same code path.
# -----------------------------------------------------------------------------

from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

from mcpstack.domain.errors import LayoutError

console = Console()


@dataclass
class StackLayout:
    """Named paths below the stack root."""

    root: Path
    directories: list[str] = field(default_factory=list)

    def path(self, name: str) -> Path:
        return self.root / name

    @property
    def workspace(self) -> Path:
        return self.path("workspace")

    @property
    def repos(self) -> Path:
        return self.path("repos")

    @property
    def npm_cache(self) -> Path:
        return self.path("npm-cache")

    @property
    def npm_prefix(self) -> Path:
        return self.path("npm-prefix")

    @property
    def servers(self) -> Path:
        return self.path("servers")

    @property
    def logs(self) -> Path:
        return self.path("logs")

    @property
    def backups(self) -> Path:
        return self.path("backups")

    @property
    def quarantine(self) -> Path:
        return self.path("quarantine")

    @property
    def archive_excludes(self) -> set[str]:
        """Top-level entries left out of backups and snapshots."""
        return {self.backups.name, self.quarantine.name}

    def placeholders(self) -> dict[str, str]:
        """Values for {root}/{workspace}/{repos}/{home} in server arguments."""
        return {
            "root": str(self.root),
            "workspace": str(self.workspace),
            "repos": str(self.repos),
            "home": str(Path.home()),
        }


def _make_dir(target: Path) -> None:
    try:
        target.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LayoutError(f"Cannot create {target}: {e}. Move whatever is in the way and re-run.")


def rebuild_directories(layout: StackLayout) -> list[Path]:
    """
    Create the stack root and every required subdirectory.

    Returns:
        The directories, in creation order.

    Raises:
        LayoutError: If a directory cannot be created (a file in the way,
            missing permissions).
    """
    _make_dir(layout.root)
    created = []
    for name in layout.directories:
        target = layout.path(name)
        _make_dir(target)
        created.append(target)

    console.print(f"[green][LAYOUT] {len(created)} directories ready under {layout.root}[/green]")
    return created
