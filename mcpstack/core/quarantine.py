# -----------------------------------------------------------------------------
# BACKUP & QUARANTINE
# -----------------------------------------------------------------------------
# Responsibility: Make the run reversible before anything destructive happens.
#
# 1. Backup: gzip tar of the stack root (minus backups/ and quarantine/),
#    verified to exist and be non-empty. Quarantine batches stay on disk
#    as they are and are never archived.
# 2. Quarantine: prior-state directories are MOVED (rename only, never copy,
#    never delete) into quarantine/<timestamp>/.
#
# A move that fails (open handles, permissions) rolls back every move made in
# this batch and aborts the run. There is never a partial quarantine.
# -----------------------------------------------------------------------------

import tarfile
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

from mcpstack.core.layout import StackLayout
from mcpstack.domain.errors import BackupError, QuarantineLockedError
from mcpstack.infra.archive import create_tar_gz

console = Console()


@dataclass
class QuarantineResult:
    """Where prior state went. batch_dir is None when nothing needed moving."""

    batch_dir: Path | None = None
    moved: list[tuple[Path, Path]] = field(default_factory=list)


def create_backup(layout: StackLayout, timestamp: str) -> Path:
    """
    Archive the current stack root before any destructive action.

    Returns:
        Path of the verified backup archive.

    Raises:
        BackupError: If the archive cannot be written or is empty.
    """
    dest = layout.backups / f"stack-backup-{timestamp}.tar.gz"
    console.print(f"[cyan][BACKUP] Archiving {layout.root}...[/cyan]")

    try:
        create_tar_gz(layout.root, dest, exclude=layout.archive_excludes)
    except (OSError, tarfile.TarError) as e:
        raise BackupError(f"Backup of {layout.root} failed: {e}")

    if not dest.is_file() or dest.stat().st_size == 0:
        raise BackupError(f"Backup archive missing or empty: {dest}")

    console.print(f"[green][BACKUP] {dest.name} ({dest.stat().st_size} bytes)[/green]")
    return dest


def _rollback(moved: list[tuple[Path, Path]]) -> list[str]:
    """Move quarantined directories back. Returns failures (empty on success)."""
    failures = []
    for src, dst in reversed(moved):
        try:
            dst.rename(src)
        except OSError as e:
            failures.append(f"{dst} -> {src}: {e}")
    return failures


def quarantine_prior_state(
    layout: StackLayout, targets: list[str], timestamp: str
) -> QuarantineResult:
    """
    Move every existing target directory into a fresh quarantine batch.

    Args:
        layout: Stack layout.
        targets: Directory names below the stack root.
        timestamp: Batch directory name.

    Returns:
        QuarantineResult (empty when no target exists).

    Raises:
        QuarantineLockedError: If any target cannot be moved.
    """
    existing = [layout.path(name) for name in targets if layout.path(name).exists()]
    if not existing:
        console.print("[cyan][QUARANTINE] Nothing to quarantine[/cyan]")
        return QuarantineResult()

    batch = layout.quarantine / timestamp
    try:
        batch.mkdir(parents=True, exist_ok=False)
    except OSError as e:
        raise QuarantineLockedError(f"Cannot create quarantine batch {batch}: {e}", target=str(batch))
    moved: list[tuple[Path, Path]] = []

    for src in existing:
        dst = batch / src.name
        try:
            src.rename(dst)
        except OSError as e:
            console.print(f"[red][QUARANTINE] Cannot move {src}: {e}[/red]")
            failures = _rollback(moved)
            if not failures:
                batch.rmdir()
            message = f"Quarantine aborted: {src} is locked or in use ({e}). Close any program using it and re-run."
            if failures:
                message += f" Rollback incomplete: {'; '.join(failures)}"
            raise QuarantineLockedError(message, target=str(src))
        moved.append((src, dst))
        console.print(f"[cyan][QUARANTINE] {src.name} -> {dst}[/cyan]")

    console.print(f"[green][QUARANTINE] {len(moved)} directories moved to {batch}[/green]")
    return QuarantineResult(batch_dir=batch, moved=moved)
