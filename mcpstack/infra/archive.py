# -----------------------------------------------------------------------------
# ARCHIVE INFRASTRUCTURE - tar.gz Backups, Snapshots & npm Manifests
# -----------------------------------------------------------------------------
# Responsibility: Everything that reads or writes tar archives.
# - create_tar_gz: backup / snapshot of a directory tree
# - read_package_manifest: package.json inside an `npm pack` archive
# -----------------------------------------------------------------------------

import json
import os
import tarfile
from pathlib import Path

from rich.console import Console

from mcpstack.domain.errors import InstallError

console = Console()

# npm pack puts every file below this top-level folder
NPM_PACK_ROOT = "package"


def create_tar_gz(source_dir: Path, dest: Path, exclude: set[str] | None = None) -> Path:
    """
    Archive the contents of source_dir into dest (gzip tar).

    A missing source produces a valid, empty archive so first runs behave
    like repeat runs. The archive is written under a temporary name and
    renamed into place once complete.

    Args:
        source_dir: Directory to archive (entries stored relative to it).
        dest: Output path (*.tar.gz).
        exclude: Top-level entry names to skip.

    Returns:
        dest
    """
    source_dir = Path(source_dir)
    dest = Path(dest)
    exclude = exclude or set()
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".partial")

    with tarfile.open(partial, mode="w:gz") as tar:
        if source_dir.is_dir():
            for child in sorted(source_dir.iterdir()):
                if child.name in exclude:
                    continue
                tar.add(str(child), arcname=child.name)

    os.replace(partial, dest)
    return dest


def archive_members(archive: Path) -> list[str]:
    """List member names of a tar archive."""
    with tarfile.open(archive, mode="r:*") as tar:
        return tar.getnames()


def read_package_manifest(archive: Path) -> dict:
    """
    Read package.json from an npm pack archive without extracting it.

    Raises:
        InstallError: If the archive is unreadable or has no manifest.
    """
    try:
        with tarfile.open(archive, mode="r:*") as tar:
            names = tar.getnames()
            candidates = [f"{NPM_PACK_ROOT}/package.json"]
            # Some registries pack under the package name instead of "package/"
            candidates += sorted(
                (n for n in names if n.count("/") == 1 and n.endswith("/package.json")),
                key=len,
            )
            for name in candidates:
                if name not in names:
                    continue
                member = tar.extractfile(name)
                if member is None:
                    continue
                with member:
                    data = json.loads(member.read().decode("utf-8"))
                if not isinstance(data, dict):
                    raise InstallError(f"{archive}: package.json is not a JSON object")
                return data
    except (tarfile.TarError, OSError) as e:
        raise InstallError(f"Cannot read archive {archive}: {e}")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InstallError(f"{archive}: package.json is not valid JSON: {e}")

    raise InstallError(f"{archive}: no package.json found (expected {NPM_PACK_ROOT}/package.json)")
