# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# THE INSTALLER - OFFLINE PACKAGES & WRAPPERS
# -----------------------------------------------------------------------------
# Responsibility: Turn each PackageSpec into an installed server with one
# stable wrapper path.
#
# 1. Resolve: exactly one local archive per spec (checked before any mutation)
# 2. Install: npm, offline, isolated prefix + cache
# 3. Entry point: package.json -> bin > main > exports
# 4. Wrapper: servers/<name>/index.mjs imports the real entry point relative
#    to its own location, so the Desktop config never points inside
#    node_modules.
#
# Any failure is fatal. A half-configured Desktop config is worse than none.
# -----------------------------------------------------------------------------

import json
import os
from pathlib import Path

from rich.console import Console

from mcpstack.core.entrypoint import resolve_entry_point
from mcpstack.core.layout import StackLayout
from mcpstack.domain.errors import ArchiveResolutionError, EntryPointError, InstallError
from mcpstack.domain.models import InstalledPackage, PackageSpec, to_forward_slashes
from mcpstack.infra.archive import read_package_manifest
from mcpstack.infra.npm_client import NpmProvider

console = Console()

WRAPPER_NAME = "index.mjs"

WRAPPER_TEMPLATE = """// Generated by mcpstack; rewritten on every rebuild.
import {{ dirname, resolve }} from "node:path";
import {{ fileURLToPath, pathToFileURL }} from "node:url";

const here = dirname(fileURLToPath(import.meta.url));
const target = resolve(here, {target});
await import(pathToFileURL(target).href);
"""


def resolve_archive(spec: PackageSpec, packages_dir: Path) -> Path | None:
    """
    Find the single archive matching spec.pattern.

    Returns:
        The archive path, or None for an optional spec with no match.

    Raises:
        ArchiveResolutionError: Zero matches (required spec) or several matches.
    """
    packages_dir = Path(packages_dir)
    matches = sorted(p for p in packages_dir.glob(spec.pattern) if p.is_file())

    if len(matches) == 1:
        return matches[0]

    if not matches:
        if not spec.required:
            console.print(
                f"[yellow][INSTALL] Optional package '{spec.name}' not found ({spec.pattern}), skipping[/yellow]"
            )
            return None
        raise ArchiveResolutionError(
            f"Package '{spec.name}': expected exactly one archive matching "
            f"'{spec.pattern}' in {packages_dir}, found none",
            pattern=spec.pattern,
            matches=[],
        )

    names = [m.name for m in matches]
    raise ArchiveResolutionError(
        f"Package '{spec.name}': expected exactly one archive matching "
        f"'{spec.pattern}' in {packages_dir}, found {len(matches)}: {', '.join(names)}",
        pattern=spec.pattern,
        matches=names,
    )


def resolve_archives(specs: list[PackageSpec], packages_dir: Path) -> dict[str, Path]:
    """
    Resolve every spec up front. Performs no writes.

    Returns:
        Mapping of spec name -> archive (optional misses omitted).
    """
    packages_dir = Path(packages_dir)
    if not packages_dir.is_dir():
        raise ArchiveResolutionError(
            f"Packages directory not found: {packages_dir}",
            pattern="",
            matches=[],
        )

    resolved = {}
    for spec in specs:
        archive = resolve_archive(spec, packages_dir)
        if archive is not None:
            console.print(f"[cyan][INSTALL] {spec.name}: {archive.name}[/cyan]")
            resolved[spec.name] = archive
    return resolved


def write_wrapper(wrapper_dir: Path, target: Path) -> Path:
    """
    Write index.mjs in wrapper_dir that imports target by relative path.

    Raises:
        InstallError: If the wrapper cannot be written.
    """
    relative = to_forward_slashes(os.path.relpath(target, wrapper_dir))
    wrapper = wrapper_dir / WRAPPER_NAME
    try:
        wrapper_dir.mkdir(parents=True, exist_ok=True)
        wrapper.write_text(WRAPPER_TEMPLATE.format(target=json.dumps(relative)), encoding="utf-8")
    except OSError as e:
        raise InstallError(f"Cannot write wrapper {wrapper}: {e}")
    return wrapper


class Installer:
    """
    Offline installer for the stack's npm packages.

    Owns the npm prefix and the servers/ wrapper tree of one stack layout.
    """

    def __init__(self, layout: StackLayout, npm: NpmProvider) -> None:
        self._layout = layout
        self._npm = npm

    def _package_name(self, spec: PackageSpec, archive: Path) -> str:
        if spec.package:
            return spec.package
        name = read_package_manifest(archive).get("name")
        if not isinstance(name, str) or not name:
            raise InstallError(f"{archive}: package.json has no 'name'")
        return name

    def _read_installed_manifest(self, install_dir: Path) -> dict:
        manifest_path = install_dir / "package.json"
        try:
            with open(manifest_path, encoding="utf-8") as f:
                manifest = json.load(f)
        except FileNotFoundError:
            raise InstallError(f"Install produced no manifest: {manifest_path}")
        except (OSError, json.JSONDecodeError) as e:
            raise InstallError(f"Unreadable manifest {manifest_path}: {e}")
        if not isinstance(manifest, dict):
            raise InstallError(f"Manifest is not a JSON object: {manifest_path}")
        return manifest

    def install(self, spec: PackageSpec, archive: Path) -> InstalledPackage:
        """
        Install one archive and generate its wrapper.

        Raises:
            InstallError: npm failure or missing manifest.
            EntryPointError: No entry point resolves, or it is missing on disk.
        """
        package_name = self._package_name(spec, archive)
        self._npm.install(archive)

        install_dir = self._npm.node_modules.joinpath(*package_name.split("/"))
        manifest = self._read_installed_manifest(install_dir)

        relative = resolve_entry_point(manifest)
        if relative is None:
            raise EntryPointError(
                f"Package '{package_name}' declares no usable entry point (checked bin, main, exports)"
            )

        entry_point = install_dir / relative
        if not entry_point.is_file():
            raise EntryPointError(
                f"Package '{package_name}': entry point '{relative}' does not exist at {entry_point}"
            )

        wrapper = write_wrapper(self._layout.servers / spec.name, entry_point)
        console.print(f"[green][INSTALL] {spec.name}: {package_name} -> {relative}[/green]")

        version = manifest.get("version")
        return InstalledPackage(
            name=spec.name,
            package_name=package_name,
            version=version if isinstance(version, str) else None,
            archive=str(archive),
            install_dir=str(install_dir),
            entry_point=str(entry_point),
            wrapper=str(wrapper),
        )

    def install_all(
        self, specs: list[PackageSpec], archives: dict[str, Path]
    ) -> dict[str, InstalledPackage]:
        """Install every resolved archive in spec order; stops at the first failure."""
        installed = {}
        for spec in specs:
            archive = archives.get(spec.name)
            if archive is None:
                continue
            installed[spec.name] = self.install(spec, archive)
        return installed
