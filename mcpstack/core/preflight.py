# -----------------------------------------------------------------------------
# PREFLIGHT - HOST CHECKS
# -----------------------------------------------------------------------------
# Responsibility: Refuse to start on a host that cannot finish the rebuild.
#
# Fatal:    unsupported platform, old Python, missing runtime (node) or npm,
#           runtime major version below the configured minimum.
# Warnings: optional tools (git, docker, python3) not on PATH.
#
# Preflight performs no writes.
# -----------------------------------------------------------------------------

import os
import platform
import re
import shutil
import sys
from dataclasses import dataclass, field

from rich.console import Console

from mcpstack.core.settings import StackSettings
from mcpstack.domain.errors import PreflightError
from mcpstack.infra.process_client import run_bounded

console = Console()

SUPPORTED_PLATFORMS = ("Darwin", "Windows", "Linux")
MIN_PYTHON = (3, 10)
OPTIONAL_TOOLS = ("git", "docker", "python3")
VERSION_TIMEOUT_SECONDS = 10


@dataclass
class PreflightReport:
    """What the host looks like."""

    platform: str
    python_version: str
    runtime: str
    runtime_version: str
    npm: str
    missing_optional: list[str] = field(default_factory=list)


def parse_major_version(text: str) -> int | None:
    """'v20.11.1' -> 20"""
    match = re.search(r"v?(\d+)(?:\.\d+)*", text or "")
    return int(match.group(1)) if match else None


def resolve_executable(name_or_path: str) -> str | None:
    """Absolute path of an executable given a path or a PATH name."""
    if os.path.isabs(name_or_path):
        if os.path.isfile(name_or_path) and os.access(name_or_path, os.X_OK):
            return name_or_path
        return None
    found = shutil.which(name_or_path)
    return os.path.abspath(found) if found else None


def check_platform(system: str | None = None) -> str:
    system = system or platform.system()
    if system not in SUPPORTED_PLATFORMS:
        raise PreflightError(
            f"Unsupported platform '{system}' (supported: {', '.join(SUPPORTED_PLATFORMS)})"
        )
    return system


def check_python(version_info=None) -> str:
    version_info = version_info or sys.version_info
    if tuple(version_info[:2]) < MIN_PYTHON:
        raise PreflightError(
            f"Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ required, found "
            f"{version_info[0]}.{version_info[1]}"
        )
    return f"{version_info[0]}.{version_info[1]}.{version_info[2]}"


def check_runtime(runtime: str, min_major: int) -> tuple[str, str]:
    """
    Resolve the runtime interpreter and check its major version.

    Returns:
        (absolute path, reported version)
    """
    path = resolve_executable(runtime)
    if path is None:
        raise PreflightError(f"Runtime '{runtime}' not found. Install Node.js {min_major}+ first.")

    try:
        result = run_bounded(path, ["--version"], timeout=VERSION_TIMEOUT_SECONDS)
    except OSError as e:
        raise PreflightError(f"Cannot run {path} --version: {e}")

    version = result.stdout_text().strip() or result.stderr_text().strip()
    major = parse_major_version(version)
    if result.exit_code != 0 or major is None:
        raise PreflightError(f"Could not determine version of {path} (output: {version!r})")
    if major < min_major:
        raise PreflightError(f"{path} is version {version}; {min_major}+ required")
    return path, version


def run_preflight(settings: StackSettings, system: str | None = None) -> PreflightReport:
    """
    Run every host check.

    Raises:
        PreflightError: On the first fatal check.
    """
    console.print("[cyan][PREFLIGHT] Checking host...[/cyan]")
    system = check_platform(system)
    python_version = check_python()

    runtime, runtime_version = check_runtime(settings.runtime or "node", settings.min_runtime_major)
    console.print(f"[green][PREFLIGHT] Runtime: {runtime} ({runtime_version})[/green]")

    npm = resolve_executable(settings.npm or "npm")
    if npm is None:
        raise PreflightError("npm not found on PATH; it is required for offline installs")

    missing = [tool for tool in OPTIONAL_TOOLS if shutil.which(tool) is None]
    for tool in missing:
        console.print(f"[yellow][PREFLIGHT] Optional tool not found: {tool}[/yellow]")

    return PreflightReport(
        platform=system,
        python_version=python_version,
        runtime=runtime,
        runtime_version=runtime_version,
        npm=npm,
        missing_optional=missing,
    )
