# -----------------------------------------------------------------------------
# NPM INFRASTRUCTURE - Offline Package Install
# -----------------------------------------------------------------------------
# Responsibility: Install a local npm archive into an isolated prefix.
# Uses subprocess for lean, direct npm command execution.
#
# Isolation:
# - Dedicated --prefix and --cache under the stack root
# - --offline: npm never touches the network
# - Global npm config (prefix/cache) is overridden in the child environment
# -----------------------------------------------------------------------------

import os
import subprocess
from pathlib import Path

from rich.console import Console

from mcpstack.domain.errors import InstallError

console = Console()

# npm can be slow on cold caches; offline installs should still finish well within this
INSTALL_TIMEOUT_SECONDS = 300

OFFLINE_FLAGS = [
    "--offline",
    "--no-audit",
    "--no-fund",
    "--no-save",
    "--no-package-lock",
    "--loglevel=error",
]


class NpmProvider:
    """
    Lean npm wrapper using subprocess.

    One provider owns one prefix and one cache; installs never touch the
    user's global npm configuration.
    """

    def __init__(
        self,
        npm_path: str,
        prefix: Path,
        cache: Path,
        timeout: int = INSTALL_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the provider.

        Args:
            npm_path: Absolute path of the npm executable.
            prefix: Isolated install prefix (node_modules lands below it).
            cache: Isolated npm cache directory.
            timeout: Per-install timeout in seconds.
        """
        self._npm = npm_path
        self._prefix = Path(prefix)
        self._cache = Path(cache)
        self._timeout = timeout

    @property
    def node_modules(self) -> Path:
        return self._prefix / "node_modules"

    def _env(self) -> dict[str, str]:
        """Child environment pinned to the isolated prefix and cache."""
        env = os.environ.copy()
        env["npm_config_prefix"] = str(self._prefix)
        env["npm_config_cache"] = str(self._cache)
        env["npm_config_offline"] = "true"
        env["npm_config_update_notifier"] = "false"
        return env

    def build_command(self, archive: Path) -> list[str]:
        return [
            self._npm,
            "install",
            str(archive),
            "--prefix",
            str(self._prefix),
            "--cache",
            str(self._cache),
            *OFFLINE_FLAGS,
        ]

    def install(self, archive: Path) -> None:
        """
        Install one archive offline.

        Raises:
            InstallError: If npm cannot be spawned, times out, or exits non-zero.
        """
        cmd = self.build_command(archive)
        console.print(f"[cyan][NPM] Installing {Path(archive).name} (offline)...[/cyan]")

        try:
            result = subprocess.run(
                cmd,
                cwd=self._prefix,
                env=self._env(),
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            raise InstallError(f"npm install of {archive} timed out ({self._timeout}s limit)")
        except OSError as e:
            raise InstallError(f"Could not run npm ({self._npm}): {e}")

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "Unknown error").strip()
            raise InstallError(
                f"npm install of {Path(archive).name} failed (exit {result.returncode}): {detail[-500:]}"
            )

        console.print(f"[green][NPM] Installed {Path(archive).name}[/green]")
