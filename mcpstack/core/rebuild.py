# -----------------------------------------------------------------------------
# THE REBUILDER - ORCHESTRATOR
# -----------------------------------------------------------------------------
# Responsibility: Run the rebuild phases strictly in order.
#
#   0. Preflight + archive resolution   (no writes)
#   1. Backup & quarantine
#   2. Directory rebuild
#   3. Offline install + wrappers
#   4. Config merge (atomic)
#   5. Handshake validation, snapshot, RebuildLog
#
# A fatal error stops the run at once. The failure is still written to
# logs/rebuild-<ts>.json whenever the logs directory exists; failures before
# any mutation leave the disk untouched and only reach the console.
# -----------------------------------------------------------------------------

import platform
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from rich.console import Console

from mcpstack.core.config_merge import (
    ConfigMerger,
    atomic_write_text,
    build_server_definitions,
    load_config,
)
from mcpstack.core.handshake import HandshakeValidator
from mcpstack.core.installer import Installer, resolve_archives
from mcpstack.core.layout import StackLayout, rebuild_directories
from mcpstack.core.preflight import PreflightReport, run_preflight
from mcpstack.core.quarantine import create_backup, quarantine_prior_state
from mcpstack.core.settings import StackSettings
from mcpstack.domain.errors import BackupError, StackError
from mcpstack.domain.models import (
    SERVERS_KEY,
    RebuildLog,
    RebuildStatus,
    ServerDefinition,
    ValidationOutcome,
)
from mcpstack.infra.archive import create_tar_gz
from mcpstack.infra.npm_client import NpmProvider

console = Console()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_timestamp(now: datetime | None = None) -> str:
    """Run timestamp embedded in every artifact name."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%d_%H%M%S_%f")


class RunRecorder:
    """
    The flight recorder for one rebuild.

    Every phase transition is logged; the events end up in the RebuildLog.
    """

    def __init__(self) -> None:
        self._events: list[dict] = []

    def log(self, event: str, details: str | None = None) -> None:
        self._events.append({"timestamp": utc_now(), "event": event, "details": details})

    @property
    def events(self) -> list[dict]:
        return list(self._events)


class StackRebuilder:
    """
    Runs one deterministic rebuild of the stack.

    Collaborators can be swapped for tests:
    - preflight: host checks (settings -> PreflightReport)
    - npm_factory: builds the NpmProvider for the isolated prefix
    - validator: HandshakeValidator
    """

    def __init__(
        self,
        settings: StackSettings,
        preflight: Callable[[StackSettings], PreflightReport] | None = None,
        npm_factory: Callable[..., NpmProvider] | None = None,
        validator: HandshakeValidator | None = None,
    ) -> None:
        self._settings = settings
        self._layout = StackLayout(root=settings.stack_root, directories=settings.directories)
        self._preflight = preflight or run_preflight
        self._npm_factory = npm_factory or NpmProvider
        self._validator = validator or HandshakeValidator(timeout=settings.handshake_timeout_seconds)
        self.last_log: RebuildLog | None = None
        self.last_log_path: Path | None = None

    @property
    def layout(self) -> StackLayout:
        return self._layout

    def run(self) -> RebuildLog:
        """
        Execute every phase.

        Returns:
            The RebuildLog of a successful run.

        Raises:
            StackError: Any fatal error (after recording it).
        """
        settings = self._settings
        layout = self._layout
        timestamp = make_timestamp()
        recorder = RunRecorder()
        state: dict = {
            "run_id": timestamp,
            "started_at": utc_now(),
            "platform": platform.system(),
            "python_version": platform.python_version(),
            "stack_root": str(layout.root),
            "packages_dir": str(settings.packages_dir),
            "config_path": str(settings.config_path),
        }

        console.rule(f"[bold cyan]STACK REBUILD {timestamp}[/bold cyan]")
        recorder.log("RUN_STARTED", str(layout.root))

        try:
            # Phase 0: nothing below may write before this passes
            report = self._preflight(settings)
            state["runtime"] = report.runtime
            state["runtime_version"] = report.runtime_version
            recorder.log("PREFLIGHT_PASSED", f"{report.platform} {report.runtime_version}")

            archives = resolve_archives(settings.packages, settings.packages_dir)
            recorder.log("ARCHIVES_RESOLVED", ", ".join(p.name for p in archives.values()))

            # Phase 1
            backup = create_backup(layout, timestamp)
            state["backup_archive"] = str(backup)
            recorder.log("BACKUP_CREATED", str(backup))

            quarantine = quarantine_prior_state(layout, settings.quarantine_targets, timestamp)
            if quarantine.batch_dir:
                state["quarantine_dir"] = str(quarantine.batch_dir)
                state["quarantined"] = [str(dst) for _, dst in quarantine.moved]
            recorder.log("QUARANTINE_DONE", state.get("quarantine_dir"))

            # Phase 2
            rebuild_directories(layout)
            recorder.log("DIRECTORIES_READY", str(len(layout.directories)))

            # Phase 3
            npm = self._npm_factory(
                report.npm,
                layout.npm_prefix,
                layout.npm_cache,
                timeout=settings.install_timeout_seconds,
            )
            installed = Installer(layout, npm).install_all(settings.packages, archives)
            state["packages"] = list(installed.values())
            recorder.log("PACKAGES_INSTALLED", ", ".join(installed))

            # Phase 4
            servers = build_server_definitions(
                settings.servers, installed, report.runtime, layout.placeholders()
            )
            merger = ConfigMerger(
                settings.config_path, layout.backups, prune_unmanaged=settings.prune_unmanaged_servers
            )
            merge = merger.commit(servers, timestamp)
            state["servers"] = servers
            state["config_backup"] = str(merge.backup) if merge.backup else None
            state["config_warning"] = merge.warning
            recorder.log("CONFIG_COMMITTED", str(settings.config_path))

            # Phase 5
            if settings.skip_validation:
                state["validation_skipped"] = True
                recorder.log("VALIDATION_SKIPPED")
            else:
                state["validation"] = self._validator.validate_all(servers)
                passed = sum(1 for o in state["validation"] if o.passed)
                recorder.log("VALIDATION_DONE", f"{passed}/{len(state['validation'])} passed")

            snapshot = layout.backups / f"stack-snapshot-{timestamp}.tar.gz"
            try:
                create_tar_gz(layout.root, snapshot, exclude=layout.archive_excludes)
            except (OSError, tarfile.TarError) as e:
                raise BackupError(f"Snapshot of {layout.root} failed: {e}")
            console.print(f"[green][SNAPSHOT] {snapshot}[/green]")
            state["snapshot_archive"] = str(snapshot)
            recorder.log("SNAPSHOT_CREATED", str(snapshot))

        except StackError as e:
            console.print(f"[red][REBUILD] FAILED: {e}[/red]")
            recorder.log("RUN_FAILED", str(e))
            self._finish(state, recorder, RebuildStatus.FAILED, timestamp, error=str(e))
            raise
        except (OSError, tarfile.TarError) as e:
            # Filesystem errors not already mapped to a StackError
            error = StackError(f"Unexpected filesystem error: {e}")
            console.print(f"[red][REBUILD] FAILED: {error}[/red]")
            recorder.log("RUN_FAILED", str(error))
            self._finish(state, recorder, RebuildStatus.FAILED, timestamp, error=str(error))
            raise error from e

        recorder.log("RUN_COMPLETE")
        return self._finish(state, recorder, RebuildStatus.SUCCESS, timestamp)

    def _finish(
        self,
        state: dict,
        recorder: RunRecorder,
        status: RebuildStatus,
        timestamp: str,
        error: str | None = None,
    ) -> RebuildLog:
        """Freeze the run into a RebuildLog and write it if logs/ exists."""
        log = RebuildLog(
            **state,
            status=status,
            finished_at=utc_now(),
            events=recorder.events,
            error=error,
        )
        self.last_log = log

        logs_dir = self._layout.logs
        if logs_dir.is_dir():
            path = logs_dir / f"rebuild-{timestamp}.json"
            try:
                atomic_write_text(path, log.model_dump_json(indent=2) + "\n")
            except OSError as e:
                console.print(f"[yellow][REBUILD] Could not write log {path}: {e}[/yellow]")
                return log
            self.last_log_path = path
            console.print(f"[green][REBUILD] Log saved: {path}[/green]")
        else:
            console.print("[yellow][REBUILD] No logs directory yet; log not written to disk[/yellow]")
        return log


def check_stack(
    settings: StackSettings,
    preflight: Callable[[StackSettings], PreflightReport] | None = None,
) -> tuple[PreflightReport, dict[str, Path]]:
    """Preflight plus archive resolution. Writes nothing."""
    report = (preflight or run_preflight)(settings)
    archives = resolve_archives(settings.packages, settings.packages_dir)
    return report, archives


def configured_servers(settings: StackSettings) -> dict[str, ServerDefinition]:
    """Managed servers currently present in the Desktop config."""
    document, _ = load_config(settings.config_path)
    entries = document.get(SERVERS_KEY)
    if not isinstance(entries, dict):
        return {}

    servers = {}
    for managed in settings.servers:
        entry = entries.get(managed.name)
        if not isinstance(entry, dict) or not isinstance(entry.get("command"), str):
            continue
        args = entry.get("args") if isinstance(entry.get("args"), list) else []
        env = entry.get("env") if isinstance(entry.get("env"), dict) else None
        deny = [str(d) for d in entry["deny"]] if isinstance(entry.get("deny"), list) else None
        servers[managed.name] = ServerDefinition(
            command=entry["command"], args=[str(a) for a in args], env=env, deny=deny
        )
    return servers


def validate_configured_servers(
    settings: StackSettings, validator: HandshakeValidator | None = None
) -> list[ValidationOutcome]:
    """Handshake the managed servers already in the Desktop config. Writes nothing."""
    validator = validator or HandshakeValidator(timeout=settings.handshake_timeout_seconds)
    servers = configured_servers(settings)
    if not servers:
        console.print(f"[yellow][HANDSHAKE] No managed servers in {settings.config_path}[/yellow]")
        return []
    return validator.validate_all(servers)
