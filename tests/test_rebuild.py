"""
End-to-end tests for the rebuild orchestrator.

npm is replaced by FakeNpmProvider and the host checks by a fixed report;
everything else (backup, quarantine, wrappers, config merge, handshake)
runs for real inside tmp_path.
"""

import json
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from mcpstack.core.handshake import HandshakeValidator
from mcpstack.core.rebuild import (
    StackRebuilder,
    check_stack,
    configured_servers,
    make_timestamp,
    validate_configured_servers,
)
from mcpstack.core.settings import FILESYSTEM_DENY
from mcpstack.domain.errors import (
    ArchiveResolutionError,
    BackupError,
    InstallError,
    LayoutError,
    PreflightError,
    QuarantineLockedError,
    StackError,
)
from mcpstack.domain.models import RebuildLog, RebuildStatus, ValidationOutcome
from mcpstack.infra.archive import archive_members


@pytest.fixture
def passing_validator():
    validator = MagicMock(spec=HandshakeValidator)
    validator.validate_all.side_effect = lambda servers: [
        ValidationOutcome(name=name, passed=True, tool_count=3) for name in servers
    ]
    return validator


@pytest.fixture
def rebuilder(stack_settings, fake_preflight, fake_npm, passing_validator):
    return StackRebuilder(
        stack_settings,
        preflight=fake_preflight,
        npm_factory=fake_npm,
        validator=passing_validator,
    )


def _read_config(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


class TestFirstRun:
    """Tests for a rebuild on a machine with no prior stack."""

    def test_run_succeeds(self, rebuilder, stack_settings):
        log = rebuilder.run()

        assert log.status == RebuildStatus.SUCCESS
        assert log.quarantine_dir is None
        assert [p.name for p in log.packages] == ["filesystem", "memory"]
        assert log.all_servers_passed

    def test_directories_created(self, rebuilder, stack_settings):
        rebuilder.run()
        for name in stack_settings.directories:
            assert (stack_settings.stack_root / name).is_dir()

    def test_config_written(self, rebuilder, stack_settings, fake_report):
        rebuilder.run()

        document = _read_config(stack_settings.config_path)
        memory = document["mcpServers"]["memory"]
        filesystem = document["mcpServers"]["filesystem"]

        assert memory["command"] == fake_report.runtime.replace("\\", "/")
        assert memory["args"][0].endswith("servers/memory/index.mjs")
        assert filesystem["args"][1].endswith("claude-stack/workspace")
        assert filesystem["deny"] == FILESYSTEM_DENY
        assert "deny" not in memory
        assert "\\" not in json.dumps(document)

    def test_wrapper_targets_exist(self, rebuilder, stack_settings):
        log = rebuilder.run()
        for package in log.packages:
            assert Path(package.wrapper).is_file()
            assert Path(package.entry_point).is_file()

    def test_backup_and_snapshot(self, rebuilder, stack_settings):
        log = rebuilder.run()

        assert Path(log.backup_archive).stat().st_size > 0
        snapshot = Path(log.snapshot_archive)
        assert snapshot.name.startswith("stack-snapshot-")
        assert "servers/memory/index.mjs" in archive_members(snapshot)

    def test_log_written(self, rebuilder, stack_settings):
        log = rebuilder.run()

        path = rebuilder.last_log_path
        assert path.parent == stack_settings.stack_root / "logs"
        saved = RebuildLog.model_validate_json(path.read_text(encoding="utf-8"))
        assert saved.run_id == log.run_id
        assert [e["event"] for e in saved.events][-1] == "RUN_COMPLETE"

    def test_skip_validation(self, stack_settings, fake_preflight, fake_npm, passing_validator):
        settings = stack_settings.model_copy(update={"skip_validation": True})
        log = StackRebuilder(
            settings, preflight=fake_preflight, npm_factory=fake_npm, validator=passing_validator
        ).run()

        assert log.validation_skipped is True
        assert log.validation == []
        passing_validator.validate_all.assert_not_called()


class TestDesktopConfigExample:
    """The userTheme example: unrelated keys survive the merge."""

    def test_user_theme_preserved(self, rebuilder, stack_settings):
        config_path = stack_settings.config_path
        config_path.parent.mkdir(parents=True)
        config_path.write_text(
            json.dumps({"userTheme": "dark", "mcpServers": {"custom": {"command": "python3"}}}),
            encoding="utf-8",
        )

        log = rebuilder.run()

        document = _read_config(config_path)
        assert list(document) == ["userTheme", "mcpServers"]
        assert document["userTheme"] == "dark"
        assert set(document["mcpServers"]) == {"custom", "filesystem", "memory"}
        assert Path(log.config_backup).read_text(encoding="utf-8").startswith('{"userTheme"')

    def test_prune_unmanaged(self, stack_settings, fake_preflight, fake_npm, passing_validator):
        config_path = stack_settings.config_path
        config_path.parent.mkdir(parents=True)
        config_path.write_text('{"mcpServers": {"custom": {"command": "python3"}}}', encoding="utf-8")
        settings = stack_settings.model_copy(update={"prune_unmanaged_servers": True})

        StackRebuilder(
            settings, preflight=fake_preflight, npm_factory=fake_npm, validator=passing_validator
        ).run()

        assert set(_read_config(config_path)["mcpServers"]) == {"filesystem", "memory"}


class TestRepeatRun:
    """Tests for running the rebuild twice."""

    def test_second_run_is_identical(self, stack_settings, fake_preflight, fake_npm, passing_validator):
        def run():
            return StackRebuilder(
                stack_settings,
                preflight=fake_preflight,
                npm_factory=fake_npm,
                validator=passing_validator,
            ).run()

        first = run()
        config_after_first = stack_settings.config_path.read_bytes()
        second = run()

        assert stack_settings.config_path.read_bytes() == config_after_first
        assert first.run_id != second.run_id
        assert second.quarantine_dir is not None
        assert first.servers == second.servers

    def test_prior_state_quarantined_not_deleted(self, rebuilder, stack_settings):
        rebuilder.run()
        marker = stack_settings.stack_root / "servers" / "memory" / "marker.txt"
        marker.write_text("from run one", encoding="utf-8")

        log = rebuilder.run()

        moved = Path(log.quarantine_dir) / "servers" / "memory" / "marker.txt"
        assert moved.read_text(encoding="utf-8") == "from run one"
        assert not marker.exists()

    def test_snapshot_skips_quarantine(self, rebuilder, stack_settings):
        rebuilder.run()
        log = rebuilder.run()

        members = archive_members(Path(log.snapshot_archive))
        assert Path(log.quarantine_dir).is_dir()
        assert not any(m.startswith("quarantine") for m in members)
        assert not any(m.startswith("quarantine") for m in archive_members(Path(log.backup_archive)))

    def test_workspace_untouched(self, rebuilder, stack_settings):
        rebuilder.run()
        note = stack_settings.stack_root / "workspace" / "notes.md"
        note.write_text("keep me", encoding="utf-8")

        rebuilder.run()

        assert note.read_text(encoding="utf-8") == "keep me"


class TestFailures:
    """Tests for fatal errors."""

    def test_ambiguous_archives_abort_before_mutation(self, rebuilder, stack_settings, make_archive):
        make_archive(stack_settings.packages_dir / "server-memory-0.6.0.tgz", {"name": "x"})

        with pytest.raises(ArchiveResolutionError) as exc:
            rebuilder.run()

        assert exc.value.matches == ["server-memory-0.5.1.tgz", "server-memory-0.6.0.tgz"]
        assert not stack_settings.stack_root.exists()
        assert not stack_settings.config_path.exists()
        assert rebuilder.last_log.status == RebuildStatus.FAILED
        assert rebuilder.last_log_path is None

    def test_missing_archive_leaves_existing_stack_alone(self, rebuilder, stack_settings):
        rebuilder.run()
        config_before = stack_settings.config_path.read_bytes()
        backups_before = sorted(p.name for p in (stack_settings.stack_root / "backups").iterdir())
        (stack_settings.packages_dir / "server-filesystem-0.5.1.tgz").unlink()

        with pytest.raises(ArchiveResolutionError):
            rebuilder.run()

        assert stack_settings.config_path.read_bytes() == config_before
        backups_after = sorted(p.name for p in (stack_settings.stack_root / "backups").iterdir())
        assert backups_after == backups_before
        assert not (stack_settings.stack_root / "quarantine").exists()

    def test_preflight_failure(self, stack_settings, fake_npm):
        def failing(settings):
            raise PreflightError("Node.js 18+ required")

        with pytest.raises(PreflightError):
            StackRebuilder(stack_settings, preflight=failing, npm_factory=fake_npm).run()
        assert not stack_settings.stack_root.exists()

    def test_locked_quarantine_recorded(self, rebuilder, stack_settings):
        rebuilder.run()
        config_before = stack_settings.config_path.read_bytes()
        real_rename = Path.rename

        def rename(self, target):
            if self.name == "servers":
                raise PermissionError(13, "Permission denied", str(self))
            return real_rename(self, target)

        with patch.object(Path, "rename", rename):
            with pytest.raises(QuarantineLockedError):
                rebuilder.run()

        assert stack_settings.config_path.read_bytes() == config_before
        assert (stack_settings.stack_root / "npm-prefix" / "node_modules").is_dir()
        failed = RebuildLog.model_validate_json(rebuilder.last_log_path.read_text(encoding="utf-8"))
        assert failed.status == RebuildStatus.FAILED
        assert "locked" in failed.error

    def test_file_in_place_of_directory_recorded(self, rebuilder, stack_settings):
        rebuilder.run()
        repos = stack_settings.stack_root / "repos"
        repos.rmdir()
        repos.write_text("stray file", encoding="utf-8")

        with pytest.raises(LayoutError, match="repos"):
            rebuilder.run()

        failed = RebuildLog.model_validate_json(rebuilder.last_log_path.read_text(encoding="utf-8"))
        assert failed.status == RebuildStatus.FAILED
        assert "repos" in failed.error
        assert [e["event"] for e in failed.events][-1] == "RUN_FAILED"

    def test_snapshot_failure_recorded(self, rebuilder, stack_settings):
        with patch("mcpstack.core.rebuild.create_tar_gz", side_effect=tarfile.TarError("bad header")):
            with pytest.raises(BackupError, match="bad header"):
                rebuilder.run()

        failed = RebuildLog.model_validate_json(rebuilder.last_log_path.read_text(encoding="utf-8"))
        assert failed.status == RebuildStatus.FAILED
        assert failed.snapshot_archive is None

    def test_unmapped_filesystem_error_recorded(self, rebuilder, stack_settings):
        rebuilder.run()

        denied = PermissionError(13, "Permission denied")
        with patch("mcpstack.core.rebuild.build_server_definitions", side_effect=denied):
            with pytest.raises(StackError, match="Permission denied") as exc:
                rebuilder.run()

        assert isinstance(exc.value.__cause__, PermissionError)
        failed = RebuildLog.model_validate_json(rebuilder.last_log_path.read_text(encoding="utf-8"))
        assert failed.status == RebuildStatus.FAILED
        assert "Permission denied" in failed.error

    def test_install_failure_leaves_config_untouched(
        self, stack_settings, fake_preflight, passing_validator
    ):
        class BrokenNpm:
            def __init__(self, npm_path, prefix, cache, timeout=300):
                self.node_modules = Path(prefix) / "node_modules"

            def install(self, archive):
                raise InstallError("npm ERR! ENOTCACHED")

        with pytest.raises(InstallError):
            StackRebuilder(
                stack_settings,
                preflight=fake_preflight,
                npm_factory=BrokenNpm,
                validator=passing_validator,
            ).run()

        assert not stack_settings.config_path.exists()
        assert not passing_validator.validate_all.called


class TestValidationFailures:
    """Tests for servers that fail the handshake."""

    def test_failed_handshake_still_completes(self, stack_settings, fake_preflight, fake_npm):
        """The runtime here is Python, which cannot run index.mjs: every server fails."""
        settings = stack_settings.model_copy(update={"handshake_timeout_seconds": 5})
        rebuilder = StackRebuilder(settings, preflight=fake_preflight, npm_factory=fake_npm)

        log = rebuilder.run()

        assert log.status == RebuildStatus.SUCCESS
        assert len(log.validation) == 2
        assert not any(o.passed for o in log.validation)
        assert log.all_servers_passed is False
        assert log.snapshot_archive is not None


class TestHelpers:
    """Tests for check and validate helpers."""

    def test_check_stack_writes_nothing(self, stack_settings, fake_preflight):
        report, archives = check_stack(stack_settings, preflight=fake_preflight)
        assert sorted(archives) == ["filesystem", "memory"]
        assert not stack_settings.stack_root.exists()

    def test_configured_servers_reads_managed_only(self, rebuilder, stack_settings):
        rebuilder.run()
        document = _read_config(stack_settings.config_path)
        document["mcpServers"]["custom"] = {"command": "python3"}
        stack_settings.config_path.write_text(json.dumps(document), encoding="utf-8")

        assert sorted(configured_servers(stack_settings)) == ["filesystem", "memory"]

    def test_validate_configured_without_config(self, stack_settings, passing_validator):
        assert validate_configured_servers(stack_settings, passing_validator) == []

    def test_validate_configured(self, rebuilder, stack_settings, passing_validator):
        rebuilder.run()
        outcomes = validate_configured_servers(stack_settings, passing_validator)
        assert [o.name for o in outcomes] == ["filesystem", "memory"]

    def test_timestamp_format(self):
        now = datetime(2026, 3, 1, 9, 30, 5, 123456, tzinfo=timezone.utc)
        assert make_timestamp(now) == "20260301_093005_123456"
