"""
Pytest configuration and fixtures for mcpstack tests.
"""

import io
import json
import sys
import tarfile
from pathlib import Path

import pytest

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from mcpstack.core.preflight import PreflightReport  # noqa: E402
from mcpstack.core.settings import ENV_OVERRIDES, StackSettings  # noqa: E402

FAKE_SERVER = """
import json
import sys

for line in sys.stdin:
    line = line.strip()
    if not line:
        continue
    message = json.loads(line)
    method = message.get("method")
    if method == "initialize":
        reply = {
            "jsonrpc": "2.0",
            "id": message["id"],
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "0.0.1"},
            },
        }
    elif method == "tools/list":
        reply = {
            "jsonrpc": "2.0",
            "id": message["id"],
            "result": {"tools": [{"name": "read_file"}, {"name": "write_file"}]},
        }
    else:
        continue
    print(json.dumps(reply), flush=True)
"""

SILENT_SERVER = """
import time

time.sleep(60)
"""


def build_npm_archive(path: Path, manifest: dict, files: dict[str, str] | None = None) -> Path:
    """Write an `npm pack` style archive: everything below package/."""
    path.parent.mkdir(parents=True, exist_ok=True)
    contents = {"package.json": json.dumps(manifest)}
    contents.update(files or {})

    with tarfile.open(path, mode="w:gz") as tar:
        for name, text in contents.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name=f"package/{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class FakeNpmProvider:
    """
    Stands in for NpmProvider: unpacks the archive into node_modules the
    way `npm install <tgz>` lays it out, without needing npm.
    """

    installs: list[Path] = []

    def __init__(self, npm_path, prefix, cache, timeout=300):
        self.npm_path = npm_path
        self.prefix = Path(prefix)
        self.cache = Path(cache)
        self.timeout = timeout

    @property
    def node_modules(self) -> Path:
        return self.prefix / "node_modules"

    def install(self, archive):
        with tarfile.open(archive, mode="r:gz") as tar:
            manifest = json.loads(tar.extractfile("package/package.json").read())
            target = self.node_modules.joinpath(*manifest["name"].split("/"))
            for member in tar.getmembers():
                if not member.isfile() or not member.name.startswith("package/"):
                    continue
                dest = target / member.name[len("package/"):]
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_bytes(tar.extractfile(member).read())
        FakeNpmProvider.installs.append(Path(archive))


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's MCPSTACK_* variables out of every test."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("MCPSTACK_SETTINGS", raising=False)
    FakeNpmProvider.installs = []


@pytest.fixture
def packages_dir(tmp_path):
    """Offline packages directory holding the two standard server archives."""
    directory = tmp_path / "offline"
    build_npm_archive(
        directory / "server-filesystem-0.5.1.tgz",
        {
            "name": "@modelcontextprotocol/server-filesystem",
            "version": "0.5.1",
            "bin": {"mcp-server-filesystem": "dist/index.js"},
        },
        {"dist/index.js": "#!/usr/bin/env node\nconsole.log('fs');\n"},
    )
    build_npm_archive(
        directory / "server-memory-0.5.1.tgz",
        {
            "name": "@modelcontextprotocol/server-memory",
            "version": "0.5.1",
            "main": "dist/index.js",
        },
        {"dist/index.js": "console.log('memory');\n"},
    )
    return directory


@pytest.fixture
def config_path(tmp_path):
    """Desktop config location inside the test sandbox (not created)."""
    return tmp_path / "Claude" / "claude_desktop_config.json"


@pytest.fixture
def stack_settings(tmp_path, packages_dir, config_path):
    """Settings for a sandboxed stack using the default package set."""
    return StackSettings(
        stack_root=tmp_path / "claude-stack",
        packages_dir=packages_dir,
        config_path=config_path,
        runtime=sys.executable,
        handshake_timeout_seconds=5,
    )


@pytest.fixture
def fake_report():
    """A preflight report for a healthy host."""
    return PreflightReport(
        platform="Linux",
        python_version="3.11.0",
        runtime=sys.executable,
        runtime_version="v20.11.1",
        npm="/usr/bin/npm",
    )


@pytest.fixture
def fake_preflight(fake_report):
    """Preflight callable that always passes."""

    def preflight(settings):
        return fake_report

    return preflight


@pytest.fixture
def fake_server(tmp_path):
    """A Python script that answers the MCP handshake on stdio."""
    script = tmp_path / "fake_server.py"
    script.write_text(FAKE_SERVER, encoding="utf-8")
    return script


@pytest.fixture
def silent_server(tmp_path):
    """A Python script that never answers."""
    script = tmp_path / "silent_server.py"
    script.write_text(SILENT_SERVER, encoding="utf-8")
    return script


@pytest.fixture
def make_archive():
    """Builder for npm pack archives: make_archive(path, manifest, files)."""
    return build_npm_archive


@pytest.fixture
def fake_npm():
    """The FakeNpmProvider class, usable as a rebuild npm_factory."""
    return FakeNpmProvider
