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
# DOMAIN MODELS - REBUILD RECORDS
# -----------------------------------------------------------------------------
# These Pydantic models are the contract between the rebuild phases:
# the installer produces InstalledPackage records, the config merge turns
# them into ServerDefinitions, the handshake produces ValidationOutcomes,
# and everything ends up in one frozen RebuildLog per run.
# -----------------------------------------------------------------------------

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Reserved top-level key of the Claude Desktop config
SERVERS_KEY = "mcpServers"


def to_forward_slashes(path) -> str:
    """Render a path with forward slashes regardless of host conventions."""
    return str(path).replace("\\", "/")


class PackageSpec(BaseModel):
    """
    A required npm package, resolved at run time to one local archive.

    Fields:
    - name: Managed server name (also the wrapper directory name)
    - pattern: Glob matched against the packages directory
    - required: Missing optional packages are skipped with a warning
    - package: npm package name; read from the archive when omitted
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=r"^[a-zA-Z][a-zA-Z0-9_-]*$",
        description="Managed server name (alphanumeric, starts with letter)",
    )
    pattern: str = Field(..., min_length=1, description="Archive glob, e.g. 'server-memory-*.tgz'")
    required: bool = True
    package: str | None = Field(default=None, description="npm package name override")


class ManagedServer(BaseModel):
    """
    How a managed server is wired into the Desktop config.

    extra_args may contain {root}, {workspace}, {repos} and {home}
    placeholders, expanded against the stack layout at merge time. deny is
    copied into the config entry as given, e.g. "Read(./.env)".
    """

    name: str = Field(..., min_length=1, pattern=r"^[a-zA-Z][a-zA-Z0-9_-]*$")
    package: str = Field(..., min_length=1, description="Name of the PackageSpec it runs")
    extra_args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    deny: list[str] = Field(
        default_factory=list, description="Access rules the client refuses for this server"
    )


class ServerDefinition(BaseModel):
    """One entry under the reserved 'mcpServers' key."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    deny: list[str] | None = None

    def to_config(self) -> dict:
        """Render the JSON object stored in the Desktop config."""
        entry: dict = {"command": self.command, "args": list(self.args)}
        if self.env:
            entry["env"] = dict(self.env)
        if self.deny:
            entry["deny"] = list(self.deny)
        return entry


class InstalledPackage(BaseModel):
    """Result of installing one archive into the isolated npm prefix."""

    name: str
    package_name: str
    version: str | None = None
    archive: str
    install_dir: str
    entry_point: str = Field(..., description="Absolute path of the resolved entry point")
    wrapper: str = Field(..., description="Absolute path of the generated wrapper script")


class ValidationOutcome(BaseModel):
    """Handshake verdict for one server. Failures are recorded, never raised."""

    name: str
    passed: bool
    exit_code: int | None = None
    timed_out: bool = False
    tool_count: int | None = None
    reason: str | None = None
    stderr_tail: str | None = None
    duration_seconds: float = 0.0


class RebuildStatus(str, Enum):
    """Terminal status of a rebuild run."""

    SUCCESS = "success"
    FAILED = "failed"


class RebuildLog(BaseModel):
    """
    The immutable record of one run.

    Created once at the end of the run (or at the point of a fatal error)
    and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    run_id: str
    status: RebuildStatus
    started_at: str
    finished_at: str
    platform: str
    python_version: str
    stack_root: str
    packages_dir: str
    config_path: str
    runtime: str | None = None
    runtime_version: str | None = None
    backup_archive: str | None = None
    quarantine_dir: str | None = None
    quarantined: list[str] = Field(default_factory=list)
    config_backup: str | None = None
    config_warning: str | None = None
    snapshot_archive: str | None = None
    packages: list[InstalledPackage] = Field(default_factory=list)
    servers: dict[str, ServerDefinition] = Field(default_factory=dict)
    validation: list[ValidationOutcome] = Field(default_factory=list)
    validation_skipped: bool = False
    events: list[dict] = Field(default_factory=list)
    error: str | None = None

    @property
    def all_servers_passed(self) -> bool:
        return all(outcome.passed for outcome in self.validation)
