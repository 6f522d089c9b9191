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
# CONFIGURATION MERGE - claude_desktop_config.json
# -----------------------------------------------------------------------------
# Responsibility: read-modify-validate-write of the Desktop config.
#
#   load_config -> merge_servers (pure) -> validate_round_trip
#               -> backup_config -> atomic_write_text
#
# Invariants:
# - Keys outside "mcpServers" keep their value and position.
# - Every path in a ServerDefinition uses forward slashes.
# - The target file is replaced atomically (temp file + os.replace), so it
#   is never observed half written.
# - A failed round-trip check leaves the original file untouched.
# -----------------------------------------------------------------------------

import copy
import json
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from mcpstack.domain.errors import ConfigValidationError, ConfigWriteError
from mcpstack.domain.models import (
    SERVERS_KEY,
    InstalledPackage,
    ManagedServer,
    ServerDefinition,
    to_forward_slashes,
)

console = Console()

CONFIG_FILE_MODE = 0o600
CONFIG_DIR_MODE = 0o700


@dataclass
class MergeResult:
    """Outcome of a committed merge."""

    document: dict
    backup: Path | None
    warning: str | None


class JsonNumber:
    """
    A non-integer JSON number kept as its source token.

    The token is never converted to float, so "1e400" and
    "0.10000000000000000001" are written back exactly as read. Compares
    equal to a float whose repr is the same text.
    """

    __slots__ = ("text",)

    def __init__(self, text: str) -> None:
        self.text = text

    def __eq__(self, other):
        if isinstance(other, JsonNumber):
            return self.text == other.text
        if isinstance(other, float):
            return float.__repr__(other) == self.text
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.text)

    def __repr__(self) -> str:
        return f"JsonNumber({self.text!r})"

    def __str__(self) -> str:
        return self.text

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


def _reject_constant(name: str):
    raise ValueError(f"non-standard JSON constant {name}")


def parse_config_text(text: str):
    """Parse config JSON keeping float tokens verbatim and refusing NaN/Infinity."""
    return json.loads(text, parse_float=JsonNumber, parse_constant=_reject_constant)


def dump_config(document: dict) -> str:
    """
    Serialize a config document, writing JsonNumber tokens back verbatim.

    Raises:
        TypeError, ValueError: Non-JSON values, NaN or Infinity.
    """
    marker = uuid.uuid4().hex
    tokens: list[str] = []

    def placeholder(value):
        if isinstance(value, JsonNumber):
            tokens.append(value.text)
            return f"{marker}:{len(tokens) - 1}"
        raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

    text = json.dumps(document, indent=2, ensure_ascii=False, allow_nan=False, default=placeholder)
    for index, token in enumerate(tokens):
        text = text.replace(f'"{marker}:{index}"', token, 1)
    return text + "\n"


def load_config(path: Path) -> tuple[dict, str | None]:
    """
    Read the Desktop config.

    A missing file is an empty config. An unparseable file (NaN and Infinity
    literals included), or one whose top level is not an object, is treated
    as empty with a warning so first-run bootstrapping still works.

    Returns:
        (document, warning or None)
    """
    path = Path(path)
    if not path.exists():
        console.print(f"[cyan][CONFIG] No config at {path}, starting empty[/cyan]")
        return {}, None

    try:
        document = parse_config_text(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        warning = f"Could not parse {path} ({e}); treating it as empty"
        console.print(f"[yellow][CONFIG] {warning}[/yellow]")
        return {}, warning

    if not isinstance(document, dict):
        warning = f"{path} does not contain a JSON object; treating it as empty"
        console.print(f"[yellow][CONFIG] {warning}[/yellow]")
        return {}, warning

    return document, None


def _expand_arg(arg: str, placeholders: dict[str, str]) -> str:
    if "{" not in arg:
        return arg
    try:
        return to_forward_slashes(arg.format(**placeholders))
    except (KeyError, IndexError, ValueError):
        # Not one of ours (e.g. a literal brace); pass through untouched
        return arg


def build_server_definitions(
    managed: list[ManagedServer],
    installed: dict[str, InstalledPackage],
    runtime: str,
    placeholders: dict[str, str] | None = None,
) -> dict[str, ServerDefinition]:
    """
    Build the managed ServerDefinitions from installed packages.

    command is the runtime interpreter, args[0] the package wrapper.
    Servers whose package was not installed (optional, missing) are skipped.
    """
    placeholders = placeholders or {}
    definitions = {}
    for server in managed:
        package = installed.get(server.package)
        if package is None:
            console.print(
                f"[yellow][CONFIG] Server '{server.name}': package '{server.package}' not installed, skipping[/yellow]"
            )
            continue
        definitions[server.name] = ServerDefinition(
            command=to_forward_slashes(runtime),
            args=[to_forward_slashes(package.wrapper)]
            + [_expand_arg(arg, placeholders) for arg in server.extra_args],
            env=dict(server.env) or None,
            deny=list(server.deny) or None,
        )
    return definitions


def merge_servers(
    document: dict,
    servers: dict[str, ServerDefinition],
    prune_unmanaged: bool = False,
) -> dict:
    """
    Return a new document with the managed servers merged in.

    The input is never mutated.

    Args:
        document: The full prior config.
        servers: Managed server name -> definition (overwrites same-named entries).
        prune_unmanaged: Replace the reserved key with exactly the managed set
            instead of keeping user-added entries.
    """
    merged = copy.deepcopy(document)

    existing = merged.get(SERVERS_KEY)
    if existing is None:
        existing = {}
    elif not isinstance(existing, dict):
        console.print(
            f"[yellow][CONFIG] '{SERVERS_KEY}' is not an object ({type(existing).__name__}); replacing it[/yellow]"
        )
        existing = {}

    entries = {} if prune_unmanaged else existing
    for name, definition in servers.items():
        entries[name] = definition.to_config()

    merged[SERVERS_KEY] = entries
    return merged


def validate_round_trip(document: dict) -> str:
    """
    Serialize and re-parse; the result must equal the input.

    Returns:
        The serialized text (what gets written).

    Raises:
        ConfigValidationError: On unserializable values (NaN, Infinity,
            non-JSON types) or any round-trip mismatch.
    """
    try:
        text = dump_config(document)
        reparsed = parse_config_text(text)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Merged config is not valid JSON: {e}")

    if reparsed != document:
        raise ConfigValidationError("Merged config changed during JSON round trip")
    return text


def backup_config(path: Path, backups_dir: Path, timestamp: str) -> Path | None:
    """
    Copy the existing config to backups_dir/<name>.<timestamp>.bak.

    Raises:
        ConfigWriteError: The copy could not be made.
    """
    path = Path(path)
    if not path.exists():
        return None
    dest = backups_dir / f"{path.name}.{timestamp}.bak"
    try:
        backups_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, dest)
    except OSError as e:
        raise ConfigWriteError(f"Cannot back up {path} to {dest}: {e}")
    console.print(f"[cyan][CONFIG] Backup: {dest}[/cyan]")
    return dest


def atomic_write_text(path: Path, text: str) -> None:
    """
    Write text to path via a temp file in the same directory and os.replace.

    The file ends up with mode 0600; a missing parent is created with 0700.
    """
    path = Path(path)
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(path.parent, CONFIG_DIR_MODE)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as tmp:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.chmod(tmp_name, CONFIG_FILE_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ConfigMerger:
    """
    Commits managed server definitions into the Desktop config file.
    """

    def __init__(self, config_path: Path, backups_dir: Path, prune_unmanaged: bool = False) -> None:
        self._path = Path(config_path)
        self._backups = Path(backups_dir)
        self._prune = prune_unmanaged

    @property
    def path(self) -> Path:
        return self._path

    def commit(self, servers: dict[str, ServerDefinition], timestamp: str) -> MergeResult:
        """
        Merge, validate, back up and atomically write.

        Raises:
            ConfigValidationError: Round-trip failure (original file untouched).
            ConfigWriteError: Backup or replace failed (original file untouched).
        """
        document, warning = load_config(self._path)
        merged = merge_servers(document, servers, prune_unmanaged=self._prune)
        text = validate_round_trip(merged)

        backup = backup_config(self._path, self._backups, timestamp)
        try:
            atomic_write_text(self._path, text)
        except OSError as e:
            raise ConfigWriteError(f"Cannot write {self._path}: {e}")

        console.print(
            f"[green][CONFIG] {len(servers)} managed servers written to {self._path}[/green]"
        )
        return MergeResult(document=merged, backup=backup, warning=warning)
