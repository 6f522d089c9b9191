# -----------------------------------------------------------------------------
# CORE LAYER
# -----------------------------------------------------------------------------
# The rebuild procedure:
# - Preflight: host checks
# - Quarantine: backup archive + prior-state quarantine
# - Layout: directory rebuild
# - Installer: offline npm install + wrappers
# - ConfigMerger: Desktop config read-modify-validate-write
# - HandshakeValidator: stdio JSON-RPC smoke test
# - StackRebuilder: phase orchestrator
# -----------------------------------------------------------------------------

from .config_merge import ConfigMerger, merge_servers, validate_round_trip
from .entrypoint import resolve_entry_point
from .handshake import HandshakeValidator
from .installer import Installer, resolve_archives
from .layout import StackLayout, rebuild_directories
from .preflight import run_preflight
from .quarantine import create_backup, quarantine_prior_state
from .rebuild import StackRebuilder, check_stack, validate_configured_servers
from .settings import StackSettings, load_settings

__all__ = [
    "ConfigMerger", "merge_servers", "validate_round_trip",
    "resolve_entry_point",
    "HandshakeValidator",
    "Installer", "resolve_archives",
    "StackLayout", "rebuild_directories",
    "run_preflight",
    "create_backup", "quarantine_prior_state",
    "StackRebuilder", "check_stack", "validate_configured_servers",
    "StackSettings", "load_settings",
]
