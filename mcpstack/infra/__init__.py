# -----------------------------------------------------------------------------
# INFRASTRUCTURE LAYER
# -----------------------------------------------------------------------------
# Contains low-level wrappers around external processes and file formats:
# - NpmProvider: offline npm installs into an isolated prefix
# - run_bounded: stdio subprocess with a hard timeout
# - create_tar_gz / read_package_manifest: tar archives
# -----------------------------------------------------------------------------

from .archive import create_tar_gz, read_package_manifest
from .npm_client import NpmProvider
from .process_client import ProcessResult, run_bounded

__all__ = ["NpmProvider", "ProcessResult", "run_bounded", "create_tar_gz", "read_package_manifest"]
