# -----------------------------------------------------------------------------
# ENTRY POINT RESOLUTION
# -----------------------------------------------------------------------------
# Pure function: package.json record -> relative path of the file to run.
#
# Priority:
#   1. bin      (string, or mapping keyed by command name)
#   2. main
#   3. exports  (string, "." subpath, or conditions; default first)
#
# Paths that would escape the package directory never resolve.
# -----------------------------------------------------------------------------

import posixpath

# Condition preference inside an exports conditions object
EXPORT_CONDITIONS = ("default", "require", "import", "node")


def _clean(path) -> str | None:
    """Normalise a manifest path to a package-relative POSIX path."""
    if not isinstance(path, str) or not path.strip():
        return None
    cleaned = posixpath.normpath(path.strip().replace("\\", "/"))
    if cleaned in (".", "") or cleaned.startswith("../") or cleaned == "..":
        return None
    if cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        return None
    return cleaned


def _unscoped(name) -> str:
    if not isinstance(name, str):
        return ""
    return name.rsplit("/", 1)[-1]


def _from_bin(manifest: dict) -> str | None:
    bin_field = manifest.get("bin")
    if isinstance(bin_field, str):
        return _clean(bin_field)
    if isinstance(bin_field, dict) and bin_field:
        preferred = bin_field.get(_unscoped(manifest.get("name")))
        if _clean(preferred):
            return _clean(preferred)
        for value in bin_field.values():
            if _clean(value):
                return _clean(value)
    return None


def _from_exports(exports) -> str | None:
    if isinstance(exports, str):
        return _clean(exports)
    if isinstance(exports, list):
        for item in exports:
            resolved = _from_exports(item)
            if resolved:
                return resolved
        return None
    if not isinstance(exports, dict):
        return None

    if "." in exports:
        return _from_exports(exports["."])
    if any(key.startswith(".") for key in exports):
        # Subpath map without a root export
        return None
    for condition in EXPORT_CONDITIONS:
        if condition in exports:
            resolved = _from_exports(exports[condition])
            if resolved:
                return resolved
    return None


def resolve_entry_point(manifest: dict) -> str | None:
    """
    Resolve the entry point of an installed npm package.

    Args:
        manifest: Parsed package.json.

    Returns:
        Package-relative POSIX path, or None if nothing resolves.
    """
    if not isinstance(manifest, dict):
        return None
    return (
        _from_bin(manifest)
        or _clean(manifest.get("main"))
        or _from_exports(manifest.get("exports"))
    )
