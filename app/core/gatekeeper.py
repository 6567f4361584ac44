"""
Ingress gatekeeper - validation of every untrusted input before any resource
is allocated.

Archive checks (all complete before a single byte touches disk):
- ZIP magic bytes and a readable central directory
- No absolute entry names, no entry resolving outside the extraction root
- No symbolic links, no encrypted entries, no two entries for one path
- Per-entry, total size and entry count caps

Config checks are field-specific and raise ValidationError(field, ...).
"""
import base64
import binascii
import io
import logging
import posixpath
import re
import stat
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from app.core.errors import ValidationError
from app.schemas.build import BuildType

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Archive limits
MAX_UPLOAD_BYTES = 100 * 1024 * 1024  # 100MB
MAX_ENTRY_BYTES = 50 * 1024 * 1024  # 50MB per entry
MAX_TOTAL_UNCOMPRESSED_BYTES = 500 * 1024 * 1024  # 500MB
MAX_ENTRIES = 20_000

ZIP_MAGIC = b"PK\x03\x04"

# Config limits
MAX_APP_NAME_LENGTH = 50
MAX_PACKAGE_ID_LENGTH = 255
MAX_ICON_BYTES = 5 * 1024 * 1024

PACKAGE_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$", re.IGNORECASE)
COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
# Path separators, shell metacharacters, quoting and control characters
APP_NAME_DISALLOWED = re.compile(r"[<>:\"/\\|?*`$;&'!{}\[\]\x00-\x1f\x7f]")
WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:")

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# Chunk size for streaming extraction
COPY_CHUNK_BYTES = 64 * 1024

# Virtual root used to resolve entry names without touching the filesystem
_VIRTUAL_ROOT = "/__extract_root__"


# =============================================================================
# Validated types
# =============================================================================

@dataclass(frozen=True)
class BuildConfig:
    """Validated, normalized build parameters. Immutable after admission."""
    app_name: str
    package_id: str
    build_type: BuildType = BuildType.DEBUG
    icon_bytes: Optional[bytes] = None
    primary_color: Optional[str] = None

    def summary(self) -> dict[str, Any]:
        """Public subset of the config returned to clients."""
        return {
            "appName": self.app_name,
            "packageId": self.package_id,
            "buildType": self.build_type.value,
        }


@dataclass(frozen=True)
class ArchiveEntry:
    """One pre-validated archive member."""
    name: str  # name as stored in the archive
    path: str  # normalized POSIX path relative to the extraction root
    is_dir: bool
    size: int
    index: int  # position in the central directory


@dataclass(frozen=True)
class ValidatedArchive:
    """An archive whose every entry passed the gatekeeper checks."""
    data: bytes
    entries: tuple[ArchiveEntry, ...]
    total_size: int

    @property
    def file_count(self) -> int:
        return sum(1 for e in self.entries if not e.is_dir)

    def extract_to(self, root: Path) -> int:
        """
        Extract the pre-validated entries under root.

        Destinations are re-checked while writing and no entry may produce
        more bytes than it declared. Returns the number of files written.
        """
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        real_root = root.resolve()
        written = 0

        with zipfile.ZipFile(io.BytesIO(self.data), "r") as zf:
            infos = zf.infolist()
            for entry in self.entries:
                dest = (root / entry.path).resolve()
                if dest != real_root and real_root not in dest.parents:
                    raise ValidationError("project", f"Path escape detected in archive entry: {entry.name}")

                if entry.is_dir:
                    dest.mkdir(parents=True, exist_ok=True)
                    continue

                dest.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(infos[entry.index], "r") as src, open(dest, "wb") as out:
                    copied = 0
                    while True:
                        chunk = src.read(COPY_CHUNK_BYTES)
                        if not chunk:
                            break
                        copied += len(chunk)
                        if copied > entry.size:
                            raise ValidationError(
                                "project",
                                f"Archive entry larger than declared: {entry.name}",
                            )
                        out.write(chunk)
                written += 1

        logger.info(f"archive_extracted files={written} size={self.total_size}")
        return written


# =============================================================================
# Archive Validation
# =============================================================================

def resolve_entry_path(name: str) -> Optional[str]:
    """
    Resolve an archive entry name against the extraction root.

    Returns the normalized relative path, or None for entries that resolve
    to the root itself. Raises ValidationError for any path escape.
    """
    if "\x00" in name:
        raise ValidationError("project", f"Invalid archive entry name: {name!r}")

    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or WINDOWS_DRIVE.match(normalized):
        raise ValidationError("project", f"Path escape detected in archive entry (absolute path): {name}")

    dest = posixpath.normpath(posixpath.join(_VIRTUAL_ROOT, normalized))
    if dest == _VIRTUAL_ROOT:
        return None
    if not dest.startswith(_VIRTUAL_ROOT + "/"):
        raise ValidationError("project", f"Path escape detected in archive entry: {name}")

    return posixpath.relpath(dest, _VIRTUAL_ROOT)


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    """Unix mode lives in the high 16 bits of external_attr."""
    mode = (info.external_attr >> 16) & 0xFFFF
    return stat.S_ISLNK(mode)


def validate_archive(data: bytes) -> ValidatedArchive:
    """
    Validate an uploaded project archive without extracting anything.

    Raises:
        ValidationError: naming the first offending entry
    """
    if not data:
        raise ValidationError("project", "No project ZIP provided")

    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError(
            "project",
            f"Archive exceeds upload limit: {len(data)} > {MAX_UPLOAD_BYTES} bytes",
        )

    if not data.startswith(ZIP_MAGIC):
        raise ValidationError("project", "Upload is not a ZIP archive")

    try:
        with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
            infos = zf.infolist()
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError):
        raise ValidationError("project", "Invalid ZIP archive")

    if len(infos) > MAX_ENTRIES:
        raise ValidationError("project", f"Too many archive entries: {len(infos)} > {MAX_ENTRIES}")

    entries: list[ArchiveEntry] = []
    seen: dict[str, bool] = {}  # normalized path -> is_dir
    total_size = 0

    for index, info in enumerate(infos):
        path = resolve_entry_path(info.filename)

        if _is_symlink(info):
            raise ValidationError("project", f"Symbolic links not allowed in ZIP: {info.filename}")

        if info.flag_bits & 0x1:
            raise ValidationError("project", f"Encrypted entries not allowed in ZIP: {info.filename}")

        if info.file_size > MAX_ENTRY_BYTES:
            raise ValidationError(
                "project",
                f"File too large in ZIP: {info.filename} "
                f"({info.file_size // (1024 * 1024)}MB > {MAX_ENTRY_BYTES // (1024 * 1024)}MB)",
            )

        total_size += info.file_size
        if total_size > MAX_TOTAL_UNCOMPRESSED_BYTES:
            raise ValidationError(
                "project",
                f"Archive expands beyond limit: > {MAX_TOTAL_UNCOMPRESSED_BYTES} bytes",
            )

        if path is None:
            continue

        # One member per destination path
        if path in seen and not (seen[path] and info.is_dir()):
            raise ValidationError("project", f"Duplicate archive entry: {info.filename}")
        seen[path] = info.is_dir()

        entries.append(ArchiveEntry(
            name=info.filename,
            path=path,
            is_dir=info.is_dir(),
            size=info.file_size,
            index=index,
        ))

    return ValidatedArchive(data=data, entries=tuple(entries), total_size=total_size)


# =============================================================================
# Config Validation
# =============================================================================

def validate_app_name(value: Any) -> str:
    """Strip disallowed characters, collapse whitespace, cap length."""
    if not value or not isinstance(value, str):
        raise ValidationError("appName", "appName is required")

    cleaned = APP_NAME_DISALLOWED.sub("", value)
    cleaned = " ".join(cleaned.split())
    cleaned = cleaned[:MAX_APP_NAME_LENGTH].strip()

    if not cleaned:
        raise ValidationError("appName", "appName is empty after removing disallowed characters")
    return cleaned


def validate_package_id(value: Any) -> str:
    """Reverse-domain identifier, normalized to lower case."""
    if not value or not isinstance(value, str):
        raise ValidationError("packageId", "Valid packageId required (e.g., com.example.myapp)")

    if len(value) > MAX_PACKAGE_ID_LENGTH or not PACKAGE_ID_PATTERN.match(value):
        raise ValidationError("packageId", "Valid packageId required (e.g., com.example.myapp)")
    return value.lower()


def validate_build_type(value: Any) -> BuildType:
    if value is None:
        return BuildType.DEBUG
    try:
        return BuildType(value)
    except ValueError:
        raise ValidationError(
            "buildType",
            f"Invalid buildType: {value!r}. Valid: {', '.join(t.value for t in BuildType)}",
        )


def validate_primary_color(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not COLOR_PATTERN.match(value):
        raise ValidationError("primaryColor", "Invalid primaryColor format. Must be hex color like #FF5733")
    return value


def is_png(data: bytes) -> bool:
    return data.startswith(PNG_SIGNATURE)


def validate_icon(value: Any) -> Optional[bytes]:
    """Decode a base64 icon and check it is a PNG."""
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("iconBase64", "iconBase64 must be a non-empty base64 string")

    try:
        icon = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("iconBase64", "iconBase64 is not valid base64")

    if len(icon) > MAX_ICON_BYTES:
        raise ValidationError("iconBase64", f"Icon exceeds size limit: {len(icon)} > {MAX_ICON_BYTES} bytes")
    if not is_png(icon):
        raise ValidationError("iconBase64", "Icon must be a PNG image")
    return icon


def validate_build_config(raw: Any) -> BuildConfig:
    """
    Validate and normalize a client build config.

    Args:
        raw: Parsed JSON config object

    Returns:
        Immutable BuildConfig

    Raises:
        ValidationError: For the first invalid field
    """
    if not isinstance(raw, dict):
        raise ValidationError("config", "config must be a JSON object")

    return BuildConfig(
        app_name=validate_app_name(raw.get("appName")),
        package_id=validate_package_id(raw.get("packageId")),
        build_type=validate_build_type(raw.get("buildType")),
        icon_bytes=validate_icon(raw.get("iconBase64")),
        primary_color=validate_primary_color(raw.get("primaryColor")),
    )


def download_filename(app_name: str) -> str:
    """Filesystem-safe artifact filename derived from the display name."""
    return f"{re.sub(r'[^a-zA-Z0-9]', '_', app_name)}.apk"
