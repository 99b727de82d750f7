import errno
import locale
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

from .naming import (
    has_usable_name,
    sanitize_filename,
    sanitize_log_value,
    sanitize_path,
    split_extension,
)


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("filedrop.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


METADATA_DIR_NAME = ".metadata"

STORAGE_ROOT = _resolve_env_path("FILEDROP_STORAGE_ROOT", Path.cwd())
UPLOADS_DIR = _resolve_env_path("FILEDROP_UPLOAD_DIR", STORAGE_ROOT / "uploads")
METADATA_DIR = UPLOADS_DIR / METADATA_DIR_NAME
LOGS_DIR = _resolve_env_path("FILEDROP_LOGS_DIR", METADATA_DIR / "logs")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
MAX_UPLOAD_SIZE_MB = _safe_int_env("MAX_UPLOAD_SIZE_MB", 1024)
MAX_ALLOCATION_ATTEMPTS = _safe_int_env("FILEDROP_MAX_ALLOCATION_ATTEMPTS", 10_000)

FILE_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")

# Hard links are unavailable on some filesystems; renames there fall back to
# a checked os.rename.
_HARDLINK_UNSUPPORTED_ERRNOS = {
    errno.EPERM,
    errno.EXDEV,
    errno.EMLINK,
    errno.ENOTSUP,
    errno.EOPNOTSUPP,
}

logger = logging.getLogger("filedrop.storage")
security_logger = logging.getLogger("filedrop.security")


class FileDropError(Exception):
    """Base exception for upload root operations."""


class PathTraversalError(FileDropError):
    """Raised when caller input resolves outside the upload root."""

    def __init__(self, raw_path: str) -> None:
        self.raw_path = raw_path
        super().__init__("Access denied")


class EntryNotFoundError(FileDropError):
    """Raised when the requested file or directory does not exist."""

    def __init__(self, raw_path: str) -> None:
        self.raw_path = raw_path
        super().__init__(f"'{raw_path}' not found")


class EntryExistsError(FileDropError):
    """Raised when a rename destination is already occupied."""

    def __init__(self, relative_path: str) -> None:
        self.relative_path = relative_path
        super().__init__(f"'{relative_path}' already exists")


class ValidationError(FileDropError, ValueError):
    """Raised when a request is rejected before touching the filesystem."""


class AllocationExhaustedError(FileDropError, RuntimeError):
    """Raised when no free name is found within the attempt budget."""

    def __init__(self, desired_path: Path, attempts: int) -> None:
        self.desired_path = desired_path
        self.attempts = attempts
        super().__init__(
            f"No free name for '{desired_path.name}' after {attempts} attempts"
        )


def ensure_upload_root(root: Union[str, Path]) -> Path:
    """Create the upload root and its metadata directory, verify write access."""

    root_path = Path(root).expanduser().resolve()
    try:
        root_path.mkdir(parents=True, exist_ok=True)
        (root_path / METADATA_DIR_NAME).mkdir(exist_ok=True)
    except OSError as error:
        logger.critical("upload_root_unavailable path=%s error=%s", root_path, error)
        raise RuntimeError(
            f"Failed to access or create directory: {root_path}"
        ) from error

    if not os.access(root_path, os.W_OK):
        logger.critical("upload_root_not_writable path=%s", root_path)
        raise RuntimeError(f"Upload directory is not writable: {root_path}")

    logger.info("upload_root_ready path=%s", root_path)
    return root_path


def format_file_size(size: int, unit: Optional[str] = None) -> str:
    """Format *size* bytes as e.g. ``1.50MB``; *unit* forces a specific unit."""

    if unit:
        requested = unit.upper()
        if requested in FILE_SIZE_UNITS:
            scaled = size / (1024 ** FILE_SIZE_UNITS.index(requested))
            return f"{scaled:.2f}{requested}"

    value = float(size)
    index = 0
    while value >= 1024 and index < len(FILE_SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f}{FILE_SIZE_UNITS[index]}"


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


# --- containment -----------------------------------------------------------


def _is_within(path: str, root: str) -> bool:
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


def is_contained(candidate: Union[str, Path], root: Union[str, Path]) -> bool:
    """Return True when *candidate* resolves to *root* or somewhere below it.

    The lexical check runs first and needs no syscalls, so a path that
    escapes through ``..`` is rejected without the filesystem ever being
    asked about it. Symlinks are then resolved on both sides.
    """

    root_abs = os.path.abspath(root)
    root_real = os.path.realpath(root)
    lexical = os.path.abspath(candidate)
    if not (_is_within(lexical, root_abs) or _is_within(lexical, root_real)):
        return False
    return _is_within(os.path.realpath(lexical), root_real)


def _targets_metadata(candidate: str, root: Union[str, Path]) -> bool:
    pairs = (
        (candidate, os.path.abspath(root)),
        (os.path.realpath(candidate), os.path.realpath(root)),
    )
    for path, base in pairs:
        if path != base and _is_within(path, base):
            first_segment = os.path.relpath(path, base).split(os.sep, 1)[0]
            if first_segment == METADATA_DIR_NAME:
                return True
    return False


def _ensure_contained(candidate: Union[str, Path], root: Path, raw_input: str) -> Path:
    candidate_path = os.path.abspath(candidate)
    if not is_contained(candidate_path, root) or _targets_metadata(candidate_path, root):
        security_logger.warning(
            "path_traversal_blocked input=%s", sanitize_log_value(raw_input)
        )
        raise PathTraversalError(raw_input)
    return Path(candidate_path)


def resolve_upload_path(root: Path, raw_path: str) -> Path:
    """Join caller input onto *root*, rejecting anything that escapes it.

    Raises:
        PathTraversalError: the path leaves the root or enters the
            reserved metadata directory
    """

    raw_path = raw_path or ""
    if "\x00" in raw_path:
        security_logger.warning(
            "path_null_byte_blocked input=%s", sanitize_log_value(raw_path)
        )
        raise PathTraversalError(raw_path)
    return _ensure_contained(os.path.join(root, raw_path), root, raw_path)


def relative_upload_path(path: Path, root: Path) -> str:
    return Path(os.path.abspath(path)).relative_to(os.path.abspath(root)).as_posix()


def _is_upload_root(path: Path, root: Path) -> bool:
    return os.path.abspath(path) == os.path.abspath(root)


# --- unique allocation -----------------------------------------------------


def allocate_file(
    desired_path: Union[str, Path],
    max_attempts: int = MAX_ALLOCATION_ATTEMPTS,
) -> Tuple[Path, BinaryIO]:
    """Exclusively create *desired_path* or the first free ``name (n).ext``.

    The exclusive create is the existence check, so concurrent callers never
    receive the same path. The returned handle is open for binary writing and
    owned by the caller.

    Raises:
        AllocationExhaustedError: every candidate within *max_attempts* exists
        OSError: any failure other than the target already existing
    """

    desired_path = Path(desired_path)
    stem, extension = split_extension(desired_path.name)
    candidate = desired_path
    for counter in range(1, max_attempts + 1):
        try:
            handle = candidate.open("xb")
        except FileExistsError:
            candidate = desired_path.with_name(f"{stem} ({counter}){extension}")
            continue
        if candidate != desired_path:
            logger.info(
                "unique_file_allocated desired=%s path=%s", desired_path.name, candidate.name
            )
        return candidate, handle

    logger.error(
        "file_allocation_exhausted desired=%s attempts=%d", desired_path, max_attempts
    )
    raise AllocationExhaustedError(desired_path, max_attempts)


def allocate_directory(
    desired_path: Union[str, Path],
    max_attempts: int = MAX_ALLOCATION_ATTEMPTS,
) -> Path:
    """Create *desired_path* or the first free ``name (n)`` directory."""

    desired_path = Path(desired_path)
    candidate = desired_path
    for counter in range(1, max_attempts + 1):
        try:
            candidate.mkdir()
        except FileExistsError:
            candidate = desired_path.with_name(f"{desired_path.name} ({counter})")
            continue
        if candidate != desired_path:
            logger.info(
                "unique_directory_allocated desired=%s path=%s",
                desired_path.name,
                candidate.name,
            )
        return candidate

    logger.error(
        "directory_allocation_exhausted desired=%s attempts=%d", desired_path, max_attempts
    )
    raise AllocationExhaustedError(desired_path, max_attempts)


# --- directory tree --------------------------------------------------------


@dataclass
class FileEntry:
    name: str
    path: str
    size: int
    modified_at: float
    extension: str = ""
    type: str = field(default="file", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "path": self.path,
            "size": self.size,
            "formattedSize": format_file_size(self.size),
            "uploadDate": isoformat_utc(self.modified_at),
            "extension": self.extension,
        }


@dataclass
class DirectoryEntry:
    name: str
    path: str
    modified_at: float
    children: List[Union[FileEntry, "DirectoryEntry"]] = field(default_factory=list)
    type: str = field(default="directory", init=False)

    @property
    def size(self) -> int:
        return calculate_total_size(self.children)

    def to_dict(self) -> Dict[str, Any]:
        size = self.size
        return {
            "name": self.name,
            "type": self.type,
            "path": self.path,
            "size": size,
            "formattedSize": format_file_size(size),
            "uploadDate": isoformat_utc(self.modified_at),
            "children": [child.to_dict() for child in self.children],
        }


TreeEntry = Union[FileEntry, DirectoryEntry]


def calculate_total_size(items: List[TreeEntry]) -> int:
    total = 0
    for item in items:
        if isinstance(item, DirectoryEntry):
            total += calculate_total_size(item.children)
        else:
            total += item.size
    return total


def count_files(items: List[TreeEntry]) -> int:
    count = 0
    for item in items:
        if isinstance(item, DirectoryEntry):
            count += count_files(item.children)
        else:
            count += 1
    return count


@dataclass
class TreeListing:
    items: List[TreeEntry]

    @property
    def total_files(self) -> int:
        return count_files(self.items)

    @property
    def total_size(self) -> int:
        return calculate_total_size(self.items)

    def to_dict(self) -> Dict[str, Any]:
        total_size = self.total_size
        return {
            "items": [item.to_dict() for item in self.items],
            "totalFiles": self.total_files,
            "totalSize": total_size,
            "formattedTotalSize": format_file_size(total_size),
        }


def _collation_key(name: str) -> str:
    try:
        return locale.strxfrm(name.casefold())
    except ValueError:
        # strxfrm rejects names it cannot encode for the C library
        return name.casefold()


def _tree_sort_key(item: TreeEntry) -> Tuple[int, str, str]:
    return (0 if isinstance(item, DirectoryEntry) else 1, _collation_key(item.name), item.name)


def _stat_entry(entry: os.DirEntry) -> os.stat_result:
    return entry.stat(follow_symlinks=False)


def _read_directory(directory: Path, relative: str) -> List[TreeEntry]:
    items: List[TreeEntry] = []
    try:
        with os.scandir(directory) as iterator:
            entries = list(iterator)
    except OSError as error:
        logger.error(
            "directory_read_failed path=%s error=%s", sanitize_log_value(relative), error
        )
        return items

    for entry in entries:
        # Dot entries, including the metadata directory, are never listed.
        if entry.name.startswith("."):
            continue
        entry_relative = f"{relative}/{entry.name}" if relative else entry.name
        try:
            stats = _stat_entry(entry)
        except OSError as error:
            logger.error(
                "entry_stat_failed path=%s error=%s",
                sanitize_log_value(entry_relative),
                error,
            )
            continue

        if stat.S_ISDIR(stats.st_mode):
            items.append(
                DirectoryEntry(
                    name=entry.name,
                    path=entry_relative,
                    modified_at=stats.st_mtime,
                    children=_read_directory(Path(entry.path), entry_relative),
                )
            )
        elif stat.S_ISREG(stats.st_mode):
            items.append(
                FileEntry(
                    name=entry.name,
                    path=entry_relative,
                    size=stats.st_size,
                    modified_at=stats.st_mtime,
                    extension=split_extension(entry.name)[1].lower(),
                )
            )
        else:
            logger.debug(
                "tree_entry_skipped path=%s mode=%o",
                sanitize_log_value(entry_relative),
                stats.st_mode,
            )

    items.sort(key=_tree_sort_key)
    return items


def list_tree(root: Union[str, Path]) -> TreeListing:
    """Walk the upload root and return every visible file and directory.

    Symlinks are not followed. Entries that cannot be inspected are logged
    and left out instead of failing the whole listing.
    """

    return TreeListing(items=_read_directory(Path(root), ""))


# --- file operations -------------------------------------------------------


def get_entry_info(root: Path, raw_path: str) -> Dict[str, Any]:
    target = resolve_upload_path(root, raw_path)
    try:
        stats = target.stat()
    except (FileNotFoundError, NotADirectoryError) as error:
        raise EntryNotFoundError(raw_path) from error

    is_directory = stat.S_ISDIR(stats.st_mode)
    if is_directory:
        relative = "" if _is_upload_root(target, root) else relative_upload_path(target, root)
        size = calculate_total_size(_read_directory(target, relative))
    else:
        size = stats.st_size

    return {
        "filename": raw_path,
        "name": target.name,
        "size": size,
        "formattedSize": format_file_size(size),
        "uploadDate": isoformat_utc(stats.st_mtime),
        "mimetype": split_extension(target.name)[1][1:].lower(),
        "type": "directory" if is_directory else "file",
    }


def open_for_download(root: Path, raw_path: str) -> Tuple[Path, BinaryIO, int]:
    """Open a stored file for streaming.

    Returns the resolved path, an open binary handle owned by the caller and
    the size in bytes.
    """

    target = resolve_upload_path(root, raw_path)
    try:
        stats = target.stat()
    except (FileNotFoundError, NotADirectoryError) as error:
        raise EntryNotFoundError(raw_path) from error

    if stat.S_ISDIR(stats.st_mode):
        raise ValidationError("Directories cannot be downloaded")
    if not stat.S_ISREG(stats.st_mode):
        raise EntryNotFoundError(raw_path)

    try:
        handle = target.open("rb")
    except FileNotFoundError as error:
        raise EntryNotFoundError(raw_path) from error
    return target, handle, os.fstat(handle.fileno()).st_size


def delete_entry(root: Path, raw_path: str) -> str:
    """Delete a file or a whole directory tree; returns ``file`` or ``directory``."""

    target = resolve_upload_path(root, raw_path)
    if _is_upload_root(target, root):
        raise ValidationError("The upload directory itself cannot be deleted")

    try:
        stats = target.lstat()
        if stat.S_ISDIR(stats.st_mode):
            shutil.rmtree(target)
            kind = "directory"
        else:
            target.unlink()
            kind = "file"
    except (FileNotFoundError, NotADirectoryError) as error:
        raise EntryNotFoundError(raw_path) from error

    logger.info("entry_deleted type=%s path=%s", kind, sanitize_log_value(raw_path))
    return kind


def _same_entry(first: Path, second: Path) -> bool:
    first_stats = os.lstat(first)
    second_stats = os.lstat(second)
    return (first_stats.st_dev, first_stats.st_ino) == (
        second_stats.st_dev,
        second_stats.st_ino,
    )


def _is_case_only_rename(source: Path, destination: Path) -> bool:
    """True when *destination* is *source* itself reached through a case change.

    Only a case-insensitive filesystem resolves the new spelling to the old
    entry; a separate entry or a hard link with that exact name is a conflict.
    """

    if source.name == destination.name:
        return False
    if source.name.casefold() != destination.name.casefold():
        return False
    if destination.name in os.listdir(source.parent):
        return False
    return _same_entry(source, destination)


def _move_without_replace(
    source: Path, destination: Path, relative_destination: str, is_directory: bool
) -> None:
    if not is_directory:
        try:
            os.link(source, destination, follow_symlinks=False)
        except FileExistsError as error:
            raise EntryExistsError(relative_destination) from error
        except OSError as error:
            if error.errno not in _HARDLINK_UNSUPPORTED_ERRNOS:
                raise
        else:
            os.unlink(source)
            return

    if os.path.lexists(destination):
        raise EntryExistsError(relative_destination)
    # An empty directory created after the check above is replaced; accepted race.
    try:
        os.rename(source, destination)
    except OSError as error:
        if error.errno in (errno.EEXIST, errno.ENOTEMPTY):
            raise EntryExistsError(relative_destination) from error
        raise


def rename_entry(root: Path, raw_path: str, new_name: Any) -> Dict[str, str]:
    """Rename a file or directory in place, keeping it in the same parent.

    The new name is validated and sanitized before any filesystem call.
    Only a case-only change of the same entry may reuse an existing name.

    Raises:
        ValidationError: blank or unusable new name, or the upload root
        PathTraversalError: source or destination outside the root
        EntryNotFoundError: the source does not exist
        EntryExistsError: the destination is already taken
    """

    if not isinstance(new_name, str) or not new_name.strip():
        raise ValidationError("New name is required")
    trimmed = new_name.strip()
    if not has_usable_name(trimmed):
        raise ValidationError("New name contains no usable characters")

    source = resolve_upload_path(root, raw_path)
    if _is_upload_root(source, root):
        raise ValidationError("The upload directory itself cannot be renamed")

    sanitized_name = sanitize_filename(trimmed)
    destination = _ensure_contained(source.parent / sanitized_name, root, new_name)
    relative_destination = relative_upload_path(destination, root)

    try:
        is_directory = stat.S_ISDIR(source.lstat().st_mode)
    except (FileNotFoundError, NotADirectoryError) as error:
        raise EntryNotFoundError(raw_path) from error

    if os.path.lexists(destination):
        if not _is_case_only_rename(source, destination):
            raise EntryExistsError(relative_destination)
        os.rename(source, destination)
    else:
        _move_without_replace(source, destination, relative_destination, is_directory)

    kind = "Directory" if is_directory else "File"
    logger.info(
        "entry_renamed type=%s source=%s destination=%s",
        kind.lower(),
        sanitize_log_value(raw_path),
        relative_destination,
    )
    return {
        "message": f"{kind} renamed successfully",
        "oldName": source.name,
        "newName": sanitized_name,
        "newPath": relative_destination,
    }


class UploadBatch:
    """Stores the files of one upload request below the upload root.

    Each incoming name is sanitized segment by segment. The top-level folder
    of a folder upload is allocated once per batch, so uploading ``photos/``
    twice produces ``photos`` and ``photos (1)``.
    """

    def __init__(self, root: Path, max_attempts: int = MAX_ALLOCATION_ATTEMPTS) -> None:
        self.root = Path(root)
        self.max_attempts = max_attempts
        self._folders: Dict[str, str] = {}

    def _folder_for(self, name: str) -> str:
        if name not in self._folders:
            allocated = allocate_directory(self.root / name, self.max_attempts)
            self._folders[name] = allocated.name
        return self._folders[name]

    def save(self, raw_path: str, stream: BinaryIO) -> Dict[str, Any]:
        segments = sanitize_path(raw_path).split("/")
        if len(segments) > 1:
            _ensure_contained(self.root / segments[0], self.root, raw_path)
            segments[0] = self._folder_for(segments[0])
            parent = _ensure_contained(self.root.joinpath(*segments[:-1]), self.root, raw_path)
            parent.mkdir(parents=True, exist_ok=True)

        desired = _ensure_contained(self.root.joinpath(*segments), self.root, raw_path)
        final_path, handle = allocate_file(desired, self.max_attempts)

        written = 0
        with handle:
            for chunk in iter(lambda: stream.read(CHUNK_SIZE_BYTES), b""):
                handle.write(chunk)
                written += len(chunk)

        relative = relative_upload_path(final_path, self.root)
        logger.info(
            "upload_stored original=%s path=%s size=%d",
            sanitize_log_value(raw_path),
            relative,
            written,
        )
        return {
            "name": final_path.name,
            "path": relative,
            "size": written,
            "formattedSize": format_file_size(written),
        }
