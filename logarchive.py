#
# logarchive
#
# A small cross-platform CLI tool to archive aged log files into per-file zip archives and prune expired archives.
#
# Copyright (c) 2025-2026 Thomas Kuhlmann
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import ctypes
import importlib.util
import os
import shutil
import stat
import subprocess
import sys
import traceback
import zipfile
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from os import stat_result
from pathlib import Path
from types import SimpleNamespace
from typing import NoReturn, Optional, TextIO, no_type_check


VERSION: str = "1.0.0"

SCRIPT_START = datetime.now().timestamp()

SECONDS_PER_DAY: int = 24 * 60 * 60

ARCHIVE_DIR_NAME: str = "Archive"

ARCHIVE_EXTENSION: str = ".zip"

LOG_EXTENSIONS: frozenset[str] = frozenset({".log", ".txt", ".out", ".err", ".trace"})

LOG_FILE_NAME: str = "logarchive.log"

LOG_ROTATE_BYTES: int = 10 * 1024 * 1024

EVENT_SOURCE: str = "logarchive"

EVENT_ID: int = 1000


class ValidationError(Exception):
    pass


class CompressionUnavailableError(Exception):
    pass


class EnumerationError(Exception):
    pass


class FailuresReportedError(Exception):
    pass


class ConfigNamespace(SimpleNamespace):
    pass


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        try:
            return next(m for m in cls if m.name.startswith(prefix.upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)


class Logger:
    """Console output filtered by verbosity, mirrored into an append-only log file.

    The log file always receives INFO and above (and DEBUG, if the console runs at DEBUG),
    so the per-run record does not depend on how quiet the console was.
    """

    _level: LogLevel
    _log_file: Optional[TextIO]

    def __init__(self, level: LogLevel = LogLevel.INFO) -> None:
        self._level = level
        self._log_file = None

    def attach_log_file(self, log_file: Path) -> None:
        self._log_file = log_file.open("a", encoding="utf-8")

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= self._level

    def _raw_verbose(self, level: LogLevel, message: str, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=sys.stderr if level <= LogLevel.WARN else sys.stdout)

    def _write_log_file(self, level: LogLevel, message: str, prefix: str = "") -> None:
        if self._log_file is None or level > max(self._level, LogLevel.INFO):
            return
        self._log_file.write(f"[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}] [{prefix or LogLevel(level).name}] {message}\n")
        self._log_file.flush()

    def verbose(self, level: LogLevel, message: str, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, prefix)
        self._write_log_file(level, message, prefix)

    def report(self, level: LogLevel, message: str) -> None:
        # Report lines are printed regardless of the verbosity
        self._raw_verbose(level, message)
        self._write_log_file(level, message)

    def close(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None


def rotate_log_file(log_file: Path, max_bytes: int = LOG_ROTATE_BYTES, now: Optional[datetime] = None) -> Optional[Path]:
    """Rename an oversized log file to a timestamped backup, returns the backup path (if rotated)."""
    if not log_file.is_file() or log_file.stat().st_size <= max_bytes:
        return None
    backup = log_file.with_name(f"{log_file.stem}_{(now or datetime.now()).strftime('%Y%m%d_%H%M%S')}{log_file.suffix}")
    log_file.rename(backup)
    return backup


def format_size(bytes: int) -> str:
    units = ["", "K", "M", "G", "T", "P", "E"]
    idx, value = 0, float(bytes)
    while abs(value) >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    return f"{value:.2f}".rstrip("0").rstrip(".") + units[idx]


def format_mb_gb(bytes: int) -> str:
    return f"{bytes / 1024**2:.2f} MB ({bytes / 1024**3:.2f} GB)"


# Filesystem compression capability


class FilesystemCompression:
    """Inspection and removal of filesystem-level (transparent) compression.

    The pipeline only talks to this interface, so the platform-specific parts stay in the
    subclasses and the feature degrades to a no-op where it is unsupported.
    """

    name: str = "abstract"
    supported: bool = False

    def is_compressed(self, file_stat: stat_result) -> bool:
        raise NotImplementedError

    def on_disk_size(self, file: Path, file_stat: stat_result) -> int:
        raise NotImplementedError

    def decompress(self, file: Path) -> None:
        raise NotImplementedError


class NoFilesystemCompression(FilesystemCompression):
    name = "unsupported"
    supported = False

    def is_compressed(self, file_stat: stat_result) -> bool:
        return False

    def on_disk_size(self, file: Path, file_stat: stat_result) -> int:
        return file_stat.st_size

    def decompress(self, file: Path) -> None:
        pass


class NtfsCompression(FilesystemCompression):
    name = "ntfs"
    supported = True

    def is_compressed(self, file_stat: stat_result) -> bool:
        return bool(getattr(file_stat, "st_file_attributes", 0) & stat.FILE_ATTRIBUTE_COMPRESSED)

    def on_disk_size(self, file: Path, file_stat: stat_result) -> int:
        if not self.is_compressed(file_stat):
            return file_stat.st_size
        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)  # type: ignore[attr-defined]
        kernel32.GetCompressedFileSizeW.restype = ctypes.c_ulong  # DWORD
        kernel32.GetCompressedFileSizeW.argtypes = [ctypes.c_wchar_p, ctypes.POINTER(ctypes.c_ulong)]
        high = ctypes.c_ulong(0)
        low = kernel32.GetCompressedFileSizeW(str(file), ctypes.byref(high))
        if low == 0xFFFFFFFF and ctypes.get_last_error() != 0:  # type: ignore[attr-defined]
            raise ctypes.WinError(ctypes.get_last_error())  # type: ignore[attr-defined]
        return (high.value << 32) + low

    def decompress(self, file: Path) -> None:
        subprocess.run(["compact", "/u", "/q", str(file)], check=True, capture_output=True, text=True)


def detect_filesystem_compression() -> FilesystemCompression:
    return NtfsCompression() if sys.platform == "win32" else NoFilesystemCompression()


# Data model


@dataclass(frozen=True)
class CandidateFile:
    path: Path
    size: int
    on_disk_size: int
    mtime_ns: int
    atime_ns: int
    compressed: bool

    @property
    def mtime(self) -> float:
        return self.mtime_ns / 1e9

    @classmethod
    def from_path(cls, path: Path, fs_compression: FilesystemCompression) -> "CandidateFile":
        file_stat = path.stat()
        return cls(path, file_stat.st_size, fs_compression.on_disk_size(path, file_stat), file_stat.st_mtime_ns, file_stat.st_atime_ns, fs_compression.is_compressed(file_stat))


@dataclass(frozen=True)
class ArchiveEntry:
    source: Path
    archive_path: Path
    logical_size: int
    on_disk_size: int
    archive_size: int
    decompressed: bool = False
    original_deleted: bool = False

    @property
    def ratio(self) -> float:
        return self.archive_size / self.logical_size if self.logical_size else 0.0


@dataclass(frozen=True)
class ReclaimResult:
    size: int
    decompressed: bool
    error: Optional[Exception] = None


@dataclass
class Discovery:
    candidates: list[CandidateFile] = field(default_factory=list)
    skipped: list[tuple[Path, str]] = field(default_factory=list)
    archive_dirs: set[Path] = field(default_factory=set)


@dataclass
class RunStatistics:
    archived: list[ArchiveEntry] = field(default_factory=list)
    skipped: list[tuple[Path, str]] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)
    logical_bytes: int = 0
    on_disk_bytes: int = 0
    archived_bytes: int = 0
    pruned_count: int = 0
    pruned_bytes: int = 0
    destination_dirs: set[Path] = field(default_factory=set)
    archive_paths: set[Path] = field(default_factory=set)
    free_before: Optional[int] = None
    free_after: Optional[int] = None

    def add_archived(self, entry: ArchiveEntry) -> None:
        self.archived.append(entry)
        self.logical_bytes += entry.logical_size
        self.on_disk_bytes += entry.on_disk_size
        self.archived_bytes += entry.archive_size

    def add_failed(self, file: Path, error: Exception) -> None:
        self.failed.append((file, str(error)))

    @property
    def saved_vs_logical(self) -> int:
        return self.logical_bytes - self.archived_bytes

    @property
    def saved_vs_on_disk(self) -> int:
        return self.on_disk_bytes - self.archived_bytes


# Argument parsing


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=30, width=160, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


class ModernStrictArgumentParser(argparse.ArgumentParser):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, **kw)
        self._errors: list[str] = []

    def add_error(self, msg: str) -> None:
        if msg not in self._errors:
            self._errors.append(msg)

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        print("\nError(s):", file=sys.stderr)
        for line in message.split("\n"):
            print(f"  • {line}", file=sys.stderr)
        print("\nHint: Try '--help' for more information.", file=sys.stderr)
        sys.exit(2)

    # Argument type helpers
    def positive_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value <= 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer > 0")
        return int_value

    def verbose_argument(self, value: str) -> LogLevel:
        try:
            return LogLevel.from_name_or_number(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

    # Internal helper methods
    def _suggest(self, argument: str) -> list[str]:
        opts = [o for a in self._actions for o in a.option_strings if o.startswith("--")]
        cand = [o for o in opts if abs(len(o) - len(argument)) <= 2 and sum(a != b for a, b in zip(o, argument)) <= 2]
        return cand[:1]

    @no_type_check
    def _collect_raw_args(self, args):  # noqa: ANN202, ANN001
        if args is not None:
            return list(args)
        return sys.argv[1:]  # default argparse behavior

    @no_type_check
    def _detect_duplicate_flags(self, raw_args) -> None:  # noqa: ANN001
        # Normalize option strings
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if not tok.startswith("-"):
                continue

            # Extract option (handles -d3, -d=3, --days=5)
            opt = tok.split("=", 1)[0]

            # Handle -d3 → -d
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        # Default verbosity, if none given
        if ns.verbose is None:
            ns.verbose = LogLevel.INFO

        # dry-run implies at least info, otherwise the planned actions are invisible
        if ns.dry_run and ns.verbose < LogLevel.INFO:
            ns.verbose = LogLevel.INFO

        # Default log file beside the executable
        if not ns.log_file:
            ns.log_file = str(default_log_file())

        # Empty destination means per-directory archive folders
        if ns.destination is not None and not ns.destination.strip():
            ns.destination = None

        if ns.destination is not None and Path(ns.destination).resolve() == Path(ns.path).resolve():
            self.add_error("--destination must not be the source path itself")

    # Main hook
    @no_type_check
    def parse_known_args(self, args=None, namespace=None) -> tuple[argparse.Namespace, list[str]]:  # noqa: ANN001
        self._errors = []
        raw_args = self._collect_raw_args(args)
        self._detect_duplicate_flags(raw_args)

        ns, unknown = super().parse_known_args(raw_args, namespace or argparse.Namespace())

        if unknown:
            sug = self._suggest(unknown[0])
            if sug:
                self.add_error(f"Unknown option: {unknown[0]} (did you mean {sug[0]}?)")
            else:
                self.add_error(f"Unknown option: {unknown[0]}")

        self._validate_arguments(ns)

        if self._errors:
            msg = "\n".join(f"{e}" for e in self._errors)
            self.error(msg)

        return ns, unknown


def default_log_file() -> Path:
    return Path(sys.argv[0]).resolve().parent / LOG_FILE_NAME


def create_parser() -> ModernStrictArgumentParser:
    parser: ModernStrictArgumentParser = ModernStrictArgumentParser(
        description=f"logarchive {VERSION}\n\nA small cross-platform CLI tool to archive aged log files and prune expired archives",
        usage=("logarchive [path] [options]\n\nExample:\n  logarchive /var/log/app -d 30 -a 90 -D /mnt/archive"),
        epilog="Use with caution!! This tool deletes original log files (unless --archive-only or --dry-run is set) and expired archives.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
    )

    g_main = parser.add_argument_group("Main arguments")
    g_ret = parser.add_argument_group("Retention arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    # positional arguments
    g_main.add_argument("path", nargs="?", default=".", help="Source directory to scan recursively (default: current directory)")
    g_main.add_argument("--destination", "-D", type=str, default=None, metavar="dir", help="Global archive root mirroring the source tree (default: 'Archive' folder beside each file)")
    g_main.add_argument("--log-file", "-o", type=str, default=None, metavar="file", help=f"Log file (default: '{LOG_FILE_NAME}' beside the executable)")

    # retention arguments
    g_ret.add_argument("--days", "-d", type=parser.positive_int_argument, default=30, metavar="N", help="Archive log files older than N days (default: 30)")
    g_ret.add_argument("--archive-days", "-a", type=parser.positive_int_argument, default=90, metavar="N", help="Delete archives older than N days (default: 90)")

    # behavior flags
    g_behavior.add_argument("--archive-only", "-k", action="store_true", help="Keep original log files after archiving")
    g_behavior.add_argument("--reclaim-compression", "-c", action="store_true", help="Remove filesystem compression before archiving (Windows/NTFS only, no-op elsewhere)")
    # fmt: off
    g_behavior.add_argument("--verbose", "-V", "-v", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.INFO, metavar="lev",
        help="Verbosity level: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'info'; use numbers or names)")
    # fmt: on
    g_behavior.add_argument("--dry-run", "-X", action="store_true", help="Show planned actions but do not archive or delete any files")
    g_behavior.add_argument("--fail-on-error", action="store_true", help="Exit with a non-zero code, if any file could not be archived")
    g_behavior.add_argument("--no-system-event", action="store_false", dest="system_event", default=True, help="Do not notify the system event log on fatal errors (default: enabled)")

    # common flags
    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-H", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments(argv: Optional[list[str]] = None) -> ConfigNamespace:
    parser = create_parser()
    args = parser.parse_args(argv)
    return ConfigNamespace(**vars(args))


# Validate


def open_log_file(log_file: Path, logger: Logger) -> None:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        rotated = rotate_log_file(log_file)
        logger.attach_log_file(log_file)
    except OSError as e:
        raise ValidationError(f"Log file directory is not writable: {log_file.parent} ({e})") from e
    if rotated is not None:
        logger.verbose(LogLevel.INFO, f"Rotated log file to '{rotated.name}'")


def validate_environment(args: ConfigNamespace) -> None:
    source = Path(args.path)
    if not source.is_dir():
        raise ValidationError(f"Source path is not a directory: {source}")
    if not os.access(source, os.R_OK | os.X_OK):
        raise ValidationError(f"Source path is not readable: {source}")

    if args.destination:
        destination = Path(args.destination)
        if not args.dry_run:
            try:
                destination.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ValidationError(f"Destination path could not be created: {destination} ({e})") from e
        if destination.exists() and not (destination.is_dir() and os.access(destination, os.W_OK | os.X_OK)):
            raise ValidationError(f"Destination path is not writable: {destination}")

    if importlib.util.find_spec("zlib") is None:
        raise CompressionUnavailableError("zlib is not available, deflate-compressed archives cannot be written")


# Discover


def is_log_file(file: Path) -> bool:
    return file.suffix.lower() in LOG_EXTENSIONS


def discover_files(root: Path, threshold: float, fs_compression: FilesystemCompression, logger: Logger) -> Discovery:
    """Walk `root` and select log files last modified strictly before `threshold` (epoch seconds).

    Directories named exactly ARCHIVE_DIR_NAME are not descended into, but remembered for the
    archive sweep. Failing to list `root` itself is fatal, unreadable subdirectories are skipped.
    """

    def on_walk_error(error: OSError) -> None:
        if error.filename is not None and Path(error.filename) == root:
            raise EnumerationError(f"Could not enumerate source path '{root}': {error}") from error
        logger.verbose(LogLevel.WARN, f"Skipping unreadable directory '{error.filename}': {error.strerror}")

    discovery = Discovery()
    for dirpath, dirnames, filenames in os.walk(root, onerror=on_walk_error):
        current = Path(dirpath)
        if ARCHIVE_DIR_NAME in dirnames:
            discovery.archive_dirs.add(current / ARCHIVE_DIR_NAME)
        dirnames[:] = sorted(d for d in dirnames if d != ARCHIVE_DIR_NAME)

        for name in filenames:
            file = current / name
            if not is_log_file(file) or file.is_symlink():
                continue
            try:
                candidate = CandidateFile.from_path(file, fs_compression)
            except OSError as e:  # Vanished or unreadable between listing and stat
                logger.verbose(LogLevel.WARN, f"Skipping file '{file}': {e}")
                continue
            if candidate.mtime < threshold:
                discovery.candidates.append(candidate)
            else:
                discovery.skipped.append((file, "too recent"))

    discovery.candidates.sort(key=lambda c: c.path)
    discovery.skipped.sort()
    return discovery


# Process


def resolve_destination(file: Path, source_root: Path, destination_root: Optional[Path] = None, create: bool = True) -> Path:
    if destination_root is None:
        destination = file.parent / ARCHIVE_DIR_NAME
    else:
        destination = destination_root / file.parent.relative_to(source_root)  # raises ValueError for files outside of source_root
    if create:
        destination.mkdir(parents=True, exist_ok=True)
    return destination


def archive_holds(archive_path: Path, name: str) -> bool:
    try:
        with zipfile.ZipFile(archive_path) as zf:
            return zf.namelist() == [name]
    except (OSError, zipfile.BadZipFile):
        return False


def archive_path_for(file: Path, destination_dir: Path, taken: Iterable[Path] = ()) -> Path:
    """Pick `<stem>.zip`, unless it is taken in this run or already holds another file (e.g. 'app.log' and 'app.txt').

    Then `<name>.zip` is tried, followed by `<name>.<n>.zip`. An archive of the same file name is reused (overwritten).
    """
    taken = set(taken)
    names = [f"{file.stem}{ARCHIVE_EXTENSION}", f"{file.name}{ARCHIVE_EXTENSION}"]
    n = 0
    while True:
        for name in names:
            archive_path = destination_dir / name
            if archive_path in taken:
                continue
            if not archive_path.exists() or archive_holds(archive_path, file.name):
                return archive_path
        n += 1
        names = [f"{file.name}.{n}{ARCHIVE_EXTENSION}"]


def reclaim_filesystem_compression(candidate: CandidateFile, fs_compression: FilesystemCompression, logger: Logger) -> ReclaimResult:
    if not candidate.compressed:
        return ReclaimResult(candidate.size, False)
    try:
        fs_compression.decompress(candidate.path)
        size = candidate.path.stat().st_size
    except (OSError, subprocess.SubprocessError) as e:  # Never fatal, continue with the (still compressed) original
        logger.verbose(LogLevel.WARN, f"Could not remove filesystem compression from '{candidate.path}': {e}")
        return ReclaimResult(candidate.size, False, e)
    logger.verbose(LogLevel.DEBUG, f"Removed filesystem compression from '{candidate.path}' (on disk: {format_size(candidate.on_disk_size)}, logical: {format_size(size)})")
    return ReclaimResult(size, True)


def archive_file(candidate: CandidateFile, archive_path: Path, archive_only: bool, logger: Logger, reclaim: Optional[ReclaimResult] = None) -> ArchiveEntry:
    """Compress one file into a single-entry zip at `archive_path`, then delete the original unless `archive_only`.

    The archive gets the original's access and modification times, so the archive sweep ages it like the log it holds.
    """
    temp_path = archive_path.with_name(archive_path.name + ".tmp")  # previous archive stays intact until replaced
    try:
        with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9, strict_timestamps=False) as zf:
            zf.write(candidate.path, arcname=candidate.path.name)
        os.replace(temp_path, archive_path)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    os.utime(archive_path, ns=(candidate.atime_ns, candidate.mtime_ns))
    archive_size = archive_path.stat().st_size

    logical_size = reclaim.size if reclaim is not None else candidate.size
    entry = ArchiveEntry(
        source=candidate.path,
        archive_path=archive_path,
        logical_size=logical_size,
        on_disk_size=candidate.on_disk_size,
        archive_size=archive_size,
        decompressed=reclaim is not None and reclaim.decompressed,
    )
    logger.verbose(LogLevel.INFO, f"ARCHIVED: {candidate.path} -> {archive_path} ({format_size(logical_size)} -> {format_size(archive_size)}, ratio: {entry.ratio:.2f})")

    if archive_only:
        return entry
    candidate.path.unlink()
    logger.verbose(LogLevel.DEBUG, f"DELETED: {candidate.path}")
    return replace(entry, original_deleted=True)


def process_files(candidates: Iterable[CandidateFile], args: ConfigNamespace, fs_compression: FilesystemCompression, logger: Logger, stats: RunStatistics) -> None:
    source_root = Path(args.path)
    destination_root = Path(args.destination) if args.destination else None

    for candidate in candidates:
        try:
            destination_dir = resolve_destination(candidate.path, source_root, destination_root, create=not args.dry_run)
            stats.destination_dirs.add(destination_dir)
            archive_path = archive_path_for(candidate.path, destination_dir, stats.archive_paths)
            stats.archive_paths.add(archive_path)

            if args.dry_run:
                logger.verbose(LogLevel.INFO, f"DRY-RUN ARCHIVE: {candidate.path} -> {archive_path}")
                stats.skipped.append((candidate.path, "dry-run"))
                continue

            reclaim = None
            if args.reclaim_compression and fs_compression.supported:
                reclaim = reclaim_filesystem_compression(candidate, fs_compression, logger)

            entry = archive_file(candidate, archive_path, args.archive_only, logger, reclaim)
        except Exception as e:  # One bad file must not stop the batch
            logger.verbose(LogLevel.ERROR, f"Failed to archive '{candidate.path}': {e}")
            stats.add_failed(candidate.path, e)
            continue
        stats.add_archived(entry)


# Sweep and report


def collect_archive_dirs(args: ConfigNamespace, discovery: Discovery, stats: RunStatistics) -> list[Path]:
    directories: set[Path] = set(stats.destination_dirs) | discovery.archive_dirs
    if args.destination:
        destination_root = Path(args.destination)
        if destination_root.is_dir():
            directories.update(Path(dirpath) for dirpath, _, _ in os.walk(destination_root))
    return sorted(directories)


def prune_archives(directories: Iterable[Path], threshold: float, dry_run: bool, logger: Logger, stats: RunStatistics) -> tuple[int, int]:
    count, bytes_sum = 0, 0
    for directory in sorted(set(directories)):
        try:
            archives = sorted(p for p in directory.iterdir() if p.suffix.lower() == ARCHIVE_EXTENSION and p.is_file())
        except FileNotFoundError:  # planned only (dry-run) or removed meanwhile
            continue
        except OSError as e:
            logger.verbose(LogLevel.WARN, f"Could not list archive directory '{directory}': {e}")
            continue

        for archive in archives:
            try:
                archive_stat = archive.stat()
                if archive_stat.st_mtime >= threshold:
                    continue
                time = datetime.fromtimestamp(archive_stat.st_mtime)
                if dry_run:
                    logger.verbose(LogLevel.INFO, f"DRY-RUN DELETE: {archive} (mtime: {time})")
                else:
                    logger.verbose(LogLevel.INFO, f"DELETING: {archive} (mtime: {time})")
                    archive.unlink()
            except OSError as e:  # Catch deletion error, log it, and continue
                logger.verbose(LogLevel.WARN, f"Error while deleting archive '{archive}': {e}")
                continue
            count += 1
            bytes_sum += archive_stat.st_size

    stats.pruned_count += count
    stats.pruned_bytes += bytes_sum
    return count, bytes_sum


def free_space(path: Path) -> Optional[int]:
    try:
        return shutil.disk_usage(path).free
    except OSError:
        return None


def summary_lines(stats: RunStatistics) -> list[str]:
    lines: list[str] = []
    for entry in stats.archived:
        lines.append(
            f"Archived: {entry.source} -> {entry.archive_path} ({format_size(entry.logical_size)} -> {format_size(entry.archive_size)}, ratio: {entry.ratio:.2f}"
            + (", filesystem compression removed" if entry.decompressed else "")
            + (", original kept" if not entry.original_deleted else "")
            + ")"
        )
    for file, reason in stats.skipped:
        lines.append(f"Skipped: {file} ({reason})")
    for file, error in stats.failed:
        lines.append(f"Failed: {file} ({error})")

    def _free(value: Optional[int]) -> str:
        return format_mb_gb(value) if value is not None else "unavailable"

    lines += [
        f"Total files archived: {len(stats.archived):03d}",
        f"Total files skipped:  {len(stats.skipped):03d}",
        f"Total logical size:   {format_mb_gb(stats.logical_bytes)}",
        f"Total on-disk size:   {format_mb_gb(stats.on_disk_bytes)}",
        f"Total archived size:  {format_mb_gb(stats.archived_bytes)}",
        f"Space saved (logical): {format_mb_gb(stats.saved_vs_logical)}",
        f"Space saved (on-disk): {format_mb_gb(stats.saved_vs_on_disk)}",
        f"Archives pruned: {stats.pruned_count:03d} ({format_mb_gb(stats.pruned_bytes)})",
        f"Free space before: {_free(stats.free_before)}",
        f"Free space after:  {_free(stats.free_after)}",
        f"Failures: {len(stats.failed)}",
    ]
    return lines


def summarize(stats: RunStatistics, logger: Logger) -> None:
    for line in summary_lines(stats):
        logger.report(LogLevel.ERROR if line.startswith("Failures:") and stats.failed else LogLevel.INFO, line)


def run_pipeline(args: ConfigNamespace, logger: Logger, fs_compression: Optional[FilesystemCompression] = None, now: float = SCRIPT_START) -> RunStatistics:
    fs_compression = fs_compression or detect_filesystem_compression()
    source_root = Path(args.path)
    stats = RunStatistics()
    stats.free_before = free_space(source_root)

    logger.verbose(LogLevel.DEBUG, f"Filesystem compression support: {fs_compression.name}")
    discovery = discover_files(source_root, now - args.days * SECONDS_PER_DAY, fs_compression, logger)
    stats.skipped.extend(discovery.skipped)
    logger.verbose(LogLevel.INFO, f"Found {len(discovery.candidates)} log files older than {args.days} days in '{source_root}'")

    process_files(discovery.candidates, args, fs_compression, logger, stats)

    prune_archives(collect_archive_dirs(args, discovery, stats), now - args.archive_days * SECONDS_PER_DAY, args.dry_run, logger, stats)

    stats.free_after = free_space(source_root)
    summarize(stats, logger)
    return stats


# Fatal error handling


def notify_system_event(message: str, logger: Optional[Logger] = None) -> bool:
    """Send one error message to the OS-wide event facility (Windows event log or syslog)."""
    try:
        if sys.platform == "win32":
            subprocess.run(["eventcreate", "/T", "ERROR", "/ID", str(EVENT_ID), "/L", "APPLICATION", "/SO", EVENT_SOURCE, "/D", message], check=True, capture_output=True, text=True)
        else:
            import syslog

            syslog.openlog(EVENT_SOURCE, syslog.LOG_PID, syslog.LOG_USER)
            syslog.syslog(syslog.LOG_ERR, message)
            syslog.closelog()
    except (OSError, subprocess.SubprocessError) as e:
        if logger is not None:
            logger.verbose(LogLevel.WARN, f"Could not write system event: {e}")
        return False
    return True


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, logger: Optional[Logger] = None, notify: bool = False, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    if logger is not None:
        logger.verbose(LogLevel.ERROR, str(exception), prefix=prefix)
    else:
        print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    if notify:
        notify_system_event(f"{EVENT_SOURCE} run aborted: {exception}", logger)
    sys.exit(exit_code)


def main() -> None:
    args: Optional[ConfigNamespace] = None
    logger: Optional[Logger] = None

    try:
        args = parse_arguments()

        logger = Logger(args.verbose)
        open_log_file(Path(args.log_file), logger)
        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        validate_environment(args)

        stats = run_pipeline(args, logger)

        if args.fail_on_error and stats.failed:
            raise FailuresReportedError(f"{len(stats.failed)} file(s) could not be archived")

    except ValidationError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True, logger, notify=args is not None and args.system_event)
    except CompressionUnavailableError as e:
        handle_exception(e, 4, args.stacktrace if args is not None else True, logger, notify=args is not None and args.system_event)
    except EnumerationError as e:
        handle_exception(e, 6, args.stacktrace if args is not None else True, logger, notify=args is not None and args.system_event)
    except FailuresReportedError as e:
        handle_exception(e, 8, args.stacktrace if args is not None else True, logger)
    except OSError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True, logger)
    except ValueError as e:
        handle_exception(e, 2, args.stacktrace if args is not None else True, logger)
    except Exception as e:
        handle_exception(e, 9, args.stacktrace if args is not None else True, logger, prefix="UNEXPECTED ERROR")
    finally:
        if logger is not None:
            logger.close()


if __name__ == "__main__":
    main()
