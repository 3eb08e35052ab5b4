#!/usr/bin/env python3
"""
Incremental LZX compaction tool for large file trees on flash storage.

This tool walks a directory tree and re-applies the platform `compact`
transform to every file, remembering the on-disk size each file had after it
was last handled. Files whose on-disk size did not change since the previous
run are skipped, so incompressible data is not rewritten on every run and SSD
write cycles are saved.

IMPORTANT: The compression itself is done by the external `compact` tool
(NTFS, Windows 10 or later). This module only decides which files to hand to
it and keeps track of what it has already seen.
"""

import os
import sys
import json
import stat
import time
import signal
import hashlib
import logging
import argparse
import functools
import threading
import subprocess
import multiprocessing
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Tuple, List, Callable, Iterator, Sequence, Union

import numpy as np
import psutil
from tqdm import tqdm


__version__ = "1.2.0"

# Constants
CACHE_FILE = "FileDict.db"
CACHE_VERSION = 1
TEMP_SUFFIX = ".tmp"
LOCK_FILE = "_compact_light_lock"
CONFIG_FILE = "CompactLightConfig.json"
CONFIG_ENV_VAR = "COMPACT_LIGHT_CONFIG"
LOG_FILE_PREFIX = "compaction_"
COMPACT_TOOL = "compact"
DEFAULT_ALGORITHM = "LZX"
ALGORITHMS = ("XPRESS4K", "XPRESS8K", "XPRESS16K", "LZX")
SAVE_INTERVAL_SECONDS = 30
QUEUE_CEILING_FACTOR = 16  # in-flight items per logical CPU
ADMISSION_WAIT_SECONDS = 0.2
CHILD_NICENESS = 10
DEFAULT_CLUSTER_SIZE = 4096
STALE_LOCK_SECONDS = 86400
EXIT_CACHE_CORRUPT = 2
FILE_ATTRIBUTE_SYSTEM = stat.FILE_ATTRIBUTE_SYSTEM
FILE_ATTRIBUTE_COMPRESSED = stat.FILE_ATTRIBUTE_COMPRESSED
FILE_ATTRIBUTE_REPARSE_POINT = stat.FILE_ATTRIBUTE_REPARSE_POINT
SIZE_UNITS = ("bytes", "KB", "MB", "GB", "TB")
LOG_LEVELS = {
    'none': logging.CRITICAL + 10,
    'general': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
}


class CacheCorruptionError(Exception):
    """The cache snapshot exists but could not be deserialized."""


# ---------------------------------------------------------------------------
# Drive utilities
# ---------------------------------------------------------------------------

@functools.lru_cache(maxsize=None)
def _kernel32():
    import ctypes
    from ctypes import wintypes

    kernel32 = ctypes.WinDLL('kernel32', use_last_error=True)
    kernel32.GetCompressedFileSizeW.argtypes = [wintypes.LPCWSTR, ctypes.POINTER(wintypes.DWORD)]
    kernel32.GetCompressedFileSizeW.restype = wintypes.DWORD
    kernel32.GetDiskFreeSpaceW.argtypes = [
        wintypes.LPCWSTR,
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
    ]
    kernel32.GetDiskFreeSpaceW.restype = wintypes.BOOL
    return kernel32


def get_compressed_size(path: str) -> int:
    """
    Get the on-disk (allocated) size of a file.

    On Windows this is GetCompressedFileSizeW, which reflects NTFS and LZX
    compression. Elsewhere the allocated block count is used.

    Args:
        path: Path to the file

    Returns:
        Size in bytes, or 0 if the size could not be determined
    """
    if os.name == 'nt':
        import ctypes
        from ctypes import wintypes

        high = wintypes.DWORD(0)
        low = _kernel32().GetCompressedFileSizeW(path, ctypes.byref(high))
        if low == 0xFFFFFFFF and ctypes.get_last_error() != 0:
            return 0
        return (high.value << 32) + low

    try:
        return os.stat(path).st_blocks * 512
    except (OSError, AttributeError):
        return 0


def get_cluster_size(path: str) -> int:
    """Get the allocation unit size of the volume holding path."""
    if os.name == 'nt':
        import ctypes
        from ctypes import wintypes

        sectors_per_cluster = wintypes.DWORD(0)
        bytes_per_sector = wintypes.DWORD(0)
        free_clusters = wintypes.DWORD(0)
        total_clusters = wintypes.DWORD(0)
        drive = os.path.splitdrive(os.path.abspath(path))[0] + '\\'
        if _kernel32().GetDiskFreeSpaceW(
            drive,
            ctypes.byref(sectors_per_cluster),
            ctypes.byref(bytes_per_sector),
            ctypes.byref(free_clusters),
            ctypes.byref(total_clusters),
        ):
            return sectors_per_cluster.value * bytes_per_sector.value or DEFAULT_CLUSTER_SIZE
        return DEFAULT_CLUSTER_SIZE

    try:
        return os.statvfs(path).f_frsize or DEFAULT_CLUSTER_SIZE
    except (OSError, AttributeError):
        return DEFAULT_CLUSTER_SIZE


def get_disk_occupied_size(length: int, cluster_size: int) -> int:
    """Round a logical file length up to whole clusters."""
    if length <= 0:
        return 0
    return cluster_size * ((length + cluster_size - 1) // cluster_size)


def get_disk_usage(path: str) -> Tuple[int, int]:
    """
    Get capacity and free space of the volume holding path.

    Returns:
        (total_bytes, free_bytes), both 0 if the volume could not be queried
    """
    try:
        usage = psutil.disk_usage(path)
        return usage.total, usage.free
    except OSError as e:
        logging.warning(f"Could not query disk usage at {path}: {e}")
        return 0, 0


def get_file_attributes(stat_result: os.stat_result) -> int:
    """Windows file attribute bits of a stat result (0 where the platform has none)."""
    return getattr(stat_result, 'st_file_attributes', 0)


def get_path_attributes(path: str) -> int:
    try:
        return get_file_attributes(os.stat(path))
    except OSError as e:
        logging.warning(f"Cannot read attributes of {path}: {e}")
        return 0


def format_size(size: int) -> str:
    """Render a byte count as a human-readable string, e.g. '1.5 GB'."""
    value = float(size)
    index = 0
    while abs(value) >= 1024 and index < len(SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    return f"{value:.1f} {SIZE_UNITS[index]}"


def is_elevated() -> bool:
    """Check whether the process runs with administrator (or root) rights."""
    if os.name == 'nt':
        import ctypes

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except OSError:
            return False
    return os.geteuid() == 0


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        return psutil.pid_exists(pid)
    except (psutil.Error, OSError):
        return False


def lower_process_priority(pid: int) -> bool:
    """
    Drop a child process to below-normal scheduling priority.

    Args:
        pid: Process ID of the child

    Returns:
        True if the priority was changed, False otherwise (e.g. the child already exited)
    """
    try:
        process = psutil.Process(pid)
        if os.name == 'nt':
            process.nice(psutil.BELOW_NORMAL_PRIORITY_CLASS)
        else:
            process.nice(CHILD_NICENESS)
        return True
    except (psutil.Error, OSError) as e:
        logging.debug(f"Could not lower priority of process {pid}: {e}")
        return False


def calculate_worker_count() -> int:
    """One worker per logical CPU."""
    return max(1, multiprocessing.cpu_count())


def file_identity(path: str) -> int:
    """
    Derive the cache key for a file from its absolute path.

    The key is a 64-bit BLAKE2b digest, so it is stable across processes and
    machines. Collisions are possible and accepted.
    """
    full_path = os.path.abspath(path)
    digest = hashlib.blake2b(full_path.encode('utf-8', 'surrogateescape'), digest_size=8).digest()
    return int.from_bytes(digest, 'big')


# ---------------------------------------------------------------------------
# Change cache
# ---------------------------------------------------------------------------

def _encode_snapshot(entries: Dict[int, int]) -> bytes:
    payload = {
        'version': CACHE_VERSION,
        'entries': {str(identity): signature for identity, signature in entries.items()},
    }
    return json.dumps(payload, separators=(',', ':')).encode('utf-8')


def _decode_snapshot(blob: bytes) -> Dict[int, int]:
    payload = json.loads(blob.decode('utf-8'))
    if not isinstance(payload, dict):
        raise ValueError("snapshot is not an object")
    if payload.get('version') != CACHE_VERSION:
        raise ValueError(f"unsupported snapshot version {payload.get('version')!r}")
    raw_entries = payload.get('entries')
    if not isinstance(raw_entries, dict):
        raise ValueError("snapshot has no entries table")

    entries = {}
    for key, signature in raw_entries.items():
        if type(signature) is not int or signature < 0:
            raise ValueError(f"invalid signature {signature!r} for key {key}")
        entries[int(key)] = signature
    return entries


class ChangeCache:
    """Remembers the on-disk size of every file handled, persisted as one snapshot file."""

    def __init__(self, cache_file: str = CACHE_FILE):
        self.cache_file = cache_file
        self.entries: Dict[int, int] = {}
        self.lock = threading.Lock()
        # Serializes snapshot writes (periodic saver vs. final save vs. reset)
        self.save_lock = threading.Lock()

    @staticmethod
    def identity_for(path: str) -> int:
        return file_identity(path)

    def get(self, identity: int) -> Optional[int]:
        with self.lock:
            return self.entries.get(identity)

    def set(self, identity: int, signature: int):
        with self.lock:
            self.entries[identity] = signature

    def discard(self, identity: int):
        with self.lock:
            self.entries.pop(identity, None)

    def __len__(self) -> int:
        with self.lock:
            return len(self.entries)

    def __contains__(self, identity: int) -> bool:
        with self.lock:
            return identity in self.entries

    def load_snapshot(self) -> int:
        """
        Load the snapshot file, replacing the in-memory mapping.

        A missing or empty snapshot leaves the cache empty.

        Returns:
            Number of entries loaded

        Raises:
            CacheCorruptionError: If the snapshot exists but cannot be read or decoded
        """
        if not os.path.exists(self.cache_file):
            logging.info(f"Cache file {self.cache_file} not found, starting with an empty cache")
            return 0

        logging.info(f"Cache file {self.cache_file} found")
        try:
            with open(self.cache_file, 'rb') as f:
                blob = f.read()
        except OSError as e:
            raise CacheCorruptionError(f"Could not read cache file {self.cache_file}: {e}") from e

        if not blob:
            logging.info(f"Cache file {self.cache_file} is empty, starting with an empty cache")
            return 0

        try:
            entries = _decode_snapshot(blob)
        except ValueError as e:
            raise CacheCorruptionError(f"Error during loading cache file {self.cache_file}: {e}") from e

        with self.lock:
            self.entries = entries
        logging.info(f"Loaded {len(entries)} entries from {self.cache_file}")
        return len(entries)

    def save_snapshot(self) -> bool:
        """
        Write the whole mapping to the snapshot file atomically.

        The mapping is copied first, so workers may keep reading and writing
        while the copy is serialized.

        Returns:
            True if the snapshot was written, False otherwise
        """
        with self.save_lock:
            with self.lock:
                snapshot = dict(self.entries)

            temp_file = self.cache_file + TEMP_SUFFIX
            try:
                cache_dir = os.path.dirname(os.path.abspath(self.cache_file))
                os.makedirs(cache_dir, exist_ok=True)
                blob = _encode_snapshot(snapshot)
                with open(temp_file, 'wb') as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_file, self.cache_file)
                logging.debug(f"Cache saved, entries: {len(snapshot)}, file size: {len(blob)} bytes")
                return True
            except OSError as e:
                logging.error(f"Unable to save cache file {self.cache_file}: {e}")
                if os.path.exists(temp_file):
                    try:
                        os.remove(temp_file)
                    except OSError:
                        pass
                return False

    def reset(self) -> bool:
        """
        Delete the snapshot so the next session starts cold.

        Returns:
            True if a snapshot file was removed, False if there was none

        Raises:
            OSError: If an existing snapshot could not be deleted
        """
        removed = False
        with self.save_lock:
            try:
                os.remove(self.cache_file)
                removed = True
            except FileNotFoundError:
                pass
            try:
                os.remove(self.cache_file + TEMP_SUFFIX)
            except FileNotFoundError:
                pass
            with self.lock:
                self.entries.clear()
        logging.info(f"Cache reset ({self.cache_file} {'deleted' if removed else 'did not exist'})")
        return removed


class PeriodicSaver(threading.Thread):
    """Background thread that saves the cache snapshot every `interval` seconds."""

    def __init__(self, cache: ChangeCache, interval: float = SAVE_INTERVAL_SECONDS):
        super().__init__(name="cache-saver", daemon=True)
        self.cache = cache
        self.interval = interval
        self.save_count = 0
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            logging.debug("Saving cache file...")
            self.cache.save_snapshot()
            self.save_count += 1

    def stop(self):
        """Stop the timer; waits for a save that is already running."""
        self._stop_event.set()
        if self.is_alive():
            self.join()


class FileLock:
    """
    Single-instance lock next to the cache file.

    The lock file is created exclusively and holds the owner's PID and start
    time. A lock left behind by a dead process, or an unreadable one older
    than STALE_LOCK_SECONDS, is removed and creation is retried once.
    """

    def __init__(self, lock_file: str):
        self.lock_file = lock_file
        self.locked = False

    def acquire(self) -> bool:
        """
        Try to take the lock without waiting.

        Returns:
            True if this process now owns the lock, False otherwise
        """
        fd = self._create()
        if fd is None and self._remove_if_stale():
            # Another process may have won the race in between
            fd = self._create()
        if fd is None:
            return False

        try:
            with os.fdopen(fd, 'w') as f:
                f.write(f"{os.getpid()}\n{datetime.now().isoformat()}\n")
        except OSError as e:
            logging.error(f"Could not write lock file {self.lock_file}: {e}")
            self._remove()
            return False
        self.locked = True
        return True

    def _create(self) -> Optional[int]:
        try:
            return os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return None
        except OSError as e:
            logging.error(f"Could not create lock file {self.lock_file}: {e}")
            return None

    def _remove_if_stale(self) -> bool:
        try:
            lock_age = time.time() - os.path.getmtime(self.lock_file)
            with open(self.lock_file, 'r') as f:
                first_line = f.readline().strip()
        except FileNotFoundError:
            return True
        except OSError as e:
            logging.warning(f"Cannot read lock file {self.lock_file}: {e}")
            return False

        if first_line.isdigit():
            lock_pid = int(first_line)
            if is_process_running(lock_pid):
                return False
            logging.warning(
                f"Removing stale lock file: process {lock_pid} is not running "
                f"(lock age: {lock_age / 3600:.1f} hours)"
            )
        elif lock_age > STALE_LOCK_SECONDS:
            logging.warning(f"Removing stale lock file (age: {lock_age / 3600:.1f} hours)")
        else:
            # Unreadable content from a live writer looks the same as a fresh lock
            return False
        return self._remove()

    def _remove(self) -> bool:
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.warning(f"Could not remove lock file {self.lock_file}: {e}")
            return False
        return True

    def release(self):
        if self.locked:
            self._remove()
            self.locked = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError("Another instance is already running or lock file exists")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


# ---------------------------------------------------------------------------
# Compaction invoker
# ---------------------------------------------------------------------------

@dataclass
class CompactionResult:
    path: str
    returncode: Optional[int]
    output: str
    compressed_size: int = 0

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


class CompactionInvoker:
    """
    Runs the external `compact` tool on single files and directories.

    Every child process is dropped to below-normal priority right after it
    starts so that maintenance work does not starve foreground activity.
    There is no timeout; a hung child blocks its caller.
    """

    def __init__(self, tool: Union[str, Sequence[str]] = COMPACT_TOOL, algorithm: str = DEFAULT_ALGORITHM):
        self.command = [tool] if isinstance(tool, str) else list(tool)
        self.algorithm = algorithm

    def build_compact_args(self, path: str, force: bool = False) -> List[str]:
        args = self.command + ['/c', f'/exe:{self.algorithm}']
        if force:
            args.append('/f')
        args.append(path)
        return args

    def build_uncompress_args(self, path: str) -> List[str]:
        return self.command + ['/u', path]

    def compact_file(self, path: str, force: bool = False) -> CompactionResult:
        """
        Compress one file in place.

        Args:
            path: File to compress
            force: Pass /f so files already marked compressed are processed again

        Returns:
            CompactionResult with the tool's exit status and output, and the
            file's on-disk size afterwards. returncode is None if the tool
            could not be started.
        """
        logging.debug(f"Compressing file {path}")
        returncode, output = self._run(self.build_compact_args(path, force), path)
        if returncode is not None and returncode != 0:
            logging.warning(f"{path}: {self.command[-1]} exited with status {returncode}: {output.strip()}")
        return CompactionResult(path, returncode, output, get_compressed_size(path))

    def clear_compressed_attribute(self, path: str) -> bool:
        """
        Remove native NTFS compression from a directory or file.

        LZX compaction does not use the NTFS compressed attribute, and a
        directory marked compressed makes new files below it LZNT1-compressed
        instead.
        """
        logging.info(f"Clearing NTFS compressed attribute on {path}")
        returncode, output = self._run(self.build_uncompress_args(path), path)
        if returncode is not None and returncode != 0:
            logging.warning(f"{path}: uncompress exited with status {returncode}: {output.strip()}")
        return returncode == 0

    def _run(self, args: List[str], path: str) -> Tuple[Optional[int], str]:
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace',
            )
        except OSError as e:
            logging.error(f"Could not start {args[0]} for {path}: {e}")
            return None, ""

        lower_process_priority(proc.pid)
        output, _ = proc.communicate()
        if output:
            logging.debug(output.rstrip())
        return proc.returncode, output or ""


# ---------------------------------------------------------------------------
# Work items and statistics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkItem:
    """One file found by the walker."""
    path: str
    length: int
    attributes: int = 0

    @property
    def extension(self) -> str:
        return os.path.splitext(self.path)[1]

    def has_attribute(self, flag: int) -> bool:
        return bool(self.attributes & flag)


@dataclass
class SessionStats:
    """Counters for one session. Workers update them through increment()/record_compaction()."""
    skipped_by_attribute: int = 0
    skipped_by_extension: int = 0
    skipped_unchanged: int = 0
    skipped_empty: int = 0
    processed: int = 0
    errors: int = 0
    uncompressed_bytes: int = 0
    bytes_before: int = 0
    bytes_after: int = 0
    disk_capacity: int = 0
    disk_free_before: int = 0
    disk_free_after: int = 0
    cache_entries: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0
    compression_ratios: List[float] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, counter: str, amount: int = 1):
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def record_compaction(self, size_before: int, size_after: int):
        with self._lock:
            self.processed += 1
            self.bytes_before += size_before
            self.bytes_after += size_after
            if size_before > 0 and size_after > 0:
                self.compression_ratios.append(size_before / size_after)

    @property
    def total_visited(self) -> int:
        return (
            self.skipped_by_attribute
            + self.skipped_by_extension
            + self.skipped_unchanged
            + self.skipped_empty
            + self.processed
            + self.errors
        )

    @property
    def elapsed_seconds(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    @property
    def space_saved_session(self) -> int:
        """Free-space delta on the volume; other activity on the drive distorts it."""
        return max(0, self.disk_free_after - self.disk_free_before)

    @property
    def space_saved_files(self) -> int:
        return max(0, self.bytes_before - self.bytes_after)

    def per_minute(self, count: int) -> float:
        minutes = self.elapsed_seconds / 60
        if minutes <= 0:
            return 0.0
        return count / minutes

    def summary_lines(self) -> List[str]:
        elapsed = int(self.elapsed_seconds)
        hours, remainder = divmod(elapsed, 3600)
        minutes, seconds = divmod(remainder, 60)
        return [
            "=" * 60,
            "Stats:",
            f"  Files skipped by attributes: {self.skipped_by_attribute}",
            f"  Files skipped by extension: {self.skipped_by_extension}",
            f"  Files skipped by no change: {self.skipped_unchanged}",
            f"  Files skipped as empty: {self.skipped_empty}",
            f"  Files processed by compact: {self.processed}",
            f"  Errors: {self.errors}",
            f"  Total files visited: {self.total_visited}",
            f"  Files in cache: {self.cache_entries}",
            f"  Drive capacity: {format_size(self.disk_capacity)}",
            f"  Approx space saved during this session: {format_size(self.space_saved_session)}",
            f"  Space saved on processed files (best-effort): {format_size(self.space_saved_files)}",
            f"  Visited files uncompressed size (best-effort): {format_size(self.uncompressed_bytes)}",
            "Perf stats:",
            f"  Time elapsed [hh:mm:ss]: {hours:02d}:{minutes:02d}:{seconds:02d}",
            f"  Compressed files per minute: {self.per_minute(self.processed):.2f}",
            f"  Files per minute: {self.per_minute(self.total_visited):.2f}",
            "=" * 60,
        ]


def log_compression_ratio_histogram(compression_ratios: List[float]) -> None:
    """
    Log summary statistics and a text histogram of compression ratios.

    Args:
        compression_ratios: Size before / size after for every processed file
    """
    if not compression_ratios:
        logging.info("No compression ratios to display (no files were processed)")
        return

    ratios_array = np.array(compression_ratios)
    min_ratio = float(np.min(ratios_array))
    max_ratio = float(np.max(ratios_array))
    mean_ratio = float(np.mean(ratios_array))
    median_ratio = float(np.median(ratios_array))
    std_ratio = float(np.std(ratios_array))

    num_bins = 20
    if max_ratio - min_ratio < 0.5:
        num_bins = 10
    elif max_ratio - min_ratio > 15:
        num_bins = 30

    counts, bin_edges = np.histogram(ratios_array, bins=num_bins)
    max_count = int(np.max(counts))
    bar_width = 50

    logging.info("Compression Ratio Statistics")
    logging.info(f"  Files processed:  {len(compression_ratios)}")
    logging.info(f"  Minimum ratio:    {min_ratio:.2f}x")
    logging.info(f"  Maximum ratio:    {max_ratio:.2f}x")
    logging.info(f"  Mean ratio:       {mean_ratio:.2f}x")
    logging.info(f"  Median ratio:     {median_ratio:.2f}x")
    logging.info(f"  Std deviation:    {std_ratio:.2f}x")
    logging.info("-" * 60)
    for i, count in enumerate(counts):
        count = int(count)
        if count == 0:
            continue
        bin_label = f"{bin_edges[i]:.2f}-{bin_edges[i + 1]:.2f}"
        bar = "#" * (int((count / max_count) * bar_width) if max_count > 0 else 0)
        logging.info(f"  {bin_label:>15} |{bar:<{bar_width}} {count:>5} files")
    logging.info("-" * 60)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class FileTaskDispatcher:
    """
    Bounded-concurrency executor for per-file work.

    At most `ceiling` items are admitted (queued or running) at any time;
    submit() blocks until a slot frees up, so walking a huge tree never piles
    up unbounded work. Once the cancel event is set no new items are
    admitted, and drain() waits for the admitted ones to finish.
    """

    def __init__(
        self,
        handler: Callable[[WorkItem], None],
        worker_count: Optional[int] = None,
        ceiling: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.handler = handler
        self.worker_count = worker_count or calculate_worker_count()
        self.ceiling = ceiling or self.worker_count * QUEUE_CEILING_FACTOR
        if self.ceiling < 1:
            raise ValueError("In-flight ceiling must be at least 1")
        self.cancel_event = cancel_event or threading.Event()
        self.in_flight = 0
        self.peak_in_flight = 0
        self.submitted = 0
        self._slots = threading.BoundedSemaphore(self.ceiling)
        self._condition = threading.Condition()
        self._executor = ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix="compact-worker")

    def submit(self, item: WorkItem) -> bool:
        """
        Admit one item, blocking while the pool is at its ceiling.

        Returns:
            True if the item was admitted, False if cancellation stopped admission
        """
        while True:
            if self.cancel_event.is_set():
                return False
            if self._slots.acquire(timeout=ADMISSION_WAIT_SECONDS):
                break
        if self.cancel_event.is_set():
            self._slots.release()
            return False

        with self._condition:
            self.in_flight += 1
            self.submitted += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            self._executor.submit(self._run, item)
        except RuntimeError:
            self._release()
            raise
        return True

    def _run(self, item: WorkItem):
        try:
            self.handler(item)
        except Exception as e:
            logging.error(f"Unexpected error processing {item.path}: {e}", exc_info=True)
        finally:
            self._release()

    def _release(self):
        with self._condition:
            self.in_flight -= 1
            if self.in_flight == 0:
                self._condition.notify_all()
        self._slots.release()

    def drain(self):
        """Wait until every admitted item has finished."""
        with self._condition:
            while self.in_flight > 0:
                self._condition.wait(timeout=ADMISSION_WAIT_SECONDS)

    def shutdown(self):
        self.drain()
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


# ---------------------------------------------------------------------------
# Tree walker
# ---------------------------------------------------------------------------

class TreeWalker:
    """
    Lazily enumerates every file below a root directory.

    Files directly in a directory are yielded before its subdirectories are
    entered. A subdirectory that cannot be enumerated is logged and skipped;
    only a failure on the root itself propagates. After a directory has been
    walked, its NTFS compressed attribute is cleared through
    `on_compressed_directory`.
    """

    def __init__(
        self,
        root: str,
        cancel_event: Optional[threading.Event] = None,
        on_compressed_directory: Optional[Callable[[str], object]] = None,
        exclude_paths: Sequence[str] = (),
    ):
        self.root = os.path.abspath(root)
        self.cancel_event = cancel_event or threading.Event()
        self.on_compressed_directory = on_compressed_directory
        self.exclude_paths = {os.path.normcase(os.path.abspath(p)) for p in exclude_paths}
        self.failed_directories: List[Tuple[str, str]] = []

    def __iter__(self) -> Iterator[WorkItem]:
        return self.walk()

    def walk(self) -> Iterator[WorkItem]:
        subdirectories = yield from self._scan_directory(self.root)
        for directory in subdirectories:
            if self.cancel_event.is_set():
                return
            yield from self._walk_subtree(directory)
        self._finish_directory(self.root)

    def _walk_subtree(self, directory: str) -> Iterator[WorkItem]:
        try:
            subdirectories = yield from self._scan_directory(directory)
        except OSError as e:
            logging.warning(f"Cannot enumerate directory {directory}: {e}")
            self.failed_directories.append((directory, str(e)))
            return

        for subdirectory in subdirectories:
            if self.cancel_event.is_set():
                return
            yield from self._walk_subtree(subdirectory)
        self._finish_directory(directory)

    def _scan_directory(self, directory: str):
        subdirectories = []
        with os.scandir(directory) as entries:
            for entry in entries:
                if self.cancel_event.is_set():
                    break
                try:
                    if entry.is_symlink():
                        continue
                    if entry.is_dir(follow_symlinks=False):
                        # Junctions and other reparse points are not followed
                        if get_file_attributes(entry.stat(follow_symlinks=False)) & FILE_ATTRIBUTE_REPARSE_POINT:
                            continue
                        subdirectories.append(entry.path)
                        continue
                    if not entry.is_file(follow_symlinks=False) or self._is_excluded(entry.path):
                        continue
                    entry_stat = entry.stat(follow_symlinks=False)
                except OSError as e:
                    logging.warning(f"Cannot access {entry.path}: {e}")
                    continue
                yield WorkItem(entry.path, entry_stat.st_size, get_file_attributes(entry_stat))
        return subdirectories

    def _is_excluded(self, path: str) -> bool:
        return bool(self.exclude_paths) and os.path.normcase(os.path.abspath(path)) in self.exclude_paths

    def _finish_directory(self, directory: str):
        if self.on_compressed_directory is None or self.cancel_event.is_set():
            return
        if get_path_attributes(directory) & FILE_ATTRIBUTE_COMPRESSED:
            self.on_compressed_directory(directory)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@dataclass
class SessionOptions:
    skip_extensions: Sequence[str] = ()
    cache_file: str = CACHE_FILE
    compact_tool: Union[str, Sequence[str]] = COMPACT_TOOL
    algorithm: str = DEFAULT_ALGORITHM
    worker_count: Optional[int] = None
    queue_ceiling: Optional[int] = None
    save_interval: float = SAVE_INTERVAL_SECONDS
    show_progress: bool = True
    exclude_paths: Sequence[str] = ()


class CompactionSession:
    """
    One compaction run: load cache, walk, drain, save cache, report.

    cancel() may be called from any thread (e.g. a signal handler). It stops
    the walk and admission of new files; files already handed to `compact`
    are allowed to finish, then the cache is saved as usual.
    """

    def __init__(
        self,
        options: Optional[SessionOptions] = None,
        cache: Optional[ChangeCache] = None,
        invoker: Optional[CompactionInvoker] = None,
    ):
        self.options = options or SessionOptions()
        self.cache = cache if cache is not None else ChangeCache(self.options.cache_file)
        self.invoker = invoker or CompactionInvoker(self.options.compact_tool, self.options.algorithm)
        self.skip_extensions = frozenset(self.options.skip_extensions)
        self.stats = SessionStats()
        self.cancel_event = threading.Event()
        self.cluster_size = DEFAULT_CLUSTER_SIZE
        self.walker: Optional[TreeWalker] = None
        # Set when the root itself could not be walked
        self.root_error: Optional[str] = None
        self._progress = None
        self._started = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self):
        if not self.cancel_event.is_set():
            logging.warning("Terminating...")
            self.cancel_event.set()

    def run(self, root_path: str) -> SessionStats:
        """
        Compact every eligible file below root_path.

        Returns:
            Statistics of the session

        Raises:
            SystemExit: If the cache snapshot is corrupt (EXIT_CACHE_CORRUPT)
        """
        if self._started:
            raise RuntimeError("A compaction session can only be run once")
        self._started = True

        root_path = os.path.abspath(root_path)
        logging.info(f"Starting new compacting session. compact-light version: {__version__}")
        logging.info(f"Running with administrator rights: {is_elevated()}")
        logging.info(f"Starting path {root_path}")

        self.stats.started_at = time.time()
        self.stats.disk_capacity, self.stats.disk_free_before = get_disk_usage(root_path)
        self.cluster_size = get_cluster_size(root_path)

        try:
            self.cache.load_snapshot()
        except CacheCorruptionError as e:
            logging.critical(f"{e}. Terminating.")
            sys.exit(EXIT_CACHE_CORRUPT)

        dispatcher = FileTaskDispatcher(
            self.process_file,
            worker_count=self.options.worker_count,
            ceiling=self.options.queue_ceiling,
            cancel_event=self.cancel_event,
        )
        saver = PeriodicSaver(self.cache, self.options.save_interval)
        saver.start()
        if self.options.show_progress:
            self._progress = tqdm(desc="Compacting", unit="file")

        try:
            self.walker = TreeWalker(
                root_path,
                cancel_event=self.cancel_event,
                on_compressed_directory=self.invoker.clear_compressed_attribute,
                exclude_paths=self._bookkeeping_paths(),
            )
            for item in self.walker:
                if not dispatcher.submit(item):
                    break
        except FileNotFoundError as e:
            self.root_error = f"Directory not found: {e}"
            logging.error(self.root_error)
        except PermissionError as e:
            self.root_error = f"Access denied to directory: {e}"
            logging.error(self.root_error)
        except OSError as e:
            self.root_error = f"Cannot walk {root_path}: {e}"
            logging.error(self.root_error)
        finally:
            # The periodic save must not run after the final one
            saver.stop()
            dispatcher.shutdown()
            if self._progress is not None:
                self._progress.close()
            logging.info("Completed" if not self.cancelled else "Cancelled")
            self.cache.save_snapshot()
            self._finish_stats(root_path)

        return self.stats

    def process_file(self, item: WorkItem) -> None:
        """Run the per-file pipeline; errors are logged and counted, never raised."""
        try:
            self._process_file(item)
        except Exception as e:
            self.stats.increment('errors')
            logging.error(f"Error during processing: file: {item.path}: {e}")
        finally:
            if self._progress is not None:
                self._progress.update(1)
                self._progress.set_postfix(
                    {'Compacted': self.stats.processed, 'Unchanged': self.stats.skipped_unchanged,
                     'Error': self.stats.errors},
                    refresh=False,
                )

    def _process_file(self, item: WorkItem):
        self.stats.increment('uncompressed_bytes', get_disk_occupied_size(item.length, self.cluster_size))

        if item.extension in self.skip_extensions:
            logging.debug(f"Skipping file {item.path}: extension {item.extension} is in the skip list")
            self.stats.increment('skipped_by_extension')
            return

        if item.has_attribute(FILE_ATTRIBUTE_SYSTEM):
            logging.debug(f"Skipping file {item.path}: system file")
            self.stats.increment('skipped_by_attribute')
            return

        force = False
        if item.has_attribute(FILE_ATTRIBUTE_COMPRESSED):
            self.invoker.clear_compressed_attribute(item.path)
            force = True

        if item.length == 0:
            self.stats.increment('skipped_empty')
            return

        identity = self.cache.identity_for(item.path)
        size_before = get_compressed_size(item.path)
        # A size of 0 means the query failed; it never matches a cached signature
        if not force and size_before > 0 and self.cache.get(identity) == size_before:
            logging.debug(
                f"Skipping file {item.path} because it has been visited already and its size did not change"
            )
            self.stats.increment('skipped_unchanged')
            return

        logging.info(f"Compressing file {item.path}")
        result = self.invoker.compact_file(item.path, force=force)
        if not result.succeeded:
            self.stats.increment('errors')
            return

        if result.compressed_size > 0:
            self.cache.set(identity, result.compressed_size)
        else:
            logging.warning(f"Could not read the on-disk size of {item.path}, it will be compacted again next run")
            self.cache.discard(identity)
        self.stats.record_compaction(size_before, result.compressed_size)

    def _bookkeeping_paths(self) -> List[str]:
        cache_file = self.cache.cache_file
        return [cache_file, cache_file + TEMP_SUFFIX] + list(self.options.exclude_paths)

    def _finish_stats(self, root_path: str):
        self.stats.finished_at = time.time()
        _, self.stats.disk_free_after = get_disk_usage(root_path)
        self.stats.cache_entries = len(self.cache)
        for line in self.stats.summary_lines():
            logging.info(line)
        log_compression_ratio_histogram(self.stats.compression_ratios)


# ---------------------------------------------------------------------------
# Configuration, logging and command line
# ---------------------------------------------------------------------------

def load_config(config_path: str) -> List[str]:
    """
    Read the skip-extension list from a JSON config file.

    The file looks like {"skipFileExtensions": [".jpg", ".zip"]}.

    Args:
        config_path: Path to the config file

    Returns:
        List of extensions; empty if the file does not exist

    Raises:
        ValueError: If the file cannot be parsed or has the wrong shape
    """
    if not os.path.exists(config_path):
        logging.info(f"Config file {config_path} not found, no extensions will be skipped")
        return []

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        raise ValueError(f"Could not parse {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Could not parse {config_path}: expected a JSON object")
    extensions = data.get('skipFileExtensions', [])
    if not isinstance(extensions, list) or not all(isinstance(ext, str) for ext in extensions):
        raise ValueError(f"Could not parse {config_path}: skipFileExtensions must be a list of strings")
    return extensions


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> Optional[str]:
    """
    Setup logging configuration.

    Returns:
        Path of the log file, or None when logging to stdout only
    """
    log_format = '%(asctime)s - %(levelname)s - %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = None

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(
            log_dir,
            f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        )
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=handlers
    )
    return log_file


def get_default_root() -> str:
    """Root of the current drive, e.g. C:\\ (or / on POSIX)."""
    return os.path.abspath(os.sep)


def install_signal_handlers(session: CompactionSession):
    """Turn Ctrl+C / SIGTERM into a cooperative cancel of the session."""
    def _handler(signum, frame):
        session.cancel()

    signal.signal(signal.SIGINT, _handler)
    if hasattr(signal, 'SIGTERM'):
        signal.signal(signal.SIGTERM, _handler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compress files with the LZX compact transform, skipping files unchanged since the last run",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Compact a whole drive
  %(prog)s C:\\

  # Compact a folder, skipping already compressed media
  %(prog)s D:\\Data --skip-ext .jpg --skip-ext .zip --log debug

  # Forget everything seen so far; the next run compacts every file again
  %(prog)s --reset-db
        """
    )

    parser.add_argument(
        'path',
        nargs='?',
        default=None,
        help='Root path to start from. All subdirectories are traversed (default: root of current drive)'
    )

    parser.add_argument(
        '--log',
        choices=sorted(LOG_LEVELS),
        default='info',
        help='Log level: none, general (warnings and errors), info (plus statistics), debug (every file)'
    )

    parser.add_argument(
        '--reset-db',
        action='store_true',
        help='Delete the cache file and exit. On the next run every file is passed to compact again'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help=f'JSON config file with "skipFileExtensions" (default: {CONFIG_FILE}, '
             f'or the {CONFIG_ENV_VAR} environment variable)'
    )

    parser.add_argument(
        '--skip-ext',
        action='append',
        default=[],
        metavar='EXT',
        help='File extension to skip, including the dot (case-sensitive, repeatable)'
    )

    parser.add_argument(
        '--cache-file',
        type=str,
        default=CACHE_FILE,
        help=f'Cache file location (default: {CACHE_FILE})'
    )

    parser.add_argument(
        '--tool',
        type=str,
        default=COMPACT_TOOL,
        help=f'Compression tool to run (default: {COMPACT_TOOL})'
    )

    parser.add_argument(
        '--algorithm',
        choices=ALGORITHMS,
        default=DEFAULT_ALGORITHM,
        help=f'Compression algorithm passed as /exe: (default: {DEFAULT_ALGORITHM})'
    )

    parser.add_argument(
        '--workers',
        type=int,
        default=None,
        help='Number of worker threads (default: number of logical CPUs)'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Do not show the progress bar'
    )

    parser.add_argument(
        '--log-dir',
        type=str,
        default=None,
        help='Also write the log to a timestamped file in this directory'
    )

    args = parser.parse_args(argv)

    log_file = setup_logging(args.log_dir, LOG_LEVELS[args.log])

    if args.reset_db:
        try:
            ChangeCache(args.cache_file).reset()
        except OSError as e:
            logging.error(f"Could not reset cache file {args.cache_file}: {e}")
            print(f"Error: could not reset cache file {args.cache_file}: {e}", file=sys.stderr)
            return 1
        return 0

    config_path = args.config or os.getenv(CONFIG_ENV_VAR) or CONFIG_FILE
    try:
        skip_extensions = load_config(config_path) + args.skip_ext
    except ValueError as e:
        logging.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.workers is not None and args.workers < 1:
        print("Error: --workers must be at least 1", file=sys.stderr)
        return 1

    lock_file = os.path.join(os.path.dirname(os.path.abspath(args.cache_file)), LOCK_FILE)
    exclude_paths = [lock_file] + ([log_file] if log_file else [])
    options = SessionOptions(
        skip_extensions=skip_extensions,
        cache_file=args.cache_file,
        compact_tool=args.tool,
        algorithm=args.algorithm,
        worker_count=args.workers,
        show_progress=not args.no_progress,
        exclude_paths=exclude_paths,
    )
    session = CompactionSession(options)
    install_signal_handlers(session)

    try:
        with FileLock(lock_file):
            session.run(args.path or get_default_root())
    except RuntimeError as e:
        logging.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logging.warning("Interrupted by user")
        return 130

    if session.cancelled:
        return 130
    if session.root_error:
        print(f"Error: {session.root_error}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
