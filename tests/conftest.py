"""Shared fixtures and test utilities for compaction tests."""

import os
import sys
import logging
import threading
from pathlib import Path
from typing import List, Optional
from unittest.mock import patch

import pytest

# Add parent directory to path to import the module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import compact_light
from compact_light import CompactionResult, SessionOptions


# Constants from the module
CACHE_FILE = compact_light.CACHE_FILE
LOCK_FILE = compact_light.LOCK_FILE
TEMP_SUFFIX = compact_light.TEMP_SUFFIX


# Stand-in for the `compact` tool: records its arguments (one line per call)
# in the log file given as first argument, fails for files named *fail*.
FAKE_COMPACT_SOURCE = '''
import os
import sys

log_path = sys.argv[1]
args = sys.argv[2:]
with open(log_path, "a", encoding="utf-8") as f:
    f.write("\\t".join(args) + "\\n")
target = args[-1]
if "fail" in os.path.basename(target):
    print("Error compressing " + target)
    sys.exit(1)
print("Compressing " + target + " [OK]")
'''


def write_file(path: Path, size: int) -> Path:
    """Create a file of exactly `size` bytes, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(b"x" * size)
    return path


def logical_size(path: str) -> int:
    """Deterministic stand-in for get_compressed_size: the logical length."""
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def read_invocations(log_path: Path) -> List[List[str]]:
    """Argument lists of every call made to the fake compact tool."""
    if not log_path.exists():
        return []
    with open(log_path, 'r', encoding='utf-8') as f:
        return [line.rstrip("\n").split("\t") for line in f if line.strip()]


class RecordingInvoker:
    """In-process invoker double; records calls and never touches the files."""

    def __init__(self, returncode: int = 0, on_compact=None):
        self.returncode = returncode
        self.on_compact = on_compact
        self.compacted: List[str] = []
        self.forced: List[str] = []
        self.cleared: List[str] = []
        self.lock = threading.Lock()

    def compact_file(self, path: str, force: bool = False) -> CompactionResult:
        with self.lock:
            self.compacted.append(path)
            if force:
                self.forced.append(path)
        if self.on_compact is not None:
            self.on_compact(path)
        return CompactionResult(path, self.returncode, "", compact_light.get_compressed_size(path))

    def clear_compressed_attribute(self, path: str) -> bool:
        with self.lock:
            self.cleared.append(path)
        return True


@pytest.fixture
def tmp_test_dir(tmp_path):
    """Create a temporary test directory that's cleaned up after test."""
    test_dir = tmp_path / "test_data"
    test_dir.mkdir()
    return test_dir


@pytest.fixture
def nested_test_dir(tmp_test_dir):
    """Create a nested directory structure for testing."""
    dirs = [
        tmp_test_dir / "dir1" / "subdir1",
        tmp_test_dir / "dir1" / "subdir2" / "nested",
        tmp_test_dir / "dir2" / "subdir3",
        tmp_test_dir / "dir3",
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
    return tmp_test_dir


@pytest.fixture
def sample_files(nested_test_dir):
    """Create files in nested directory structure."""
    locations = [
        ("dir1", "subdir1", "file1.txt"),
        ("dir1", "subdir2", "nested", "file2.txt"),
        ("dir2", "subdir3", "file3.log"),
        ("dir3", "file4.dat"),
        ("file5.txt",),
    ]
    files = []
    for index, location in enumerate(locations):
        files.append(write_file(nested_test_dir / Path(*location), 1000 * (index + 1)))
    return files


@pytest.fixture
def cache_file(tmp_path):
    """Cache file path outside of the tree being compacted."""
    return tmp_path / CACHE_FILE


@pytest.fixture
def corrupted_cache_file(cache_file):
    """Create a corrupted cache file (invalid JSON)."""
    with open(cache_file, 'wb') as f:
        f.write(b"{ invalid json }")
    return cache_file


@pytest.fixture
def lock_file(tmp_test_dir):
    """Create a lock file path."""
    return tmp_test_dir / LOCK_FILE


@pytest.fixture
def existing_lock_file(lock_file):
    """Create an existing lock file."""
    with open(lock_file, 'w') as f:
        f.write(f"{os.getpid()}\n2024-01-01T00:00:00\n")
    return lock_file


@pytest.fixture
def stale_lock_file(lock_file):
    """Create a stale lock file (old timestamp)."""
    with open(lock_file, 'w') as f:
        f.write("99999\n2020-01-01T00:00:00\n")
    old_time = os.path.getmtime(lock_file) - (25 * 3600)
    os.utime(lock_file, (old_time, old_time))
    return lock_file


@pytest.fixture
def fake_compact_tool(tmp_path):
    """Command prefix running the fake compact tool, plus its call log."""
    script = tmp_path / "fake_compact.py"
    script.write_text(FAKE_COMPACT_SOURCE, encoding='utf-8')
    log_path = tmp_path / "compact_calls.log"
    return [sys.executable, str(script), str(log_path)], log_path


@pytest.fixture
def mock_compressed_size():
    """Make the on-disk size query return the logical file length."""
    with patch('compact_light.get_compressed_size', side_effect=logical_size):
        yield


@pytest.fixture
def session_options(cache_file, fake_compact_tool):
    """Options for a quiet, small session using the fake tool."""
    command, _ = fake_compact_tool

    def _make(skip_extensions=(), **overrides):
        values = dict(
            skip_extensions=skip_extensions,
            cache_file=str(cache_file),
            compact_tool=command,
            worker_count=2,
            queue_ceiling=4,
            save_interval=3600,
            show_progress=False,
        )
        values.update(overrides)
        return SessionOptions(**values)

    return _make


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    yield
    logging.root.handlers = original_handlers
    logging.root.setLevel(original_level)
