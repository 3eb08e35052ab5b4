"""Tests for utility functions."""

import json
import logging
import os
import pytest
from unittest.mock import patch, Mock

import psutil

from compact_light import (
    format_size,
    get_disk_occupied_size,
    get_disk_usage,
    get_compressed_size,
    get_file_attributes,
    is_process_running,
    calculate_worker_count,
    file_identity,
    load_config,
    setup_logging,
    log_compression_ratio_histogram,
    SessionStats,
    WorkItem,
    FILE_ATTRIBUTE_SYSTEM,
    FILE_ATTRIBUTE_COMPRESSED,
    LOG_FILE_PREFIX,
)
from tests.conftest import write_file


class TestSizes:
    """Test size arithmetic and formatting."""

    @pytest.mark.parametrize("size, expected", [
        (0, "0.0 bytes"),
        (512, "512.0 bytes"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5.0 MB"),
        (1024 ** 3, "1.0 GB"),
        (3 * 1024 ** 5, "3072.0 TB"),
    ])
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

    @pytest.mark.parametrize("length, expected", [
        (0, 0),
        (1, 4096),
        (4096, 4096),
        (4097, 8192),
    ])
    def test_disk_occupied_size(self, length, expected):
        assert get_disk_occupied_size(length, 4096) == expected

    def test_compressed_size_of_missing_file(self, tmp_path):
        assert get_compressed_size(str(tmp_path / "missing.bin")) == 0

    @pytest.mark.skipif(os.name == 'nt', reason="allocated blocks are a POSIX notion")
    def test_compressed_size_of_regular_file(self, tmp_test_dir):
        data = write_file(tmp_test_dir / "data.bin", 10000)
        assert get_compressed_size(str(data)) == os.stat(data).st_blocks * 512


class TestDiskUsage:
    """Test volume queries through psutil."""

    def test_disk_usage(self, tmp_path):
        usage = Mock(total=1000, free=250)
        with patch('psutil.disk_usage', return_value=usage):
            assert get_disk_usage(str(tmp_path)) == (1000, 250)

    def test_disk_usage_failure(self, tmp_path, caplog):
        with patch('psutil.disk_usage', side_effect=OSError("not a volume")):
            assert get_disk_usage(str(tmp_path)) == (0, 0)
        assert "Could not query disk usage" in caplog.text


class TestProcessUtilities:
    """Test process checks."""

    def test_is_process_running_current(self):
        assert is_process_running(os.getpid())

    def test_is_process_running_uses_psutil(self):
        with patch('psutil.pid_exists', return_value=False) as mock_exists:
            assert not is_process_running(4321)
        mock_exists.assert_called_once_with(4321)

    def test_is_process_running_error(self):
        with patch('psutil.pid_exists', side_effect=psutil.Error()):
            assert not is_process_running(4321)

    def test_worker_count(self):
        with patch('multiprocessing.cpu_count', return_value=6):
            assert calculate_worker_count() == 6


class TestFileIdentity:
    """Test cache keys derived from paths."""

    def test_identity_is_stable(self, tmp_test_dir):
        path = str(tmp_test_dir / "a.txt")
        assert file_identity(path) == file_identity(path)

    def test_identity_is_64_bit(self, tmp_test_dir):
        assert 0 <= file_identity(str(tmp_test_dir / "a.txt")) < 2 ** 64

    def test_relative_and_absolute_paths_match(self, tmp_test_dir, monkeypatch):
        monkeypatch.chdir(tmp_test_dir)
        assert file_identity("a.txt") == file_identity(str(tmp_test_dir / "a.txt"))

    def test_different_paths_differ(self, tmp_test_dir):
        assert file_identity(str(tmp_test_dir / "a.txt")) != file_identity(str(tmp_test_dir / "b.txt"))


class TestAttributes:
    """Test attribute helpers."""

    def test_missing_attribute_field_is_zero(self):
        assert get_file_attributes(Mock(spec=[])) == 0

    def test_attribute_field(self):
        assert get_file_attributes(Mock(st_file_attributes=FILE_ATTRIBUTE_SYSTEM)) == FILE_ATTRIBUTE_SYSTEM

    def test_work_item(self):
        item = WorkItem("/data/archive.tar.gz", 10, FILE_ATTRIBUTE_COMPRESSED)
        assert item.extension == ".gz"
        assert item.has_attribute(FILE_ATTRIBUTE_COMPRESSED)
        assert not item.has_attribute(FILE_ATTRIBUTE_SYSTEM)

    def test_work_item_without_extension(self):
        assert WorkItem("/data/Makefile", 10).extension == ""


class TestConfig:
    """Test the JSON config file."""

    def test_missing_config(self, tmp_path):
        assert load_config(str(tmp_path / "missing.json")) == []

    def test_valid_config(self, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"skipFileExtensions": [".jpg", ".zip"]}), encoding='utf-8')
        assert load_config(str(config)) == [".jpg", ".zip"]

    def test_config_without_key(self, tmp_path):
        config = tmp_path / "config.json"
        config.write_text("{}", encoding='utf-8')
        assert load_config(str(config)) == []

    @pytest.mark.parametrize("content", [
        "{ not json",
        "[]",
        '{"skipFileExtensions": ".jpg"}',
        '{"skipFileExtensions": [1, 2]}',
    ])
    def test_invalid_config(self, tmp_path, content):
        config = tmp_path / "config.json"
        config.write_text(content, encoding='utf-8')
        with pytest.raises(ValueError):
            load_config(str(config))


class TestLogging:
    """Test logging setup."""

    def test_setup_logging_without_dir(self):
        assert setup_logging() is None

    def test_setup_logging_creates_log_file(self, tmp_path):
        log_dir = tmp_path / "logs"
        log_file = setup_logging(str(log_dir))

        assert log_file is not None
        assert os.path.dirname(log_file) == str(log_dir)
        assert os.path.basename(log_file).startswith(LOG_FILE_PREFIX)
        assert log_dir.is_dir()


class TestSessionStats:
    """Test the statistics record."""

    def test_total_visited(self):
        stats = SessionStats(skipped_by_attribute=1, skipped_by_extension=2, skipped_unchanged=3,
                             skipped_empty=4, processed=5, errors=6)
        assert stats.total_visited == 21

    def test_record_compaction(self):
        stats = SessionStats()
        stats.record_compaction(8000, 2000)
        stats.record_compaction(100, 0)

        assert stats.processed == 2
        assert stats.space_saved_files == 6100
        assert stats.compression_ratios == [4.0]

    def test_per_minute(self):
        stats = SessionStats(started_at=100.0, finished_at=220.0)
        assert stats.per_minute(10) == 5.0

    def test_per_minute_without_elapsed_time(self):
        assert SessionStats().per_minute(10) == 0.0

    def test_space_saved_session_never_negative(self):
        stats = SessionStats(disk_free_before=1000, disk_free_after=400)
        assert stats.space_saved_session == 0

    def test_summary_lines(self):
        stats = SessionStats(processed=4, skipped_unchanged=7, errors=1, started_at=0.0, finished_at=3725.0)
        text = "\n".join(stats.summary_lines())

        assert "Files processed by compact: 4" in text
        assert "Files skipped by no change: 7" in text
        assert "Total files visited: 12" in text
        assert "01:02:05" in text

    def test_increment_is_thread_safe(self):
        import threading

        stats = SessionStats()

        def _bump():
            for _ in range(1000):
                stats.increment('skipped_unchanged')

        threads = [threading.Thread(target=_bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert stats.skipped_unchanged == 4000


class TestHistogram:
    """Test the compression ratio histogram."""

    def test_empty(self, caplog):
        caplog.set_level(logging.INFO)
        log_compression_ratio_histogram([])
        assert "No compression ratios" in caplog.text

    def test_statistics_are_logged(self, caplog):
        caplog.set_level(logging.INFO)
        log_compression_ratio_histogram([1.0, 2.0, 3.0, 4.0])

        assert "Compression Ratio Statistics" in caplog.text
        assert "Minimum ratio:    1.00x" in caplog.text
        assert "Maximum ratio:    4.00x" in caplog.text
        assert "Median ratio:     2.50x" in caplog.text
        assert "files" in caplog.text
