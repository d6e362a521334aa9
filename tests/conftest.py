import os
import subprocess
from pathlib import Path
from typing import Callable

import pytest

from logarchive import SECONDS_PER_DAY, ConfigNamespace, FilesystemCompression, Logger, LogLevel

NOW = 1_700_000_000


def set_age(path: Path, age_days: float, now: int = NOW) -> int:
    timestamp = int(now - age_days * SECONDS_PER_DAY)
    os.utime(path, (timestamp, timestamp))
    return timestamp


@pytest.fixture
def make_file() -> Callable[..., Path]:
    """Factory creating a file (and its parents) with a given age in days relative to NOW."""

    def _make_file(path: Path, age_days: float = 0, content: str = "log line\n" * 50) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        set_age(path, age_days)
        return path

    return _make_file


@pytest.fixture
def logger() -> Logger:
    return Logger(LogLevel.DEBUG)


@pytest.fixture
def make_args(tmp_path: Path) -> Callable[..., ConfigNamespace]:
    def _make_args(**overrides: object) -> ConfigNamespace:
        defaults = dict(
            path=str(tmp_path / "src"),
            destination=None,
            log_file=str(tmp_path / "logarchive.log"),
            days=30,
            archive_days=90,
            archive_only=False,
            reclaim_compression=False,
            dry_run=False,
            verbose=LogLevel.DEBUG,
            fail_on_error=False,
            system_event=False,
            stacktrace=False,
        )
        defaults.update(overrides)
        return ConfigNamespace(**defaults)

    return _make_args


class FakeCompression(FilesystemCompression):
    """Capability reporting every file as compressed to a quarter of its size."""

    name = "fake"
    supported = True

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.decompressed: list[Path] = []

    def is_compressed(self, file_stat: os.stat_result) -> bool:
        return True

    def on_disk_size(self, file: Path, file_stat: os.stat_result) -> int:
        return file_stat.st_size // 4

    def decompress(self, file: Path) -> None:
        if self.fail:
            raise subprocess.CalledProcessError(1, ["compact", "/u", str(file)])
        self.decompressed.append(file)
