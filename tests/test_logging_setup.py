"""Tests for the package logger configuration."""

from __future__ import annotations

from logging.handlers import RotatingFileHandler
from pathlib import Path

import comandas


def test_resolve_log_dir_defaults_to_working_directory(tmp_path, monkeypatch):
    monkeypatch.delenv(comandas.LOG_DIR_ENV, raising=False)
    monkeypatch.chdir(tmp_path)

    assert comandas.resolve_log_dir() == tmp_path / ".logs"


def test_resolve_log_dir_honours_environment(tmp_path, monkeypatch):
    target = tmp_path / "bar-logs"
    monkeypatch.setenv(comandas.LOG_DIR_ENV, str(target))

    assert comandas.resolve_log_dir() == target


def test_package_logger_writes_outside_the_package_directory():
    package_dir = Path(comandas.__file__).resolve().parent
    file_handlers = [handler for handler in comandas.log.handlers if isinstance(handler, RotatingFileHandler)]

    assert package_dir not in comandas.LOG_FILE.resolve().parents
    for handler in file_handlers:
        assert (handler.maxBytes, handler.backupCount) == (1_000_000, 5)
