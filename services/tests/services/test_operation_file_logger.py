"""Tests for the newline-JSON operation mirror."""

import json
from unittest.mock import MagicMock, patch

import pytest

from berth.services import operation_file_logger
from berth.services.operation_file_logger import (
    FILE_NAME,
    close_operation_file_logger,
    init_operation_file_logger,
    log_operation_created,
    log_operation_finalized,
)


def _log(**overrides):
    log = MagicMock()
    log.id = 7
    log.user_id = 1
    log.server_id = 2
    log.stack_name = "web"
    log.operation_id = "op_1"
    log.command = "up"
    log.options = ["-d"]
    log.services = []
    log.success = True
    log.exit_code = 0
    log.duration_ms = 1500
    for name, value in overrides.items():
        setattr(log, name, value)
    return log


@pytest.fixture
def log_file(tmp_path):
    cfg = MagicMock(log_to_file=True, log_dir=str(tmp_path), max_size_mb=1, backup_count=2)
    with patch("berth.services.operation_file_logger.settings") as mock_settings:
        mock_settings.operation_logs = cfg
        init_operation_file_logger()
    yield tmp_path / FILE_NAME
    close_operation_file_logger()


def _entries(path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestOperationFileLogger:
    def test_disabled_writes_nothing(self, tmp_path):
        cfg = MagicMock(log_to_file=False, log_dir=str(tmp_path))
        with patch("berth.services.operation_file_logger.settings") as mock_settings:
            mock_settings.operation_logs = cfg
            init_operation_file_logger()

        log_operation_created(_log())

        assert operation_file_logger._file_logger is None
        assert not (tmp_path / FILE_NAME).exists()

    def test_created_entry(self, log_file):
        log_operation_created(_log())

        (entry,) = _entries(log_file)
        assert entry["status"] == "started"
        assert entry["operation_id"] == "op_1"
        assert entry["options"] == '["-d"]'
        assert "services" not in entry
        assert entry["timestamp"].endswith("Z")

    def test_finalized_entries(self, log_file):
        log_operation_finalized(_log())
        log_operation_finalized(_log(success=False, exit_code=2))
        log_operation_finalized(_log(success=None, exit_code=None, duration_ms=None))

        success, failed, unknown = _entries(log_file)
        assert success["status"] == "success"
        assert success["duration_ms"] == 1500
        assert failed["status"] == "failed"
        assert failed["exit_code"] == 2
        assert unknown["status"] == "unknown"
        assert "exit_code" not in unknown
