"""Tests for logging setup and operation tracking."""

from types import SimpleNamespace

import pytest

from mount_partition.logging import (
    LoggerFactory,
    _should_log_command_output,
    logger,
    operation_context,
    setup_logging,
)


@pytest.fixture
def captured():
    """Collect formatted messages with their bound extras."""
    messages = []
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})
    logger.add(
        lambda message: messages.append(message.record),
        level="TRACE",
        format="{message}",
    )
    return messages


class TestSetupLogging:
    def test_file_sinks(self, tmp_path):
        log_dir = tmp_path / "logs"

        setup_logging(log_dir=log_dir)
        logger.info("hello")
        logger.complete()

        assert (log_dir / "operations.log").exists()
        assert (log_dir / "structured.jsonl").exists()
        assert not (log_dir / "debug.log").exists()
        assert not (log_dir / "trace.log").exists()

    def test_debug_and_trace_files(self, tmp_path):
        log_dir = tmp_path / "logs"

        setup_logging(debug=True, trace=True, log_dir=log_dir)
        logger.complete()

        assert (log_dir / "debug.log").exists()
        assert (log_dir / "trace.log").exists()

    def test_quiet_console_without_files(self, tmp_path, capsys):
        setup_logging(log_to_file=False)
        logger.error("should not be printed")

        assert capsys.readouterr().err == ""
        assert not (tmp_path / "logs").exists()

    def test_verbose_console(self, capsys):
        setup_logging(verbose=True, log_to_file=False)
        logger.info("visible progress")
        logger.debug("hidden detail")

        err = capsys.readouterr().err
        assert "visible progress" in err
        assert "hidden detail" not in err


class TestCommandOutputFilter:
    def _record(self, level_no, tags):
        return {"extra": {"tags": tags}, "level": SimpleNamespace(no=level_no)}

    def test_command_output_only_at_trace(self):
        assert _should_log_command_output(self._record(5, ["command", "command-output"]))
        assert not _should_log_command_output(self._record(10, ["command-output"]))

    def test_other_records_pass(self):
        assert _should_log_command_output(self._record(20, ["mount"]))
        assert _should_log_command_output({"extra": {}, "level": SimpleNamespace(no=20)})


class TestOperationContext:
    def test_success(self, captured):
        with operation_context("mount", image="/srv/disk.raw", partition=1) as log:
            log.info("working")

        texts = [record["message"] for record in captured]
        assert texts == ["Mount started", "working", "Mount completed"]
        assert captured[0]["extra"]["image"] == "/srv/disk.raw"
        assert captured[1]["extra"]["job_id"].startswith("mount-")
        assert captured[-1]["level"].name == "SUCCESS"

    def test_failure_is_logged_and_reraised(self, captured):
        with pytest.raises(ValueError):
            with operation_context("detach"):
                raise ValueError("bad {placeholder} in message")

        failure = captured[-1]
        assert failure["level"].name == "ERROR"
        assert failure["message"] == "Detach failed: bad {placeholder} in message"
        assert failure["extra"]["error_type"] == "ValueError"

    def test_job_ids_are_unique(self, captured):
        with operation_context("attach"):
            pass
        with operation_context("attach"):
            pass

        job_ids = {record["extra"]["job_id"] for record in captured}
        assert len(job_ids) == 2


class TestLoggerFactory:
    def test_domain_sources(self, captured):
        LoggerFactory.for_loop().info("loop")
        LoggerFactory.for_locator().info("locate")
        LoggerFactory.for_mount().info("mount")

        sources = [record["extra"]["source"] for record in captured]
        assert sources == ["loop", "locate", "mount"]
        assert captured[2]["extra"]["tags"] == ["mount", "storage"]
