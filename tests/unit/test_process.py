# tests/unit/test_process.py
"""Tests for process helpers, resource telemetry, logging setup and checkpoints."""

import json
import logging
import os
import subprocess
import time
from unittest.mock import MagicMock, patch

import pytest

from shipyard.logging_config import JsonFormatter, configure_logging
from shipyard.models.runs import PipelineRun
from shipyard.models.templates import PipelineTemplate, StageSpec
from shipyard.pipeline.checkpoint import CheckpointManager
from shipyard.pipeline.worktree import worktree_branch, worktree_name
from shipyard.procutil import decode_output, pid_alive, process_usage, terminate_process_tree
from shipyard.scheduler.resources import ResourceMonitor, ResourceSnapshot


class TestProcutil:
    def test_pid_alive(self):
        assert pid_alive(os.getpid())
        assert not pid_alive(None)
        assert not pid_alive(0)

    def test_zombie_counts_as_dead(self):
        proc = subprocess.Popen(["true"])
        deadline = time.monotonic() + 5
        while pid_alive(proc.pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not pid_alive(proc.pid)
        proc.wait()

    def test_terminate_process_tree(self):
        proc = subprocess.Popen(["sh", "-c", "sleep 60 & sleep 60"])
        time.sleep(0.2)
        assert terminate_process_tree(proc.pid, grace_s=2)
        assert not pid_alive(proc.pid)
        proc.wait(timeout=5)

    def test_terminate_missing_process(self):
        proc = subprocess.Popen(["true"])
        proc.wait()
        assert terminate_process_tree(proc.pid)

    def test_process_usage(self):
        rss_mb, _ = process_usage(os.getpid())
        assert rss_mb > 0

    def test_decode_output(self):
        assert decode_output(b"caf\xe9") == "caf\ufffd"
        assert decode_output("already text") == "already text"
        assert decode_output(None) == ""


class TestResourceMonitor:
    def test_snapshot(self):
        with patch("psutil.cpu_count", return_value=8), patch(
            "psutil.getloadavg", return_value=(4.0, 3.0, 2.0)
        ), patch("psutil.virtual_memory", return_value=MagicMock(available=16 * 1024**3)):
            snapshot = ResourceMonitor().snapshot()

        assert snapshot == ResourceSnapshot(cpu_count=8, load_ratio=0.5, available_mem_gb=16.0)


class TestLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_formatter(self):
        record = logging.LogRecord("shipyard.x", logging.WARNING, __file__, 1, "slot %d free", (2,), None)
        data = json.loads(JsonFormatter().format(record))
        assert (data["level"], data["logger"], data["msg"]) == ("WARNING", "shipyard.x", "slot 2 free")

    def test_configure_logging_to_file(self, tmp_path):
        log_file = tmp_path / "logs" / "daemon.log"
        configure_logging(log_file=log_file)
        logging.getLogger("shipyard.test").info("cycle done")
        logging.getLogger().handlers[0].flush()

        line = json.loads(log_file.read_text().splitlines()[-1])
        assert line["msg"] == "cycle done"
        assert len(logging.getLogger().handlers) == 1


class TestCheckpointManager:
    def _run(self):
        run = PipelineRun(goal="g", template=PipelineTemplate(name="t", stages=[StageSpec(id="intake")]))
        run.init_stage_map()
        return run

    def test_save_order_and_latest(self, tmp_path):
        manager = CheckpointManager(tmp_path / "checkpoints")
        run = self._run()
        manager.save(run, "intake", 1)
        manager.save(run, "build", 1)
        path = manager.save(run, "build", 2)

        assert path.name == "0003-build-2.json"
        latest = manager.load_latest(run.run_id)
        assert (latest.seq, latest.stage, latest.attempt) == (3, "build", 2)
        assert latest.run.run_id == run.run_id

    def test_malformed_checkpoint_skipped(self, tmp_path):
        manager = CheckpointManager(tmp_path / "checkpoints")
        run = self._run()
        manager.save(run, "intake", 1)
        (tmp_path / "checkpoints" / run.run_id / "0002-plan-1.json").write_text("{")
        assert [c.stage for c in manager.list(run.run_id)] == ["intake"]

    def test_clear(self, tmp_path):
        manager = CheckpointManager(tmp_path / "checkpoints")
        run = self._run()
        manager.save(run, "intake", 1)
        manager.clear(run.run_id)
        assert manager.load_latest(run.run_id) is None


class TestWorktreeNames:
    def test_names(self):
        assert worktree_name("Add greeting", None) == "pipeline-add-greeting"
        assert worktree_name("ignored", 12) == "pipeline-issue-12"
        assert worktree_name("x", 1, "My Tree") == "my-tree"
        assert worktree_branch("pipeline-issue-12") == "pipeline/pipeline-issue-12"
