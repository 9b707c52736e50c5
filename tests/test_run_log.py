"""Tests for the JSONL run logger."""

from taskloop.models import RunEventType
from taskloop.run_log import RunLogger, read_run_log


class TestRunLogger:
    """Tests for RunLogger."""

    def test_events_written_as_json_lines(self, workspace):
        with RunLogger(workspace, "run-1", "w1") as logger:
            logger.log_run_start(config={"dry_run": True}, max_tasks=2)
            logger.log_event(RunEventType.SELECTION, task_id="002-001-x", reason="todo")
            logger.log_run_end("completed")

        entries = read_run_log(workspace.run_log_path("run-1"))
        assert [e["type"] for e in entries] == ["run_start", "selection", "run_end"]
        assert all(e["worker_id"] == "w1" for e in entries)
        assert entries[0]["config"] == {"dry_run": True}
        assert entries[1]["task_id"] == "002-001-x"
        assert entries[2]["event_counts"] == {"run_start": 1, "selection": 1}
        assert "timestamp" in entries[0]

    def test_output_is_truncated(self, workspace):
        with RunLogger(workspace, "run-1", "w1", output_truncation_limit=10) as logger:
            logger.log_event(RunEventType.PHASE_END, output="x" * 50 + "tail")

        entry = read_run_log(workspace.run_log_path("run-1"))[0]
        assert entry["output"] == "xxxxxxtail"

    def test_truncation_disabled(self, workspace):
        logger = RunLogger(workspace, "run-1", "w1", output_truncation_limit=0)
        assert logger.truncate("y" * 10000) == "y" * 10000
        assert logger.truncate(None) is None

    def test_appends_across_instances(self, workspace):
        for worker in ("w1", "w2"):
            with RunLogger(workspace, "shared", worker) as logger:
                logger.log_event(RunEventType.WARNING, message="hello")

        assert [e["worker_id"] for e in read_run_log(workspace.run_log_path("shared"))] == ["w1", "w2"]

    def test_read_skips_torn_line(self, workspace):
        path = workspace.run_log_path("torn")
        path.write_text('{"type": "run_start"}\n{"type": "sele')
        assert read_run_log(path) == [{"type": "run_start"}]
