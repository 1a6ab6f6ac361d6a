"""Tests for the JSON report feature (--report)."""

import json

import pytest

from kestrel.report import AgentError, ConfigError, ProviderError, ReportCollector


def _build(rc, **overrides):
    kwargs = dict(
        task="t",
        model="m",
        provider="p",
        settings={},
        outcome="success",
        answer="ok",
        exit_code=0,
        iterations=1,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector(), task="hello", answer="done", iterations=0)
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert r["stats"]["iterations"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["llm_calls"] == 0
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "ok")
        rc.record_llm_call(2, 1.3, 1500, "error", attempt=1, error="rate limit")
        assert rc.llm_calls == 2
        assert rc.retries == 1
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_iteration_seen == 2
        assert "error" not in rc.events[0]
        assert rc.events[1]["error"] == "rate limit"
        assert rc.events[1]["attempt"] == 1

    def test_tool_call_tracking(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "read_file", {"file_path": "a"}, True, 0.01, 500)
        rc.record_tool_call(1, "read_file", {"file_path": "b"}, False, 0.02, 30, decision="deny")
        rc.record_tool_call(2, "edit_file", {"file_path": "a"}, True, 0.05, 200)
        assert rc.tool_stats["read_file"] == {"succeeded": 1, "failed": 1}
        assert rc.total_tool_time == pytest.approx(0.08)
        assert rc.events[1]["decision"] == "deny"
        r = _build(rc)
        assert r["stats"]["tool_calls_total"] == 3
        assert r["stats"]["tool_calls_failed"] == 1

    def test_compaction_and_doom_loop(self):
        rc = ReportCollector()
        rc.record_compaction(3, "mask-low", 95000, 80000)
        rc.record_compaction(5, "summarize", 90000, 20000)
        rc.record_doom_loop(6, "warn", 3)
        assert rc.maskings == 1
        assert rc.compactions == 1
        assert rc.doom_loop_interventions == 1
        assert [e["type"] for e in rc.events] == ["compaction", "compaction", "doom_loop"]

    def test_error_outcome(self):
        r = _build(
            ReportCollector(),
            outcome="error",
            answer=None,
            exit_code=1,
            error_message="provider error: refused",
        )
        assert r["result"]["error_message"] == "provider error: refused"

    def test_write(self, tmp_path):
        rc = ReportCollector()
        rc.finalize(
            task="t",
            model="m",
            provider="p",
            settings={"mode": "yolo"},
            outcome="success",
            answer="a",
            exit_code=0,
            iterations=2,
        )
        path = tmp_path / "report.json"
        rc.write(str(path))
        data = json.loads(path.read_text())
        assert data["settings"] == {"mode": "yolo"}
        assert data["stats"]["iterations"] == 2


def test_error_hierarchy():
    assert issubclass(ConfigError, AgentError)
    assert issubclass(ProviderError, AgentError)
