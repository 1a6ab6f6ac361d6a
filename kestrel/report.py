"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown provider, bad TOML, etc.)."""


class ProviderError(AgentError):
    """Raised when a provider call fails terminally for the current turn."""


class SummarizeError(AgentError):
    """Raised when the summarizer cannot produce a summary."""


class SessionNotFound(AgentError):
    """Raised by a store when a session id is unknown."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.maskings = 0
        self.doom_loop_interventions = 0
        self.retries = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_iteration_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        iteration: int,
        duration: float,
        prompt_tokens: int,
        outcome: str,
        *,
        attempt: int = 0,
        error: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if attempt > 0:
            self.retries += 1
        if iteration > self.max_iteration_seen:
            self.max_iteration_seen = iteration
        event = {
            "iteration": iteration,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens": prompt_tokens,
            "outcome": outcome,
            "attempt": attempt,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        decision: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "iteration": iteration,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if decision is not None:
            event["decision"] = decision
        self.events.append(event)

    def record_compaction(
        self, iteration: int, strategy: str, tokens_before: int, tokens_after: int
    ):
        if strategy == "summarize":
            self.compactions += 1
        else:
            self.maskings += 1
        self.events.append(
            {
                "iteration": iteration,
                "type": "compaction",
                "strategy": strategy,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_doom_loop(self, iteration: int, action: str, streak: int):
        self.doom_loop_interventions += 1
        self.events.append(
            {
                "iteration": iteration,
                "type": "doom_loop",
                "action": action,
                "streak": streak,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        iterations: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": iterations,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "compactions": self.compactions,
                "maskings": self.maskings,
                "doom_loop_interventions": self.doom_loop_interventions,
                "llm_calls": self.llm_calls,
                "retries": self.retries,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
