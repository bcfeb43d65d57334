import unittest

from clens.durations import compute_active_duration, compute_effective_duration, format_duration
from clens.models import SessionStartContext, StoredEvent, TimingGapDecision, TokenUsage
from clens.stats import estimate_cost_from_tokens, extract_stats, resolve_model


def _tool(event: str, tool_name: str, t: int, file_path: str = "") -> StoredEvent:
    data: dict = {"tool_name": tool_name, "tool_use_id": f"tu-{t}"}
    if file_path:
        data["tool_input"] = {"file_path": file_path}
    return StoredEvent(t=t, event=event, sid="s1", data=data)


class StatsTests(unittest.TestCase):
    def test_counts_tools_failures_and_files(self) -> None:
        events = [
            StoredEvent(t=0, event="SessionStart", sid="s1", context=SessionStartContext(model="claude-sonnet-4-5")),
            _tool("PreToolUse", "Read", 1000, "src/a.py"),
            _tool("PreToolUse", "Edit", 2000, "src/a.py"),
            _tool("PostToolUseFailure", "Edit", 2500, "src/a.py"),
            _tool("PreToolUse", "Bash", 3000),
        ]

        stats = extract_stats(events)

        self.assertEqual(stats.total_events, 5)
        self.assertEqual(stats.tool_call_count, 3)
        self.assertEqual(stats.tools_by_name, {"Read": 1, "Edit": 1, "Bash": 1})
        self.assertEqual(stats.failure_count, 1)
        self.assertAlmostEqual(stats.failure_rate, 1 / 3)
        self.assertEqual(stats.failures_by_tool, {"Edit": 1})
        self.assertEqual(stats.unique_files, ["src/a.py"])
        self.assertEqual(stats.duration_ms, 3000)
        self.assertEqual(stats.model, "claude-sonnet-4-5")
        self.assertIsNotNone(stats.cost_estimate)
        assert stats.cost_estimate is not None
        self.assertTrue(stats.cost_estimate.is_estimated)

    def test_interrupts_are_not_failures(self) -> None:
        failure = _tool("PostToolUseFailure", "Bash", 10)
        failure.data["is_interrupt"] = True
        stats = extract_stats([_tool("PreToolUse", "Bash", 0), failure])

        self.assertEqual(stats.failure_count, 0)
        self.assertIsNone(stats.failures_by_tool)

    def test_idle_gaps_are_excluded_from_duration(self) -> None:
        events = [
            _tool("PreToolUse", "Read", 0),
            _tool("PreToolUse", "Read", 10_000),
            _tool("PreToolUse", "Read", 1_010_000),
        ]

        self.assertEqual(extract_stats(events).duration_ms, 10_000)

    def test_empty_session(self) -> None:
        stats = extract_stats([])
        self.assertEqual(stats.total_events, 0)
        self.assertEqual(stats.failure_rate, 0.0)

    def test_reported_token_usage_is_priced_directly(self) -> None:
        events = [
            StoredEvent(
                t=0,
                event="Stop",
                sid="s1",
                data={"model": "claude-opus-4-1", "usage": {"input_tokens": 1_000_000, "output_tokens": 0}},
            )
        ]

        stats = extract_stats(events)

        assert stats.cost_estimate is not None
        self.assertFalse(stats.cost_estimate.is_estimated)
        self.assertEqual(stats.cost_estimate.estimated_cost_usd, 15.0)

    def test_model_from_config_change(self) -> None:
        events = [StoredEvent(t=0, event="ConfigChange", sid="s1", data={"config": {"model": "claude-haiku-4-5"}})]
        self.assertEqual(resolve_model(events), "claude-haiku-4-5")

    def test_unknown_model_has_no_price(self) -> None:
        self.assertIsNone(estimate_cost_from_tokens("gpt-x", TokenUsage(input_tokens=10)))

    def test_cache_tokens_are_priced(self) -> None:
        cost = estimate_cost_from_tokens(
            "claude-sonnet-4",
            TokenUsage(cache_read_tokens=1_000_000, cache_creation_tokens=1_000_000),
        )

        assert cost is not None
        self.assertEqual(cost.estimated_cost_usd, 4.05)
        self.assertEqual(cost.cache_read_tokens, 1_000_000)


class DurationTests(unittest.TestCase):
    def test_effective_end_is_before_first_idle_gap(self) -> None:
        result = compute_effective_duration([0, 1000, 500_000, 501_000], idle_threshold_ms=300_000)

        self.assertEqual(result.wall_duration_ms, 501_000)
        self.assertEqual(result.idle_gaps_ms, 499_000)
        self.assertEqual(result.effective_duration_ms, 2000)
        self.assertEqual(result.effective_end_t, 1000)

    def test_single_timestamp(self) -> None:
        result = compute_effective_duration([42])
        self.assertEqual((result.effective_duration_ms, result.effective_end_t), (0, 42))

    def test_active_duration_subtracts_idle_and_pauses_only(self) -> None:
        gaps = [
            TimingGapDecision(t=1, gap_ms=100, classification="user_idle"),
            TimingGapDecision(t=2, gap_ms=200, classification="session_pause"),
            TimingGapDecision(t=3, gap_ms=400, classification="agent_thinking"),
        ]

        result = compute_active_duration(gaps, 1000)

        self.assertEqual((result.active_ms, result.idle_ms, result.pause_ms), (700, 100, 200))
        self.assertEqual(compute_active_duration(gaps, 100).active_ms, 0)

    def test_format_duration(self) -> None:
        self.assertEqual(format_duration(850), "850ms")
        self.assertEqual(format_duration(42_000), "42s")
        self.assertEqual(format_duration(423_000), "7m 3s")
        self.assertEqual(format_duration(7_500_000), "2h 5m 0s")


if __name__ == "__main__":
    unittest.main()
