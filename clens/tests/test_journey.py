import unittest

from clens.journey import (
    build_transition,
    chain_sessions,
    classify_lifecycle,
    classify_phase,
    compose_journey,
)
from clens.models import JourneyPhase, SessionChainInput, StatsResult


def _session(session_id: str, start: int, end: int, **kwargs) -> SessionChainInput:
    kwargs.setdefault("cwd", "/work/app")
    return SessionChainInput(session_id=session_id, start_time=start, end_time=end, **kwargs)


class ChainingTests(unittest.TestCase):
    def test_clear_within_gap_in_same_cwd_continues_the_chain(self) -> None:
        sessions = [
            _session("s3", 40_000, 50_000, source="compact"),
            _session("s1", 0, 10_000, source="startup"),
            _session("s2", 12_000, 20_000, source="clear"),
        ]

        self.assertEqual(chain_sessions(sessions), [["s1", "s2"], ["s3"]])

    def test_startup_or_other_cwd_starts_a_new_chain(self) -> None:
        sessions = [
            _session("s1", 0, 10_000),
            _session("s2", 11_000, 20_000, source="startup"),
            _session("s3", 21_000, 30_000, source="clear", cwd="/work/other"),
            _session("s4", 31_000, 40_000, source="clear", cwd=None),
        ]

        self.assertEqual(chain_sessions(sessions), [["s1"], ["s2"], ["s3"], ["s4"]])

    def test_open_session_gap_is_measured_from_its_start(self) -> None:
        sessions = [
            SessionChainInput(session_id="s1", start_time=0, cwd="/w"),
            SessionChainInput(session_id="s2", start_time=4000, cwd="/w", source="clear"),
        ]

        self.assertEqual(chain_sessions(sessions), [["s1", "s2"]])
        self.assertEqual(chain_sessions([]), [])


class PhaseClassificationTests(unittest.TestCase):
    def test_slash_commands_take_priority(self) -> None:
        cases = {
            "/prime the repo": ("prime", None),
            "/brainstorm ideas": ("brainstorm", None),
            "/plan_w_team auth": ("plan", None),
            "/plan auth": ("plan", None),
            "/build specs/auth.md now": ("build", "specs/auth.md"),
            "/build quickly": ("build", None),
            "/review the diff": ("review", None),
            "/test everything": ("test", None),
            "please commit this": ("commit", None),
        }
        for prompt, expected in cases.items():
            with self.subTest(prompt=prompt):
                self.assertEqual(classify_phase(_session("s", 0, 1, first_prompt=prompt)), expected)

    def test_tool_mix_and_size_fallbacks(self) -> None:
        exploring = _session("s", 0, 1, tools_by_name={"Read": 8, "Grep": 1, "Edit": 2})
        orchestrating = _session("s", 0, 1, tools_by_name={"TaskCreate": 4, "Edit": 5})
        aborted = _session("s", 0, 1, duration_ms=5000, event_count=3)
        freeform = _session("s", 0, 1, duration_ms=600_000, event_count=200)

        self.assertEqual(classify_phase(exploring)[0], "exploration")
        self.assertEqual(classify_phase(orchestrating)[0], "orchestrated_build")
        self.assertEqual(classify_phase(aborted)[0], "abort")
        self.assertEqual(classify_phase(freeform)[0], "freeform")

    def test_lifecycle_depends_on_phase_set(self) -> None:
        def phases(*types: str) -> list[JourneyPhase]:
            return [JourneyPhase(session_id=f"s{i}", phase_type=t) for i, t in enumerate(types)]

        self.assertEqual(classify_lifecycle(phases("build")), "single-session")
        self.assertEqual(classify_lifecycle(phases("build", "plan", "prime")), "prime-plan-build")
        self.assertEqual(classify_lifecycle(phases("prime", "build")), "prime-build")
        self.assertEqual(classify_lifecycle(phases("plan", "build")), "build-only")
        self.assertEqual(classify_lifecycle(phases("plan", "review")), "ad-hoc")


class JourneyCompositionTests(unittest.TestCase):
    def test_transition_describes_the_handoff(self) -> None:
        before = _session("s1", 0, 10_000, git_commit="abc")
        after = _session("s2", 12_000, 20_000, source="compact", git_commit="def", first_prompt="x" * 100)

        transition = build_transition(before, after)

        self.assertEqual(transition.gap_ms, 2000)
        self.assertEqual(transition.trigger, "compact_auto")
        self.assertTrue(transition.git_changed)
        self.assertEqual(len(transition.prompt_shift), 80)

    def test_compose_prime_plan_build(self) -> None:
        inputs = {
            "aaaa1111-0000": _session("aaaa1111-0000", 0, 10_000, first_prompt="/prime", duration_ms=10_000, event_count=5),
            "bbbb2222-0000": _session(
                "bbbb2222-0000", 12_000, 20_000, source="clear", first_prompt="/plan auth", duration_ms=8000, event_count=7
            ),
            "cccc3333-0000": _session(
                "cccc3333-0000", 21_000, 60_000, source="compact", first_prompt="/build specs/auth.md",
                duration_ms=39_000, event_count=40,
            ),
        }
        stats = {"cccc3333-0000": StatsResult(tool_call_count=12, failure_count=2)}

        journey = compose_journey(list(inputs), inputs, stats)

        self.assertEqual(journey.id, "aaaa1111")
        self.assertEqual([p.phase_type for p in journey.phases], ["prime", "plan", "build"])
        self.assertEqual([p.source for p in journey.phases], ["startup", "clear", "compact"])
        self.assertEqual(journey.lifecycle_type, "prime-plan-build")
        self.assertEqual(journey.spec_ref, "specs/auth.md")
        self.assertEqual(len(journey.transitions), 2)
        self.assertEqual(journey.transitions[1].trigger, "compact_auto")

        cumulative = journey.cumulative_stats
        self.assertEqual(cumulative.total_duration_ms, 57_000)
        self.assertEqual(cumulative.total_events, 52)
        self.assertEqual((cumulative.total_tool_calls, cumulative.total_failures), (12, 2))
        self.assertEqual(cumulative.phase_count, 3)

    def test_missing_inputs_default_to_freeform_and_clear(self) -> None:
        journey = compose_journey(["s1", "s2"], {}, {})

        self.assertEqual([p.phase_type for p in journey.phases], ["freeform", "freeform"])
        self.assertEqual(journey.transitions[0].gap_ms, 0)
        self.assertEqual(journey.lifecycle_type, "ad-hoc")


if __name__ == "__main__":
    unittest.main()
