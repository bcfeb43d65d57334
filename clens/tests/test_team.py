import unittest

from clens.models import (
    MessageLink,
    SpawnLink,
    StopLink,
    TaskCompleteLink,
    TaskLink,
    TeammateIdleLink,
)
from clens.team import (
    build_communication_graph,
    build_communication_sequence,
    extract_agent_lifetimes,
    extract_team_metrics,
    group_by_conversation,
)

NAME_MAP = {"a1": "api", "a2": "db", "s1": "leader"}


def _team_links() -> list:
    return [
        SpawnLink(t=1000, parent_session="s1", agent_id="a1", agent_type="builder", agent_name="api"),
        SpawnLink(t=1000, parent_session="s1", agent_id="a2", agent_type="builder", agent_name="db"),
        MessageLink(t=2000, session_id="s1", from_="s1", to="api", msg_type="message", summary="Start on routes"),
        MessageLink(t=3000, session_id="s1", from_="s1", to="api", msg_type="status"),
        MessageLink(t=4000, session_id="a1", from_="a1", from_name="api", to="leader", msg_type="message"),
        TeammateIdleLink(t=5000, teammate="api"),
        TaskCompleteLink(t=6000, task_id="1", agent="api", subject="Routes"),
        TaskCompleteLink(t=6500, task_id="9", agent="ghost", session_id="other"),
        StopLink(t=11_000, parent_session="s1", agent_id="a1"),
        StopLink(t=11_000, parent_session="s1", agent_id="a2"),
    ]


class TeamMetricsTests(unittest.TestCase):
    def test_metrics_from_spawned_team(self) -> None:
        metrics = extract_team_metrics(_team_links(), {"a1", "a2"}, "s1")

        self.assertEqual(metrics.agent_count, 2)
        self.assertEqual(metrics.teammate_names, ["api", "db"])
        self.assertEqual(metrics.task_completed_count, 1)
        self.assertEqual(metrics.tasks[0].subject, "Routes")
        self.assertEqual(metrics.idle_event_count, 1)
        self.assertIsNotNone(metrics.utilization_ratio)
        assert metrics.utilization_ratio is not None
        self.assertAlmostEqual(metrics.utilization_ratio, 1 - 1000 / 20_000)

    def test_names_inferred_without_spawns(self) -> None:
        links = [
            MessageLink(t=1000, session_id="s1", from_="s1", to="api", msg_type="message"),
            TaskLink(t=1100, action="assign", task_id="1", session_id="s1", owner="db"),
            TaskCompleteLink(t=2000, task_id="1", agent="db"),
        ]

        metrics = extract_team_metrics(links, set(), "s1")

        self.assertEqual(metrics.agent_count, 2)
        self.assertEqual(metrics.teammate_names, ["api", "db"])
        self.assertEqual(metrics.task_completed_count, 1)
        self.assertIsNone(metrics.utilization_ratio)

    def test_empty_links(self) -> None:
        metrics = extract_team_metrics([])
        self.assertEqual(metrics.agent_count, 0)
        self.assertEqual(metrics.tasks, [])


class CommunicationTests(unittest.TestCase):
    def test_graph_groups_edges_and_orders_by_count(self) -> None:
        edges = build_communication_graph(_team_links(), NAME_MAP)

        top = edges[0]
        self.assertEqual((top.from_id, top.to_id, top.edge_type), ("s1", "a1", "message"))
        self.assertEqual((top.from_name, top.to_name), ("leader", "api"))
        self.assertEqual(top.count, 2)
        self.assertEqual(top.msg_types, ["message", "status"])

        completion = next(e for e in edges if e.edge_type == "task_complete" and e.from_name == "api")
        self.assertEqual((completion.from_id, completion.to_id, completion.to_name), ("a1", "s1", "leader"))
        idle = next(e for e in edges if e.edge_type == "idle_notify")
        self.assertEqual(idle.msg_types, ["teammate_idle"])
        self.assertEqual(idle.model_dump(by_alias=True)["from"], "api")

    def test_task_assignment_edge(self) -> None:
        links = [TaskLink(t=1, action="assign", task_id="1", session_id="s1", owner="api")]

        edges = build_communication_graph(links, NAME_MAP)

        self.assertEqual(len(edges), 1)
        self.assertEqual((edges[0].from_id, edges[0].from_name, edges[0].to_id), ("s1", "leader", "a1"))

    def test_sequence_is_time_ordered_truncated_and_capped(self) -> None:
        links = _team_links() + [
            MessageLink(t=1500, session_id="s1", from_="s1", to="db", msg_type="message", summary="x" * 130),
        ]

        sequence = build_communication_sequence(links, NAME_MAP)

        self.assertEqual([e.t for e in sequence], sorted(e.t for e in sequence))
        self.assertEqual(sequence[0].summary, "x" * 120 + "…")
        self.assertEqual(sequence[0].to_id, "a2")
        kinds = {e.edge_type for e in sequence}
        self.assertEqual(kinds, {"message", "task_complete", "idle_notify"})
        self.assertEqual(len(build_communication_sequence(links, NAME_MAP, cap=2)), 2)

    def test_conversations_group_consecutive_pairs_in_either_direction(self) -> None:
        sequence = build_communication_sequence(_team_links(), NAME_MAP)

        groups = group_by_conversation(sequence)

        self.assertEqual(groups[0].participants, ["api", "leader"])
        self.assertGreaterEqual(len(groups[0].messages), 3)
        self.assertEqual(group_by_conversation([]), [])


class AgentLifetimeTests(unittest.TestCase):
    def test_spawn_to_stop_with_open_agents_running_to_last_link(self) -> None:
        links = [
            SpawnLink(t=1000, parent_session="s1", agent_id="a1", agent_type="builder", agent_name="api"),
            SpawnLink(t=2000, parent_session="s1", agent_id="0123456789abcdef01", agent_type="validator"),
            StopLink(t=5000, parent_session="s1", agent_id="a1"),
            MessageLink(t=9000, session_id="s1", from_="s1", to="api", msg_type="message"),
        ]

        lifetimes = extract_agent_lifetimes(links)

        self.assertEqual([(l.agent_id, l.start_t, l.end_t) for l in lifetimes], [
            ("a1", 1000, 5000),
            ("0123456789abcdef01", 2000, 9000),
        ])
        self.assertEqual(lifetimes[0].agent_name, "api")
        self.assertIsNone(lifetimes[1].agent_name)

    def test_lifetimes_inferred_from_messages(self) -> None:
        links = [
            MessageLink(t=1000, session_id="s1", from_="s1", to="api", msg_type="message"),
            TaskCompleteLink(t=4000, task_id="1", agent="api"),
        ]

        lifetimes = extract_agent_lifetimes(links)

        self.assertEqual(len(lifetimes), 1)
        self.assertEqual((lifetimes[0].agent_name, lifetimes[0].start_t, lifetimes[0].end_t), ("api", 1000, 4000))
        self.assertEqual(lifetimes[0].agent_type, "builder")


if __name__ == "__main__":
    unittest.main()
