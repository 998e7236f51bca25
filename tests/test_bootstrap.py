import unittest
from dataclasses import replace

from branching_agent_loop.__main__ import render_tree
from branching_agent_loop.app_config import parse_app_config
from branching_agent_loop.bootstrap import build_agent_config, select_session
from branching_agent_loop.memory import SessionTree
from branching_agent_loop.messages import user_message
from tests.fakes import text_turn
from tests.memory.base import MemoryStoreTestCase


class SelectSessionTests(MemoryStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._app = parse_app_config({})

    def test_default_creates_new_session(self) -> None:
        existing = self._sessions.create_session("old")
        sid = select_session(self._app, self._sessions)
        self.assertNotEqual(existing, sid)
        self.assertIsNotNone(self._sessions.get_session(sid))

    def test_resume_by_title(self) -> None:
        sid = self._sessions.create_session("abc", title="Parser work")
        app = replace(self._app, resume_session_id="parser work")
        self.assertEqual(sid, select_session(app, self._sessions))

    def test_resume_unknown_session_raises(self) -> None:
        with self.assertRaises(ValueError):
            select_session(replace(self._app, resume_session_id="missing"), self._sessions)

    def test_continue_uses_most_recent(self) -> None:
        self._sessions.create_session("s1")
        self._sessions.create_session("s2")
        self._store.execute("UPDATE sessions SET updated_at = '2020-01-01T00:00:00+00:00' WHERE id = 's1'")
        self._store.execute("UPDATE sessions SET updated_at = '2030-01-01T00:00:00+00:00' WHERE id = 's2'")
        self._store.commit()
        self.assertEqual("s2", select_session(replace(self._app, continue_conversation=True), self._sessions))

    def test_continue_with_configured_id_creates_it(self) -> None:
        app = replace(self._app, continue_conversation=True, configured_session_id="fixed")
        self.assertEqual("fixed", select_session(app, self._sessions))

    def test_fork_applies_after_selection(self) -> None:
        self._sessions.create_session("src")
        app = replace(self._app, resume_session_id="src", fork_session=True)
        fork_id = select_session(app, self._sessions)
        self.assertNotEqual("src", fork_id)
        self.assertEqual("src", self._sessions.get_session(fork_id)["parent_session_id"])


class BuildAgentConfigTests(MemoryStoreTestCase):
    def test_settings_flow_into_agent_config(self) -> None:
        app = parse_app_config(
            {"CompactionKeepRecentTokens": 500, "MaxRetries": 1, "FollowUpMode": "all", "WorkingDirectory": "/work"}
        )
        config = build_agent_config(app, [])
        self.assertEqual(500, config.compaction.keep_recent_tokens)
        self.assertEqual(1, config.retry.max_retries)
        self.assertEqual("all", config.follow_up_mode)
        self.assertIn("/work", config.system_prompt)


class RenderTreeTests(unittest.TestCase):
    def test_marks_active_path_labels_and_forks(self) -> None:
        tree = SessionTree()
        root = tree.append_message(user_message("question"))
        tree.append_message(text_turn("abandoned answer"))
        tree.set_leaf(root)
        kept = tree.append_message(text_turn("kept answer"))
        tree.append_label(root, "start")
        tree.set_leaf(kept)

        rendered = render_tree(tree).splitlines()

        self.assertEqual(4, len(rendered))
        self.assertTrue(rendered[0].startswith("* "))
        self.assertIn("[start]", rendered[0])
        active = [line for line in rendered if "kept answer" in line][0]
        self.assertTrue(active.startswith("* "))
        self.assertIn("<- leaf", active)
        abandoned = [line for line in rendered if "abandoned answer" in line][0]
        self.assertTrue(abandoned.startswith("  "))

    def test_empty_session(self) -> None:
        self.assertEqual("(empty session)", render_tree(SessionTree()))


if __name__ == "__main__":
    unittest.main()
