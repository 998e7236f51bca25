import asyncio
import unittest

from branching_agent_loop.compaction import (
    CompactionEngine,
    CompactionSettings,
    FileOperations,
    estimate_message_tokens,
    estimate_tokens,
    extract_file_operations,
    find_cut_point,
    format_file_manifest,
    prepare_compaction,
    should_compact,
)
from branching_agent_loop.memory import SessionTree
from branching_agent_loop.memory.models import COMPACTION, MESSAGE
from branching_agent_loop.messages import assistant_message, tool_result_message, user_message
from tests.fakes import FakeSummarizer, text_turn, tool_turn

TEN_TOKENS = "x" * 40


def _conversation(count: int, tree: SessionTree | None = None) -> SessionTree:
    """Alternating user/assistant messages of exactly ten estimated tokens each."""
    tree = tree if tree is not None else SessionTree()
    offset = sum(1 for e in tree.entries() if e.type == MESSAGE)
    for i in range(count):
        if (offset + i) % 2 == 0:
            tree.append_message(user_message(TEN_TOKENS))
        else:
            tree.append_message(text_turn(TEN_TOKENS))
    return tree


def _engine(summarizer: FakeSummarizer, keep: int = 50, window: int = 200_000) -> CompactionEngine:
    return CompactionEngine(
        summarizer,
        "test-model",
        settings=CompactionSettings(reserve_tokens=20, keep_recent_tokens=keep),
        context_window=window,
    )


class TokenEstimateTests(unittest.TestCase):
    def test_estimate_is_a_quarter_of_characters_rounded_up(self) -> None:
        self.assertEqual(10, estimate_message_tokens(user_message(TEN_TOKENS)))
        self.assertEqual(1, estimate_message_tokens(user_message("abc")))
        self.assertEqual(20, estimate_tokens([user_message(TEN_TOKENS), text_turn(TEN_TOKENS)]))

    def test_tool_use_counts_name_and_arguments(self) -> None:
        message = tool_turn(("t1", "search", {"q": "x"}))
        self.assertGreater(estimate_message_tokens(message), 0)

    def test_should_compact_uses_reserve(self) -> None:
        settings = CompactionSettings(reserve_tokens=20)
        self.assertTrue(should_compact(90, 100, settings))
        self.assertFalse(should_compact(80, 100, settings))
        self.assertFalse(should_compact(90, 100, CompactionSettings(enabled=False, reserve_tokens=20)))


class CutPointTests(unittest.TestCase):
    def test_budget_covering_everything_means_no_cut(self) -> None:
        tree = _conversation(3)
        self.assertIsNone(find_cut_point(tree.path_to_leaf(), 0, 3, keep_recent_tokens=1000))

    def test_cut_lands_on_user_message(self) -> None:
        tree = _conversation(9)
        cut = find_cut_point(tree.path_to_leaf(), 0, 9, keep_recent_tokens=50)
        self.assertEqual(4, cut.first_kept_index)
        self.assertFalse(cut.is_split_turn)

    def test_cut_skips_assistant_with_unanswered_tool_call(self) -> None:
        tree = SessionTree()
        tree.append_message(user_message(TEN_TOKENS))
        tree.append_message(text_turn(TEN_TOKENS))
        tree.append_message(user_message(TEN_TOKENS))
        tree.append_message(tool_turn(("t9", "search", {"q": "y" * 200})))
        tree.append_message(user_message(TEN_TOKENS))

        cut = find_cut_point(tree.path_to_leaf(), 0, 5, keep_recent_tokens=15)

        self.assertEqual(2, cut.first_kept_index)

    def test_cut_inside_turn_is_marked_split(self) -> None:
        tree = SessionTree()
        tree.append_message(user_message(TEN_TOKENS))
        tree.append_message(text_turn(TEN_TOKENS))
        tree.append_message(user_message(TEN_TOKENS))
        tree.append_message(tool_turn(("t1", "search", {"q": "a"})))
        tree.append_message(tool_result_message("t1", "search", "r" * 400))
        tree.append_message(text_turn(TEN_TOKENS))

        cut = find_cut_point(tree.path_to_leaf(), 0, 6, keep_recent_tokens=20)

        self.assertEqual(3, cut.first_kept_index)
        self.assertEqual(2, cut.turn_start_index)
        self.assertTrue(cut.is_split_turn)


class PrepareCompactionTests(unittest.TestCase):
    def test_nothing_to_prepare_after_fresh_compaction(self) -> None:
        tree = _conversation(9)
        asyncio.run(_engine(FakeSummarizer()).compact(tree))
        self.assertEqual(COMPACTION, tree.get(tree.leaf_id).type)
        self.assertIsNone(prepare_compaction(tree.path_to_leaf(), CompactionSettings(keep_recent_tokens=50)))

    def test_tool_result_is_never_separated_from_its_call(self) -> None:
        tree = SessionTree()
        tree.append_message(user_message(TEN_TOKENS))
        tree.append_message(tool_turn(("t1", "search", {"q": "a"})))
        tree.append_message(tool_result_message("t1", "search", "r" * 200))
        tree.append_message(user_message(TEN_TOKENS))

        preparation = prepare_compaction(tree.path_to_leaf(), CompactionSettings(keep_recent_tokens=30))

        kept_roles = [m["role"] for m in preparation.kept_messages]
        self.assertEqual(["assistant", "tool_result", "user"], kept_roles)
        self.assertTrue(preparation.is_split_turn)
        self.assertEqual([], preparation.messages_to_summarize)
        self.assertEqual(["user"], [m["role"] for m in preparation.turn_prefix_messages])


class CompactionEngineTests(unittest.TestCase):
    def test_compacts_once_and_keeps_recent_budget(self) -> None:
        summarizer = FakeSummarizer()
        tree = _conversation(9)
        entries = tree.entries()

        result = asyncio.run(_engine(summarizer).compact(tree))

        self.assertEqual(entries[4].id, result.first_kept_entry_id)
        self.assertEqual(1, len(summarizer.prompts))
        self.assertEqual(90, result.tokens_before)
        messages = tree.build_messages()
        self.assertTrue(messages[0]["compaction_summary"])
        self.assertIn("summary-1", messages[0]["content"])
        self.assertGreaterEqual(estimate_tokens(messages[1:]), 50)
        self.assertEqual(5, len(messages) - 1)

    def test_second_compaction_without_new_messages_is_a_no_op(self) -> None:
        summarizer = FakeSummarizer()
        tree = _conversation(9)
        engine = _engine(summarizer)

        asyncio.run(engine.compact(tree))
        before = tree.build_messages()
        self.assertIsNone(asyncio.run(engine.compact(tree)))

        self.assertEqual(before, tree.build_messages())
        self.assertEqual(1, len(summarizer.prompts))

    def test_nothing_to_cut_returns_none_without_summarizing(self) -> None:
        summarizer = FakeSummarizer()
        tree = _conversation(2)
        self.assertIsNone(asyncio.run(_engine(summarizer).compact(tree)))
        self.assertEqual([], summarizer.prompts)
        self.assertEqual(2, len(tree))

    def test_later_compaction_updates_previous_summary(self) -> None:
        summarizer = FakeSummarizer()
        tree = _conversation(9)
        engine = _engine(summarizer)
        asyncio.run(engine.compact(tree))

        _conversation(6, tree)
        result = asyncio.run(engine.compact(tree))

        self.assertIsNotNone(result)
        self.assertIn("PREVIOUS SUMMARY", summarizer.prompts[1])
        self.assertIn("summary-1", summarizer.prompts[1])
        messages = tree.build_messages()
        self.assertIn("summary-2", messages[0]["content"])
        self.assertEqual(6, len(messages))

    def test_split_turn_summarizes_turn_opening_separately(self) -> None:
        summarizer = FakeSummarizer()
        tree = SessionTree()
        tree.append_message(user_message(TEN_TOKENS))
        tree.append_message(text_turn(TEN_TOKENS))
        tree.append_message(user_message("please search"))
        call_id = tree.append_message(tool_turn(("t1", "search", {"q": "a"})))
        tree.append_message(tool_result_message("t1", "search", "r" * 400))
        tree.append_message(text_turn(TEN_TOKENS))

        result = asyncio.run(_engine(summarizer, keep=20).compact(tree))

        self.assertEqual(call_id, result.first_kept_entry_id)
        self.assertTrue(result.details["split_turn"])
        self.assertEqual(2, len(summarizer.prompts))
        self.assertIn("please search", summarizer.prompts[1])
        self.assertIn("**Turn context (split turn):**", result.summary)

    def test_custom_instructions_reach_the_prompt(self) -> None:
        summarizer = FakeSummarizer()
        tree = _conversation(9)
        asyncio.run(_engine(summarizer).compact(tree, custom_instructions="the database schema"))
        self.assertIn("Additional focus: the database schema", summarizer.prompts[0])

    def test_summary_failure_leaves_tree_unchanged(self) -> None:
        summarizer = FakeSummarizer(fail_with=ValueError("bad request"))
        tree = _conversation(9)
        with self.assertRaises(ValueError):
            asyncio.run(_engine(summarizer).compact(tree))
        self.assertEqual(9, len(tree))
        self.assertEqual(1, len(summarizer.prompts))

    def test_maybe_compact_respects_threshold(self) -> None:
        summarizer = FakeSummarizer()
        tree = _conversation(9)
        self.assertIsNone(asyncio.run(_engine(summarizer, window=1000).maybe_compact(tree)))
        self.assertIsNotNone(asyncio.run(_engine(summarizer, window=100).maybe_compact(tree)))

    def test_file_manifest_is_appended_to_summary(self) -> None:
        summarizer = FakeSummarizer()
        tree = SessionTree()
        tree.append_message(user_message("edit the config"))
        tree.append_message(
            tool_turn(("r1", "read_file", {"path": "app/config.py"}), ("w1", "write_file", {"path": "app/out.txt"}))
        )
        tree.append_message(tool_result_message("r1", "read_file", "contents"))
        tree.append_message(tool_result_message("w1", "write_file", "written"))
        _conversation(6, tree)

        result = asyncio.run(_engine(summarizer, keep=40).compact(tree))

        self.assertIn("<read-files>\napp/config.py\n</read-files>", result.summary)
        self.assertIn("<modified-files>\napp/out.txt\n</modified-files>", result.summary)
        self.assertEqual(["app/config.py"], result.details["read_files"])
        self.assertEqual(["app/out.txt"], result.details["modified_files"])


class FileOperationTests(unittest.TestCase):
    def test_previous_details_carry_forward(self) -> None:
        ops = extract_file_operations(
            [tool_turn(("e1", "edit_file", {"file_path": "b.py"}))],
            {"read_files": ["a.py"], "modified_files": ["c.py"]},
        )
        self.assertEqual({"a.py"}, ops.read)
        self.assertEqual({"b.py", "c.py"}, ops.modified)

    def test_manifest_lists_modified_files_once(self) -> None:
        manifest = format_file_manifest(FileOperations(read={"a.py", "b.py"}, modified={"b.py"}))
        self.assertEqual("<read-files>\na.py\n</read-files>\n\n<modified-files>\nb.py\n</modified-files>", manifest)
        self.assertEqual("", format_file_manifest(FileOperations()))

    def test_non_dict_inputs_are_ignored(self) -> None:
        message = assistant_message([{"type": "tool_use", "id": "x", "name": "read_file", "input": "a.py"}])
        ops = extract_file_operations([message])
        self.assertEqual(set(), ops.read)


if __name__ == "__main__":
    unittest.main()
