from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from loguru import logger
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from branching_agent_loop.cancellation import AbortSignal
from branching_agent_loop.errors import ErrorKind, describe_exception
from branching_agent_loop.memory.models import BRANCH_MARKER, COMPACTION, CompactionRecord, SessionEntry
from branching_agent_loop.memory.session_tree import SessionTree, latest_compaction_index, materialize_entry
from branching_agent_loop.messages import message_chars, summary_message, tool_calls_of


@dataclass(frozen=True)
class CompactionSettings:
    enabled: bool = True
    reserve_tokens: int = 16_384
    keep_recent_tokens: int = 20_000


@runtime_checkable
class Summarizer(Protocol):
    async def complete(self, *, model: str, system_prompt: str, prompt: str, max_tokens: int) -> str: ...


@dataclass(frozen=True)
class CutPoint:
    first_kept_index: int
    turn_start_index: int
    is_split_turn: bool


@dataclass
class FileOperations:
    read: set[str] = field(default_factory=set)
    modified: set[str] = field(default_factory=set)


@dataclass
class CompactionPreparation:
    first_kept_entry_id: str
    messages_to_summarize: list[dict]
    turn_prefix_messages: list[dict]
    kept_messages: list[dict]
    is_split_turn: bool
    tokens_before: int
    previous_summary: str | None
    file_ops: FileOperations


@dataclass(frozen=True)
class CompactionResult:
    entry_id: str
    summary: str
    first_kept_entry_id: str
    tokens_before: int
    tokens_after: int
    details: dict = field(default_factory=dict)


def estimate_message_tokens(message: dict) -> int:
    return math.ceil(message_chars(message) / 4)


def estimate_tokens(messages: list[dict]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def should_compact(context_tokens: int, context_window: int, settings: CompactionSettings) -> bool:
    if not settings.enabled:
        return False
    return context_tokens > context_window - settings.reserve_tokens


def _entry_tokens(entry: SessionEntry) -> int:
    return estimate_tokens(materialize_entry(entry))


def _answered_call_ids(entries: list[SessionEntry]) -> set[str]:
    answered: set[str] = set()
    for entry in entries:
        message = entry.message
        if message is not None and message.get("role") == "tool_result":
            answered.add(str(message.get("tool_use_id")))
    return answered


def _is_valid_cut(entry: SessionEntry, answered: set[str]) -> bool:
    if entry.type == BRANCH_MARKER:
        return True
    message = entry.message
    if message is None:
        return False
    role = message.get("role")
    if role in ("user", "custom"):
        return True
    if role == "assistant":
        return all(str(call.get("id")) in answered for call in tool_calls_of(message))
    return False


def _is_turn_start(entry: SessionEntry) -> bool:
    if entry.type == BRANCH_MARKER:
        return True
    message = entry.message
    return message is not None and message.get("role") in ("user", "custom")


def find_cut_point(
    entries: list[SessionEntry],
    start: int,
    end: int,
    keep_recent_tokens: int,
) -> CutPoint | None:
    """Choose the first entry to keep verbatim in ``entries[start:end]``.

    Returns ``None`` when the recent budget already covers everything or no
    valid boundary leaves anything to summarize.
    """
    accumulated = 0
    candidate: int | None = None
    for index in range(end - 1, start - 1, -1):
        accumulated += _entry_tokens(entries[index])
        if accumulated >= keep_recent_tokens:
            candidate = index
            break
    if candidate is None:
        return None

    answered = _answered_call_ids(entries[start:end])
    cut: int | None = None
    for index in range(candidate, start - 1, -1):
        if _is_valid_cut(entries[index], answered):
            cut = index
            break
    if cut is None or cut <= start:
        return None

    if _is_turn_start(entries[cut]):
        return CutPoint(first_kept_index=cut, turn_start_index=-1, is_split_turn=False)

    for index in range(cut - 1, start - 1, -1):
        if _is_turn_start(entries[index]):
            return CutPoint(first_kept_index=cut, turn_start_index=index, is_split_turn=True)
    return CutPoint(first_kept_index=cut, turn_start_index=-1, is_split_turn=False)


def prepare_compaction(path: list[SessionEntry], settings: CompactionSettings) -> CompactionPreparation | None:
    if not path or path[-1].type == COMPACTION:
        return None

    previous_summary: str | None = None
    previous_details: dict = {}
    boundary_start = 0
    compaction_index = latest_compaction_index(path)
    if compaction_index is not None:
        record = CompactionRecord.from_entry(path[compaction_index])
        previous_summary = record.summary
        previous_details = record.details
        boundary_start = next(
            (i for i, e in enumerate(path) if e.id == record.first_kept_entry_id),
            compaction_index + 1,
        )

    region = [e for e in path[boundary_start:] if e.type != COMPACTION]
    context = ([summary_message(previous_summary)] if previous_summary is not None else []) + _materialize_all(region)
    tokens_before = estimate_tokens(context)

    cut = find_cut_point(region, 0, len(region), settings.keep_recent_tokens)
    if cut is None:
        return None

    history_end = cut.turn_start_index if cut.is_split_turn else cut.first_kept_index
    messages_to_summarize = _materialize_all(region[:history_end])
    turn_prefix = _materialize_all(region[cut.turn_start_index:cut.first_kept_index]) if cut.is_split_turn else []

    return CompactionPreparation(
        first_kept_entry_id=region[cut.first_kept_index].id,
        messages_to_summarize=messages_to_summarize,
        turn_prefix_messages=turn_prefix,
        kept_messages=_materialize_all(region[cut.first_kept_index:]),
        is_split_turn=cut.is_split_turn,
        tokens_before=tokens_before,
        previous_summary=previous_summary,
        file_ops=extract_file_operations(messages_to_summarize + turn_prefix, previous_details),
    )


def _materialize_all(entries: list[SessionEntry]) -> list[dict]:
    return [m for e in entries for m in materialize_entry(e)]


_PATH_KEYS = ("path", "file_path", "filepath", "paths", "files")
_MUTATING_HINTS = ("write", "edit", "append", "create", "delete", "move", "rename", "patch", "replace")


def extract_file_operations(messages: list[dict], previous_details: dict | None = None) -> FileOperations:
    ops = FileOperations()
    if previous_details:
        ops.read.update(str(p) for p in previous_details.get("read_files", []))
        ops.modified.update(str(p) for p in previous_details.get("modified_files", []))

    for message in messages:
        for call in tool_calls_of(message):
            tool_input = call.get("input")
            if not isinstance(tool_input, dict):
                continue
            paths: list[str] = []
            for key in _PATH_KEYS:
                value = tool_input.get(key)
                if isinstance(value, str) and value.strip():
                    paths.append(value.strip())
                elif isinstance(value, list):
                    paths.extend(str(v).strip() for v in value if isinstance(v, str) and v.strip())
            if not paths:
                continue
            name = str(call.get("name", "")).lower()
            target = ops.modified if any(h in name for h in _MUTATING_HINTS) else ops.read
            target.update(paths)
    return ops


def format_file_manifest(ops: FileOperations) -> str:
    read_only = sorted(ops.read - ops.modified)
    modified = sorted(ops.modified)
    sections: list[str] = []
    if read_only:
        sections.append("<read-files>\n" + "\n".join(read_only) + "\n</read-files>")
    if modified:
        sections.append("<modified-files>\n" + "\n".join(modified) + "\n</modified-files>")
    return "\n\n".join(sections)


def _format_for_summarization(messages: list[dict]) -> str:
    parts = []
    for msg in messages:
        role = msg.get("role", "unknown")

        if role == "tool_result":
            status = "error" if msg.get("is_error") else "ok"
            preview = _preview_text(str(msg.get("content", "")))
            parts.append(f"[Tool result ({msg.get('tool_name', '')}, {status})]: {preview}")
            continue
        if role == "custom":
            parts.append(f"[custom:{msg.get('custom_type', '')}]")
            continue

        content = msg.get("content", "")
        if isinstance(content, str):
            parts.append(f"[{role}]: {content}")
            continue

        block_texts = []
        for block in content if isinstance(content, list) else []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type", "")
            if block_type == "text":
                block_texts.append(block.get("text", ""))
            elif block_type == "thinking":
                block_texts.append(f"[Thinking]: {_preview_text(block.get('thinking', ''))}")
            elif block_type == "tool_use":
                inp = json.dumps(block.get("input", {}), indent=None)
                if len(inp) > 200:
                    inp = inp[:200] + "..."
                block_texts.append(f"[Tool call: {block.get('name', '')}({inp})]")
        parts.append(f"[{role}]: " + "\n".join(block_texts))

    return "\n\n".join(parts)


def _preview_text(text: str) -> str:
    if len(text) <= 700:
        return text
    return text[:500] + "\n[...truncated...]\n" + text[-200:]


SUMMARIZATION_SYSTEM_PROMPT = """\
You are a context summarization assistant. You read a transcript of a \
conversation between a user and an AI assistant and produce a structured \
summary that another model will use to continue the work. Do not continue \
the conversation and do not answer questions found in the transcript."""

_SUMMARIZE_PROMPT = """\
Summarize the following conversation history between a user and an AI assistant.
Preserve these details precisely:
- The original user request and any specific criteria or instructions
- All decisions made and their reasoning
- Key data points, URLs, file paths, and identifiers that may be needed later
- Current task status and next steps

Do NOT include raw tool output data, just note what was retrieved and key findings.

Format as a concise narrative summary.
"""

_UPDATE_SUMMARY_PROMPT = """\
An earlier part of this conversation was already summarized (PREVIOUS SUMMARY below).
Produce a single updated summary that merges the previous summary with the new
conversation history. Keep every detail from the previous summary that is still
relevant, add new decisions, findings, and progress, and update the task status
and next steps.

Format as a concise narrative summary.
"""

_TURN_PREFIX_PROMPT = """\
The following is the opening of a turn whose later part is kept verbatim in the
context. Summarize only what the user asked for in this turn and what the
assistant has done so far within it, so the kept part can be understood.
Be brief.
"""

_MAX_SUMMARY_INPUT_CHARS = 100_000


def _build_history_prompt(
    messages: list[dict],
    previous_summary: str | None,
    custom_instructions: str | None,
) -> str:
    formatted = _cap(_format_for_summarization(messages))
    prompt = _UPDATE_SUMMARY_PROMPT if previous_summary else _SUMMARIZE_PROMPT
    if custom_instructions:
        prompt += f"\nAdditional focus: {custom_instructions}\n"
    if previous_summary:
        prompt += f"\n---\nPREVIOUS SUMMARY:\n\n{previous_summary}\n"
    return prompt + f"\n---\nCONVERSATION HISTORY:\n\n{formatted}"


def _cap(formatted: str) -> str:
    if len(formatted) <= _MAX_SUMMARY_INPUT_CHARS:
        return formatted
    half = _MAX_SUMMARY_INPUT_CHARS // 2
    return (
        formatted[:half]
        + "\n\n[...middle of conversation omitted for brevity...]\n\n"
        + formatted[-half:]
    )


def _is_retryable(exc: BaseException) -> bool:
    return describe_exception(exc).kind is ErrorKind.RETRYABLE


def _on_summary_retry(retry_state) -> None:
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Compaction summary failed ({type(exc).__name__ if exc else 'Unknown'}). "
        f"Retrying in {wait:.0f}s (attempt {retry_state.attempt_number}/3)..."
    )


@retry(
    retry=retry_if_exception(_is_retryable),
    wait=wait_exponential(multiplier=2, min=2, max=60),
    stop=stop_after_attempt(3),
    before_sleep=_on_summary_retry,
    reraise=True,
)
async def _summarize(summarizer: Summarizer, model: str, prompt: str, max_tokens: int) -> str:
    logger.debug(f"Compaction API request: model={model}, input_chars={len(prompt):,}")
    text = await summarizer.complete(
        model=model,
        system_prompt=SUMMARIZATION_SYSTEM_PROMPT,
        prompt=prompt,
        max_tokens=max_tokens,
    )
    logger.debug(f"Compaction API response: output_chars={len(text):,}")
    return text.strip()


class CompactionEngine:
    def __init__(
        self,
        summarizer: Summarizer,
        model: str,
        *,
        settings: CompactionSettings | None = None,
        context_window: int = 200_000,
        summary_max_tokens: int = 4096,
    ):
        self._summarizer = summarizer
        self._model = model
        self._settings = settings or CompactionSettings()
        self._context_window = context_window
        self._summary_max_tokens = summary_max_tokens

    @property
    def settings(self) -> CompactionSettings:
        return self._settings

    def should_compact(self, messages: list[dict]) -> bool:
        return should_compact(estimate_tokens(messages), self._context_window, self._settings)

    async def maybe_compact(self, tree: SessionTree, signal: AbortSignal | None = None) -> CompactionResult | None:
        if not self.should_compact(tree.build_messages()):
            return None
        return await self.compact(tree, signal)

    async def compact(
        self,
        tree: SessionTree,
        signal: AbortSignal | None = None,
        *,
        custom_instructions: str | None = None,
    ) -> CompactionResult | None:
        preparation = prepare_compaction(tree.path_to_leaf(), self._settings)
        if preparation is None:
            logger.info("Compaction: nothing to cut, history already within the keep-recent budget")
            return None

        logger.info(
            f"Compaction: estimated ~{preparation.tokens_before:,} tokens, window {self._context_window:,}"
            f" - summarizing {len(preparation.messages_to_summarize)} messages"
            f"{' (split turn)' if preparation.is_split_turn else ''}"
        )

        if signal is not None:
            signal.raise_if_aborted()
        summary = await self._generate_summary(preparation, custom_instructions)

        details = {
            "read_files": sorted(preparation.file_ops.read - preparation.file_ops.modified),
            "modified_files": sorted(preparation.file_ops.modified),
            "split_turn": preparation.is_split_turn,
        }
        tokens_after = estimate_tokens([summary_message(summary)] + preparation.kept_messages)
        record = CompactionRecord(
            summary=summary,
            first_kept_entry_id=preparation.first_kept_entry_id,
            tokens_before=preparation.tokens_before,
            tokens_after=tokens_after,
            details=details,
        )
        entry_id = tree.append_compaction(record)

        logger.info(
            f"Compaction: kept from entry {preparation.first_kept_entry_id},"
            f" ~{preparation.tokens_before:,} -> ~{tokens_after:,} estimated tokens"
        )
        return CompactionResult(
            entry_id=entry_id,
            summary=summary,
            first_kept_entry_id=preparation.first_kept_entry_id,
            tokens_before=preparation.tokens_before,
            tokens_after=tokens_after,
            details=details,
        )

    async def _generate_summary(self, preparation: CompactionPreparation, custom_instructions: str | None) -> str:
        parts: list[str] = []
        if preparation.messages_to_summarize:
            prompt = _build_history_prompt(
                preparation.messages_to_summarize,
                preparation.previous_summary,
                custom_instructions,
            )
            parts.append(await _summarize(self._summarizer, self._model, prompt, self._summary_max_tokens))
        elif preparation.previous_summary:
            parts.append(preparation.previous_summary)

        if preparation.is_split_turn and preparation.turn_prefix_messages:
            prompt = _TURN_PREFIX_PROMPT + "\n---\nTURN OPENING:\n\n" + _cap(
                _format_for_summarization(preparation.turn_prefix_messages)
            )
            prefix = await _summarize(self._summarizer, self._model, prompt, self._summary_max_tokens // 2)
            parts.append("**Turn context (split turn):**\n\n" + prefix)

        summary = "\n\n---\n\n".join(parts)
        manifest = format_file_manifest(preparation.file_ops)
        if manifest:
            summary = f"{summary}\n\n{manifest}" if summary else manifest
        return summary
