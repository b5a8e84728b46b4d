"""Turns raw agent process output into typed telemetry events.

Chunks arrive with arbitrary boundaries: a shell warning can precede real
content in the same chunk, and a JSON message can be split across two
chunks. Warning lines are stripped line by line, never by discarding the
whole chunk, and only what survives the strip counts as content.
"""

import json
from typing import Any, Iterator

import structlog

from agentmeter.models import (
    ParsedEvent,
    TextDelta,
    TokenUsage,
    UsageResult,
    UsageUpdate,
    WarningLine,
)

logger = structlog.get_logger()

DEFAULT_WARNING_PREFIXES: "tuple[str, ...]" = ("bash: warning:",)

# upper bound for a JSON fragment carried between chunks
MAX_PENDING_FRAGMENT_BYTES = 1024 * 1024

# upstream message types that close a cycle with authoritative usage
_RESULT_TYPES = frozenset({"result", "turn.completed"})


def parse_chunk(
    chunk: "str",
    warning_prefixes: "tuple[str, ...]" = DEFAULT_WARNING_PREFIXES,
) -> "Iterator[ParsedEvent]":
    """
    lazily yields the events contained in one chunk of output.

    Warning lines yield WarningLine and are dropped from the content.
    JSON lines are read as stream-json messages. Plain lines in between
    are rejoined and yielded as a single TextDelta, unless nothing is
    left after trimming. Whitespace at the edges of that text is
    trimmed and does not count toward the TextDelta bytes, so a
    plain-text chunk of only blank lines yields nothing.
    """
    plain: "list[str]" = []

    for line in chunk.splitlines():
        if line.lstrip().startswith(warning_prefixes):
            yield WarningLine(line.strip())
            continue

        stripped = line.strip()
        if not stripped.startswith("{"):
            plain.append(line)
            continue

        message = _decode_message(stripped)
        if message is None:
            # unparseable JSON-looking line, not content
            continue

        yield from _flush_plain(plain)
        yield from _events_from_message(message)

    yield from _flush_plain(plain)


def _flush_plain(plain: "list[str]") -> "Iterator[TextDelta]":
    text = "\n".join(plain).strip()
    plain.clear()
    if text:
        yield TextDelta(text)


def _decode_message(line: "str") -> "dict[str, Any] | None":
    try:
        message = json.loads(line)
    except ValueError:
        logger.debug("malformed_json_line", preview=line[:100])
        return None

    if not isinstance(message, dict):
        return None
    return message


def _events_from_message(message: "dict[str, Any]") -> "Iterator[ParsedEvent]":
    msg_type = message.get("type")

    if msg_type in _RESULT_TYPES:
        yield _usage_result(message)
        return

    if msg_type == "assistant":
        body = message.get("message")
        if not isinstance(body, dict):
            return
        for block in body.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text") or ""
                if text.strip():
                    yield TextDelta(text)
        usage = body.get("usage")
        if isinstance(usage, dict):
            yield UsageUpdate(_token_usage(usage))
        return

    # codex streams finished agent messages as items
    if msg_type == "item.completed":
        item = message.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text") or ""
            if text.strip():
                yield TextDelta(text)


def _usage_result(message: "dict[str, Any]") -> "UsageResult":
    usage = message.get("usage")
    duration = message.get("duration_ms")
    cost = message.get("total_cost_usd")

    return UsageResult(
        usage=_token_usage(usage if isinstance(usage, dict) else {}),
        duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
        cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
        model=_detect_model(message),
    )


def _detect_model(message: "dict[str, Any]") -> "str | None":
    """
    picks the model name from a result message. Claude Code reports a
    per-model breakdown keyed by model id; the first key wins.
    """
    model_usage = message.get("modelUsage")
    if isinstance(model_usage, dict) and model_usage:
        return str(next(iter(model_usage)))

    model = message.get("model")
    if isinstance(model, str) and model:
        return model
    return None


def _as_int(value: "Any") -> "int":
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(int(value), 0)


def _token_usage(usage: "dict[str, Any]") -> "TokenUsage":
    return TokenUsage(
        input_tokens=_as_int(usage.get("input_tokens")),
        output_tokens=_as_int(usage.get("output_tokens")),
        cache_read_input_tokens=_as_int(
            usage.get("cache_read_input_tokens", usage.get("cached_input_tokens"))
        ),
        cache_creation_input_tokens=_as_int(usage.get("cache_creation_input_tokens")),
        reasoning_tokens=_as_int(
            usage.get("reasoning_output_tokens", usage.get("reasoning_tokens"))
        ),
    )


class StreamParser:
    """
    StreamParser parses the output stream of one session. It decodes
    raw bytes and holds back an unterminated trailing JSON fragment, or
    a trailing line that may still turn into a warning, so that a line
    split across chunks is parsed once it is complete.
    """

    def __init__(
        self,
        warning_prefixes: "tuple[str, ...]" = DEFAULT_WARNING_PREFIXES,
    ) -> "None":
        self._warning_prefixes = warning_prefixes
        self._pending: "str" = ""

    def feed(self, raw: "bytes | str") -> "Iterator[ParsedEvent]":
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        text = self._pending + text
        self._pending = ""

        head, sep, tail = text.rpartition("\n")
        if not sep:
            head, tail = "", text

        if self._is_incomplete_json(tail) or self._may_be_warning(tail):
            if len(tail.encode("utf-8")) > MAX_PENDING_FRAGMENT_BYTES:
                logger.warning("line_fragment_dropped", size=len(tail))
            else:
                self._pending = tail
            text = head

        return parse_chunk(text, self._warning_prefixes)

    def flush(self) -> "Iterator[ParsedEvent]":
        """
        parses whatever fragment is still pending, typically at
        end of stream.
        """
        text, self._pending = self._pending, ""
        return parse_chunk(text, self._warning_prefixes)

    @staticmethod
    def _is_incomplete_json(line: "str") -> "bool":
        stripped = line.strip()
        if not stripped.startswith("{"):
            return False
        try:
            json.loads(stripped)
        except ValueError:
            return True
        return False

    def _may_be_warning(self, line: "str") -> "bool":
        # the rest of a warning line may still be in the next chunk
        stripped = line.lstrip()
        if not stripped:
            return False
        return stripped.startswith(self._warning_prefixes) or any(
            prefix.startswith(stripped) for prefix in self._warning_prefixes
        )
