"""Tests for stream event accumulation."""

import pytest

from agentchat.models.events import (
    BlockDeltaEvent,
    BlockStartEvent,
    BlockStopEvent,
    MetadataEvent,
    TurnStartEvent,
    TurnStopEvent,
)
from agentchat.models.llm import Message, ReasoningBlock, TextBlock, ToolUseBlock
from agentchat.services.accumulator import ContentAccumulator, MalformedStreamError, parse_tool_input


def feed_all(accumulator: ContentAccumulator, events):
    result = None
    for event in events:
        result = accumulator.feed(event) or result
    return result


class TestTextAccumulation:
    """Tests for plain text streaming."""

    def test_text_deltas_concatenate(self):
        """Test that text deltas form one text block."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(role="assistant"),
                BlockStartEvent(kind="text"),
                BlockDeltaEvent(kind="text", text="Hello, "),
                BlockDeltaEvent(kind="text", text="world"),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="end_turn"),
            ],
        )

        assert turn is not None
        assert turn.stop_reason == "end_turn"
        assert turn.message.role == "assistant"
        assert turn.message.content == [TextBlock(text="Hello, world")]

    def test_partial_snapshots_published_per_text_delta(self):
        """Test that every text delta publishes a growing snapshot."""
        snapshots: list[Message] = []
        accumulator = ContentAccumulator(on_partial=snapshots.append)
        feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="text"),
                BlockDeltaEvent(kind="text", text="a"),
                BlockDeltaEvent(kind="text", text="b"),
            ],
        )

        assert [snapshot.text() for snapshot in snapshots] == ["a", "ab"]

    def test_snapshots_are_independent_copies(self):
        """Test that mutating a snapshot does not affect the accumulator."""
        snapshots: list[Message] = []
        accumulator = ContentAccumulator(on_partial=snapshots.append)
        feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="text"),
                BlockDeltaEvent(kind="text", text="first"),
                BlockStopEvent(),
                BlockStartEvent(kind="text"),
                BlockDeltaEvent(kind="text", text="second"),
            ],
        )

        snapshots[-1].content[0].text = "tampered"
        turn = feed_all(accumulator, [BlockStopEvent(), TurnStopEvent(stop_reason="end_turn")])

        assert [block.text for block in turn.message.content] == ["first", "second"]

    def test_snapshot_shares_id_with_final_message(self):
        """Test that partial snapshots and the finalized message carry the same id."""
        snapshots: list[Message] = []
        accumulator = ContentAccumulator(on_partial=snapshots.append)
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="text"),
                BlockDeltaEvent(kind="text", text="hi"),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="end_turn"),
            ],
        )

        assert snapshots[0].id == turn.message.id

    def test_empty_text_block_is_not_pushed(self):
        """Test that a text block with no deltas adds no content."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator, [TurnStartEvent(), BlockStartEvent(kind="text"), BlockStopEvent(), TurnStopEvent()]
        )

        assert turn.message.content == []

    def test_metadata_event_is_ignored(self):
        """Test that metadata does not change accumulated content."""
        accumulator = ContentAccumulator()
        assert accumulator.feed(MetadataEvent()) is None
        assert not accumulator.started


class TestToolAccumulation:
    """Tests for tool call argument reassembly."""

    def test_tool_arguments_parsed_as_json(self):
        """Test that fragmented arguments are joined and parsed."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="tool_use", call_id="call_1", name="listFiles"),
                BlockDeltaEvent(kind="tool_input", text='{"path": '),
                BlockDeltaEvent(kind="tool_input", text='"/tmp"}'),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="tool_use"),
            ],
        )

        assert turn.message.content == [ToolUseBlock(id="call_1", name="listFiles", input={"path": "/tmp"})]

    def test_unparseable_arguments_kept_as_raw_string(self):
        """Test that invalid JSON arguments become the raw string instead of failing."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="tool_use", call_id="call_1", name="search"),
                BlockDeltaEvent(kind="tool_input", text='{"query": "unterminated'),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="tool_use"),
            ],
        )

        tool_use = turn.message.content[0]
        assert isinstance(tool_use, ToolUseBlock)
        assert tool_use.input == '{"query": "unterminated'

    def test_empty_arguments_become_empty_object(self):
        """Test that a tool without arguments gets an empty input object."""
        assert parse_tool_input("") == {}
        assert parse_tool_input("   ") == {}

    def test_tool_argument_delta_publishes_raw_snapshot(self):
        """Test that argument deltas publish the raw accumulated string."""
        snapshots: list[Message] = []
        accumulator = ContentAccumulator(on_partial=snapshots.append)
        feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="tool_use", call_id="call_1", name="search"),
                BlockDeltaEvent(kind="tool_input", text='{"q":'),
            ],
        )

        assert snapshots[-1].content == [ToolUseBlock(id="call_1", name="search", input='{"q":')]

    def test_interleaved_text_precedes_tool_use(self):
        """Test that text streamed during a tool block is kept separate and ordered first."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="tool_use", call_id="call_1", name="search"),
                BlockDeltaEvent(kind="tool_input", text='{"q": '),
                BlockDeltaEvent(kind="text", text="Let me look that up."),
                BlockDeltaEvent(kind="tool_input", text='"cats"}'),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="tool_use"),
            ],
        )

        assert turn.message.content == [
            TextBlock(text="Let me look that up."),
            ToolUseBlock(id="call_1", name="search", input={"q": "cats"}),
        ]

    def test_multiple_tool_calls_keep_request_order(self):
        """Test that several tool blocks are pushed in the order they stream."""
        accumulator = ContentAccumulator()
        events = [TurnStartEvent()]
        for index in range(3):
            events += [
                BlockStartEvent(kind="tool_use", call_id=f"call_{index}", name=f"tool_{index}"),
                BlockDeltaEvent(kind="tool_input", text="{}"),
                BlockStopEvent(),
            ]
        turn = feed_all(accumulator, events + [TurnStopEvent(stop_reason="tool_use")])

        assert [block.id for block in turn.message.tool_uses()] == ["call_0", "call_1", "call_2"]

    def test_open_tool_block_closed_at_turn_stop(self):
        """Test that a tool block left open is finalized by the turn stop."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="tool_use", call_id="call_1", name="search"),
                BlockDeltaEvent(kind="tool_input", text="{}"),
                TurnStopEvent(stop_reason="tool_use"),
            ],
        )

        assert turn.message.tool_uses()[0].input == {}

    def test_tool_blocks_without_call_id_get_distinct_ids(self):
        """Test that tool blocks streamed without an id are each given a unique one."""
        accumulator = ContentAccumulator()
        events = [TurnStartEvent()]
        for name in ["first", "second"]:
            events += [
                BlockStartEvent(kind="tool_use", name=name),
                BlockDeltaEvent(kind="tool_input", text="{}"),
                BlockStopEvent(),
            ]
        first_turn = feed_all(accumulator, events + [TurnStopEvent(stop_reason="tool_use")])
        second_turn = feed_all(accumulator, events + [TurnStopEvent(stop_reason="tool_use")])

        ids = [block.id for turn in (first_turn, second_turn) for block in turn.message.tool_uses()]
        assert [block.name for block in first_turn.message.tool_uses()] == ["first", "second"]
        assert len(set(ids)) == 4


class TestReasoningAccumulation:
    """Tests for reasoning content."""

    def test_signed_reasoning_precedes_following_text(self):
        """Test that reasoning with a signature followed by text yields [Reasoning, Text]."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="reasoning"),
                BlockDeltaEvent(kind="reasoning", text="The user wants "),
                BlockDeltaEvent(kind="reasoning", text="a greeting.", signature="sig-123"),
                BlockDeltaEvent(kind="text", text="Hello"),
                BlockDeltaEvent(kind="text", text=" there"),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="end_turn"),
            ],
        )

        assert turn.message.content == [
            ReasoningBlock(text="The user wants a greeting.", signature="sig-123"),
            TextBlock(text="Hello there"),
        ]

    def test_separate_reasoning_and_text_blocks(self):
        """Test that a reasoning block closed before the text block still comes first."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="reasoning"),
                BlockDeltaEvent(kind="reasoning", text="thinking"),
                BlockDeltaEvent(kind="reasoning", signature="sig"),
                BlockStopEvent(),
                BlockStartEvent(kind="text"),
                BlockDeltaEvent(kind="text", text="answer"),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="end_turn"),
            ],
        )

        assert [block.type for block in turn.message.content] == ["reasoning", "text"]

    def test_reasoning_after_signature_starts_new_block(self):
        """Test that reasoning text after a finished signature is kept as a second block."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockDeltaEvent(kind="reasoning", text="first", signature="sig-1"),
                BlockDeltaEvent(kind="reasoning", text="second"),
                BlockDeltaEvent(kind="reasoning", signature="sig-2"),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="end_turn"),
            ],
        )

        assert turn.message.content == [
            ReasoningBlock(text="first", signature="sig-1"),
            ReasoningBlock(text="second", signature="sig-2"),
        ]

    def test_redacted_reasoning(self):
        """Test that redacted reasoning keeps the opaque payload."""
        accumulator = ContentAccumulator()
        turn = feed_all(
            accumulator,
            [
                TurnStartEvent(),
                BlockStartEvent(kind="reasoning"),
                BlockDeltaEvent(kind="reasoning", redacted=b"opaque"),
                BlockStopEvent(),
                TurnStopEvent(stop_reason="end_turn"),
            ],
        )

        block = turn.message.content[0]
        assert isinstance(block, ReasoningBlock)
        assert block.is_redacted
        assert block.redacted == b"opaque"


class TestMalformedStreams:
    """Tests for terminator handling."""

    def test_turn_stop_without_turn_start_raises(self):
        """Test that a terminator with no start is reported as malformed."""
        accumulator = ContentAccumulator()
        with pytest.raises(MalformedStreamError):
            accumulator.feed(TurnStopEvent(stop_reason="end_turn"))

    def test_duplicate_terminator_raises(self):
        """Test that a second terminator in the same pass is reported as malformed."""
        accumulator = ContentAccumulator()
        feed_all(accumulator, [TurnStartEvent(), TurnStopEvent(stop_reason="end_turn")])

        with pytest.raises(MalformedStreamError):
            accumulator.feed(TurnStopEvent(stop_reason="end_turn"))

    def test_turn_start_resets_previous_state(self):
        """Test that a new turn start discards leftovers from a broken pass."""
        accumulator = ContentAccumulator()
        feed_all(accumulator, [TurnStartEvent(), BlockDeltaEvent(kind="text", text="stale")])
        turn = feed_all(
            accumulator,
            [TurnStartEvent(), BlockDeltaEvent(kind="text", text="fresh"), TurnStopEvent(stop_reason="end_turn")],
        )

        assert turn.message.text() == "fresh"
