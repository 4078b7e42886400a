from tack.conversation import ConversationState
from tack.sink import ResultSink, render_outcome, render_output
from tack.types import ErrorKind, ExecutionOutcome, MalformedRequest, OutcomeStatus, Role, SourceSpan


def test_record_appends_one_tool_result(make_request) -> None:
    state = ConversationState()
    sink = ResultSink(state)
    request = make_request("echo", {"text": "hi"})

    turn = sink.record(ExecutionOutcome.success("hi"), request)

    assert state.turns == (turn,)
    assert turn.role == Role.TOOL_RESULT
    assert turn.content == "hi"
    assert turn.origin is not None
    assert turn.origin.request_id == request.request_id
    assert turn.origin.capability_name == "echo"
    assert turn.origin.status == OutcomeStatus.SUCCESS
    assert sink.recorded(request.request_id) is turn


def test_record_is_idempotent_per_request(make_request) -> None:
    state = ConversationState()
    sink = ResultSink(state)
    request = make_request()

    first = sink.record(ExecutionOutcome.success("one"), request, preamble="calling echo")
    second = sink.record(ExecutionOutcome.success("two"), request, preamble="calling echo")

    assert first is second
    assert [turn.role for turn in state.turns] == [Role.MODEL, Role.TOOL_RESULT]
    assert state.turns[0].content == "calling echo"


def test_errors_render_with_kind(make_request) -> None:
    state = ConversationState()
    turn = ResultSink(state).record(
        ExecutionOutcome.failure(ErrorKind.NON_ZERO_EXIT, "exit=1\nboom", exit_code=1),
        make_request("bash"),
    )

    assert turn.content == "error[NonZeroExit]: exit=1\nboom"
    assert turn.origin is not None
    assert turn.origin.error_kind == ErrorKind.NON_ZERO_EXIT


def test_malformed_request_without_name() -> None:
    state = ConversationState()
    malformed = MalformedRequest(
        reason="invoke block is missing a capability name",
        raw_text="<invoke></invoke>",
        source_span=SourceSpan(0, 17),
        sequence_index=0,
        request_id="r1.0",
    )

    turn = ResultSink(state).record(
        ExecutionOutcome.failure(ErrorKind.MALFORMED_REQUEST, f"malformed request: {malformed.reason}"),
        malformed,
    )

    assert turn.origin is not None
    assert turn.origin.capability_name == "<unknown>"
    assert turn.content.startswith("error[MalformedRequest]: malformed request:")


def test_render_output_shapes() -> None:
    assert render_output(None) == "(empty)"
    assert render_output("  \n") == "(empty)"
    assert render_output(b"bytes") == "bytes"
    assert render_output({"a": [1, 2]}) == '{"a": [1, 2]}'
    assert render_output(["é"]) == '["é"]'
    assert render_outcome(ExecutionOutcome.success("")) == "(empty)"
