import pytest

from tack.conversation import ConversationState, RunBudget
from tack.errors import BudgetExhaustedError
from tack.types import OutcomeStatus, Role, Turn, TurnOrigin


def test_append_keeps_order_and_notifies() -> None:
    state = ConversationState()
    seen: list[Turn] = []
    state.subscribe(seen.append)

    user = state.add_user("hi")
    model = state.add_model("hello")

    assert state.turns == (user, model)
    assert seen == [user, model]
    assert len(state) == 2


def test_unsubscribed_listener_stops_receiving_turns() -> None:
    state = ConversationState()
    seen: list[Turn] = []
    state.subscribe(seen.append)
    first = state.add_user("hi")

    state.unsubscribe(seen.append)
    state.unsubscribe(seen.append)
    state.add_model("hello")

    assert seen == [first]


def test_duplicate_turn_is_rejected() -> None:
    state = ConversationState()
    turn = state.add_user("hi")

    with pytest.raises(ValueError, match="already appended"):
        state.append(turn)


def test_view_is_read_only_and_live() -> None:
    state = ConversationState([Turn(role=Role.USER, content="first")])
    view = state.view()

    state.add_model("second")

    assert len(view) == 2
    assert view[-1].content == "second"
    assert view.last(Role.USER).content == "first"
    assert view.last(Role.TOOL_RESULT) is None
    assert isinstance(view[0:1], tuple)
    assert not hasattr(view, "append")


def test_turn_origin_invariants() -> None:
    origin = TurnOrigin(request_id="r1.0", capability_name="echo", sequence_index=0, status=OutcomeStatus.SUCCESS)

    with pytest.raises(ValueError):
        Turn(role=Role.TOOL_RESULT, content="x")
    with pytest.raises(ValueError):
        Turn(role=Role.MODEL, content="x", origin=origin)


def test_budget_counts_down_and_stops() -> None:
    budget = RunBudget(max_model_calls=2, max_retries=1)

    budget.consume_model_call()
    budget.consume_model_call()
    budget.consume_retry()

    assert budget.remaining_model_calls == 0
    assert budget.remaining_retries == 0
    with pytest.raises(BudgetExhaustedError) as model_calls:
        budget.consume_model_call()
    with pytest.raises(BudgetExhaustedError) as retries:
        budget.consume_retry()
    assert model_calls.value.counter == "model_calls"
    assert retries.value.counter == "retries"
    assert budget.remaining_model_calls == 0


def test_budget_rejects_negative_limits() -> None:
    with pytest.raises(ValueError):
        RunBudget(max_model_calls=-1, max_retries=0)
