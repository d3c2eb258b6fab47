import pytest

from stage_state import (
    OrderStage,
    StageStateMachine,
    InvalidTransitionError,
    AlreadyFinalizedError,
    parse_stage,
)


def test_advance_walks_fixed_sequence():
    machine = StageStateMachine("order-1")

    assert machine.advance() == OrderStage.MAIN_COURSE
    assert machine.advance() == OrderStage.DESSERTS
    assert machine.completed_stages == [OrderStage.STARTERS, OrderStage.MAIN_COURSE]


def test_advance_past_desserts_is_rejected():
    machine = StageStateMachine("order-1", initial_stage=OrderStage.DESSERTS)

    with pytest.raises(InvalidTransitionError):
        machine.advance()

    assert machine.current_stage == OrderStage.DESSERTS


def test_retreat_reopens_stage():
    machine = StageStateMachine("order-1")
    machine.advance()

    assert machine.retreat() == OrderStage.STARTERS
    assert machine.completed_stages == []

    with pytest.raises(InvalidTransitionError):
        machine.retreat()


@pytest.mark.parametrize("stage", [OrderStage.STARTERS, OrderStage.MAIN_COURSE, OrderStage.DESSERTS])
def test_finalize_from_any_active_stage(stage):
    machine = StageStateMachine("order-1", initial_stage=stage)
    machine.finalize()

    assert machine.is_terminal()
    assert stage in machine.completed_stages


def test_finalized_is_terminal():
    machine = StageStateMachine("order-1")
    machine.finalize()

    with pytest.raises(AlreadyFinalizedError):
        machine.finalize()
    with pytest.raises(AlreadyFinalizedError):
        machine.advance()
    with pytest.raises(AlreadyFinalizedError):
        machine.retreat()

    assert not machine.can_transition_to(OrderStage.STARTERS)


def test_history_records_transitions():
    machine = StageStateMachine("order-1")
    machine.advance()
    machine.finalize()

    assert [h["stage"] for h in machine.get_history()] == ["starters", "main_course", "finalized"]


def test_parse_stage():
    assert parse_stage("desserts") == OrderStage.DESSERTS
    assert parse_stage(OrderStage.STARTERS) == OrderStage.STARTERS

    with pytest.raises(ValueError):
        parse_stage("appetizers")
