"""
Stage State Machine
===================
Formal stage transitions for course-by-course (staged) orders.

State invariants:
- Stages are visited in the fixed order STARTERS -> MAIN_COURSE -> DESSERTS
- FINALIZED is terminal and can be entered from any active stage
- Only explicit retreat moves the pointer backwards
"""

import logging
from enum import Enum
from typing import Iterable, List, Optional
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class OrderStage(Enum):
    """
    Stages of a staged order.

    State flow:
        STARTERS <-> MAIN_COURSE <-> DESSERTS
            \\            |            /
             +------> FINALIZED <----+
    """
    STARTERS = "starters"
    MAIN_COURSE = "main_course"
    DESSERTS = "desserts"
    FINALIZED = "finalized"


# Fixed composition order (FINALIZED is not a composable stage)
STAGE_SEQUENCE = (OrderStage.STARTERS, OrderStage.MAIN_COURSE, OrderStage.DESSERTS)


def parse_stage(value) -> OrderStage:
    """
    Coerce a raw value into an OrderStage.

    Raises:
        ValueError: If the value names no stage
    """
    if isinstance(value, OrderStage):
        return value
    try:
        return OrderStage(value)
    except ValueError:
        raise ValueError(f"Unknown stage: {value!r}")


class InvalidTransitionError(Exception):
    """Raised when an invalid stage transition is attempted."""
    pass


class AlreadyFinalizedError(InvalidTransitionError):
    """Raised when finalizing (or mutating) an order that is already finalized."""
    pass


class StageStateMachine:
    """
    Tracks the stage pointer of one staged order.

    Enforces:
    - Valid transition paths only
    - Completed-stage bookkeeping
    - Transition logging and history
    """

    VALID_TRANSITIONS = {
        OrderStage.STARTERS: {OrderStage.MAIN_COURSE, OrderStage.FINALIZED},
        OrderStage.MAIN_COURSE: {OrderStage.DESSERTS, OrderStage.STARTERS, OrderStage.FINALIZED},
        OrderStage.DESSERTS: {OrderStage.MAIN_COURSE, OrderStage.FINALIZED},
        OrderStage.FINALIZED: set()  # Terminal state
    }

    def __init__(
        self,
        order_id: str,
        initial_stage: OrderStage = OrderStage.STARTERS,
        completed_stages: Optional[Iterable[OrderStage]] = None
    ):
        self.order_id = order_id
        self._current_stage = initial_stage
        self._completed: List[OrderStage] = list(completed_stages or [])
        self._history = [(initial_stage, datetime.now(timezone.utc))]
        self._transition_count = 0

        logger.debug(
            "Stage machine initialized",
            extra={
                "order_id": order_id,
                "initial_stage": initial_stage.value
            }
        )

    @property
    def current_stage(self) -> OrderStage:
        """Get current stage."""
        return self._current_stage

    @property
    def completed_stages(self) -> List[OrderStage]:
        """Stages already advanced past, in completion order."""
        return list(self._completed)

    def is_terminal(self) -> bool:
        """Check if the order has been finalized."""
        return self._current_stage == OrderStage.FINALIZED

    def can_transition_to(self, target: OrderStage) -> bool:
        """Check if transition to target stage is valid."""
        return target in self.VALID_TRANSITIONS.get(self._current_stage, set())

    def next_stage(self) -> OrderStage:
        """
        Stage an advance would move to.

        Raises:
            AlreadyFinalizedError: If the order is finalized
            InvalidTransitionError: If the current stage is the last one
        """
        if self.is_terminal():
            raise AlreadyFinalizedError(
                f"Order {self.order_id} is finalized"
            )

        position = STAGE_SEQUENCE.index(self._current_stage)
        if position + 1 >= len(STAGE_SEQUENCE):
            raise InvalidTransitionError(
                f"Cannot advance past {self._current_stage.value}; finalize instead"
            )

        return STAGE_SEQUENCE[position + 1]

    def previous_stage(self) -> OrderStage:
        """
        Stage a retreat would move to.

        Raises:
            AlreadyFinalizedError: If the order is finalized
            InvalidTransitionError: If the current stage is the first one
        """
        if self.is_terminal():
            raise AlreadyFinalizedError(
                f"Order {self.order_id} is finalized"
            )

        position = STAGE_SEQUENCE.index(self._current_stage)
        if position == 0:
            raise InvalidTransitionError(
                f"Cannot retreat before {self._current_stage.value}"
            )

        return STAGE_SEQUENCE[position - 1]

    def advance(self, reason: Optional[str] = None) -> OrderStage:
        """Move forward one stage, marking the current one completed."""
        target = self.next_stage()
        left = self._current_stage
        self._transition(target, reason or "advance")

        if left not in self._completed:
            self._completed.append(left)

        return target

    def retreat(self, reason: Optional[str] = None) -> OrderStage:
        """Move back one stage and reopen it."""
        target = self.previous_stage()
        self._transition(target, reason or "retreat")

        if target in self._completed:
            self._completed.remove(target)

        return target

    def finalize(self, reason: Optional[str] = None):
        """
        Enter the terminal FINALIZED stage.

        Raises:
            AlreadyFinalizedError: If already finalized
        """
        if self.is_terminal():
            raise AlreadyFinalizedError(
                f"Order {self.order_id} is already finalized"
            )

        left = self._current_stage
        self._transition(OrderStage.FINALIZED, reason or "finalize")

        if left not in self._completed:
            self._completed.append(left)

    def _transition(self, target: OrderStage, reason: str):
        if not self.can_transition_to(target):
            error_msg = (
                f"Invalid transition: {self._current_stage.value} -> {target.value}"
            )
            logger.error(
                error_msg,
                extra={
                    "order_id": self.order_id,
                    "from_stage": self._current_stage.value,
                    "to_stage": target.value,
                    "reason": reason
                }
            )
            raise InvalidTransitionError(error_msg)

        old_stage = self._current_stage
        self._current_stage = target
        self._transition_count += 1
        self._history.append((target, datetime.now(timezone.utc)))

        logger.info(
            f"Stage transition: {old_stage.value} -> {target.value}",
            extra={
                "order_id": self.order_id,
                "from_stage": old_stage.value,
                "to_stage": target.value,
                "reason": reason,
                "transition_count": self._transition_count
            }
        )

    def get_history(self) -> list:
        """Get stage transition history."""
        return [
            {"stage": stage.value, "timestamp": ts.isoformat()}
            for stage, ts in self._history
        ]

    def __repr__(self):
        return f"<StageStateMachine order_id={self.order_id} stage={self._current_stage.value}>"
