"""
Delivery subsystem.

  MessageStateMachine  — legal status moves, written as compare-and-set
  DeliveryEngine       — one attempt per pending message
  SchedulerLoop        — periodic sweep of due messages
"""
from delivery.state_machine import (
    ALLOWED_TRANSITIONS, MessageStateMachine, TransitionResult, can_transition,
)
from delivery.engine import DeliveryEngine
from delivery.scheduler import SchedulerLoop

__all__ = [
    "ALLOWED_TRANSITIONS", "MessageStateMachine", "TransitionResult", "can_transition",
    "DeliveryEngine", "SchedulerLoop",
]
