"""Session layer — handshake state machine, actor and observers."""

from termport.session.actor import TermSession
from termport.session.handshake import HandshakeMachine, Stage, Step
from termport.session.observer import (
    CallbackObserver,
    NullObserver,
    QueueObserver,
    SessionObserver,
)

__all__ = [
    "CallbackObserver",
    "HandshakeMachine",
    "NullObserver",
    "QueueObserver",
    "SessionObserver",
    "Stage",
    "Step",
    "TermSession",
]
