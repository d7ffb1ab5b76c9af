from taskloop.session.models import LogEntry, Phase, Session, parse_phase
from taskloop.session.store import SessionStore
from taskloop.session.sweeper import PeriodicSweeper, SweepJob

__all__ = [
    "LogEntry",
    "PeriodicSweeper",
    "Phase",
    "Session",
    "SessionStore",
    "SweepJob",
    "parse_phase",
]
