"""match_etl.lifecycle

Match processing_status state machine.

    pending -> queued -> summary_pending -> summary_complete -> h2h_pending -> complete
       any non-complete status -> failed

Statuses only move forward.  The single exception is a requeue: a record
that was handed to a worker (queued / summary_pending / h2h_pending) or
that was declared failed may go back to pending so a later pass retries it.
complete is terminal.

processing_attempts is not part of the status; it is incremented by every
forward status write in the store (queueing and advancing), never by a
requeue.  A record whose attempts reached max_attempts while not complete
is a terminal failure at read time, whether or not the failed status has
been written yet.
"""

from __future__ import annotations

from match_etl.shared import InvalidTransitionError

PENDING = "pending"
QUEUED = "queued"
SUMMARY_PENDING = "summary_pending"
SUMMARY_COMPLETE = "summary_complete"
H2H_PENDING = "h2h_pending"
COMPLETE = "complete"
FAILED = "failed"

ALL_STATUSES = (
    PENDING,
    QUEUED,
    SUMMARY_PENDING,
    SUMMARY_COMPLETE,
    H2H_PENDING,
    COMPLETE,
    FAILED,
)

# Statuses a stuck-shard sweep may send back to pending.
REQUEUEABLE = frozenset({QUEUED, SUMMARY_PENDING, H2H_PENDING, FAILED})

# match_details.processing_status (ck_match_details_status).
DETAIL_STATUSES = frozenset({PENDING, COMPLETE, FAILED})

_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING:          frozenset({QUEUED, SUMMARY_PENDING, COMPLETE, FAILED}),
    QUEUED:           frozenset({SUMMARY_PENDING, SUMMARY_COMPLETE, COMPLETE,
                                 PENDING, FAILED}),
    SUMMARY_PENDING:  frozenset({SUMMARY_COMPLETE, COMPLETE, PENDING, FAILED}),
    SUMMARY_COMPLETE: frozenset({H2H_PENDING, COMPLETE, FAILED}),
    H2H_PENDING:      frozenset({COMPLETE, PENDING, FAILED}),
    FAILED:           frozenset({PENDING}),
    COMPLETE:         frozenset(),
}


def can_transition(old: str, new: str) -> bool:
    return new in _TRANSITIONS.get(old, frozenset())


def check_transition(old: str, new: str) -> None:
    """Raise InvalidTransitionError unless old -> new is allowed."""
    if new not in _TRANSITIONS:
        raise InvalidTransitionError(f"unknown status {new!r}")
    if not can_transition(old, new):
        raise InvalidTransitionError(f"{old!r} -> {new!r} is not an allowed transition")


def predecessors(new: str) -> list[str]:
    """Statuses from which `new` is reachable, in lifecycle order.

    Used to guard UPDATEs so the transition check and the write happen in
    one atomic statement.
    """
    if new not in _TRANSITIONS:
        raise InvalidTransitionError(f"unknown status {new!r}")
    return [s for s in ALL_STATUSES if new in _TRANSITIONS[s]]


def is_terminal_failure(status: str, attempts: int, max_attempts: int) -> bool:
    if status == COMPLETE:
        return False
    return status == FAILED or attempts >= max_attempts
