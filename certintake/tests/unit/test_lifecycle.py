from __future__ import annotations

import pytest

from certintake.domain.lifecycle import (
    JOB_COMPLETE,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    JOB_STATUSES,
    can_transition,
    is_terminal,
)


def test_forward_edges_are_allowed() -> None:
    assert can_transition(JOB_QUEUED, JOB_PROCESSING)
    assert can_transition(JOB_PROCESSING, JOB_COMPLETE)
    assert can_transition(JOB_PROCESSING, JOB_FAILED)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (JOB_QUEUED, JOB_COMPLETE),
        (JOB_QUEUED, JOB_FAILED),
        (JOB_PROCESSING, JOB_QUEUED),
        (JOB_COMPLETE, JOB_FAILED),
        (JOB_FAILED, JOB_COMPLETE),
        (JOB_COMPLETE, JOB_PROCESSING),
    ],
)
def test_illegal_edges_are_rejected(current: str, target: str) -> None:
    assert not can_transition(current, target)


def test_terminal_states_have_no_exit() -> None:
    for status in JOB_STATUSES:
        assert not can_transition(JOB_COMPLETE, status)
        assert not can_transition(JOB_FAILED, status)
    assert is_terminal(JOB_COMPLETE)
    assert is_terminal(JOB_FAILED)
    assert not is_terminal(JOB_PROCESSING)
