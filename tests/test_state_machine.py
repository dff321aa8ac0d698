from types import SimpleNamespace

import pytest

from ledger_service.errors import ForbiddenError, InvalidTransitionError, ValidationError
from ledger_service.state_machine import check_can_edit, check_transition

PARENT = SimpleNamespace(id="p1", role="parent")
KID = SimpleNamespace(id="c1", role="child")
SIBLING = SimpleNamespace(id="c2", role="child")


def make_task(status):
    return SimpleNamespace(id="t1", status=status, assigned_to_id="c1")


def test_assigned_child_marks_done():
    rule = check_transition(make_task("pending"), "waiting_for_approval", KID)
    assert rule.target == "waiting_for_approval"
    assert not rule.credits


def test_parent_approval_credits():
    rule = check_transition(make_task("waiting_for_approval"), "completed", PARENT)
    assert rule.credits


def test_parent_rejection_returns_to_pending():
    rule = check_transition(make_task("waiting_for_approval"), "pending", PARENT)
    assert rule.target == "pending"
    assert not rule.credits


def test_child_cannot_skip_to_completed():
    with pytest.raises(InvalidTransitionError):
        check_transition(make_task("pending"), "completed", KID)


def test_parent_cannot_mark_done_for_child():
    with pytest.raises(ForbiddenError):
        check_transition(make_task("pending"), "waiting_for_approval", PARENT)


def test_other_child_cannot_mark_done():
    with pytest.raises(ForbiddenError):
        check_transition(make_task("pending"), "waiting_for_approval", SIBLING)


@pytest.mark.parametrize("target", ["completed", "pending"])
def test_child_cannot_approve_or_reject(target):
    with pytest.raises(ForbiddenError):
        check_transition(make_task("waiting_for_approval"), target, KID)


@pytest.mark.parametrize("target", ["pending", "waiting_for_approval", "completed"])
def test_completed_is_terminal(target):
    with pytest.raises(InvalidTransitionError):
        check_transition(make_task("completed"), target, PARENT)


@pytest.mark.parametrize("status,actor", [
    ("pending", PARENT),
    ("pending", KID),
    ("waiting_for_approval", PARENT),
    ("waiting_for_approval", KID),
])
def test_same_status_is_rejected(status, actor):
    with pytest.raises(InvalidTransitionError):
        check_transition(make_task(status), status, actor)


def test_unknown_status():
    with pytest.raises(ValidationError):
        check_transition(make_task("pending"), "done", KID)


def test_only_parents_edit():
    check_can_edit(make_task("pending"), PARENT)
    with pytest.raises(ForbiddenError):
        check_can_edit(make_task("pending"), KID)


def test_completed_task_is_frozen():
    with pytest.raises(InvalidTransitionError):
        check_can_edit(make_task("completed"), PARENT)
