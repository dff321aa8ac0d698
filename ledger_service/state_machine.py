"""Task status transitions.

pending -> waiting_for_approval      the assigned child marks it done
waiting_for_approval -> completed    a parent approves; credits the reward
waiting_for_approval -> pending      a parent rejects
completed                            terminal
"""
from typing import NamedTuple

from .errors import ForbiddenError, InvalidTransitionError, ValidationError
from .models import Role, TaskStatus

ASSIGNEE = "assignee"
PARENT = "parent"


class Transition(NamedTuple):
    source: str
    target: str
    actor: str
    credits: bool


TRANSITIONS = {
    (TaskStatus.PENDING.value, TaskStatus.WAITING.value): Transition(
        TaskStatus.PENDING.value, TaskStatus.WAITING.value, ASSIGNEE, False),
    (TaskStatus.WAITING.value, TaskStatus.COMPLETED.value): Transition(
        TaskStatus.WAITING.value, TaskStatus.COMPLETED.value, PARENT, True),
    (TaskStatus.WAITING.value, TaskStatus.PENDING.value): Transition(
        TaskStatus.WAITING.value, TaskStatus.PENDING.value, PARENT, False),
}


def is_parent(actor) -> bool:
    return actor is not None and actor.role == Role.PARENT.value


def check_transition(task, target: str, actor) -> Transition:
    """Return the rule for moving ``task`` to ``target``.

    Raises InvalidTransitionError for pairs outside the table, which covers
    anything out of completed and same-status requests, and ForbiddenError
    when ``actor`` may not perform it.
    """
    if target not in {s.value for s in TaskStatus}:
        raise ValidationError(f"unknown status {target!r}")
    if task.status == TaskStatus.COMPLETED.value:
        raise InvalidTransitionError(f"task {task.id} is already completed")
    rule = TRANSITIONS.get((task.status, target))
    if rule is None:
        raise InvalidTransitionError(f"cannot move task {task.id} from {task.status} to {target}")
    if rule.actor == ASSIGNEE and (actor is None or actor.id != task.assigned_to_id):
        raise ForbiddenError("only the assigned child can mark a task as done")
    if rule.actor == PARENT and not is_parent(actor):
        raise ForbiddenError("only a parent can approve or reject a task")
    return rule


def check_can_edit(task, actor) -> None:
    if not is_parent(actor):
        raise ForbiddenError("only a parent can edit tasks")
    if task.status == TaskStatus.COMPLETED.value:
        raise InvalidTransitionError(f"task {task.id} is completed and can no longer be edited")
