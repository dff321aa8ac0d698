from typing import Tuple

import structlog
from sqlalchemy import update
from sqlmodel import Session

from .errors import ConflictError, ForbiddenError, ValidationError
from .models import MAX_AMOUNT, Member, Task, TaskStatus, now_ms
from .state_machine import check_transition, is_parent

log = structlog.get_logger(__name__)


def _credit(session: Session, member: Member, amount: int) -> None:
    # Increment in SQL so a concurrent credit on another connection is not lost
    result = session.exec(
        update(Member)
        .where(Member.id == member.id, Member.total_earned + amount <= MAX_AMOUNT,
               Member.balance + amount <= MAX_AMOUNT)
        .values(balance=Member.balance + amount, total_earned=Member.total_earned + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError(f"crediting {amount} would exceed the ledger limit for member {member.id}")
    session.refresh(member)


def apply_approval(store, session: Session, task_id: str, actor) -> Tuple[Task, Member]:
    """Complete a waiting task and credit its reward inside ``session``.

    The task is re-read here rather than trusted from the caller, and the
    status write is a compare-and-set on waiting_for_approval, so a second
    approval of the same task always ends in ConflictError.
    """
    task = store.get_task(task_id, session=session, for_update=True)
    if not is_parent(actor):
        raise ForbiddenError("only a parent can approve a task")
    if task.status != TaskStatus.WAITING.value:
        log.warning("approval_conflict", task_id=task_id, status=task.status)
        raise ConflictError(f"task {task_id} is {task.status}, not waiting for approval")
    check_transition(task, TaskStatus.COMPLETED.value, actor)

    member = store.get_member(task.assigned_to_id, session=session, for_update=True)
    result = session.exec(
        update(Task)
        .where(Task.id == task_id, Task.status == TaskStatus.WAITING.value)
        .values(status=TaskStatus.COMPLETED.value, completed_at=now_ms())
    )
    if result.rowcount != 1:
        log.warning("approval_conflict", task_id=task_id, status="changed")
        raise ConflictError(f"task {task_id} changed before approval")
    session.refresh(task)

    _credit(session, member, task.reward)
    return task, member


def approve_task(store, task_id: str, actor) -> Tuple[Task, Member]:
    task, member = store.run_atomic(lambda s: apply_approval(store, s, task_id, actor))
    log.info("task_approved", task_id=task.id, member_id=member.id, reward=task.reward,
             balance=member.balance, approved_by=actor.id)
    return task, member
