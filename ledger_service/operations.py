"""Actor-aware member and task operations.

Each function checks who is asking, then delegates to the store. All of them
accept an optional ``session`` so the sync merge can run several of them in
one transaction.
"""
from typing import Any, Dict

import structlog
from sqlmodel import Session, select

from .approval import apply_approval
from .errors import ForbiddenError, InvalidTransitionError, ValidationError
from .models import Member, Role, Task
from .state_machine import check_can_edit, check_transition, is_parent

log = structlog.get_logger(__name__)


def create_member(store, data: Dict[str, Any], actor=None, session: Session = None) -> Member:
    # The very first member is created without a token and must be a parent.
    def op(s):
        if actor is None:
            if store.has_parent(session=s):
                raise ForbiddenError("sign in as a parent to add family members")
            if data.get("role") != Role.PARENT.value:
                raise ValidationError("the first family member must be a parent")
        elif not is_parent(actor):
            raise ForbiddenError("only a parent can add family members")
        return store.create_member(data, session=s)
    return store.within(session, op)


def edit_member(store, member_id: str, patch: Dict[str, Any], actor, session: Session = None) -> Member:
    if not is_parent(actor) and actor.id != member_id:
        raise ForbiddenError("children can only edit their own profile")
    return store.update_member_fields(member_id, patch, allow_ledger=is_parent(actor), session=session)


def remove_member(store, member_id: str, actor, session: Session = None) -> None:
    if not is_parent(actor):
        raise ForbiddenError("only a parent can remove family members")

    def op(s):
        member = store.get_member(member_id, session=s)
        if member.role == Role.PARENT.value:
            parents = s.exec(select(Member).where(Member.role == Role.PARENT.value)).all()
            if len(parents) <= 1:
                raise ValidationError("the family needs at least one parent")
        store.delete_member(member_id, session=s)
    store.within(session, op)


def create_task(store, data: Dict[str, Any], actor, session: Session = None) -> Task:
    if not is_parent(actor):
        raise ForbiddenError("only a parent can create tasks")
    return store.create_task(data, session=session)


def change_task(store, task_id: str, patch: Dict[str, Any], actor, allow_approval: bool = False,
                session: Session = None) -> Task:
    """Apply field edits and a non-approval status change to a task.

    Field edits are applied before the status move. With ``allow_approval`` a
    move to completed runs the approval transaction in the same session;
    otherwise it is refused so approvals only go through the approve route.
    """
    patch = dict(patch)
    target = patch.pop("status", None)

    def op(s):
        task = store.get_task(task_id, session=s, for_update=True)
        if patch:
            check_can_edit(task, actor)
            task = store.update_task_fields(task_id, patch, session=s)
        if target is None:
            return task

        rule = check_transition(task, target, actor)
        if rule.credits:
            if not allow_approval:
                raise InvalidTransitionError("use the approve operation to complete a task")
            task, _ = apply_approval(store, s, task_id, actor)
            return task
        task = store.update_task_fields(task_id, {"status": target}, session=s)
        log.info("task_status_changed", task_id=task_id, source=rule.source, target=rule.target, actor=actor.id)
        return task

    return store.within(session, op)


def remove_task(store, task_id: str, actor, session: Session = None) -> None:
    if not is_parent(actor):
        raise ForbiddenError("only a parent can delete tasks")
    store.delete_task(task_id, session=session)


def adjust_balance(store, member_id: str, delta: int, actor, session: Session = None) -> Member:
    if not is_parent(actor):
        raise ForbiddenError("only a parent can adjust balances")
    return store.adjust_balance(member_id, delta, session=session)
