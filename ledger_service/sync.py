"""Snapshot pull / partial push.

Clients replace their local copy with whatever ``pull`` or ``propose_partial``
returns. A pushed patch names whole top-level collections, but records are
merged by id and only the fields that differ from the stored row are
written, so two devices editing different records do not overwrite each
other. Ledger fields coming from a client are never applied.

A child device can only mark its own pending tasks done. Any other difference
in a child's push means its copy is stale, and the push fails with
ConflictError so the device pulls again.
"""
from typing import Any, Dict

import structlog
from sqlmodel import Session

from . import operations
from .errors import ConflictError
from .models import LEDGER_FIELDS, Member, Task, TaskStatus
from .schemas import Snapshot, SnapshotPatch
from .state_machine import is_parent

log = structlog.get_logger(__name__)


def pull(store) -> Snapshot:
    return store.snapshot()


def _changed(row, data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k == "pin" or getattr(row, k) != v}


def _stale(kind: str, record_id: str) -> None:
    raise ConflictError(f"{kind} {record_id} changed since your last pull")


def _merge_member(store, s: Session, incoming: Dict[str, Any], actor) -> None:
    member_id = incoming.pop("id")
    ledger = {k: incoming.pop(k) for k in LEDGER_FIELDS if k in incoming}
    current = s.get(Member, member_id)
    if current is None:
        if not is_parent(actor):
            _stale("member", member_id)
        operations.create_member(store, dict(incoming, id=member_id), actor=actor, session=s)
        if any(ledger.values()):
            log.warning("ignored_ledger_write", member_id=member_id, proposed=ledger)
        return

    stale = {k: v for k, v in ledger.items() if v is not None and getattr(current, k) != v}
    if stale:
        log.warning("ignored_ledger_write", member_id=member_id, proposed=stale,
                    balance=current.balance, total_earned=current.total_earned)
    changes = _changed(current, incoming)
    if not changes:
        return
    if not is_parent(actor) and member_id != actor.id:
        _stale("member", member_id)
    operations.edit_member(store, member_id, changes, actor, session=s)


def _child_can_make(current: Task, changes: Dict[str, Any], actor) -> bool:
    # the only task change a child device produces is marking its own task done
    return (
        set(changes) == {"status"}
        and current.assigned_to_id == actor.id
        and current.status == TaskStatus.PENDING.value
        and changes["status"] == TaskStatus.WAITING.value
    )


def _merge_task(store, s: Session, incoming: Dict[str, Any], actor) -> None:
    task_id = incoming.pop("id")
    current = s.get(Task, task_id)
    if current is None:
        if not is_parent(actor):
            _stale("task", task_id)
        operations.create_task(store, dict(incoming, id=task_id), actor, session=s)
        return
    changes = _changed(current, incoming)
    if not changes:
        return
    if not is_parent(actor) and not _child_can_make(current, changes, actor):
        _stale("task", task_id)
    operations.change_task(store, task_id, changes, actor, allow_approval=True, session=s)


def propose_partial(store, patch: SnapshotPatch, actor) -> Snapshot:
    """Merge ``patch`` into the authoritative state and return the result.

    The whole patch is one transaction: if any record is refused nothing is
    applied and the error goes back to the caller, who should pull again.
    """
    def op(s):
        if patch.theme is not None:
            store.set_setting("theme", patch.theme, session=s)
        for member in patch.members or []:
            _merge_member(store, s, member.model_dump(exclude_unset=True), actor)
        for task in patch.tasks or []:
            _merge_task(store, s, task.model_dump(exclude_unset=True), actor)
        return store.snapshot(session=s)

    snapshot = store.run_atomic(op)
    log.info("snapshot_merged", actor=actor.id,
             collections=[k for k in ("members", "tasks", "theme") if getattr(patch, k) is not None])
    return snapshot
