import threading

import pytest
from sqlalchemy.exc import OperationalError

from ledger_service import approval, operations
from ledger_service.approval import approve_task
from ledger_service.errors import ConflictError, ForbiddenError, InvalidTransitionError, StorageFailure, ValidationError
from ledger_service.models import MAX_AMOUNT
from ledger_service.store import LedgerStore
from tests.conftest import pause_after_member_read


def ledger(store, member):
    m = store.get_member(member.id)
    return m.balance, m.total_earned


def test_scenario_a_full_workflow(store, parent, child):
    task = store.create_task({"title": "Dishes", "reward": 50, "assigned_to_id": child.id})
    operations.change_task(store, task.id, {"status": "waiting_for_approval"}, child)

    done, member = approve_task(store, task.id, parent)
    assert done.status == "completed"
    assert done.completed_at is not None
    assert (member.balance, member.total_earned) == (50, 50)
    assert ledger(store, child) == (50, 50)


def test_scenario_b_repeat_approval_is_rejected(store, parent, child, waiting_task):
    approve_task(store, waiting_task.id, parent)
    with pytest.raises(ConflictError):
        approve_task(store, waiting_task.id, parent)
    assert ledger(store, child) == (50, 50)


def test_scenario_c_concurrent_approvals(store, parent, child, waiting_task):
    barrier = threading.Barrier(2)
    results = []

    def worker():
        barrier.wait()
        try:
            approve_task(store, waiting_task.id, parent)
            results.append("ok")
        except ConflictError:
            results.append("conflict")

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["conflict", "ok"]
    assert ledger(store, child) == (50, 50)


def test_concurrent_approvals_across_store_handles(tmp_path):
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    first = LedgerStore.from_url(url)
    second = LedgerStore.from_url(url)
    try:
        parent = first.create_member({"name": "Anna", "role": "parent", "pin": "1111"})
        child = first.create_member({"name": "Olle", "role": "child", "pin": "2222"})
        task = first.create_task({"title": "Dishes", "reward": 50, "assigned_to_id": child.id})
        first.update_task_fields(task.id, {"status": "waiting_for_approval"})

        barrier = threading.Barrier(2)
        results = []

        def worker(store):
            barrier.wait()
            try:
                approve_task(store, task.id, parent)
                results.append("ok")
            except ConflictError:
                results.append("conflict")

        threads = [threading.Thread(target=worker, args=(s,)) for s in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["conflict", "ok"]
        assert ledger(first, child) == (50, 50)
    finally:
        first.close()
        second.close()


def test_scenario_d_rejection(store, parent, child, waiting_task):
    task = operations.change_task(store, waiting_task.id, {"status": "pending"}, parent)
    assert task.status == "pending"
    assert task.completed_at is None
    assert ledger(store, child) == (0, 0)


def test_scenario_e_delete_pending_task(store, parent, child):
    task = store.create_task({"title": "Vacuum", "reward": 30, "assigned_to_id": child.id})
    operations.remove_task(store, task.id, parent)
    assert store.list_tasks() == []
    assert ledger(store, child) == (0, 0)


def test_rejected_task_can_be_redone_and_credited_once(store, parent, child, task):
    for _ in range(3):
        operations.change_task(store, task.id, {"status": "waiting_for_approval"}, child)
        operations.change_task(store, task.id, {"status": "pending"}, parent)
    operations.change_task(store, task.id, {"status": "waiting_for_approval"}, child)
    approve_task(store, task.id, parent)
    assert ledger(store, child) == (50, 50)


def test_approving_pending_task_conflicts(store, parent, child, task):
    with pytest.raises(ConflictError):
        approve_task(store, task.id, parent)
    assert ledger(store, child) == (0, 0)


def test_child_cannot_approve(store, child, waiting_task):
    with pytest.raises(ForbiddenError):
        approve_task(store, waiting_task.id, child)
    assert store.get_task(waiting_task.id).status == "waiting_for_approval"


def test_patch_path_refuses_completion(store, parent, child, waiting_task):
    with pytest.raises(InvalidTransitionError):
        operations.change_task(store, waiting_task.id, {"status": "completed"}, parent)
    assert ledger(store, child) == (0, 0)


def test_failed_credit_leaves_nothing_behind(store, parent, child, waiting_task, monkeypatch):
    def broken_credit(session, member, amount):
        raise OperationalError("UPDATE member", {}, Exception("disk I/O error"))

    monkeypatch.setattr(approval, "_credit", broken_credit)
    with pytest.raises(StorageFailure):
        approve_task(store, waiting_task.id, parent)

    task = store.get_task(waiting_task.id)
    assert task.status == "waiting_for_approval"
    assert task.completed_at is None
    assert ledger(store, child) == (0, 0)


def test_completed_task_is_frozen(store, parent, child, waiting_task):
    approve_task(store, waiting_task.id, parent)
    with pytest.raises(InvalidTransitionError):
        operations.change_task(store, waiting_task.id, {"reward": 500}, parent)
    with pytest.raises(InvalidTransitionError):
        operations.change_task(store, waiting_task.id, {"status": "pending"}, parent)
    assert store.get_task(waiting_task.id).reward == 50


def test_credits_for_different_tasks_both_land(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    first = LedgerStore.from_url(url)
    second = LedgerStore.from_url(url)
    try:
        parent = first.create_member({"name": "Anna", "role": "parent", "pin": "1111"})
        child = first.create_member({"name": "Olle", "role": "child", "pin": "2222"})
        tasks = []
        for title in ("Dishes", "Laundry"):
            task = first.create_task({"title": title, "reward": 50, "assigned_to_id": child.id})
            first.update_task_fields(task.id, {"status": "waiting_for_approval"})
            tasks.append(task)

        barrier = threading.Barrier(2)
        for s in (first, second):
            monkeypatch.setattr(s, "get_member", pause_after_member_read(s, barrier))

        errors = []

        def worker(store, task_id):
            try:
                approve_task(store, task_id, parent)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(s, t.id)) for s, t in zip((first, second), tasks)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        monkeypatch.undo()
        assert errors == []
        assert [first.get_task(t.id).status for t in tasks] == ["completed", "completed"]
        assert ledger(first, child) == (100, 100)
    finally:
        first.close()
        second.close()


def test_completed_task_cannot_be_reopened_through_the_store(store, parent, child, waiting_task):
    approve_task(store, waiting_task.id, parent)
    with pytest.raises(InvalidTransitionError):
        store.update_task_fields(waiting_task.id, {"status": "pending"})
    with pytest.raises(InvalidTransitionError):
        store.update_task_fields(waiting_task.id, {"status": "waiting_for_approval"})
    with pytest.raises(ConflictError):
        approve_task(store, waiting_task.id, parent)

    task = store.get_task(waiting_task.id)
    assert task.status == "completed"
    assert task.completed_at is not None
    assert ledger(store, child) == (50, 50)


def test_credit_past_ledger_limit_is_refused(store, parent, child, waiting_task):
    store.update_member_fields(child.id, {"total_earned": MAX_AMOUNT - 10}, allow_ledger=True)
    with pytest.raises(ValidationError):
        approve_task(store, waiting_task.id, parent)
    assert store.get_task(waiting_task.id).status == "waiting_for_approval"
    assert ledger(store, child) == (0, MAX_AMOUNT - 10)
