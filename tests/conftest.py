import os

# bcrypt's minimum cost keeps member creation fast in tests
os.environ.setdefault("PIN_HASH_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from ledger_service.main import create_app
from ledger_service.security import create_token
from ledger_service.store import LedgerStore


@pytest.fixture
def store():
    s = LedgerStore.from_url("sqlite://", family_id="test-family")
    yield s
    s.close()


@pytest.fixture
def parent(store):
    return store.create_member({"name": "Anna", "role": "parent", "pin": "1111"})


@pytest.fixture
def child(store):
    return store.create_member({"name": "Olle", "role": "child", "pin": "2222", "phone_number": "0701234567",
                                "payment_method": "swish"})


@pytest.fixture
def other_child(store):
    return store.create_member({"name": "Stina", "role": "child", "pin": "3333"})


@pytest.fixture
def task(store, child):
    return store.create_task({"title": "Dishes", "reward": 50, "assigned_to_id": child.id})


@pytest.fixture
def waiting_task(store, child, task):
    return store.update_task_fields(task.id, {"status": "waiting_for_approval"})


@pytest.fixture
def client(store):
    return TestClient(create_app(store=store, family_key=""))


def auth(member):
    return {"Authorization": f"Bearer {create_token(member.id)}"}


def pause_after_member_read(store, barrier):
    """Make ``store`` wait at ``barrier`` right after it locks-and-reads a member."""
    original = store.get_member

    def get_member(member_id, session=None, for_update=False):
        member = original(member_id, session=session, for_update=for_update)
        if for_update:
            barrier.wait(timeout=10)
        return member

    return get_member
