import threading
from typing import Any, Callable, Dict, List, Optional, TypeVar

import structlog
from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import config
from .db import init_db, make_engine
from .errors import ForbiddenError, InvalidTransitionError, NotFoundError, StorageFailure, ValidationError
from .models import LEDGER_FIELDS, MAX_AMOUNT, Currency, FamilySetting, Member, PaymentMethod, Role, Task, TaskStatus
from .schemas import MemberOut, Snapshot, TaskOut
from .security import hash_pin

log = structlog.get_logger(__name__)

T = TypeVar("T")

MEMBER_FIELDS = ("name", "role", "pin", "avatar", "phone_number", "payment_method", "currency", "weekly_allowance") + LEDGER_FIELDS
TASK_FIELDS = ("title", "description", "reward", "assigned_to_id", "status")
THEMES = ("light", "dark")


def _required_text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def _check_pin(pin: Any) -> str:
    if not isinstance(pin, str) or len(pin) != 4 or not pin.isdigit():
        raise ValidationError("pin must be 4 digits")
    return pin


def _check_choice(key: str, value: Any, enum) -> Optional[str]:
    if value is None:
        return None
    allowed = [e.value for e in enum]
    if value not in allowed:
        raise ValidationError(f"{key} must be one of {', '.join(allowed)}")
    return value


def _check_amount(key: str, value: Any, minimum: int, maximum: int = MAX_AMOUNT) -> int:
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    if value < minimum:
        raise ValidationError(f"{key} must be >= {minimum}")
    if value > maximum:
        raise ValidationError(f"{key} must be <= {maximum}")
    return value


def _unknown_keys(patch: Dict[str, Any], known) -> None:
    extra = sorted(set(patch) - set(known))
    if extra:
        raise ValidationError(f"unknown fields: {', '.join(extra)}")


class LedgerStore:
    """Sole owner of members, tasks and the family settings row.

    Every public operation takes an optional ``session``. Without one the call
    runs in its own ``run_atomic`` transaction; with one it joins the caller's.
    """

    def __init__(self, engine):
        self.engine = engine
        self._lock = threading.RLock()

    @classmethod
    def from_url(cls, url: str, echo: bool = False, family_id: str = None) -> "LedgerStore":
        store = cls(make_engine(url, echo=echo))
        store.init(family_id or config.DEFAULT_FAMILY_ID)
        return store

    def init(self, family_id: str) -> None:
        try:
            init_db(self.engine)
        except SQLAlchemyError as exc:
            raise StorageFailure("ledger storage unavailable") from exc

        def seed(session):
            if session.get(FamilySetting, "family_id") is None:
                session.add(FamilySetting(key="family_id", value=family_id))
            if session.get(FamilySetting, "theme") is None:
                session.add(FamilySetting(key="theme", value="light"))

        self.run_atomic(seed)

    def close(self) -> None:
        self.engine.dispose()

    # -- transactions ---------------------------------------------------

    def run_atomic(self, fn: Callable[[Session], T]) -> T:
        """Run ``fn(session)`` isolated from other transactions on this store.

        Commits when ``fn`` returns; any exception rolls back every write made
        inside it. Database errors are re-raised as StorageFailure.
        """
        with self._lock:
            with Session(self.engine, expire_on_commit=False) as session:
                try:
                    result = fn(session)
                    session.commit()
                except SQLAlchemyError as exc:
                    session.rollback()
                    log.error("storage_failure", error=str(exc))
                    raise StorageFailure("ledger storage unavailable") from exc
                except Exception:
                    session.rollback()
                    raise
                return result

    def within(self, session: Optional[Session], fn: Callable[[Session], T]) -> T:
        if session is not None:
            return fn(session)
        return self.run_atomic(fn)

    # -- reads ----------------------------------------------------------

    def get_member(self, member_id: str, session: Session = None, for_update: bool = False) -> Member:
        def op(s):
            member = s.get(Member, member_id, with_for_update=for_update or None)
            if member is None:
                raise NotFoundError(f"member {member_id} not found")
            return member
        return self.within(session, op)

    def get_task(self, task_id: str, session: Session = None, for_update: bool = False) -> Task:
        def op(s):
            task = s.get(Task, task_id, with_for_update=for_update or None)
            if task is None:
                raise NotFoundError(f"task {task_id} not found")
            return task
        return self.within(session, op)

    def list_members(self, session: Session = None) -> List[Member]:
        return self.within(session, lambda s: list(s.exec(select(Member))))

    def list_tasks(self, session: Session = None) -> List[Task]:
        return self.within(session, lambda s: list(s.exec(select(Task).order_by(Task.created_at))))

    def has_parent(self, session: Session = None) -> bool:
        stmt = select(Member).where(Member.role == Role.PARENT.value)
        return self.within(session, lambda s: s.exec(stmt).first() is not None)

    def get_setting(self, key: str, default: str = None, session: Session = None) -> Optional[str]:
        def op(s):
            row = s.get(FamilySetting, key)
            return row.value if row is not None else default
        return self.within(session, op)

    def set_setting(self, key: str, value: str, session: Session = None) -> None:
        if key == "theme" and value not in THEMES:
            raise ValidationError("theme must be light or dark")

        def op(s):
            row = s.get(FamilySetting, key)
            if row is None:
                row = FamilySetting(key=key, value=value)
            row.value = value
            s.add(row)
        self.within(session, op)

    def snapshot(self, session: Session = None) -> Snapshot:
        def op(s):
            return Snapshot(
                family_id=self.get_setting("family_id", config.DEFAULT_FAMILY_ID, session=s),
                members=[MemberOut.model_validate(m) for m in self.list_members(session=s)],
                tasks=[TaskOut.model_validate(t) for t in self.list_tasks(session=s)],
                theme=self.get_setting("theme", "light", session=s),
            )
        return self.within(session, op)

    # -- members --------------------------------------------------------

    def create_member(self, data: Dict[str, Any], session: Session = None) -> Member:
        data = {k: v for k, v in data.items() if v is not None}
        _unknown_keys(data, MEMBER_FIELDS + ("id",))
        if any(k in data for k in LEDGER_FIELDS):
            raise ForbiddenError("new members always start with an empty ledger")
        name = _required_text(data, "name")
        role = data.get("role")
        if role is None:
            raise ValidationError("role is required")
        _check_choice("role", role, Role)
        if data.get("pin") is None:
            raise ValidationError("pin is required")
        pin = _check_pin(data["pin"])
        weekly = data.get("weekly_allowance")
        member = Member(
            name=name,
            role=role,
            pin_hash=hash_pin(pin),
            avatar=data.get("avatar"),
            phone_number=data.get("phone_number"),
            payment_method=_check_choice("payment_method", data.get("payment_method"), PaymentMethod),
            currency=_check_choice("currency", data.get("currency"), Currency) or Currency.SEK.value,
            weekly_allowance=_check_amount("weekly_allowance", weekly, 0) if weekly is not None else None,
            balance=0,
            total_earned=0,
        )
        if data.get("id"):
            member.id = data["id"]

        def op(s):
            if s.get(Member, member.id) is not None:
                raise ValidationError(f"member {member.id} already exists")
            s.add(member)
            s.flush()
            return member

        member = self.within(session, op)
        log.info("member_created", member_id=member.id, role=member.role)
        return member

    def update_member_fields(self, member_id: str, patch: Dict[str, Any], allow_ledger: bool = False,
                             session: Session = None) -> Member:
        """Partial update of a member.

        Ledger fields are refused unless ``allow_ledger`` is set (a parent's
        explicit override, e.g. resetting the balance after a payout). Even
        then balance stays >= 0 and total_earned may only grow.
        """
        _unknown_keys(patch, MEMBER_FIELDS)
        ledger = {k: patch[k] for k in LEDGER_FIELDS if patch.get(k) is not None}
        if ledger and not allow_ledger:
            raise ForbiddenError("balance and totalEarned cannot be written directly")

        def op(s):
            member = self.get_member(member_id, session=s, for_update=True)
            for key, value in patch.items():
                if key in LEDGER_FIELDS:
                    continue
                if key == "name":
                    member.name = _required_text(patch, "name")
                elif key == "role":
                    if value is not None and value != member.role:
                        raise ValidationError("role cannot be changed")
                elif key == "pin":
                    if value is not None:
                        member.pin_hash = hash_pin(_check_pin(value))
                elif key == "payment_method":
                    member.payment_method = _check_choice(key, value, PaymentMethod)
                elif key == "currency":
                    member.currency = _check_choice(key, value, Currency) or Currency.SEK.value
                elif key == "weekly_allowance":
                    member.weekly_allowance = _check_amount(key, value, 0) if value is not None else None
                else:
                    setattr(member, key, value)

            if "balance" in ledger:
                member.balance = _check_amount("balance", ledger["balance"], 0)
            if "total_earned" in ledger:
                member.total_earned = _check_amount("total_earned", ledger["total_earned"], member.total_earned)
            s.add(member)
            s.flush()
            return member

        member = self.within(session, op)
        if ledger:
            log.info("ledger_override", member_id=member_id, balance=member.balance, total_earned=member.total_earned)
        return member

    def adjust_balance(self, member_id: str, delta: int, session: Session = None) -> Member:
        """Add ``delta`` to a member's balance, clamping at zero.

        A parent's manual bonus or correction. The sum is computed in SQL so two
        devices adjusting at once both land; total_earned is left alone.
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValidationError("delta must be a non-zero integer")
        _check_amount("delta", abs(delta), 1)

        def op(s):
            member = self.get_member(member_id, session=s, for_update=True)
            new_balance = Member.balance + delta
            result = s.exec(
                update(Member)
                .where(Member.id == member_id, new_balance <= MAX_AMOUNT)
                .values(balance=case((new_balance < 0, 0), else_=new_balance))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ValidationError(f"balance must be <= {MAX_AMOUNT}")
            s.refresh(member)
            return member

        member = self.within(session, op)
        log.info("balance_adjusted", member_id=member_id, delta=delta, balance=member.balance)
        return member

    def delete_member(self, member_id: str, session: Session = None) -> None:
        def op(s):
            member = self.get_member(member_id, session=s, for_update=True)
            for task in s.exec(select(Task).where(Task.assigned_to_id == member_id)):
                s.delete(task)
            s.flush()
            s.delete(member)
        self.within(session, op)
        log.info("member_deleted", member_id=member_id)

    # -- tasks ----------------------------------------------------------

    def create_task(self, data: Dict[str, Any], session: Session = None) -> Task:
        data = {k: v for k, v in data.items() if v is not None}
        _unknown_keys(data, TASK_FIELDS + ("id",))
        title = _required_text(data, "title")
        assignee_id = data.get("assigned_to_id")
        if not assignee_id:
            raise ValidationError("assignedToId is required")
        if "reward" not in data:
            raise ValidationError("reward is required")
        reward = _check_amount("reward", data["reward"], 1)
        if data.get("status", TaskStatus.PENDING.value) != TaskStatus.PENDING.value:
            raise ValidationError("new tasks start pending")

        def op(s):
            assignee = self.get_member(assignee_id, session=s)
            if assignee.role != Role.CHILD.value:
                raise ValidationError("tasks can only be assigned to a child")
            task = Task(title=title, description=data.get("description"), reward=reward, assigned_to_id=assignee_id)
            if data.get("id"):
                if s.get(Task, data["id"]) is not None:
                    raise ValidationError(f"task {data['id']} already exists")
                task.id = data["id"]
            s.add(task)
            s.flush()
            return task

        task = self.within(session, op)
        log.info("task_created", task_id=task.id, assignee=assignee_id, reward=reward)
        return task

    def update_task_fields(self, task_id: str, patch: Dict[str, Any], session: Session = None) -> Task:
        """Partial update of a task without any ledger side effect.

        Completion is not reachable from here; it only happens through the
        approval transaction, which credits the reward in the same commit.
        """
        _unknown_keys(patch, TASK_FIELDS)

        def op(s):
            task = self.get_task(task_id, session=s, for_update=True)
            for key, value in patch.items():
                if key == "title":
                    task.title = _required_text(patch, "title")
                elif key == "description":
                    task.description = value
                elif key == "reward":
                    task.reward = _check_amount("reward", value, 1)
                elif key == "assigned_to_id":
                    assignee = self.get_member(value, session=s)
                    if assignee.role != Role.CHILD.value:
                        raise ValidationError("tasks can only be assigned to a child")
                    task.assigned_to_id = value
                elif key == "status":
                    status = _check_choice("status", value, TaskStatus)
                    if status is None:
                        raise ValidationError("status cannot be empty")
                    if task.status == TaskStatus.COMPLETED.value and status != task.status:
                        raise InvalidTransitionError(f"task {task_id} is completed and cannot change status")
                    if status == TaskStatus.COMPLETED.value and task.status != status:
                        raise InvalidTransitionError("tasks are completed through approval")
                    task.status = status
                    if status != TaskStatus.COMPLETED.value:
                        task.completed_at = None
            s.add(task)
            s.flush()
            return task

        return self.within(session, op)

    def delete_task(self, task_id: str, session: Session = None) -> None:
        def op(s):
            s.delete(self.get_task(task_id, session=s, for_update=True))
        self.within(session, op)
        log.info("task_deleted", task_id=task_id)
