import time
import uuid
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


class Role(str, Enum):
    PARENT = "parent"
    CHILD = "child"


class TaskStatus(str, Enum):
    PENDING = "pending"
    WAITING = "waiting_for_approval"
    COMPLETED = "completed"


class PaymentMethod(str, Enum):
    SWISH = "swish"
    VENMO = "venmo"
    CASHAPP = "cashapp"
    PAYPAL = "paypal"


class Currency(str, Enum):
    SEK = "SEK"
    USD = "USD"
    EUR = "EUR"


LEDGER_FIELDS = ("balance", "total_earned")

# minor currency units; keeps sums well inside a 64-bit column
MAX_AMOUNT = 10 ** 12


def new_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


class Member(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    role: str = Field(index=True)
    pin_hash: str
    avatar: Optional[str] = None
    phone_number: Optional[str] = None
    payment_method: Optional[str] = None
    currency: str = Currency.SEK.value
    # ledger fields, written by the approval transaction or a parent override
    balance: int = 0
    total_earned: int = 0
    weekly_allowance: Optional[int] = None


class Task(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title: str
    description: Optional[str] = None
    reward: int
    assigned_to_id: str = Field(index=True, foreign_key="member.id")
    status: str = Field(default=TaskStatus.PENDING.value, index=True)
    created_at: int = Field(default_factory=now_ms)
    completed_at: Optional[int] = None


class FamilySetting(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: str
