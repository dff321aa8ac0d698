from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Create/patch bodies are loose on purpose: required fields are checked by the
# store so every entry point reports the same ValidationError.
class MemberIn(CamelModel):
    name: Optional[str] = None
    role: Optional[str] = None
    pin: Optional[str] = None
    avatar: Optional[str] = None
    phone_number: Optional[str] = None
    payment_method: Optional[str] = None
    currency: Optional[str] = None
    weekly_allowance: Optional[int] = None


class MemberPatch(MemberIn):
    balance: Optional[int] = None
    total_earned: Optional[int] = None


class MemberOut(CamelModel):
    id: str
    name: str
    role: str
    avatar: Optional[str] = None
    phone_number: Optional[str] = None
    payment_method: Optional[str] = None
    currency: str
    balance: int
    total_earned: int
    weekly_allowance: Optional[int] = None


class TaskIn(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    reward: Optional[int] = None
    assigned_to_id: Optional[str] = None


class TaskPatch(TaskIn):
    status: Optional[str] = None


class TaskOut(CamelModel):
    id: str
    title: str
    description: Optional[str] = None
    reward: int
    assigned_to_id: str
    status: str
    created_at: int
    completed_at: Optional[int] = None


class BalanceAdjust(CamelModel):
    delta: int


class SyncMember(MemberPatch):
    id: str


class SyncTask(TaskPatch):
    id: str


class SnapshotPatch(CamelModel):
    members: Optional[List[SyncMember]] = None
    tasks: Optional[List[SyncTask]] = None
    theme: Optional[Literal["light", "dark"]] = None


class Snapshot(CamelModel):
    family_id: str
    members: List[MemberOut]
    tasks: List[TaskOut]
    theme: str


class ApprovalOut(CamelModel):
    task: TaskOut
    member: MemberOut


class TokenIn(CamelModel):
    member_id: str
    pin: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
