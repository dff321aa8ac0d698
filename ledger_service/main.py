from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import config, operations, sync
from .approval import approve_task
from .errors import LedgerError, NotFoundError
from .log import configure_logging
from .schemas import (
    ApprovalOut,
    BalanceAdjust,
    MemberIn,
    MemberOut,
    MemberPatch,
    Snapshot,
    SnapshotPatch,
    TaskIn,
    TaskOut,
    TaskPatch,
    TokenIn,
    TokenOut,
)
from .security import create_token, get_actor, get_optional_actor, get_store, require_family_key, verify_pin
from .store import LedgerStore

log = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_family_key)])


@router.post("/auth/token", response_model=TokenOut)
def login(body: TokenIn, store: LedgerStore = Depends(get_store)):
    try:
        member = store.get_member(body.member_id)
    except NotFoundError:
        raise HTTPException(401, "Invalid credentials")
    if not verify_pin(body.pin, member.pin_hash):
        raise HTTPException(401, "Invalid credentials")
    return TokenOut(access_token=create_token(member.id))


@router.get("/snapshot", response_model=Snapshot)
def get_snapshot(store: LedgerStore = Depends(get_store), actor=Depends(get_actor)):
    return sync.pull(store)


@router.post("/snapshot", response_model=Snapshot)
def push_snapshot(body: SnapshotPatch, store: LedgerStore = Depends(get_store), actor=Depends(get_actor)):
    return sync.propose_partial(store, body, actor)


@router.post("/members", response_model=MemberOut)
def create_member(body: MemberIn, store: LedgerStore = Depends(get_store), actor=Depends(get_optional_actor)):
    return operations.create_member(store, body.model_dump(exclude_unset=True), actor=actor)


@router.patch("/members/{member_id}", response_model=MemberOut)
def update_member(member_id: str, body: MemberPatch, store: LedgerStore = Depends(get_store),
                  actor=Depends(get_actor)):
    return operations.edit_member(store, member_id, body.model_dump(exclude_unset=True), actor)


@router.post("/members/{member_id}/adjust", response_model=MemberOut)
def adjust_member_balance(member_id: str, body: BalanceAdjust, store: LedgerStore = Depends(get_store),
                          actor=Depends(get_actor)):
    return operations.adjust_balance(store, member_id, body.delta, actor)


@router.delete("/members/{member_id}")
def delete_member(member_id: str, store: LedgerStore = Depends(get_store), actor=Depends(get_actor)):
    operations.remove_member(store, member_id, actor)
    return {"status": "deleted", "id": member_id}


@router.post("/tasks", response_model=TaskOut)
def create_task(body: TaskIn, store: LedgerStore = Depends(get_store), actor=Depends(get_actor)):
    return operations.create_task(store, body.model_dump(exclude_unset=True), actor)


@router.patch("/tasks/{task_id}", response_model=TaskOut)
def update_task(task_id: str, body: TaskPatch, store: LedgerStore = Depends(get_store), actor=Depends(get_actor)):
    return operations.change_task(store, task_id, body.model_dump(exclude_unset=True), actor)


@router.delete("/tasks/{task_id}")
def delete_task(task_id: str, store: LedgerStore = Depends(get_store), actor=Depends(get_actor)):
    operations.remove_task(store, task_id, actor)
    return {"status": "deleted", "id": task_id}


@router.post("/tasks/{task_id}/approve", response_model=ApprovalOut)
def approve(task_id: str, store: LedgerStore = Depends(get_store), actor=Depends(get_actor)):
    task, member = approve_task(store, task_id, actor)
    return ApprovalOut(task=TaskOut.model_validate(task), member=MemberOut.model_validate(member))


async def ledger_error(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.kind})


def create_app(store: Optional[LedgerStore] = None, family_key: Optional[str] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="ledger-service")
    app.state.store = store
    app.state.family_key = family_key if family_key is not None else config.FAMILY_API_KEY
    app.add_exception_handler(LedgerError, ledger_error)
    app.include_router(router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    def start():
        if not app.state.family_key:
            log.warning("family_key_missing", detail="API is running without a family key")
        if app.state.store is None:
            app.state.store = LedgerStore.from_url(config.DATABASE_URL, echo=config.SQL_ECHO)
            log.info("ledger_store_ready", database_url=config.DATABASE_URL)

    @app.on_event("shutdown")
    def stop():
        if app.state.store is not None:
            app.state.store.close()

    return app


app = create_app()
