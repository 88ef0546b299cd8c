from __future__ import annotations

import asyncio
from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from daytick.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    RegisterRequest,
    SettingsResponse,
    SettingsUpdateRequest,
    TaskCountResponse,
    TaskCreateRequest,
    TaskResponse,
    TaskUpdateRequest,
    is_valid_date,
)
from daytick.logging import bind_request_user, get_logger
from daytick.service.auth import AuthContext
from daytick.service.runtime import Runtime, get_runtime
from daytick.storage.models import AuthToken, Task, TaskFilter

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the caller's session or fail the request with 401.

    The cookie wins when both it and an ``Authorization: Bearer`` header are sent.
    """
    runtime = get_runtime()
    cookie_value = request.cookies.get(runtime.settings.session_cookie_name)
    ctx = await asyncio.to_thread(runtime.gate.authenticate, cookie_value, authorization)
    request.state.user_id = ctx.user_id
    bind_request_user(ctx.user_id)
    return ctx


def _apply_session_cookie(response: Response, runtime: Runtime, token: AuthToken) -> None:
    response.set_cookie(
        runtime.settings.session_cookie_name,
        token.value,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        expires=token.expires_at.astimezone(timezone.utc),
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        runtime.settings.session_cookie_name,
        path="/",
        secure=runtime.settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _parse_task_id(task_id: str) -> int:
    try:
        parsed = int(task_id)
    except ValueError:
        raise _http_error("validation_error", "invalid task id", status_code=400)
    if parsed <= 0:
        raise _http_error("validation_error", "invalid task id", status_code=400)
    return parsed


async def _get_owned_task(runtime: Runtime, task_id: str, principal: AuthContext) -> Task:
    task = await asyncio.to_thread(runtime.store.get_task, _parse_task_id(task_id))
    if not task:
        raise _http_error("not_found", "task not found", status_code=404)
    if task.user_id != principal.user_id:
        raise _http_error("forbidden", "task belongs to another user", status_code=403)
    return task


def _parse_uint(raw: Optional[str]) -> Optional[int]:
    if raw is None or not (raw.isascii() and raw.isdigit()):
        return None
    return int(raw)


def _build_task_filter(request: Request, user_id: int) -> TaskFilter:
    """Translate search query parameters into a filter; unusable values are ignored."""
    params = request.query_params
    after = params.get("after")
    before = params.get("before")
    completed_raw = params.get("completed")
    completed = {"true": True, "false": False}.get(completed_raw or "")
    return TaskFilter(
        user_id=user_id,
        after=after if is_valid_date(after) else None,
        before=before if is_valid_date(before) else None,
        completed=completed,
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an account and sign it in.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    user, token = await runtime.auth.signup(body.email, body.password)
    _apply_session_cookie(response, runtime, token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id, session_token=token.value, expires_at=token.expires_at
        ),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for a new session.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    user, token = await runtime.auth.login(body.email, body.password)
    _apply_session_cookie(response, runtime, token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id, session_token=token.value, expires_at=token.expires_at
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented session and clear the cookie.

    The session is not validated first, so repeating a logout with a token
    that is already revoked or expired still succeeds.

    Raises:
        401: If no well-formed token is presented
    """
    runtime = get_runtime()
    cookie_value = request.cookies.get(runtime.settings.session_cookie_name)
    token = runtime.gate.extract_token(cookie_value, authorization)
    await runtime.auth.logout(token)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(body: TaskCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = await asyncio.to_thread(
        runtime.store.create_task, principal.user_id, body.title, body.planned_at
    )
    logger.info("task_created", task_id=task.id)
    return Envelope(status="ok", data=TaskResponse.from_task(task))


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def search_tasks(request: Request, principal: AuthContext = Depends(get_user)):
    """List the caller's tasks.

    Query parameters: ``after``/``before`` (exclusive dates), ``completed``,
    ``limit``, ``offset``, ``order_col`` and ``order_dir``. Ordering by ``id``
    is always descending.

    Raises:
        400: If order_dir is not ``asc`` or ``desc``
    """
    runtime = get_runtime()
    criteria = _build_task_filter(request, principal.user_id)
    params = request.query_params
    criteria.limit = _parse_uint(params.get("limit"))
    criteria.offset = _parse_uint(params.get("offset"))
    order_col = params.get("order_col")
    if order_col not in ("planned_at", "created_at"):
        order_col = "id"
    order_dir = "desc" if order_col == "id" else params.get("order_dir")
    if order_dir not in ("asc", "desc"):
        raise _http_error("validation_error", "invalid order direction", status_code=400)
    criteria.order_col = order_col
    criteria.order_dir = order_dir
    tasks = await asyncio.to_thread(runtime.store.search_tasks, criteria)
    return Envelope(status="ok", data=[TaskResponse.from_task(t) for t in tasks])


@router.get("/tasks/count", response_model=Envelope, tags=["tasks"])
async def count_tasks(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    criteria = _build_task_filter(request, principal.user_id)
    count = await asyncio.to_thread(runtime.store.count_tasks, criteria)
    return Envelope(status="ok", data=TaskCountResponse(count=count))


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(task_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = await _get_owned_task(runtime, task_id, principal)
    return Envelope(status="ok", data=TaskResponse.from_task(task))


@router.patch("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    task_id: str,
    body: TaskUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    task = await _get_owned_task(runtime, task_id, principal)
    updated = await asyncio.to_thread(
        lambda: runtime.store.update_task(
            task.id,
            title=body.title,
            planned_at=body.planned_at,
            completed=body.completed,
        )
    )
    if not updated:
        raise _http_error("not_found", "task not found", status_code=404)
    return Envelope(status="ok", data=TaskResponse.from_task(updated))


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(task_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = await _get_owned_task(runtime, task_id, principal)
    if not await asyncio.to_thread(runtime.store.delete_task, task.id):
        raise _http_error("not_found", "task not found", status_code=404)
    logger.info("task_deleted", task_id=task.id)
    return Envelope(status="ok", data=TaskResponse.from_task(task))


@router.get("/me", response_model=Envelope, tags=["settings"])
async def get_user_settings(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user, principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=SettingsResponse.from_user(user))


@router.patch("/me", response_model=Envelope, tags=["settings"])
async def update_user_settings(
    body: SettingsUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        lambda: runtime.store.update_user_settings(
            principal.user_id,
            start_of_week=body.start_of_week,
            rollover_time=body.rollover_time,
        )
    )
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=SettingsResponse.from_user(user))


@router.post("/me/password", response_model=Envelope, tags=["settings"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    """Change the caller's password; other sessions are signed out.

    Raises:
        401: If old_password does not match
    """
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id,
        body.old_password,
        body.new_password,
        current_token=principal.token,
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.delete("/me", response_model=Envelope, tags=["settings"])
async def delete_account(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal.user_id)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"message": "account deleted"})
