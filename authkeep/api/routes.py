from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from authkeep.api.schemas import (
    AuditEventResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LostPasswordRequest,
    RefreshRequest,
    RefreshTokenResponse,
    RegisterRequest,
    TokenPairResponse,
    UserResponse,
    dump,
)
from authkeep.logging import get_correlation_id, get_logger
from authkeep.service.errors import AuthenticationError, ValidationError
from authkeep.service.orchestrator import UNKNOWN, ClientInfo
from authkeep.service.runtime import get_runtime
from authkeep.storage.models import User

logger = get_logger(__name__)

router = APIRouter()


def client_ip(request: Request) -> str:
    runtime = get_runtime()
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") or UNKNOWN,
    )


async def auth_rate_limit(request: Request, response: Response) -> None:
    """Admission for credential-bearing endpoints; runs before the body is used."""
    runtime = get_runtime()
    info = await runtime.rate_limits.check(runtime.auth_policy, client_ip(request))
    info.apply_headers(response)


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    if not authorization:
        raise AuthenticationError("authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("authentication required")
    return await get_runtime().orchestrator.authenticate(token.strip())


def _ok(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


@router.get("/", response_model=Envelope)
async def whoami(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    tokens = runtime.tokens.list_active(user.id)
    return _ok(
        {
            "user": dump(UserResponse.from_user(user)),
            "tokens": [dump(RefreshTokenResponse.from_record(t)) for t in tokens],
        }
    )


@router.get("/verify/{token}")
async def verify(request: Request, token: str = Path(..., max_length=4096)):
    runtime = get_runtime()
    pair = await runtime.orchestrator.verify(token, client_info(request))
    logger.info("verification_redirect", user_id=pair.user.id)
    query = urlencode({"token": pair.access_token})
    return RedirectResponse(
        f"{runtime.settings.client_redirect_url}?{query}", status_code=307
    )


@router.post("/login", response_model=Envelope, dependencies=[Depends(auth_rate_limit)])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.orchestrator.login(body.email, body.password, client_info(request))
    return _ok(dump(TokenPairResponse.from_pair(pair)))


@router.post("/refresh", response_model=Envelope, dependencies=[Depends(auth_rate_limit)])
async def refresh(body: RefreshRequest, request: Request):
    if not body.refresh_token:
        raise ValidationError("Refresh token is required")
    runtime = get_runtime()
    pair = await runtime.orchestrator.refresh(body.refresh_token, client_info(request))
    return _ok(dump(TokenPairResponse.from_pair(pair)))


@router.post("/impersonate/{user_id}", response_model=Envelope)
async def impersonate(
    request: Request,
    user_id: str = Path(..., max_length=128),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    pair = await runtime.orchestrator.impersonate(user, user_id, client_info(request))
    return _ok(dump(TokenPairResponse.from_pair(pair)))


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    refresh_token = body.refresh_token if body else None
    await runtime.orchestrator.logout(user, refresh_token, client_info(request))
    return _ok({"message": "logged out"})


@router.post(
    "/register",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(auth_rate_limit)],
)
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    user, _verification_token = await runtime.orchestrator.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        client_info(request),
    )
    return _ok(dump(UserResponse.from_user(user)))


@router.post("/lost-password", response_model=Envelope)
async def lost_password(body: LostPasswordRequest):
    await get_runtime().orchestrator.lost_password(body.email)
    return _ok({"message": "If the account exists, a reset link has been sent."})


@router.delete("/tokens/{token_id}", response_model=Envelope)
async def remove_token(
    token_id: str = Path(..., max_length=128),
    user: User = Depends(get_current_user),
):
    revoked = await get_runtime().orchestrator.remove_token(user, token_id)
    return _ok({"id": token_id, "revoked": revoked})


@router.delete("/tokens", response_model=Envelope)
async def remove_all_tokens(user: User = Depends(get_current_user)):
    count = await get_runtime().orchestrator.revoke_all(user)
    return _ok({"revoked": count})


@router.get("/audit-logs", response_model=Envelope)
async def audit_logs(
    limit: int = Query(100, ge=1, le=1000),
    user: User = Depends(get_current_user),
):
    events = await get_runtime().orchestrator.audit_trail(user, limit)
    return _ok([dump(AuditEventResponse.from_event(e)) for e in events])


@router.get("/audit-logs/all", response_model=Envelope)
async def all_audit_logs(
    limit: int = Query(100, ge=1, le=1000),
    user: User = Depends(get_current_user),
):
    events = await get_runtime().orchestrator.audit_log(user, limit)
    return _ok([dump(AuditEventResponse.from_event(e)) for e in events])
