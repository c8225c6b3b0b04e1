"""HTTP route definitions for the faucet service."""

from __future__ import annotations

import logging
from typing import Any, Literal

import jwt
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from faucet_schemas import (
    Account as AccountSchema,
    Disbursement,
    DisbursementState,
    DisbursementStatusChanged,
    IdentityRef,
    MintAccepted,
    WhoAmI,
)

from ..domain.account import Account, Channel, Role, normalise_handle
from ..domain.contracts import MintInput
from ..domain.disbursement import DisbursementRequest, DisbursementStatus
from ..domain.errors import (
    AccountNotFound,
    ExceedsDailyCap,
    FaucetError,
    Forbidden,
    IdentityConflict,
    InvalidTransition,
    QuotaRejected,
    RequestNotFound,
    StorageUnavailable,
)
from ..domain.service import FaucetService
from ..security.throttle import Throttle
from ..security.tokens import allows_channel, decode_adapter_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

_bearer = HTTPBearer(auto_error=False)


class MintRequest(BaseModel):
    """Payload an adapter sends on behalf of a person asking for tokens."""

    channel: Channel
    handle: str = Field(..., min_length=1, max_length=256)
    destination: str = Field(..., min_length=1, max_length=128)
    amount: int | None = None
    domain: str | None = Field(default=None, max_length=253)


class SetRoleRequest(BaseModel):
    actor_channel: Channel
    actor_handle: str = Field(..., min_length=1)
    target_channel: Channel
    target_handle: str = Field(..., min_length=1)
    role: Role


class LinkIdentityRequest(BaseModel):
    channel: Channel
    handle: str = Field(..., min_length=1, max_length=256)


class AdminActorRequest(BaseModel):
    actor_channel: Channel
    actor_handle: str = Field(..., min_length=1)


class ResolveRequest(AdminActorRequest):
    outcome: Literal["completed", "failed"]
    tx_reference: str | None = None


def _error(status_code: int, code: str, message: str, headers: dict[str, str] | None = None) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message}, headers=headers)


def get_service(request: Request) -> FaucetService:
    """Resolve the `FaucetService` stored on the FastAPI application state."""
    service: FaucetService = request.app.state.faucet_service
    return service


def get_throttle(request: Request) -> Throttle:
    throttle: Throttle = request.app.state.mint_throttle
    return throttle


def get_adapter_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> dict[str, Any]:
    """Verify the adapter bearer token and return its claims."""
    if credentials is None:
        raise _error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "missing adapter token")
    try:
        return decode_adapter_token(credentials.credentials)
    except jwt.PyJWTError as exc:
        raise _error(status.HTTP_401_UNAUTHORIZED, "unauthorized", f"invalid adapter token: {exc}") from exc


def _require_channel(claims: dict[str, Any], channel: Channel) -> None:
    if not allows_channel(claims, channel):
        raise _error(
            status.HTTP_403_FORBIDDEN,
            "channel_not_allowed",
            f"adapter {claims.get('sub')} may not act for channel {channel.value}",
        )


def _account_schema(account: Account) -> AccountSchema:
    return AccountSchema(
        account_id=account.account_id,
        role=account.role.value,
        created_at=account.created_at,
        identities=[IdentityRef(channel=b.channel.value, handle=b.handle) for b in account.bindings],
    )


def _disbursement_schema(request: DisbursementRequest, age_seconds: float | None = None) -> Disbursement:
    return Disbursement(
        request_id=request.request_id,
        account_id=request.account_id,
        channel=request.channel.value,
        destination=request.destination,
        amount=request.amount,
        status=request.status.value,
        tx_reference=request.tx_reference,
        attempts=request.attempts,
        last_error=request.last_error,
        needs_reconciliation=request.needs_reconciliation,
        requested_at=request.requested_at,
        finished_at=request.finished_at,
        age_seconds=age_seconds,
    )


@router.post("/mint", response_model=MintAccepted, status_code=status.HTTP_202_ACCEPTED)
def mint(
    response: Response,
    payload: MintRequest,
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
    throttle: Throttle = Depends(get_throttle),
) -> MintAccepted:
    """Reserve quota and queue a disbursement; the transfer itself happens asynchronously."""
    _require_channel(claims, payload.channel)
    decision = throttle.hit(f"mint:{payload.channel.value}:{normalise_handle(payload.handle)}")
    if not decision.allowed:
        raise _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "throttled",
            "too many mint requests, slow down",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )
    outcome = service.mint(
        MintInput(
            channel=payload.channel,
            handle=payload.handle,
            destination=payload.destination,
            amount=payload.amount,
            domain=payload.domain,
        )
    )
    response.headers["Location"] = f"/v1/disbursements/{outcome.request.request_id}"
    return MintAccepted(
        request_id=outcome.request.request_id,
        status=outcome.request.status.value,
        amount=outcome.request.amount,
        reserved_daily_used=outcome.snapshot.reserved,
        reserved_daily_remaining=outcome.snapshot.remaining,
        tx_reference=outcome.request.tx_reference,
    )


@router.get("/whoami", response_model=WhoAmI)
def whoami(
    channel: Channel = Query(...),
    handle: str = Query(..., min_length=1),
    domain: str | None = Query(default=None),
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> WhoAmI:
    """Report the caller's role, limits and today's usage, creating the account on first contact."""
    _require_channel(claims, channel)
    account, snapshot = service.whoami(channel, handle, domain)
    return WhoAmI(
        account_id=account.account_id,
        role=snapshot.role.value,
        default_amount=snapshot.default_amount,
        max_amount=snapshot.max_single,
        max_daily_cap=snapshot.max_daily,
        minted_today=snapshot.reserved,
        remaining_today=snapshot.remaining,
    )


@router.post("/admin/role", response_model=AccountSchema)
def set_role(
    payload: SetRoleRequest,
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> AccountSchema:
    _require_channel(claims, payload.actor_channel)
    account = service.set_role(
        payload.actor_channel,
        payload.actor_handle,
        payload.target_channel,
        payload.target_handle,
        payload.role,
    )
    return _account_schema(account)


@router.post("/accounts/{account_id}/identities", response_model=AccountSchema)
def link_identity(
    account_id: str,
    payload: LinkIdentityRequest,
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> AccountSchema:
    """Bind another channel handle to an existing account."""
    _require_channel(claims, payload.channel)
    return _account_schema(service.link_identity(account_id, payload.channel, payload.handle))


@router.get("/disbursements/{request_id}", response_model=Disbursement)
def get_disbursement(
    request_id: str,
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> Disbursement:
    return _disbursement_schema(service.get_request(request_id))


@router.get("/disbursements/{request_id}/history", response_model=list[DisbursementStatusChanged])
def disbursement_history(
    request_id: str,
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> list[DisbursementStatusChanged]:
    """Status events for a request, oldest first."""
    request = service.get_request(request_id)
    events = [
        DisbursementStatusChanged(
            request_id=request.request_id,
            account_id=request.account_id,
            state=DisbursementState.pending,
            occurred_at=request.requested_at,
        )
    ]
    if request.status is DisbursementStatus.pending:
        return events
    reason = None
    if request.status is DisbursementStatus.failed:
        failures = service.list_failures(request_id)
        reason = failures[-1].reason if failures else request.last_error
    events.append(
        DisbursementStatusChanged(
            request_id=request.request_id,
            account_id=request.account_id,
            state=request.status.value,
            occurred_at=request.finished_at or request.updated_at or request.requested_at,
            tx_reference=request.tx_reference,
            reason=reason,
        )
    )
    return events


@router.get("/admin/disbursements", response_model=list[Disbursement])
def list_disbursements(
    actor_channel: Channel = Query(...),
    actor_handle: str = Query(..., min_length=1),
    status_filter: DisbursementState | None = Query(default=None, alias="status"),
    older_than_seconds: float | None = Query(default=None, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> list[Disbursement]:
    """Return requests oldest first with their age, for spotting stuck work."""
    _require_channel(claims, actor_channel)
    actor = service.admin_actor(actor_channel, actor_handle)
    rows = service.list_requests(
        actor.account_id,
        status=status_filter.value if status_filter else None,
        older_than_seconds=older_than_seconds,
        limit=limit,
    )
    return [_disbursement_schema(request, age) for request, age in rows]


@router.post("/admin/disbursements/{request_id}/cancel", response_model=Disbursement)
def cancel_disbursement(
    request_id: str,
    payload: AdminActorRequest,
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> Disbursement:
    _require_channel(claims, payload.actor_channel)
    actor = service.admin_actor(payload.actor_channel, payload.actor_handle)
    return _disbursement_schema(service.cancel_request(actor.account_id, request_id))


@router.post("/admin/disbursements/{request_id}/resolve", response_model=Disbursement)
def resolve_disbursement(
    request_id: str,
    payload: ResolveRequest,
    claims: dict[str, Any] = Depends(get_adapter_claims),
    service: FaucetService = Depends(get_service),
) -> Disbursement:
    """Settle a request flagged for manual reconciliation."""
    _require_channel(claims, payload.actor_channel)
    actor = service.admin_actor(payload.actor_channel, payload.actor_handle)
    resolved = service.resolve_stuck(actor.account_id, request_id, payload.outcome, payload.tx_reference)
    return _disbursement_schema(resolved)


_STATUS_BY_ERROR: list[tuple[type[FaucetError], int]] = [
    (ExceedsDailyCap, status.HTTP_429_TOO_MANY_REQUESTS),
    (QuotaRejected, status.HTTP_400_BAD_REQUEST),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (AccountNotFound, status.HTTP_404_NOT_FOUND),
    (RequestNotFound, status.HTTP_404_NOT_FOUND),
    (IdentityConflict, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _status_for(exc: FaucetError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def install_error_handlers(app: FastAPI) -> None:
    """Map domain errors onto the ``{"detail": {"code", "message"}}`` error body."""

    @app.exception_handler(FaucetError)
    def _faucet_error(request: Request, exc: FaucetError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("request failed path=%s code=%s: %s", request.url.path, exc.code, exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": {"code": exc.code, "message": str(exc)}},
        )

    @app.exception_handler(ValueError)
    def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"code": "invalid_request", "message": str(exc)}},
        )
