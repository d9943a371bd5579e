# hymnal_backend/main.py
# FastAPI surface for hymnal app entitlements: trials, premium, device sessions
# and the admin trial request queue.
#
# Run: uvicorn hymnal_backend.main:app --reload (from repo root)

from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hymnal_backend import config, policy
from hymnal_backend.auth_context import get_service, require_auth_context
from hymnal_backend.authz import Identity
from hymnal_backend.dependencies import require_role
from hymnal_backend.device import resolve_fingerprint
from hymnal_backend.errors import PolicyError, StoreUnavailable
from hymnal_backend.models import TrialRequestStatus, UserRole
from hymnal_backend.schemas import (
    ApproveTrialRequest,
    GrantPremiumRequest,
    GrantTrialRequest,
    RegisterSessionRequest,
    SessionRegisteredResponse,
    SetRoleRequest,
    StartTrialRequest,
    TrialRequestListResponse,
)
from hymnal_backend.service import EntitlementService, TrialRequestNotFound
from hymnal_backend.trial_requests import count_by_status

# ---------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------
app = FastAPI(title="Hymnal Entitlements Backend", version="0.1")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS if config.IS_PROD else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------
# Error mapping
# ---------------------------------------------------------
@app.exception_handler(PolicyError)
async def policy_error_handler(request: Request, exc: PolicyError) -> JSONResponse:
    if exc.status_code >= 500:
        print(f"[ADMIN] {request.method} {request.url.path} failed: {exc.kind}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(TrialRequestNotFound)
async def not_found_handler(request: Request, exc: TrialRequestNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "NotFound", "detail": str(exc)})


@app.exception_handler(ValueError)
async def invalid_input_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "InvalidInput", "detail": str(exc)})


def _summary(service: EntitlementService, entitlement) -> Dict[str, Any]:
    return policy.entitlement_summary(entitlement, service.clock(), service.limits)


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------
@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/health/store")
def health_store(service: EntitlementService = Depends(get_service)):
    try:
        service.probe_store()
    except StoreUnavailable as e:
        return JSONResponse(status_code=503, content={"status": "unavailable", **e.to_dict()})
    return {"status": "ok"}


# ---------------------------------------------------------
# Self-service (/me)
# ---------------------------------------------------------
@app.get("/me/entitlement")
def my_entitlement(
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    return service.entitlement_summary(identity, identity.user_id)


@app.post("/me/trial/start")
def start_my_trial(
    req: Optional[StartTrialRequest] = None,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    """Start the one-time weekly trial. 409 NotEligible when already used."""
    entitlement, request = service.start_weekly_trial(identity, device_id=req.device_id if req else None)
    return {
        "trial": policy.trial_info(entitlement, service.clock()),
        "request": request.to_record(),
    }


@app.post("/me/trial/request")
def request_my_trial(
    req: Optional[StartTrialRequest] = None,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    request = service.submit_trial_request(identity, device_id=req.device_id if req else None)
    return request.to_record()


@app.post("/me/sessions", response_model=SessionRegisteredResponse)
def register_my_session(
    req: Optional[RegisterSessionRequest] = None,
    user_agent: Optional[str] = Header(None),
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    """Register or refresh this device. 409 DeviceLimitExceeded when the class is full."""
    req = req or RegisterSessionRequest()
    fingerprint = resolve_fingerprint(
        user_agent=user_agent,
        device_id=req.device_id,
        device_class=req.device_class,
        device_label=req.device_label,
    )
    updated = service.register_device_session(
        identity,
        identity.user_id,
        fingerprint.device_id,
        fingerprint.device_class,
        device_label=fingerprint.device_label,
        evict_oldest=req.evict_oldest,
    )
    return SessionRegisteredResponse(
        device_id=fingerprint.device_id,
        device_class=fingerprint.device_class.value,
        device_label=fingerprint.device_label,
        devices=policy.device_session_summary(updated, service.limits),
    )


@app.delete("/me/sessions/{device_id}")
def remove_my_session(
    device_id: str,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    updated = service.remove_device_session(identity, identity.user_id, device_id)
    return policy.device_session_summary(updated, service.limits)


# ---------------------------------------------------------
# Admin: users
# ---------------------------------------------------------
@app.get("/admin/users/{user_id}/sessions", dependencies=[Depends(require_role(UserRole.ADMIN))])
def admin_user_sessions(
    user_id: str,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    return service.device_session_info(identity, user_id)


@app.delete("/admin/users/{user_id}/sessions", dependencies=[Depends(require_role(UserRole.ADMIN))])
def admin_remove_all_sessions(
    user_id: str,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    updated = service.remove_all_device_sessions(identity, user_id)
    return policy.device_session_summary(updated, service.limits)


@app.delete(
    "/admin/users/{user_id}/sessions/{device_id}",
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def admin_remove_session(
    user_id: str,
    device_id: str,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    updated = service.remove_device_session(identity, user_id, device_id)
    return policy.device_session_summary(updated, service.limits)


@app.post("/admin/users/{user_id}/premium", dependencies=[Depends(require_role(UserRole.ADMIN))])
def admin_grant_premium(
    user_id: str,
    req: GrantPremiumRequest,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    granted = service.grant_premium(identity, user_id, req.duration(), req.reason)
    return _summary(service, granted)


@app.delete("/admin/users/{user_id}/premium", dependencies=[Depends(require_role(UserRole.ADMIN))])
def admin_revoke_premium(
    user_id: str,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    return _summary(service, service.revoke_premium(identity, user_id))


@app.post("/admin/users/{user_id}/trial", dependencies=[Depends(require_role(UserRole.ADMIN))])
def admin_grant_trial(
    user_id: str,
    req: Optional[GrantTrialRequest] = None,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    req = req or GrantTrialRequest()
    updated = service.grant_admin_trial(identity, user_id, req.duration(), req.consume_eligibility)
    return _summary(service, updated)


@app.put("/admin/users/{user_id}/role", dependencies=[Depends(require_role(UserRole.SUPER_ADMIN))])
def admin_set_role(
    user_id: str,
    req: SetRoleRequest,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    role = service.set_role(identity, user_id, req.role)
    return {"userId": user_id, "role": role.value}


# ---------------------------------------------------------
# Admin: trial request queue
# ---------------------------------------------------------
@app.get(
    "/admin/trial-requests",
    response_model=TrialRequestListResponse,
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def admin_list_trial_requests(
    status: Optional[TrialRequestStatus] = None,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    """Most recent first. An empty queue is 200 with no items; a store failure is 503."""
    requests = service.list_trial_requests(identity)
    items = [r for r in requests if status is None or r.status == status]
    return TrialRequestListResponse(
        items=[r.to_record() for r in items],
        total=len(items),
        counts=count_by_status(requests),
    )


@app.post(
    "/admin/trial-requests/{request_id}/approve",
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def admin_approve_trial_request(
    request_id: str,
    req: Optional[ApproveTrialRequest] = None,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    """409 AlreadyResolved when another admin got there first."""
    request, granted = service.approve_trial_request(
        identity, request_id, duration=req.duration() if req else None
    )
    return {
        "request": request.to_record(),
        "entitlement": _summary(service, granted) if granted is not None else None,
    }


@app.post(
    "/admin/trial-requests/{request_id}/reject",
    dependencies=[Depends(require_role(UserRole.ADMIN))],
)
def admin_reject_trial_request(
    request_id: str,
    identity: Identity = Depends(require_auth_context),
    service: EntitlementService = Depends(get_service),
):
    return service.reject_trial_request(identity, request_id).to_record()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("hymnal_backend.main:app", host="0.0.0.0", port=8000, reload=config.IS_DEV)
