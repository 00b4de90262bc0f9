from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Path, Query, Request

from ehrguard.api.schemas import (
    AdminCreateUserRequest,
    AdminPasswordResetRequest,
    Envelope,
    LoginRequest,
    MedicalRecordCreateRequest,
    MedicalRecordUpdateRequest,
    MFAInitRequest,
    MFAVerifyRequest,
    NewPasswordRequest,
    PasswordChangeRequest,
    PatientCreateRequest,
    TokenRefreshRequest,
    VitalSignsCreateRequest,
    WebAuthnAuthFinishRequest,
    WebAuthnAuthStartRequest,
    WebAuthnRegisterFinishRequest,
    ok,
)
from ehrguard.logging import get_logger
from ehrguard.service.access import RequestContext, RequireAnyRole, RequireRole
from ehrguard.service.errors import NotFoundError, RateLimitedError
from ehrguard.service.roles import Principal, Role
from ehrguard.service.runtime import Runtime, check_rate_limit, get_runtime
from ehrguard.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

STAFF_ROLES = (Role.RECEPTIONIST, Role.NURSE, Role.DOCTOR)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _context(
    request: Request,
    *,
    params: Optional[Dict[str, Any]] = None,
    body: Optional[Dict[str, Any]] = None,
) -> RequestContext:
    return RequestContext(
        authorization=request.headers.get("authorization"),
        method=request.method,
        path=request.url.path,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        params={**request.query_params, **(params or {})},
        body=body,
    )


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key_prefix=key.split(":", 1)[0])
        raise RateLimitedError(
            "Too many requests. Please try again later.",
            detail={"retry_after": max(reset_seconds, 1)},
        )


def _current_user(runtime: Runtime, principal: Principal) -> User:
    user = runtime.store.get_user(principal.subject)
    if not user or not user.is_active:
        raise NotFoundError("User not found")
    return user


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.sessions.login(
        body.username,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.get("challenge_name"):
        return ok(result, result["message"])
    if result.get("mfa_required"):
        return ok(result, "MFA verification required")
    return ok(result, "Login successful")


@router.post("/auth/new-password", response_model=Envelope, tags=["auth"])
async def complete_new_password(body: NewPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.sessions.complete_new_password(
        body.username,
        body.session,
        body.new_password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.get("mfa_required"):
        return ok(result, "Password changed. MFA verification required")
    return ok(result, "Password changed successfully")


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.sessions.refresh(body.refresh_token)
    return ok(tokens, "Token refreshed successfully")


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return await runtime.sessions.change_password(
            ctx.principal, body.old_password, body.new_password
        )

    guarded = runtime.access.guard(audit=("CHANGE_PASSWORD", "auth"))
    data = await guarded(_context(request), handler)
    return ok(data, "Password changed successfully")


# multi-factor: email one-time codes for a pending login
@router.post("/mfa/otp/init", response_model=Envelope, tags=["mfa"])
async def init_otp(body: MFAInitRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:init:{body.session_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    data = await runtime.sessions.init_mfa(
        body.session_id,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok(data, "Verification code sent to your email")


@router.post("/mfa/otp/verify", response_model=Envelope, tags=["mfa"])
async def verify_otp(body: MFAVerifyRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{body.session_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    data = await runtime.sessions.verify_mfa(
        body.session_id,
        body.code,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok(data, "Verification successful")


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        user = _current_user(runtime, ctx.principal)
        return runtime.otp.status(user, ctx.principal.role_name)

    data = await runtime.access.guard()(_context(request), handler)
    return ok(data)


# multi-factor: passkeys
@router.post("/webauthn/register/start", response_model=Envelope, tags=["webauthn"])
async def webauthn_register_start(request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        await _enforce_rate_limit(
            runtime,
            f"webauthn:register:{ctx.principal.subject}",
            runtime.settings.mfa_rate_limit_per_minute,
            60,
        )
        return runtime.passkeys.start_registration(_current_user(runtime, ctx.principal))

    data = await runtime.access.guard()(_context(request), handler)
    return ok(data, "Registration options generated")


@router.post("/webauthn/register/finish", response_model=Envelope, tags=["webauthn"])
async def webauthn_register_finish(body: WebAuthnRegisterFinishRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        user = _current_user(runtime, ctx.principal)
        return await asyncio.to_thread(
            runtime.passkeys.finish_registration, user, body.credential, body.device_name
        )

    guarded = runtime.access.guard(audit=("WEBAUTHN_REGISTER", "webauthn_credentials"))
    data = await guarded(_context(request), handler)
    return ok(data, "Biometric authentication registered successfully")


@router.post("/webauthn/authenticate/start", response_model=Envelope, tags=["webauthn"])
async def webauthn_authenticate_start(body: WebAuthnAuthStartRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"webauthn:auth:{body.username.lower()}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    data = runtime.passkeys.start_authentication(body.username)
    return ok(data, "Authentication options generated")


@router.post("/webauthn/authenticate/finish", response_model=Envelope, tags=["webauthn"])
async def webauthn_authenticate_finish(body: WebAuthnAuthFinishRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"webauthn:auth:{body.username.lower()}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    data = await runtime.sessions.passkey_login(
        body.username,
        body.credential,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok(data, "Biometric authentication successful")


@router.get("/webauthn/credentials", response_model=Envelope, tags=["webauthn"])
async def webauthn_list_credentials(request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return {"credentials": runtime.passkeys.list_credentials(ctx.principal.subject)}

    data = await runtime.access.guard()(_context(request), handler)
    return ok(data)


@router.delete("/webauthn/credentials/{credential_id}", response_model=Envelope, tags=["webauthn"])
async def webauthn_delete_credential(
    request: Request, credential_id: str = Path(..., max_length=1024)
):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.passkeys.delete_credential(ctx.principal.subject, credential_id)

    guarded = runtime.access.guard(audit=("WEBAUTHN_DELETE", "webauthn_credentials"))
    data = await guarded(_context(request), handler)
    return ok(data, "Credential removed")


# administration
@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(body: AdminCreateUserRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        user, temporary_password = await asyncio.to_thread(
            runtime.identity.create_user,
            body.username,
            body.email,
            body.role,
            full_name=body.full_name,
        )
        email_sent = await asyncio.to_thread(
            runtime.email.send_account_created, user.email, user.username, temporary_password
        )
        if not email_sent:
            logger.warning("account_email_not_sent", user_id=user.id)
        return {
            "id": user.id,
            "user": {
                "id": user.id,
                "username": user.username,
                "email": user.email,
                "full_name": user.full_name,
                "role": body.role,
            },
            "temporary_password": temporary_password,
            "email_sent": email_sent,
        }

    guarded = runtime.access.guard(RequireRole(Role.ADMIN), audit=("CREATE", "users"))
    data = await guarded(_context(request), handler)
    return ok(
        data,
        "User created successfully. Temporary password has been sent to the user's email.",
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    request: Request,
    role: Optional[str] = Query(default=None, max_length=32),
    search: Optional[str] = Query(default=None, max_length=200),
    limit: int = Query(default=20),
    offset: int = Query(default=0),
):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.users.list_users(role=role, search=search, limit=limit, offset=offset)

    guarded = runtime.access.guard(RequireRole(Role.ADMIN), audit=("READ", "users"))
    data = await guarded(_context(request), handler)
    return ok(data)


@router.post("/admin/users/{user_id}/disable", response_model=Envelope, tags=["admin"])
async def admin_disable_user(request: Request, user_id: str = Path(..., max_length=64)):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.users.disable_user(user_id)

    guarded = runtime.access.guard(RequireRole(Role.ADMIN), audit=("UPDATE", "users"))
    data = await guarded(_context(request, params={"user_id": user_id}), handler)
    return ok(data, "User disabled successfully")


@router.post("/admin/users/{user_id}/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    request: Request,
    body: Optional[AdminPasswordResetRequest] = None,
    user_id: str = Path(..., max_length=64),
):
    runtime = get_runtime()
    body = body or AdminPasswordResetRequest()

    async def handler(ctx: RequestContext):
        return await asyncio.to_thread(
            runtime.users.reset_password,
            user_id,
            body.temporary_password,
            notify=body.notify,
        )

    guarded = runtime.access.guard(RequireRole(Role.ADMIN), audit=("UPDATE", "users"))
    data = await guarded(_context(request, params={"user_id": user_id}), handler)
    return ok(data, "Password reset successfully")

@router.get("/audit-logs", response_model=Envelope, tags=["admin"])
async def list_audit_logs(
    request: Request,
    user_email: Optional[str] = Query(default=None, max_length=254),
    user_role: Optional[str] = Query(default=None, max_length=32),
    action: Optional[str] = Query(default=None, max_length=64),
    resource_type: Optional[str] = Query(default=None, max_length=64),
    status: Optional[str] = Query(default=None, pattern="^(success|failed|denied)$"),
    patient_id: Optional[str] = Query(default=None, max_length=64),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50),
    offset: int = Query(default=0),
):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.audit_query.search(
            filters={
                "user_email": user_email,
                "user_role": user_role,
                "action": action,
                "resource_type": resource_type,
                "status": status,
                "patient_id": patient_id,
            },
            start=start_date,
            end=end_date,
            limit=limit,
            offset=offset,
        )

    data = await runtime.access.guard(RequireRole(Role.ADMIN))(_context(request), handler)
    return ok(data)


# patients
@router.post("/patients", response_model=Envelope, status_code=201, tags=["patients"])
async def create_patient(body: PatientCreateRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.create_patient(ctx.principal, body.model_dump())

    guarded = runtime.access.guard(RequireAnyRole(Role.RECEPTIONIST), audit=("CREATE", "patients"))
    data = await guarded(_context(request), handler)
    return ok(data, "Patient created successfully")


@router.get("/patients/{patient_id}", response_model=Envelope, tags=["patients"])
async def get_patient(request: Request, patient_id: str = Path(..., max_length=64)):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.get_patient(ctx.principal, patient_id)

    guarded = runtime.access.guard(
        RequireAnyRole(*STAFF_ROLES, Role.PATIENT), audit=("READ", "patients")
    )
    data = await guarded(_context(request, params={"patient_id": patient_id}), handler)
    return ok(data)


@router.get("/patients/{patient_id}/medical-records", response_model=Envelope, tags=["patients"])
async def list_patient_records(
    request: Request,
    patient_id: str = Path(..., max_length=64),
    limit: int = Query(default=20),
    offset: int = Query(default=0),
):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.list_patient_records(
            ctx.principal, patient_id, limit=limit, offset=offset
        )

    guarded = runtime.access.guard(
        RequireAnyRole(Role.DOCTOR, Role.NURSE), audit=("READ", "medical_records")
    )
    data = await guarded(_context(request, params={"patient_id": patient_id}), handler)
    return ok(data)


# medical records
@router.post("/medical-records", response_model=Envelope, status_code=201, tags=["medical-records"])
async def create_medical_record(body: MedicalRecordCreateRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.create_medical_record(ctx.principal, body.model_dump())

    guarded = runtime.access.guard(
        RequireAnyRole(Role.DOCTOR), audit=("CREATE", "medical_records")
    )
    data = await guarded(_context(request, body={"patient_id": body.patient_id}), handler)
    return ok(data, "Medical record created successfully")


@router.get("/medical-records/{record_id}", response_model=Envelope, tags=["medical-records"])
async def get_medical_record(request: Request, record_id: str = Path(..., max_length=64)):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.get_medical_record(ctx.principal, record_id)

    guarded = runtime.access.guard(
        RequireAnyRole(Role.DOCTOR, Role.NURSE, Role.RECEPTIONIST),
        audit=("READ", "medical_records"),
    )
    data = await guarded(_context(request, params={"record_id": record_id}), handler)
    return ok(data)


@router.patch("/medical-records/{record_id}", response_model=Envelope, tags=["medical-records"])
async def update_medical_record(
    body: MedicalRecordUpdateRequest,
    request: Request,
    record_id: str = Path(..., max_length=64),
):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.update_medical_record(
            ctx.principal, record_id, body.model_dump(exclude_none=True)
        )

    guarded = runtime.access.guard(
        RequireAnyRole(Role.DOCTOR), audit=("UPDATE", "medical_records")
    )
    data = await guarded(_context(request, params={"record_id": record_id}), handler)
    return ok(data, "Medical record updated successfully")


# vital signs
@router.post("/vital-signs", response_model=Envelope, status_code=201, tags=["vital-signs"])
async def record_vital_signs(body: VitalSignsCreateRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.record_vital_signs(ctx.principal, body.model_dump())

    guarded = runtime.access.guard(
        RequireAnyRole(Role.NURSE, Role.DOCTOR), audit=("CREATE", "vital_signs")
    )
    data = await guarded(_context(request, body={"patient_id": body.patient_id}), handler)
    return ok(data, "Vital signs recorded successfully")


@router.get("/patients/{patient_id}/vital-signs", response_model=Envelope, tags=["vital-signs"])
async def list_vital_signs(
    request: Request,
    patient_id: str = Path(..., max_length=64),
    limit: int = Query(default=20),
    offset: int = Query(default=0),
):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return runtime.records.list_vital_signs(
            ctx.principal, patient_id, limit=limit, offset=offset
        )

    guarded = runtime.access.guard(
        RequireAnyRole(Role.DOCTOR, Role.NURSE), audit=("READ", "vital_signs")
    )
    data = await guarded(_context(request, params={"patient_id": patient_id}), handler)
    return ok(data)
