"""Tests for the guard pipeline, role policies and capability predicates."""

import pytest

from ehrguard.service.access import (
    AccessControl,
    Authenticate,
    Pipeline,
    RequestContext,
    RequireAnyRole,
    RequireAuthenticated,
    RequireRole,
    bearer_token,
    can_access_patient,
    can_modify_medical_record,
    can_modify_vital_signs,
    can_view_diagnosis_summary,
    can_view_full_diagnosis,
    can_view_medical_data,
    can_view_sensitive_ids,
)
from ehrguard.service.audit import AuditAction, AuditSink
from ehrguard.service.errors import AuthenticationError, ForbiddenError, InvalidTokenError
from ehrguard.service.roles import Principal, Role, RoleResolver
from ehrguard.storage.memory import MemoryStore

ROLE_GROUPS = {
    "patient": "Patients",
    "receptionist": "Receptionists",
    "nurse": "Nurses",
    "doctor": "Doctors",
    "admin": "Admins",
}


class FakeVerifier:
    """Treats the bearer token as a group name."""

    def verify(self, token, *, token_uses=("access", "id")):
        if token == "bad":
            raise InvalidTokenError(reason="invalid_signature")
        return {"sub": f"sub-{token}", "email": f"{token}@example.com", "cognito:groups": [token]}


def principal(role: Role) -> Principal:
    return Principal(
        subject=f"sub-{role.label}",
        email=f"{role.label}@example.com",
        username=role.label,
        role_name=role.label,
        role=role,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def access(store):
    return AccessControl(FakeVerifier(), RoleResolver(), AuditSink(store))


def ctx_for(role: str | None, **kwargs) -> RequestContext:
    authorization = f"Bearer {ROLE_GROUPS.get(role, role)}" if role else None
    return RequestContext(authorization=authorization, path="/v1/test", **kwargs)


class TestPipeline:
    """Ordering and short-circuit behaviour of the interceptor chain."""

    async def test_steps_run_outermost_first(self):
        seen = []

        def step(name):
            async def _step(ctx, call_next):
                seen.append(name)
                return await call_next(ctx)

            return _step

        async def handler(ctx):
            seen.append("handler")
            return {"ok": True}

        result = await Pipeline(step("a"), step("b"), step("c")).run(RequestContext(), handler)
        assert result == {"ok": True}
        assert seen == ["a", "b", "c", "handler"]

    async def test_failing_step_short_circuits(self):
        seen = []

        async def deny(ctx, call_next):
            raise ForbiddenError("nope")

        async def handler(ctx):
            seen.append("handler")

        with pytest.raises(ForbiddenError):
            await Pipeline(deny).run(RequestContext(), handler)
        assert seen == []

    def test_guard_builds_auth_policy_audit_order(self, access):
        guarded = access.guard(RequireRole(Role.DOCTOR), audit=("READ", "patients"))
        kinds = [type(step) for step in guarded.steps]
        assert kinds == [Authenticate, RequireRole, AuditAction]

    def test_guard_without_policy_requires_authentication(self, access):
        guarded = access.guard()
        assert isinstance(guarded.steps[1], RequireAuthenticated)
        assert len(guarded.steps) == 2


class TestAuthenticate:
    async def test_missing_token(self, access):
        async def handler(ctx):
            return None

        with pytest.raises(AuthenticationError) as exc:
            await access.guard()(RequestContext(), handler)
        assert exc.value.message == "Unauthorized - No token provided"

    async def test_non_bearer_scheme(self, access):
        async def handler(ctx):
            return None

        with pytest.raises(AuthenticationError) as exc:
            await access.guard()(RequestContext(authorization="Basic abc"), handler)
        assert exc.value.message == "Unauthorized - Invalid token format"

    async def test_invalid_token_propagates(self, access):
        async def handler(ctx):
            return None

        with pytest.raises(InvalidTokenError):
            await access.guard()(RequestContext(authorization="Bearer bad"), handler)

    async def test_principal_attached(self, access):
        async def handler(ctx):
            return ctx.principal

        result = await access.guard()(ctx_for("nurse"), handler)
        assert result.role is Role.NURSE
        assert result.subject == "sub-Nurses"

    def test_bearer_token_parsing(self):
        assert bearer_token("Bearer abc") == "abc"
        assert bearer_token("bearer   abc ") == "abc"
        assert bearer_token("Bearer") is None
        assert bearer_token("Token abc") is None
        assert bearer_token(None) is None


class TestRequireRole:
    """Rank comparison: the policy admits the role and everything above it."""

    @pytest.mark.parametrize("caller", list(Role))
    @pytest.mark.parametrize("required", list(Role))
    async def test_rank_comparison(self, access, caller, required):
        async def handler(ctx):
            return "ran"

        guarded = access.guard(RequireRole(required))
        if caller >= required:
            assert await guarded(ctx_for(caller.label), handler) == "ran"
        else:
            with pytest.raises(ForbiddenError) as exc:
                await guarded(ctx_for(caller.label), handler)
            assert exc.value.message == f"Access denied. Required role: {required.label}"


class TestRequireAnyRole:
    """Exact membership: rank never helps."""

    async def test_admin_rejected_by_doctor_only_policy(self, access):
        ran = []

        async def handler(ctx):
            ran.append(True)

        with pytest.raises(ForbiddenError):
            await access.guard(RequireAnyRole(Role.DOCTOR))(ctx_for("admin"), handler)
        assert ran == []

    async def test_listed_roles_pass(self, access):
        async def handler(ctx):
            return ctx.principal.role

        policy = RequireAnyRole(Role.DOCTOR, Role.NURSE)
        assert await access.guard(policy)(ctx_for("nurse"), handler) is Role.NURSE
        assert await access.guard(policy)(ctx_for("doctor"), handler) is Role.DOCTOR

    async def test_unrecognised_role_is_denied(self, access):
        async def handler(ctx):
            return "ran"

        with pytest.raises(ForbiddenError) as exc:
            await access.guard(RequireAnyRole(Role.PATIENT))(ctx_for("Staff"), handler)
        assert "Unrecognised role: staff" in exc.value.message

    def test_empty_role_list_rejected(self):
        with pytest.raises(ValueError):
            RequireAnyRole()


class TestGuardAuditing:
    """Allowed calls, handler failures and denials each leave one audit entry."""

    async def test_success_is_audited(self, access, store):
        async def handler(ctx):
            return {"id": "rec-1", "patient_id": "pat-1"}

        guarded = access.guard(RequireAnyRole(Role.DOCTOR), audit=("READ", "medical_records"))
        await guarded(ctx_for("doctor", method="GET", ip_address="10.0.0.1"), handler)
        await access.sink.drain()

        assert len(store.audit_entries) == 1
        entry = store.audit_entries[0]
        assert entry.action == "READ"
        assert entry.resource_type == "medical_records"
        assert entry.resource_id == "rec-1"
        assert entry.patient_id == "pat-1"
        assert entry.status == "success"
        assert entry.user_role == "doctor"
        assert entry.ip_address == "10.0.0.1"
        assert entry.request_data["path"] == "/v1/test"

    async def test_denial_is_audited_once_and_handler_skipped(self, access, store):
        ran = []

        async def handler(ctx):
            ran.append(True)

        guarded = access.guard(RequireAnyRole(Role.DOCTOR), audit=("READ", "medical_records"))
        with pytest.raises(ForbiddenError):
            await guarded(ctx_for("receptionist", params={"patient_id": "pat-9"}), handler)
        await access.sink.drain()

        assert ran == []
        assert len(store.audit_entries) == 1
        entry = store.audit_entries[0]
        assert entry.status == "denied"
        assert entry.user_role == "receptionist"
        assert entry.patient_id == "pat-9"
        assert entry.error_message == "Access denied. Required roles: doctor"

    async def test_handler_forbidden_is_audited_once(self, access, store):
        async def handler(ctx):
            raise ForbiddenError("Access denied. You can only view your own records")

        guarded = access.guard(RequireAnyRole(Role.PATIENT), audit=("READ", "patients"))
        with pytest.raises(ForbiddenError):
            await guarded(ctx_for("patient"), handler)
        await access.sink.drain()

        assert [e.status for e in store.audit_entries] == ["denied"]

    async def test_handler_failure_is_audited_as_failed(self, access, store):
        async def handler(ctx):
            raise RuntimeError("boom")

        guarded = access.guard(audit=("UPDATE", "medical_records"))
        with pytest.raises(RuntimeError):
            await guarded(ctx_for("doctor"), handler)
        await access.sink.drain()

        entry = store.audit_entries[0]
        assert entry.status == "failed"
        assert entry.error_message == "RuntimeError"

    async def test_unauthenticated_calls_are_not_audited(self, access, store):
        async def handler(ctx):
            return None

        with pytest.raises(AuthenticationError):
            await access.guard(audit=("READ", "patients"))(RequestContext(), handler)
        await access.sink.drain()
        assert store.audit_entries == []


class TestCapabilities:
    """Field-level projection predicates."""

    @pytest.mark.parametrize(
        "predicate,allowed",
        [
            (can_view_full_diagnosis, {Role.DOCTOR}),
            (can_view_diagnosis_summary, {Role.DOCTOR, Role.NURSE}),
            (can_view_sensitive_ids, {Role.DOCTOR, Role.NURSE, Role.RECEPTIONIST}),
            (can_modify_medical_record, {Role.DOCTOR}),
            (can_modify_vital_signs, {Role.DOCTOR, Role.NURSE}),
            (can_view_medical_data, {Role.DOCTOR, Role.NURSE}),
        ],
    )
    def test_predicate_matrix(self, predicate, allowed):
        for role in Role:
            assert predicate(principal(role)) is (role in allowed), role
        assert predicate(None) is False

    def test_patient_access_is_ownership_based(self):
        patient = principal(Role.PATIENT)
        assert can_access_patient(patient, patient.subject) is True
        assert can_access_patient(patient, "someone-else") is False
        assert can_access_patient(patient, None) is False

    def test_staff_access_any_patient_admin_none(self):
        for role in (Role.RECEPTIONIST, Role.NURSE, Role.DOCTOR):
            assert can_access_patient(principal(role), "anyone") is True
        assert can_access_patient(principal(Role.ADMIN), "anyone") is False
