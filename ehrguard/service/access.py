from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Sequence, Tuple

from ehrguard.logging import get_logger
from ehrguard.service.audit import AuditAction, AuditSink, entry_for_request
from ehrguard.service.errors import AuthenticationError, ForbiddenError
from ehrguard.service.roles import Principal, Role, RoleResolver
from ehrguard.service.tokens import TokenVerifier

logger = get_logger(__name__)

Handler = Callable[["RequestContext"], Awaitable[Any]]
Step = Callable[["RequestContext", Handler], Awaitable[Any]]


@dataclass
class RequestContext:
    """Per-request state threaded through a guarded pipeline."""

    authorization: Optional[str] = None
    method: str = "GET"
    path: str = "/"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    principal: Optional[Principal] = None
    claims: Optional[Dict[str, Any]] = None
    audited: bool = False


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class Pipeline:
    """Ordered interceptor chain; each step is ``async (ctx, call_next)``."""

    def __init__(self, *steps: Step):
        self.steps: Tuple[Step, ...] = tuple(steps)

    async def run(self, ctx: RequestContext, handler: Handler) -> Any:
        async def dispatch(index: int, current: RequestContext) -> Any:
            if index == len(self.steps):
                return await handler(current)
            step = self.steps[index]
            return await step(current, lambda nxt: dispatch(index + 1, nxt))

        return await dispatch(0, ctx)


class Authenticate:
    """Verify the bearer token and attach the resolved principal."""

    def __init__(
        self,
        verifier: TokenVerifier,
        resolver: RoleResolver,
        *,
        token_uses: Sequence[str] = ("access", "id"),
    ):
        self.verifier = verifier
        self.resolver = resolver
        self.token_uses = tuple(token_uses)

    def __repr__(self) -> str:
        return "Authenticate()"

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Any:
        if not ctx.authorization:
            raise AuthenticationError("Unauthorized - No token provided")
        token = bearer_token(ctx.authorization)
        if not token:
            raise AuthenticationError("Unauthorized - Invalid token format")
        claims = await asyncio.to_thread(self.verifier.verify, token, token_uses=self.token_uses)
        ctx.claims = claims
        ctx.principal = self.resolver.principal(claims)
        return await call_next(ctx)


def _require_principal(ctx: RequestContext) -> Principal:
    if ctx.principal is None:
        raise ForbiddenError("User not authenticated")
    if ctx.principal.role is None:
        raise ForbiddenError(f"Access denied. Unrecognised role: {ctx.principal.role_name}")
    return ctx.principal


class RequireRole:
    """Allow callers whose role ranks at or above ``role``."""

    def __init__(self, role: Role):
        self.role = role

    def __repr__(self) -> str:
        return f"RequireRole({self.role.label})"

    def allows(self, principal: Principal) -> bool:
        return principal.role is not None and principal.role >= self.role

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Any:
        principal = _require_principal(ctx)
        if not self.allows(principal):
            raise ForbiddenError(f"Access denied. Required role: {self.role.label}")
        return await call_next(ctx)


class RequireAnyRole:
    """Allow callers whose role is exactly one of ``roles``; rank is ignored."""

    def __init__(self, *roles: Role):
        if not roles:
            raise ValueError("RequireAnyRole needs at least one role")
        self.roles = frozenset(roles)
        self._labels = ", ".join(r.label for r in sorted(self.roles))

    def __repr__(self) -> str:
        return f"RequireAnyRole({self._labels})"

    def allows(self, principal: Principal) -> bool:
        return principal.role in self.roles

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Any:
        principal = _require_principal(ctx)
        if not self.allows(principal):
            raise ForbiddenError(f"Access denied. Required roles: {self._labels}")
        return await call_next(ctx)


class RequireAuthenticated:
    """Allow any caller with a recognised role."""

    def __repr__(self) -> str:
        return "RequireAuthenticated()"

    async def __call__(self, ctx: RequestContext, call_next: Handler) -> Any:
        _require_principal(ctx)
        return await call_next(ctx)


class GuardedOperation:
    """A pipeline bound to its audit identity.

    Denials raised before the audit step (by the policy) are still recorded
    with status ``denied``; the handler never runs for them.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        sink: AuditSink,
        audit: Optional[Tuple[str, Optional[str]]],
    ):
        self.pipeline = pipeline
        self.sink = sink
        self.audit = audit

    @property
    def steps(self) -> Tuple[Step, ...]:
        return self.pipeline.steps

    async def __call__(self, ctx: RequestContext, handler: Handler) -> Any:
        try:
            return await self.pipeline.run(ctx, handler)
        except ForbiddenError as exc:
            if self.audit and not ctx.audited:
                action, resource_type = self.audit
                ctx.audited = True
                self.sink.record(
                    entry_for_request(
                        ctx, action, resource_type, status="denied", error_message=exc.message
                    )
                )
            logger.info(
                "access_denied",
                path=ctx.path,
                role=ctx.principal.role_name if ctx.principal else None,
            )
            raise


class AccessControl:
    """Builds guarded pipelines: authenticate, apply policy, audit, then run."""

    def __init__(self, verifier: TokenVerifier, resolver: RoleResolver, sink: AuditSink):
        self.verifier = verifier
        self.resolver = resolver
        self.sink = sink

    def authenticate_step(self) -> Authenticate:
        return Authenticate(self.verifier, self.resolver)

    def guard(
        self,
        policy: Optional[Step] = None,
        *,
        audit: Optional[Tuple[str, Optional[str]]] = None,
    ) -> GuardedOperation:
        steps: list = [self.authenticate_step(), policy or RequireAuthenticated()]
        if audit:
            steps.append(AuditAction(self.sink, audit[0], audit[1]))
        return GuardedOperation(Pipeline(*steps), self.sink, audit)


def _role_in(principal: Optional[Principal], roles: Iterable[Role]) -> bool:
    return principal is not None and principal.role in set(roles)


def can_view_full_diagnosis(principal: Optional[Principal]) -> bool:
    return _role_in(principal, (Role.DOCTOR,))


def can_view_diagnosis_summary(principal: Optional[Principal]) -> bool:
    return _role_in(principal, (Role.DOCTOR, Role.NURSE))


def can_view_sensitive_ids(principal: Optional[Principal]) -> bool:
    return _role_in(principal, (Role.DOCTOR, Role.NURSE, Role.RECEPTIONIST))


def can_modify_medical_record(principal: Optional[Principal]) -> bool:
    return _role_in(principal, (Role.DOCTOR,))


def can_modify_vital_signs(principal: Optional[Principal]) -> bool:
    return _role_in(principal, (Role.NURSE, Role.DOCTOR))


def can_view_medical_data(principal: Optional[Principal]) -> bool:
    return _role_in(principal, (Role.DOCTOR, Role.NURSE))


def can_access_patient(principal: Optional[Principal], patient_user_id: Optional[str]) -> bool:
    """Staff may open any chart; a patient only the one linked to their account."""
    if principal is None or principal.role is None:
        return False
    if principal.role in (Role.RECEPTIONIST, Role.NURSE, Role.DOCTOR):
        return True
    if principal.role is Role.PATIENT:
        return patient_user_id is not None and patient_user_id == principal.subject
    return False
