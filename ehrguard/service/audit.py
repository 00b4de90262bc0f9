from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from ehrguard.logging import get_logger
from ehrguard.service.errors import ForbiddenError, ServiceError, ValidationError
from ehrguard.storage.models import AuditEntry, utcnow

if TYPE_CHECKING:
    from ehrguard.service.access import RequestContext
    from ehrguard.service.roles import Principal

logger = get_logger(__name__)

MAX_AUDIT_PAGE_SIZE = 200


class AuditSink:
    """Fire-and-forget audit writer.

    ``record`` never blocks the request and never raises. Each write runs in a
    worker thread bounded by ``timeout_seconds``; failures are logged and
    dropped. ``drain`` waits for outstanding writes on the current loop.
    """

    def __init__(self, store, *, timeout_seconds: float = 3.0):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._pending if not task.done())

    def record(self, entry: AuditEntry) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_inline(entry)
            return
        task = loop.create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entry: AuditEntry) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.store.append_audit_entry, entry),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "audit_write_timeout",
                action=entry.action,
                resource_type=entry.resource_type,
                timeout_seconds=self.timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action,
                resource_type=entry.resource_type,
                error=str(exc),
            )

    def _write_inline(self, entry: AuditEntry) -> None:
        try:
            self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error("audit_write_failed", action=entry.action, error=str(exc))

    async def drain(self, timeout: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        pending = [t for t in self._pending if not t.done() and t.get_loop() is loop]
        if not pending:
            return
        _, still_pending = await asyncio.wait(
            pending, timeout=timeout if timeout is not None else self.timeout_seconds + 1
        )
        if still_pending:
            logger.warning("audit_drain_incomplete", pending=len(still_pending))


def principal_fields(principal: Optional["Principal"]) -> Dict[str, Any]:
    if principal is None:
        return {}
    return {
        "user_id": principal.subject,
        "user_email": principal.email,
        "user_role": principal.role_name,
    }


def _resource_id(result: Any) -> Optional[str]:
    if isinstance(result, dict):
        for key in ("id", "record_id", "patient_id"):
            if result.get(key):
                return str(result[key])
    return None


def _patient_id(ctx: "RequestContext", result: Any) -> Optional[str]:
    if isinstance(result, dict) and result.get("patient_id"):
        return str(result["patient_id"])
    for source in (ctx.params, ctx.body or {}):
        value = source.get("patient_id") or source.get("patientId")
        if value:
            return str(value)
    return None


def entry_for_request(
    ctx: "RequestContext",
    action: str,
    resource_type: Optional[str],
    *,
    status: str,
    result: Any = None,
    error_message: Optional[str] = None,
    duration_ms: Optional[int] = None,
) -> AuditEntry:
    request_data: Dict[str, Any] = {"method": ctx.method, "path": ctx.path}
    if duration_ms is not None:
        request_data["duration_ms"] = duration_ms
    return AuditEntry(
        action=action,
        resource_type=resource_type,
        resource_id=_resource_id(result),
        patient_id=_patient_id(ctx, result),
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        request_data=request_data,
        status=status,
        error_message=error_message,
        **principal_fields(ctx.principal),
    )


class AuditAction:
    """Pipeline step that records the outcome of the wrapped handler."""

    def __init__(self, sink: AuditSink, action: str, resource_type: Optional[str]):
        self.sink = sink
        self.action = action
        self.resource_type = resource_type

    def __repr__(self) -> str:
        return f"AuditAction({self.action!r}, {self.resource_type!r})"

    async def __call__(self, ctx: "RequestContext", call_next):
        started = time.monotonic()
        status = "success"
        error_message: Optional[str] = None
        result: Any = None
        try:
            result = await call_next(ctx)
            return result
        except ForbiddenError as exc:
            status, error_message = "denied", exc.message
            raise
        except ServiceError as exc:
            status, error_message = "failed", exc.message
            raise
        except Exception as exc:
            status, error_message = "failed", type(exc).__name__
            raise
        finally:
            ctx.audited = True
            self.sink.record(
                entry_for_request(
                    ctx,
                    self.action,
                    self.resource_type,
                    status=status,
                    result=result,
                    error_message=error_message,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            )


def _serialize_entry(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "log_id": entry.id,
        "user_email": entry.user_email,
        "user_role": entry.user_role,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "patient_id": entry.patient_id,
        "ip_address": entry.ip_address,
        "timestamp": entry.timestamp.isoformat(),
        "status": entry.status,
        "error_message": entry.error_message,
    }


class AuditQueryService:
    """Read side of the audit trail for administrators."""

    FILTERS = ("user_email", "user_role", "action", "resource_type", "status", "patient_id")

    def __init__(self, store):
        self.store = store

    def search(
        self,
        *,
        filters: Optional[Dict[str, Optional[str]]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if limit < 1 or limit > MAX_AUDIT_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_AUDIT_PAGE_SIZE}", detail={"field": "limit"}
            )
        if offset < 0:
            raise ValidationError("offset must be non-negative", detail={"field": "offset"})
        applied = {k: v for k, v in (filters or {}).items() if k in self.FILTERS and v}
        entries, total = self.store.list_audit_entries(
            **applied, start=start, end=end, limit=limit, offset=offset
        )
        statistics = self.store.audit_statistics((now or utcnow()) - timedelta(hours=24))
        return {
            "logs": [_serialize_entry(e) for e in entries],
            "statistics": statistics,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(entries) < total,
            },
        }
