"""Audit context management for async-safe request tracking."""

import socket
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass
class AuditContext:
    request_id: UUID | None = None
    client_ip: str | None = None
    client_hostname: str | None = None
    application_name: str = "epatient-access"


_audit_context: ContextVar[AuditContext | None] = ContextVar("audit_context", default=None)


def get_audit_context() -> AuditContext:
    """Get current audit context, creating default if none exists."""
    ctx = _audit_context.get()
    if ctx is None:
        ctx = AuditContext()
    return ctx


def set_audit_context(ctx: AuditContext) -> None:
    _audit_context.set(ctx)


def clear_audit_context() -> None:
    _audit_context.set(None)


@contextmanager
def audit_context(
    client_ip: str | None = None,
    client_hostname: str | None = None,
    request_id: UUID | None = None,
    application_name: str | None = None,
):
    """Scope request metadata for every audit event written inside the block.

    Restores the previous context on exit.
    """
    previous = _audit_context.get()

    ctx = AuditContext(
        request_id=request_id or uuid4(),
        client_ip=client_ip,
        client_hostname=client_hostname,
        application_name=application_name or "epatient-access",
    )
    _audit_context.set(ctx)

    try:
        yield ctx
    finally:
        _audit_context.set(previous)


def create_cli_context() -> AuditContext:
    return AuditContext(
        request_id=uuid4(),
        client_hostname=socket.gethostname(),
        application_name="epatient-access-cli",
    )
