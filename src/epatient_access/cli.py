"""epatient-access: break-glass access control for patient records."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, TypeVar
from uuid import UUID

import asyncpg
import typer
from rich.console import Console

from . import __version__
from .audit.context import create_cli_context, set_audit_context
from .audit.models import ActorRole, AuditEventType
from .audit.retention import MINIMUM_RETENTION_DAYS
from .audit.schema import AuditSchemaManager
from .audit.trail import AuditFilters
from .auth.emergency_access import EmergencyRequest
from .auth.models import AuthMethod, BiometricModality, OTPPurpose, Role
from .auth.schema import AccessSchemaManager
from .config import AccessConfig, ConfigValidationError, load_config
from .db import create_pool, resolve_database_url
from .secrets import CredentialValidationError, mask_password_in_url
from .services import AccessServices

T = TypeVar("T")

_active_config: AccessConfig | None = None


def version_callback(value: bool) -> None:
    if value:
        print(__version__)
        raise typer.Exit()


app = typer.Typer(name="epatient-access", help="Break-glass access control for patient records")
console = Console()


def setup_logging(verbose: bool, quiet: bool) -> None:
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("epatient_access").setLevel(level)


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version", callback=version_callback, is_eager=True, help="Show version and exit"
        ),
    ] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_quiet: bool = typer.Option(False, "--log-quiet", help="Only log warnings and errors"),
) -> None:
    global _active_config

    setup_logging(verbose, log_quiet)

    if config_path is None:
        _active_config = None
        return
    try:
        _active_config = load_config(config_path)
    except (FileNotFoundError, ConfigValidationError) as e:
        console.print(f"[red]Configuration Error: {e}[/red]")
        raise typer.Exit(1) from None


def _get_config() -> AccessConfig:
    return _active_config or AccessConfig()


def _require_database_url(db_url: str | None) -> str:
    try:
        url = resolve_database_url(db_url)
    except CredentialValidationError as e:
        console.print(f"[red]Security Error: {e}[/red]")
        raise typer.Exit(1) from None
    if url is None:
        console.print(
            "[red]Error: No database configured. Use --db or set POSTGRES_URL / PGHOST.[/red]"
        )
        raise typer.Exit(1)
    return url


async def _run_with_services(
    url: str, action: Callable[[AccessServices, asyncpg.Connection], Awaitable[T]]
) -> T:
    set_audit_context(create_cli_context())
    pool = await create_pool(url)
    services = AccessServices(pool, config=_get_config())
    try:
        async with pool.acquire() as conn:
            return await action(services, conn)
    finally:
        await services.close()
        await pool.close()


def _execute(
    db_url: str | None, action: Callable[[AccessServices, asyncpg.Connection], Awaitable[T]]
) -> T:
    url = _require_database_url(db_url)
    try:
        return asyncio.run(_run_with_services(url, action))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None


def _parse_timestamp(value: str | None, option: str) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Error: Invalid {option} timestamp: {value}[/red]")
        raise typer.Exit(1) from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


@app.command("init-db")
def init_db(
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
) -> None:
    """Create identity, credential, session and audit tables."""
    url = _require_database_url(db_url)

    async def run_init() -> None:
        conn = await asyncpg.connect(url)
        try:
            await AccessSchemaManager().create_schema(conn)
            console.print("[green]✓[/green] Access schema initialized")
            audit_schema = AuditSchemaManager()
            await audit_schema.create_audit_schema(conn)
            if await audit_schema.verify_immutability(conn):
                console.print("[green]✓[/green] Audit schema initialized (append-only)")
        finally:
            await conn.close()

    try:
        asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Error initializing {mask_password_in_url(url)}: {e}[/red]")
        raise typer.Exit(1) from None


identity_app = typer.Typer(help="Register and retire identities")
app.add_typer(identity_app, name="identity")


@identity_app.command("register")
def identity_register(
    role: Annotated[Role, typer.Option("--role", "-r", case_sensitive=False, help="Identity role")],
    name: Annotated[str, typer.Option("--name", "-n", help="Display name")],
    phone: Annotated[str | None, typer.Option("--phone", help="Phone number")] = None,
    email: Annotated[str | None, typer.Option("--email", help="Email address")] = None,
    hospital: Annotated[
        str | None, typer.Option("--hospital", help="Hospital id (operators)")
    ] = None,
    identity_id: Annotated[str | None, typer.Option("--id", help="Explicit identity id")] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Register a patient, doctor or operator."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.directory.register(
            conn, role, name, phone=phone, email=email, hospital_id=hospital, identity_id=identity_id
        )

    identity = _execute(db_url, action)
    if json_output:
        _print_json(
            {
                "identity_id": identity.identity_id,
                "role": identity.role.value,
                "display_name": identity.display_name,
                "hospital_id": identity.hospital_id,
            }
        )
    else:
        console.print(
            f"[green]✓[/green] Registered {identity.role.value.lower()} {identity.identity_id}"
        )


@identity_app.command("retire")
def identity_retire(
    identity_id: Annotated[str, typer.Argument(help="Patient identity id")],
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
) -> None:
    """Retire a patient. Retired patients cannot be the target of emergency access."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.directory.retire(conn, identity_id, services.clock.now())

    if not _execute(db_url, action):
        console.print(f"[yellow]No active patient {identity_id}[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Retired patient {identity_id}")


otp_app = typer.Typer(help="One-time codes")
app.add_typer(otp_app, name="otp")


@otp_app.command("issue")
def otp_issue(
    identifier: Annotated[str, typer.Argument(help="Phone, email or identity id")],
    purpose: Annotated[
        OTPPurpose, typer.Option("--purpose", "-p", case_sensitive=False, help="Code purpose")
    ] = OTPPurpose.LOGIN,
    show_code: bool = typer.Option(
        False, "--show-code", help="Print the code (requires dev_mode in the configuration)"
    ),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Issue a one-time code, replacing any earlier code for the same purpose."""
    if show_code and not _get_config().dev_mode:
        console.print("[red]Error: --show-code is only available with dev_mode enabled[/red]")
        raise typer.Exit(1)

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.otp.issue(conn, identifier, purpose)

    issued = _execute(db_url, action)
    if json_output:
        output = {
            "purpose": issued.purpose.value,
            "expires_at": issued.expires_at.isoformat(),
            "delivered": issued.delivered,
        }
        if show_code:
            output["code"] = issued.code
        _print_json(output)
        return

    console.print(f"[green]✓[/green] Code issued (expires {issued.expires_at.isoformat()})")
    if not issued.delivered:
        console.print("[yellow]Delivery failed; the code remains valid[/yellow]")
    if show_code:
        console.print(f"  Code: {issued.code}")


@otp_app.command("verify")
def otp_verify(
    identifier: Annotated[str, typer.Argument(help="Phone, email or identity id")],
    code: Annotated[str, typer.Option("--code", prompt=True, hide_input=True, help="The code")],
    purpose: Annotated[
        OTPPurpose, typer.Option("--purpose", "-p", case_sensitive=False, help="Code purpose")
    ] = OTPPurpose.LOGIN,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Verify a code. Login codes are exchanged for a regular access token."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        subject = await services.otp.verify(conn, identifier, code, purpose)
        token = None
        if purpose in (OTPPurpose.LOGIN, OTPPurpose.OPERATOR_LOGIN):
            identity = await services.directory.get(conn, subject)
            token = services.tokens.mint_regular(identity)
        return subject, token

    subject, token = _execute(db_url, action)
    if json_output:
        _print_json({"subject": subject, "token": token})
        return
    console.print(f"[green]✓[/green] Code verified for {subject}")
    if token:
        console.print(f"  Token: {token}")


biometric_app = typer.Typer(help="Biometric references")
app.add_typer(biometric_app, name="biometric")


@biometric_app.command("enroll")
def biometric_enroll(
    identity_id: Annotated[str, typer.Argument(help="Identity id")],
    modality: Annotated[
        BiometricModality,
        typer.Option("--modality", "-m", case_sensitive=False, help="Biometric modality"),
    ] = BiometricModality.FINGERPRINT,
    reference: Annotated[
        str | None, typer.Option("--reference", help="Reference marker (generated if omitted)")
    ] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
) -> None:
    """Enroll a biometric reference marker for an identity."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.biometric.enroll(conn, identity_id, modality, reference)

    ref = _execute(db_url, action)
    console.print(
        f"[green]✓[/green] {ref.modality.value.title()} enrolled for {ref.identity_id} "
        f"({ref.enrolled_at.isoformat()})"
    )


emergency_app = typer.Typer(help="Break-glass emergency sessions")
app.add_typer(emergency_app, name="emergency")


def _print_session(session, now: datetime) -> None:
    console.print(f"  Session ID: {session.session_id}")
    console.print(f"  Requester: {session.requester_id}")
    console.print(f"  Patient: {session.target_id}")
    console.print(f"  Method: {session.method.value}")
    console.print(f"  Reason: {session.reason}")
    console.print(f"  Granted: {session.granted_at.isoformat()}")
    console.print(f"  Expires: {session.expires_at.isoformat()}")
    console.print(f"  Status: {session.status_at(now).value}")


@emergency_app.command("request")
def emergency_request(
    requester: Annotated[str, typer.Option("--requester", "-r", help="Doctor identity id")],
    reason: Annotated[str, typer.Option("--reason", help="Justification (min 10 characters)")],
    proof: Annotated[
        str,
        typer.Option("--proof", prompt=True, hide_input=True, help="OTP code or biometric proof"),
    ],
    method: Annotated[
        AuthMethod, typer.Option("--method", "-m", case_sensitive=False, help="Auth method")
    ] = AuthMethod.OTP,
    patient: Annotated[
        str | None, typer.Option("--patient", "-p", help="Patient phone, email or id")
    ] = None,
    patient_scan: Annotated[
        str | None,
        typer.Option("--patient-scan", help="Biometric scan of an unidentified patient"),
    ] = None,
    scan_modality: Annotated[
        BiometricModality,
        typer.Option("--scan-modality", case_sensitive=False, help="Modality of --patient-scan"),
    ] = BiometricModality.FINGERPRINT,
    hospital: Annotated[str | None, typer.Option("--hospital", help="Hospital name")] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Request emergency access to a patient's record.

    Example:
        epatient-access otp issue dr.smith@example.org --purpose EMERGENCY_ACCESS
        epatient-access emergency request -r doc-1 -p +15550100 --reason "Unconscious in ER"
    """
    if not patient and not patient_scan:
        console.print("[red]Error: Provide --patient or --patient-scan[/red]")
        raise typer.Exit(1)

    request = EmergencyRequest(
        requester_id=requester,
        reason=reason,
        method=method,
        proof=proof,
        patient_identifier=patient,
        patient_scan=patient_scan,
        scan_modality=scan_modality,
        hospital_name=hospital,
    )

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.emergency.request_access(conn, request)

    grant = _execute(db_url, action)
    if json_output:
        _print_json(
            {
                "session": grant.session.to_dict(),
                "token": grant.token,
                "patient_id": grant.patient.identity_id,
                "reused": grant.reused,
                "identification": grant.identification,
            }
        )
        return

    verb = "reused" if grant.reused else "granted"
    console.print(f"[green]✓[/green] Emergency access {verb} for {grant.patient.display_name}")
    console.print(f"  Session ID: {grant.session_id}")
    console.print(f"  Expires: {grant.expires_at.isoformat()}")
    console.print(f"  Token: {grant.token}")


@emergency_app.command("show")
def emergency_show(
    session_id: Annotated[UUID, typer.Argument(help="Emergency session id")],
    requester: Annotated[
        str | None, typer.Option("--requester", "-r", help="Only show if owned by this doctor")
    ] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show a live emergency session."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.emergency.get_session_detail(conn, session_id, requester)

    detail = _execute(db_url, action)
    if json_output:
        output = detail.session.to_dict()
        output["minutes_remaining"] = round(detail.minutes_remaining, 1)
        output["patient_name"] = detail.patient.display_name if detail.patient else None
        _print_json(output)
        return

    console.print("[green]Emergency Session Active[/green]")
    _print_session(detail.session, datetime.now(UTC))
    console.print(f"  Time remaining: {detail.minutes_remaining:.1f} minutes")


@emergency_app.command("revoke")
def emergency_revoke(
    session_id: Annotated[UUID, typer.Argument(help="Emergency session id")],
    revoked_by: Annotated[
        str | None, typer.Option("--by", help="Identity revoking the session")
    ] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
) -> None:
    """Revoke an active emergency session."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        role = ActorRole.SYSTEM
        if revoked_by:
            identity = await services.directory.get(conn, revoked_by)
            if identity is not None:
                role = ActorRole(identity.role.value)
        return await services.emergency.revoke(conn, session_id, revoked_by, role)

    session = _execute(db_url, action)
    console.print(f"[green]✓[/green] Emergency session {session.session_id} revoked")


@emergency_app.command("active")
def emergency_active(
    requester: Annotated[str, typer.Option("--requester", "-r", help="Doctor identity id")],
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List a doctor's live emergency sessions."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.emergency.active_sessions(conn, requester)

    sessions = _execute(db_url, action)
    if json_output:
        _print_json([s.to_dict() for s in sessions])
        return
    if not sessions:
        console.print("[yellow]No active emergency sessions[/yellow]")
        return
    now = datetime.now(UTC)
    for session in sessions:
        console.print(
            f"  {session.session_id}  {session.target_id}  "
            f"{session.minutes_remaining(now):.1f} min left"
        )


@emergency_app.command("history")
def emergency_history(
    patient_id: Annotated[str, typer.Argument(help="Patient identity id")],
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum sessions to show"),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show emergency sessions opened on a patient's record."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.emergency.access_history(conn, patient_id, limit=limit)

    sessions = _execute(db_url, action)
    if json_output:
        _print_json([s.to_dict() for s in sessions])
        return
    if not sessions:
        console.print("[yellow]No emergency access recorded for this patient[/yellow]")
        return
    now = datetime.now(UTC)
    console.print(f"[bold]Emergency access history for {patient_id}[/bold]")
    for session in sessions:
        console.print(
            f"  {session.granted_at.isoformat()}  {session.requester_id}  "
            f"{session.status_at(now).value}  {session.reason}"
        )


@emergency_app.command("sweep")
def emergency_sweep(
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Expire overdue sessions and remove dead one-time codes."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.sweeper().run_once()

    result = _execute(db_url, action)
    if json_output:
        _print_json(
            {
                "expired_sessions": [str(s.session_id) for s in result.expired_sessions],
                "removed_codes": result.removed_codes,
            }
        )
        return
    console.print(
        f"[green]✓[/green] Expired {len(result.expired_sessions)} sessions, "
        f"removed {result.removed_codes} codes"
    )


access_app = typer.Typer(help="Access decisions")
app.add_typer(access_app, name="access")


@access_app.command("check")
def access_check(
    token: Annotated[str, typer.Option("--token", "-t", help="Bearer token")],
    patient: Annotated[str | None, typer.Option("--patient", "-p", help="Patient id")] = None,
    hospital: Annotated[str | None, typer.Option("--hospital", help="Hospital id")] = None,
    action_name: Annotated[str, typer.Option("--action", "-a", help="Requested action")] = "read",
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Decide whether a token may act on a patient record or a hospital's records.

    Exits with status 1 when access is denied.
    """
    if bool(patient) == bool(hospital):
        console.print("[red]Error: Provide exactly one of --patient or --hospital[/red]")
        raise typer.Exit(1)

    async def action(services: AccessServices, conn: asyncpg.Connection):
        if patient:
            return await services.access.decide(conn, token, patient, action_name)
        return await services.access.decide_for_hospital(conn, token, hospital, action_name)

    decision = _execute(db_url, action)
    if json_output:
        _print_json(decision.to_dict())
    elif decision.allowed:
        console.print(f"[green]✓ Allowed[/green] ({decision.reason.value})")
    else:
        console.print(f"[red]✗ Denied[/red] ({decision.reason.value})")

    if not decision.allowed:
        raise typer.Exit(1)


audit_app = typer.Typer(help="Audit trail queries, export and retention")
app.add_typer(audit_app, name="audit")


def _build_filters(
    patient: str | None,
    actor: str | None,
    role: ActorRole | None,
    event_type: AuditEventType | None,
    start: str | None,
    end: str | None,
    page: int = 1,
    page_size: int = 50,
) -> AuditFilters:
    try:
        return AuditFilters(
            patient_id=patient,
            actor_id=actor,
            actor_role=role,
            event_type=event_type,
            start=_parse_timestamp(start, "--start"),
            end=_parse_timestamp(end, "--end"),
            page=page,
            page_size=page_size,
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None


@audit_app.command("query")
def audit_query(
    patient: Annotated[str | None, typer.Option("--patient", "-p", help="Patient id")] = None,
    actor: Annotated[str | None, typer.Option("--actor", "-a", help="Actor id")] = None,
    role: Annotated[
        ActorRole | None, typer.Option("--role", case_sensitive=False, help="Actor role")
    ] = None,
    event_type: Annotated[
        AuditEventType | None,
        typer.Option("--event-type", "-e", case_sensitive=False, help="Event type"),
    ] = None,
    start: Annotated[str | None, typer.Option("--start", help="ISO timestamp")] = None,
    end: Annotated[str | None, typer.Option("--end", help="ISO timestamp")] = None,
    page: int = typer.Option(1, "--page", help="Page number"),
    page_size: int = typer.Option(50, "--page-size", help="Entries per page"),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Query the audit trail, newest first."""
    filters = _build_filters(patient, actor, role, event_type, start, end, page, page_size)

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.trail.query(conn, filters)

    result = _execute(db_url, action)
    if json_output:
        _print_json(
            {
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "has_more": result.has_more,
                "entries": [record.to_dict() for record in result.records],
            }
        )
        return

    console.print(f"[bold]Audit trail[/bold] ({result.total:,} matching, page {result.page})")
    for record in result.records:
        event = record.event
        outcome = "[green]ok[/green]" if event.success else "[red]fail[/red]"
        console.print(
            f"  {event.event_time.isoformat() if event.event_time else '-'}  "
            f"{event.event_type.value:<32} {outcome}  "
            f"{record.actor_name or event.actor_id or '-'} -> "
            f"{record.patient_name or event.patient_id or '-'}"
        )
    if result.has_more:
        console.print(f"[dim]More entries available: --page {result.page + 1}[/dim]")


@audit_app.command("stats")
def audit_stats(
    patient: Annotated[str | None, typer.Option("--patient", "-p", help="Patient id")] = None,
    start: Annotated[str | None, typer.Option("--start", help="ISO timestamp")] = None,
    end: Annotated[str | None, typer.Option("--end", help="ISO timestamp")] = None,
    bucket: str = typer.Option("day", "--bucket", help="hour, day, week or month"),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Summarize audit activity."""
    filters = _build_filters(patient, None, None, None, start, end)

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.trail.stats(conn, filters, bucket=bucket)

    stats = _execute(db_url, action)
    if json_output:
        _print_json(stats.to_dict())
        return

    console.print("\n[bold]Audit Statistics[/bold]")
    console.print(f"  Total events: {stats.total:,}")
    console.print(f"  Failures: {stats.failures:,}")
    console.print(f"  Last 24 hours: {stats.last_24h:,}")
    console.print(f"  Unique actors: {stats.unique_actors:,}")
    console.print(f"  Unique patients: {stats.unique_patients:,}")
    if stats.by_event_type:
        console.print("\n  By event type:")
        for name, count in stats.by_event_type.items():
            console.print(f"    {name}: {count:,}")
    if stats.by_role:
        console.print("\n  By role:")
        for name, count in stats.by_role.items():
            console.print(f"    {name}: {count:,}")


@audit_app.command("export")
def audit_export(
    output: Annotated[Path, typer.Option("--output", "-o", help="CSV output path")],
    patient: Annotated[str | None, typer.Option("--patient", "-p", help="Patient id")] = None,
    actor: Annotated[str | None, typer.Option("--actor", "-a", help="Actor id")] = None,
    event_type: Annotated[
        AuditEventType | None,
        typer.Option("--event-type", "-e", case_sensitive=False, help="Event type"),
    ] = None,
    start: Annotated[str | None, typer.Option("--start", help="ISO timestamp")] = None,
    end: Annotated[str | None, typer.Option("--end", help="ISO timestamp")] = None,
    exported_by: Annotated[
        str | None, typer.Option("--by", help="Identity performing the export")
    ] = None,
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
) -> None:
    """Export matching audit events to CSV. The export itself is audited."""
    filters = _build_filters(patient, actor, None, event_type, start, end)

    async def action(services: AccessServices, conn: asyncpg.Connection):
        role = ActorRole.SYSTEM
        if exported_by:
            identity = await services.directory.get(conn, exported_by)
            if identity is not None:
                role = ActorRole(identity.role.value)
        return await services.trail.export(conn, filters, exported_by, role)

    csv_text = _execute(db_url, action)
    output.write_text(csv_text)
    if not quiet:
        rows = max(csv_text.count("\n") - 1, 0)
        console.print(f"[green]✓[/green] Exported {rows:,} audit events to {output}")


@audit_app.command("purge")
def audit_purge(
    older_than_days: Annotated[
        int, typer.Option("--older-than-days", help="Delete events older than this many days")
    ],
    purged_by: Annotated[
        str | None, typer.Option("--by", help="Administrator performing the purge")
    ] = None,
    allow_below_minimum: bool = typer.Option(
        False,
        "--allow-below-minimum",
        help=f"Allow thresholds under the {MINIMUM_RETENTION_DAYS}-day retention minimum",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
) -> None:
    """Permanently delete old audit events (administrative, out of band)."""
    if not yes:
        typer.confirm(
            f"Permanently delete audit events older than {older_than_days} days?", abort=True
        )

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.retention.purge(
            conn, older_than_days, purged_by, enforce_minimum=not allow_below_minimum
        )

    result = _execute(db_url, action)
    console.print(
        f"[green]✓[/green] Purged {result.deleted_count:,} audit events "
        f"older than {result.cutoff.isoformat()}"
    )


@audit_app.command("replay-fallback")
def audit_replay_fallback(
    db_url: Annotated[str | None, typer.Option("--db", "-d", help="PostgreSQL URL")] = None,
) -> None:
    """Write events diverted to the local fallback file back into the database."""

    async def action(services: AccessServices, conn: asyncpg.Connection):
        return await services.audit_logger.replay_fallback(conn)

    count = _execute(db_url, action)
    if count:
        console.print(f"[green]✓[/green] Replayed {count:,} audit events")
    else:
        console.print("[dim]No fallback events to replay[/dim]")


if __name__ == "__main__":
    app()
