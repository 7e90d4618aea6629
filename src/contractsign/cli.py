from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Optional

import typer
import uvicorn

from contractsign import __version__
from contractsign.config import get_settings

app = typer.Typer(add_completion=False, help="Contract signing CLI")


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _service(session):
    from contractsign.esign.service import ContractSigningService

    return ContractSigningService(session)


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "contractsign.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command("init-db")
def init_db_command() -> None:
    """Create tables directly from the models (dev only)."""
    from contractsign.database import init_db

    init_db(create_tables=True)
    typer.echo("Database initialized.")


@app.command("db")
def db_command(
    action: str = typer.Argument(
        ..., help="upgrade|downgrade|revision|current|history"
    ),
    message: Optional[str] = typer.Option(
        None, "--message", "-m", help="Migration message (for revision)"
    ),
    autogenerate: bool = typer.Option(
        True, "--autogenerate/--no-autogenerate", help="Autogenerate migration"
    ),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """
    Database migrations via Alembic.

    Actions:
      upgrade   - Apply migrations (default: head)
      downgrade - Revert migrations
      revision  - Create new migration
      current   - Show current revision
      history   - Show migration history
    """
    import os
    import subprocess
    import sys

    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        typer.echo("Error: alembic.ini not found", err=True)
        raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]

    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action == "revision":
        cmd.append("revision")
        if autogenerate:
            cmd.append("--autogenerate")
        if not message:
            typer.echo("Warning: No message provided, using default", err=True)
        cmd.extend(["-m", message or "auto migration"])
    elif action in ("current", "history"):
        cmd.append(action)
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


@app.command("dev-token")
def dev_token(
    user_id: str = typer.Option("1", help="Subject (user id)"),
    username: str = typer.Option("admin", help="Username"),
    email: Optional[str] = typer.Option(None, help="Email"),
    roles: str = typer.Option("admin", help="Comma-separated role names"),
    ttl: Optional[int] = typer.Option(None, help="Lifetime in seconds"),
) -> None:
    """Print a signed access token for local testing."""
    from contractsign.security.jwt import build_access_token_payload, encode_hs256

    settings = get_settings()
    payload = build_access_token_payload(
        user_id=user_id,
        username=username,
        email=email,
        roles=[r.strip() for r in roles.split(",") if r.strip()],
        ttl_seconds=ttl or settings.JWT_ACCESS_TOKEN_TTL_SECONDS,
    )
    typer.echo(encode_hs256(payload, secret=settings.JWT_SECRET_KEY))


@app.command("issue-certificate")
def issue_certificate(
    common_name: str = typer.Argument(..., help="Subject common name"),
    organization: Optional[str] = typer.Option(None, help="Subject organization"),
    alias: Optional[str] = typer.Option(None, help="Keystore alias"),
    created_by: str = typer.Option("cli", help="Recorded issuer of the request"),
) -> None:
    from contractsign.database import get_db_session
    from contractsign.esign.certificate_store import certificate_summary

    with get_db_session() as session:
        certificate = _service(session).issue_certificate(
            common_name=common_name,
            organization=organization,
            alias=alias,
            created_by=created_by,
        )
        typer.echo(json.dumps(certificate_summary(certificate), default=str, indent=2))


@app.command("setup-test-certificates")
def setup_test_certificates() -> None:
    """Issue manager, staff and customer certificates if none are active."""
    from contractsign.database import get_db_session

    with get_db_session() as session:
        issued = _service(session).setup_test_certificates(created_by="cli")
        if not issued:
            typer.echo("Certificates already present; nothing issued.")
            return
        for certificate in issued:
            typer.echo(f"{certificate.alias}\t{certificate.id}\t{certificate.fingerprint_sha256}")


@app.command("verify-signature")
def verify_signature(
    signature_id: str = typer.Argument(..., help="Signature record id"),
) -> None:
    from contractsign.database import get_db_session

    with get_db_session() as session:
        result = _service(session).verify_signature(signature_id)
        typer.echo(json.dumps(result.to_dict(), default=str, indent=2))
    if not result.is_valid:
        raise typer.Exit(1)


@app.command("expire-contracts")
def expire_contracts(
    as_of: Optional[str] = typer.Option(None, help="Reference date (YYYY-MM-DD)"),
) -> None:
    """Expire active contracts whose end date has passed."""
    from contractsign.database import get_db_session

    try:
        today = date.fromisoformat(as_of) if as_of else None
    except ValueError:
        typer.echo(f"Invalid date: {as_of}", err=True)
        raise typer.Exit(2)

    with get_db_session() as session:
        expired = _service(session).expire_due_contracts(today=today)
    typer.echo(f"Expired {len(expired)} contract(s).")
    for contract_id in expired:
        typer.echo(contract_id)


@app.command("certificates-expiring")
def certificates_expiring(
    days: int = typer.Option(30, help="Look-ahead window in days"),
) -> None:
    from contractsign.clock import utcnow
    from contractsign.database import get_db_session

    with get_db_session() as session:
        certificates = _service(session).certificates.find_expiring_before(
            utcnow() + timedelta(days=days)
        )
        for certificate in certificates:
            typer.echo(f"{certificate.alias}\t{certificate.valid_to.isoformat()}\t{certificate.status}")
    if not certificates:
        typer.echo("No certificates expiring.")


def main() -> None:
    app()
