from eventdesk.app import create_app, db, get_converter, get_storage
import json
import os

from flask_migrate import Migrate
from flask.cli import FlaskGroup
import click
from flask import current_app
from eventdesk.models import Certificate, Event
from eventdesk.services.issuance import build_ledger
from eventdesk.services.verification import VerificationLookup
from eventdesk.shared.errors import CertificateError, StorageUnavailable


migrate = Migrate()


def create_eventdesk_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_eventdesk_app)


@cli.command("issue_certs")
@click.option("--event", "event_id", required=True, type=int)
@click.option(
    "--registration",
    "registration_ids",
    multiple=True,
    type=int,
    help="Limit issuance to these registration ids",
)
@click.option("--template", "template_id", default=None)
def issue_certs(event_id: int, registration_ids: tuple[int, ...], template_id):
    """Issue certificates for the attended registrations of an event."""
    event = db.session.get(Event, event_id)
    if not event:
        click.echo("Not found", err=True)
        raise SystemExit(1)
    ledger = build_ledger(db.session, get_storage(), get_converter(), current_app.config)
    try:
        template = ledger.resolve_template(event, template_id)
        result = ledger.issue_all(
            event, registration_ids=list(registration_ids) or None, template=template
        )
    except CertificateError as exc:
        click.echo(f"{exc.code}: {exc}", err=True)
        raise SystemExit(1)
    for item in result.certificates:
        click.echo(f"{item['certificateCode']} {item['email']} {item['fileUrl']}")
    for error in result.errors:
        click.echo(
            f"failed registration={error['registration_id']}: {error['error']}", err=True
        )
    click.echo(
        f"generated={result.generated} skipped={result.skipped} "
        f"failed={len(result.errors)} total={result.total}"
    )


@cli.command("verify_cert")
@click.argument("code")
def verify_cert(code: str):
    """Print the public projection of a certificate code."""
    lookup = VerificationLookup(db.session, get_storage())
    try:
        projection = lookup.verify(code)
    except CertificateError:
        click.echo("Not found", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(projection, indent=2))


@cli.command("check_converter")
def check_converter():
    """Report which office converter binary would be used."""
    try:
        binary = get_converter().probe()
    except CertificateError as exc:
        click.echo(str(exc), err=True)
        raise SystemExit(1)
    click.echo(binary)


@cli.command("purge_orphan_certs")
@click.option(
    "--dry-run", is_flag=True, help="List orphaned certificate files without deleting"
)
def purge_orphan_certs(dry_run: bool):
    storage = get_storage()
    if (
        not dry_run
        and current_app.config.get("ENV") == "production"
        and os.getenv("ALLOW_CERT_PURGE") != "1"
    ):
        click.echo(
            "Refusing to delete in production without ALLOW_CERT_PURGE=1", err=True
        )
        return

    try:
        keys = storage.list_keys("certificates/")
    except StorageUnavailable as exc:
        click.echo(f"Certificate storage unavailable: {exc}", err=True)
        return

    referenced = {
        key for (key,) in db.session.query(Certificate.storage_key).all()
    }
    total = deleted = kept = errors = 0
    samples: list[str] = []
    for key in keys:
        total += 1
        if key in referenced:
            kept += 1
            continue
        if len(samples) < 5:
            samples.append(key)
        if dry_run:
            continue
        try:
            storage.delete(key)
            deleted += 1
        except StorageUnavailable:
            errors += 1
            current_app.logger.exception("[CERT-PURGE] failed to remove %s", key)
    summary = f"scanned={total} deleted={deleted} kept={kept} errors={errors}"
    for key in samples:
        click.echo(key)
    click.echo(summary)
    current_app.logger.info("[CERT-PURGE] %s", summary)


if __name__ == "__main__":
    cli()
