#!/usr/bin/env python3
"""
callreview CLI - Command-line interface for the call review pipeline.
"""

import asyncio
import sys

import click

from .config import configure_logging, load_settings
from .formatters import format_call_listing, format_ledger_records, format_run_summary
from .ledger import ProcessedCallLedger
from .models import IntegrationCredential, Platform
from .orchestrator import ReviewOrchestrator
from .platforms import DEFAULT_GONG_BASE_URL, diio_base_url
from .sqlite_repository import SQLiteCallRepository

PLATFORM_CHOICE = click.Choice([p.value for p in Platform])


def _load_settings_or_exit():
    try:
        settings = load_settings()
    except Exception as e:
        click.echo(f"\n❌ Error loading settings: {e}", err=True)
        click.echo("\nMake sure .env file is configured correctly.")
        sys.exit(1)
    configure_logging(settings.log_level)
    return settings


@click.group()
@click.version_option(version="1.0.0", prog_name="callreview")
def cli():
    """
    callreview - Sales call ingestion and review pipeline

    Pulls recorded calls from Gong and Diio, scores them and stores one
    review per call.
    """
    pass


@cli.command()
@click.option("-t", "--days", type=int, default=None, help="Lookback window in days (default: LOOKBACK_DAYS)")
@click.option("-n", "--max-calls", type=int, default=None, help="Calls per tenant integration (default: MAX_CALLS_PER_RUN)")
def run(days, max_calls):
    """
    Run one scheduled pass over every tenant integration.

    Examples:
        callreview run
        callreview run -t 14 -n 5
    """
    settings = _load_settings_or_exit()
    if days is not None:
        settings.lookback_days = days
    if max_calls is not None:
        settings.max_calls_per_run = max_calls

    click.echo("\n" + "=" * 70)
    click.echo("callreview - Scheduled Run")
    click.echo("=" * 70)
    click.echo(f"\n📅 Lookback: {settings.lookback_days} days")
    click.echo(f"🎯 Max calls per integration: {settings.max_calls_per_run}")
    click.echo(f"💾 Database: {settings.sqlite_db_path}")

    try:
        summary = asyncio.run(_run(settings))
    except Exception as e:
        click.echo(f"\n❌ Error during run: {e}", err=True)
        sys.exit(1)

    click.echo(format_run_summary(summary))
    if summary.error:
        sys.exit(1)


async def _run(settings):
    orchestrator = ReviewOrchestrator(settings)
    try:
        return await orchestrator.run()
    finally:
        await orchestrator.close()


@cli.command()
@click.argument("call_id")
@click.option("--tenant", required=True, help="Tenant (organization) id")
@click.option("--platform", type=PLATFORM_CHOICE, default=Platform.DIIO.value, show_default=True)
@click.option("--kind", "call_kind", default=None, help="Call kind, e.g. meeting or phone_call for Diio")
@click.option("--client", default=None, help="Client scope of the integration")
def process(call_id, tenant, platform, call_kind, client):
    """
    Process a single call on demand.

    Examples:
        callreview process 42 --tenant acme
        callreview process 42 --tenant acme --kind phone_call
        callreview process 7782342 --tenant acme --platform gong
    """
    settings = _load_settings_or_exit()

    try:
        result = asyncio.run(_process(settings, tenant, call_id, call_kind, Platform(platform), client))
    except Exception as e:
        click.echo(f"\n❌ Error processing call: {e}", err=True)
        sys.exit(1)

    if result.ok:
        click.echo(f"\n✅ Review #{result.review_id} created (score: {result.overall_score}/100)")
    else:
        click.echo(f"\n❌ {result.status}: {result.error}", err=True)
        sys.exit(1)


async def _process(settings, tenant, call_id, call_kind, platform, client):
    orchestrator = ReviewOrchestrator(settings)
    try:
        return await orchestrator.process_manual(
            tenant, call_id, call_kind, platform=platform, client=client
        )
    finally:
        await orchestrator.close()


@cli.command()
@click.argument("tenant")
def status(tenant):
    """
    Show the processed-call ledger for a tenant.

    Examples:
        callreview status acme
    """
    settings = _load_settings_or_exit()
    try:
        records = asyncio.run(_status(settings, tenant))
    except Exception as e:
        click.echo(f"\n❌ Error reading ledger: {e}", err=True)
        sys.exit(1)
    click.echo(format_ledger_records(tenant, records))


async def _status(settings, tenant):
    repository = SQLiteCallRepository(settings.sqlite_db_path)
    try:
        return await ProcessedCallLedger(repository).list_records(tenant)
    finally:
        await repository.close()


@cli.command()
@click.argument("tenant")
@click.option("--platform", type=PLATFORM_CHOICE, default=Platform.DIIO.value, show_default=True)
@click.option("--client", default=None, help="Client scope of the integration")
@click.option("-t", "--days", type=int, default=None, help="Lookback window in days (default: LOOKBACK_DAYS)")
def calls(tenant, platform, client, days):
    """
    List recent platform calls with their processing status.

    Calls never attempted are shown as new; pass one to `process`.

    Examples:
        callreview calls acme
        callreview calls acme --platform gong -t 30
    """
    settings = _load_settings_or_exit()
    platform = Platform(platform)
    try:
        listings = asyncio.run(_calls(settings, tenant, platform, client, days))
    except Exception as e:
        click.echo(f"\n❌ Error listing calls: {e}", err=True)
        sys.exit(1)

    if listings is None:
        click.echo(f"\n❌ {platform.value} is not configured for {tenant}", err=True)
        sys.exit(1)
    click.echo(format_call_listing(tenant, listings))


async def _calls(settings, tenant, platform, client, days):
    orchestrator = ReviewOrchestrator(settings)
    try:
        return await orchestrator.list_calls(tenant, platform=platform, client=client, days=days)
    finally:
        await orchestrator.close()


@cli.command()
@click.option("--tenant", required=True, help="Tenant (organization) id")
@click.option("--platform", type=PLATFORM_CHOICE, required=True)
@click.option("--client", default="Other", show_default=True, help="Client scope of the integration")
@click.option("--subdomain", default=None, help="Diio subdomain")
@click.option("--base-url", default=None, help="Override the platform API base URL")
@click.option("--access-key", default=None, help="Gong access key")
@click.option("--access-key-secret", default=None, help="Gong access key secret")
@click.option("--client-id", default=None, help="Diio client id")
@click.option("--client-secret", default=None, help="Diio client secret")
@click.option("--refresh-token", default=None, help="Diio refresh token")
@click.option("--scoring-api-key", default=None, help="Per-tenant scoring API key")
@click.option("--auto-review/--no-auto-review", default=True, help="Process webhook events for this tenant")
def connect(
    tenant, platform, client, subdomain, base_url, access_key, access_key_secret,
    client_id, client_secret, refresh_token, scoring_api_key, auto_review,
):
    """
    Save platform credentials for a tenant.

    Examples:
        callreview connect --tenant acme --platform gong --access-key K --access-key-secret S
        callreview connect --tenant acme --platform diio --subdomain acme \\
            --client-id ID --client-secret SECRET --refresh-token RT
    """
    settings = _load_settings_or_exit()
    platform = Platform(platform)

    if platform == Platform.GONG:
        if not access_key or not access_key_secret:
            click.echo("\n❌ Gong needs --access-key and --access-key-secret", err=True)
            sys.exit(1)
        base_url = base_url or DEFAULT_GONG_BASE_URL
    else:
        if not (client_id and client_secret and refresh_token):
            click.echo("\n❌ Diio needs --client-id, --client-secret and --refresh-token", err=True)
            sys.exit(1)
        if not base_url and not subdomain:
            click.echo("\n❌ Diio needs --subdomain or --base-url", err=True)
            sys.exit(1)
        base_url = base_url or diio_base_url(subdomain)

    credential = IntegrationCredential(
        tenant_id=tenant,
        client=client,
        platform=platform,
        base_url=base_url,
        access_key=access_key,
        access_key_secret=access_key_secret,
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        scoring_api_key=scoring_api_key,
        auto_review=auto_review,
    )

    try:
        saved = asyncio.run(_connect(settings, credential))
    except Exception as e:
        click.echo(f"\n❌ Error saving integration: {e}", err=True)
        sys.exit(1)
    click.echo(f"\n✅ Saved {saved.label} (id {saved.id})")


async def _connect(settings, credential):
    repository = SQLiteCallRepository(settings.sqlite_db_path)
    try:
        return await repository.upsert_integration(credential)
    finally:
        await repository.close()


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: API_HOST)")
@click.option("--port", type=int, default=None, help="Port to listen on (default: API_PORT)")
def serve(host, port):
    """
    Serve the HTTP entry points (cron, manual processing, webhooks).

    Examples:
        callreview serve
        callreview serve --port 8080
    """
    import uvicorn

    from .api import create_app

    settings = _load_settings_or_exit()
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo("\n" + "=" * 70)
    click.echo("callreview - HTTP Server")
    click.echo("=" * 70)
    click.echo(f"\n🚀 Listening on http://{host}:{port}")
    click.echo("\n💡 Press Ctrl+C to stop the server\n")

    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    cli()
