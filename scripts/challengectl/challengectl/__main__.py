"""
Challenge Deployer Admin CLI - challengectl
Click-based admin tool driving the deployment API and the challenge repository.
"""

import asyncio
import json
import sys
from typing import Any, Dict, Optional

import click
import requests


# ============================================
# CLI Configuration
# ============================================

class Context:
    """CLI context for global settings."""

    def __init__(self):
        self.api_url: str = "http://localhost:8000"
        self.output_format: str = "table"
        self.quiet: bool = False
        self.timeout: float = 60.0


pass_context = click.make_pass_decorator(Context, ensure=True)


def setup_api_client(ctx: Context) -> requests.Session:
    """Create API client with default headers."""
    session = requests.Session()
    session.headers.update({"Content-Type": "application/json"})
    return session


def fail(response_or_error: Any) -> None:
    """Report an API failure on stderr and exit non-zero."""
    if isinstance(response_or_error, requests.Response):
        try:
            body = response_or_error.json()
            detail = body.get("detail") or body.get("error")
            cause = body.get("cause")
            message = f"{response_or_error.status_code} {detail}"
            if cause:
                message += f" (cause: {cause})"
        except ValueError:
            message = f"{response_or_error.status_code} {response_or_error.text}"
    else:
        message = str(response_or_error)
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def deployment_body(requester_id: str, challenge_id: str) -> Dict[str, str]:
    return {"requesterId": requester_id, "challengeId": challenge_id}


# ============================================
# Base Commands
# ============================================

@click.group()
@click.option(
    "--api-url",
    default="http://localhost:8000",
    help="API URL for the Challenge Deployer",
    envvar="CHALLENGE_DEPLOYER_API_URL",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.option(
    "--timeout",
    type=float,
    default=60.0,
    help="HTTP timeout in seconds",
)
@click.option(
    "--quiet",
    is_flag=True,
    help="Suppress output except errors",
)
@click.pass_context
def cli(ctx: click.Context, api_url: str, output: str, timeout: float, quiet: bool):
    """Challenge Deployer Admin CLI"""
    ctx.ensure_object(Context)
    ctx.obj.api_url = api_url.rstrip("/")
    ctx.obj.output_format = output
    ctx.obj.timeout = timeout
    ctx.obj.quiet = quiet


# ============================================
# Deployment Commands
# ============================================

@cli.command("deploy")
@click.argument("requester_id")
@click.argument("challenge_id")
@pass_context
def deploy(ctx: Context, requester_id: str, challenge_id: str):
    """Deploy a challenge for a requester"""
    session = setup_api_client(ctx)

    try:
        response = session.post(
            f"{ctx.api_url}/deployments",
            json=deployment_body(requester_id, challenge_id),
            timeout=ctx.timeout,
        )
    except requests.RequestException as e:
        fail(e)
        return
    if not response.ok:
        fail(response)
        return

    result = response.json()
    if ctx.quiet:
        return
    if ctx.output_format == "json":
        click.echo(json.dumps(result, indent=2))
    else:
        click.echo(f"State: {result.get('state')}")
        click.echo(f"URL:   {result.get('url')}")


@cli.command("teardown")
@click.argument("requester_id")
@click.argument("challenge_id")
@click.option("--force", is_flag=True, help="Skip confirmation")
@pass_context
def teardown(ctx: Context, requester_id: str, challenge_id: str, force: bool):
    """Tear down a requester's challenge instance"""
    if not force:
        if not click.confirm(f"Tear down {challenge_id} for {requester_id}?"):
            return

    session = setup_api_client(ctx)

    try:
        response = session.delete(
            f"{ctx.api_url}/deployments",
            json=deployment_body(requester_id, challenge_id),
            timeout=ctx.timeout,
        )
    except requests.RequestException as e:
        fail(e)
        return
    if not response.ok:
        fail(response)
        return

    if not ctx.quiet:
        click.echo(f"Deployment of {challenge_id} for {requester_id} removed")


@cli.command("status")
@click.argument("requester_id")
@click.argument("challenge_id")
@pass_context
def status(ctx: Context, requester_id: str, challenge_id: str):
    """Show deployment status"""
    session = setup_api_client(ctx)

    try:
        response = session.get(
            f"{ctx.api_url}/deployments/{requester_id}/{challenge_id}",
            timeout=ctx.timeout,
        )
    except requests.RequestException as e:
        fail(e)
        return
    if not response.ok:
        fail(response)
        return

    record = response.json()
    if ctx.output_format == "json":
        click.echo(json.dumps(record, indent=2))
        return

    click.echo(f"Key:       {record.get('key')}")
    click.echo(f"State:     {record.get('state')}")
    click.echo(f"URL:       {record.get('url') or 'N/A'}")
    if record.get("cause"):
        click.echo(f"Cause:     {record.get('cause')}")
    if record.get("expiresAt"):
        click.echo(f"Expires:   {record.get('expiresAt')}")
    objects = record.get("objects") or {}
    for kind, name in objects.items():
        click.echo(f"  {kind:<10} {name}")


@cli.command("health")
@pass_context
def health(ctx: Context):
    """Check service health"""
    session = setup_api_client(ctx)

    try:
        response = session.get(f"{ctx.api_url}/health", timeout=ctx.timeout)
    except requests.RequestException as e:
        fail(e)
        return

    result = response.json()
    if ctx.output_format == "json":
        click.echo(json.dumps(result, indent=2))
    else:
        click.echo(f"Status:  {result.get('status')}")
        click.echo(f"Version: {result.get('version')}")
        click.echo("-" * 40)
        for name, check in (result.get("checks") or {}).items():
            click.echo(f"{name:<12} {check.get('status', check)}")

    if response.status_code != 200:
        sys.exit(1)


# ============================================
# Challenge Repository Commands
# ============================================

@cli.group()
def challenge():
    """Challenge definition commands"""
    pass


async def _store_definition(document: Dict[str, Any], challenge_id: str) -> None:
    from app.core.config import get_settings
    from app.domain.challenges.entities import ChallengeDefinition
    from app.infrastructure.repository import RedisChallengeConfigRepository

    definition = ChallengeDefinition.from_dict(challenge_id, document)
    repository = RedisChallengeConfigRepository(get_settings())
    await repository.connect()
    try:
        await repository.write(definition)
    finally:
        await repository.disconnect()


@challenge.command("load")
@click.argument("file", type=click.File("r"))
@click.option("--challenge-id", help="Override the challenge ID from the file")
@pass_context
def challenge_load(ctx: Context, file, challenge_id: Optional[str]):
    """Store a challenge definition (JSON) in the repository"""
    from redis.exceptions import RedisError

    from app.core.exceptions import DeploymentError

    try:
        document = json.load(file)
    except json.JSONDecodeError as e:
        fail(f"{file.name}: {e}")
        return
    if not isinstance(document, dict):
        fail(f"{file.name}: definition must be a JSON object")
        return

    challenge_id = challenge_id or document.pop("challenge_id", None) or document.pop("id", None)
    if not challenge_id:
        fail("challenge id missing (set challenge_id in the file or pass --challenge-id)")
        return

    try:
        asyncio.run(_store_definition(document, challenge_id))
    except DeploymentError as e:
        fail(e.message)
        return
    except RedisError as e:
        fail(f"repository unavailable: {e}")
        return

    if not ctx.quiet:
        click.echo(f"Challenge {challenge_id} stored")


# ============================================
# Main Entry Point
# ============================================

def main():
    cli()


if __name__ == "__main__":
    main()
