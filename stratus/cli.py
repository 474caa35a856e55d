from __future__ import annotations

import json
import logging
from pathlib import Path
import threading

import typer
import yaml
from fastapi.encoders import jsonable_encoder

from stratus.logging_config import configure_logging
from stratus.models import SharedPoolMemberCreate
from stratus.provisioner import get_orchestrator
from stratus.services.constants import INSTANCE_STATUS_RUNNING
from stratus.services.errors import StratusException
from stratus.services.results import ProvisionResult

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="Stratus CLI", pretty_exceptions_show_locals=False)


def _parse_json_object_input(
    *,
    json_text: str | None,
    json_file: Path | None,
    json_option_name: str,
    file_option_name: str,
) -> dict | None:
    if json_text is not None and json_file is not None:
        raise ValueError(f"Provide only one of {json_option_name} or {file_option_name}")

    if json_text is not None:
        try:
            parsed = json.loads(json_text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON for {json_option_name}: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise ValueError(f"{json_option_name} must decode to a JSON object")
        return parsed

    if json_file is not None:
        try:
            content = json_file.read_text()
        except OSError as exc:
            raise ValueError(f"Unable to read {file_option_name}: {exc}") from exc
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {file_option_name}: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise ValueError(f"{file_option_name} must contain a JSON object")
        return parsed

    return None


def _parse_env_pairs(pairs: list[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"--env expects KEY=VALUE, got {pair!r}")
        parsed[key] = value
    return parsed


def _exit_for_domain_error(exc: StratusException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


@app.command("add-pool-member")
def add_pool_member(member_id: str, endpoint: str, max_count: int) -> None:
    try:
        member = get_orchestrator().allocator.add_member(
            SharedPoolMemberCreate(id=member_id, endpoint=endpoint, max_count=max_count)
        )
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    except StratusException as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity(member)


@app.command("list-pool-members")
def list_pool_members(active_only: bool = typer.Option(False, "--active-only")) -> None:
    _echo_yaml_entity(get_orchestrator().allocator.list_members(active_only=active_only))


@app.command("drain-pool-member")
def drain_pool_member(member_id: str) -> None:
    try:
        member = get_orchestrator().allocator.set_member_active(member_id, active=False)
    except StratusException as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity(member)


@app.command("enable-pool-member")
def enable_pool_member(member_id: str) -> None:
    try:
        member = get_orchestrator().allocator.set_member_active(member_id, active=True)
    except StratusException as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity(member)


@app.command("provision")
def provision(
    *,
    instance_id: str = typer.Option(..., "--instance-id"),
    owner_id: str = typer.Option(..., "--owner-id"),
    subdomain: str = typer.Option(..., "--subdomain"),
    admin_email: str = typer.Option(..., "--admin-email"),
    admin_password: str = typer.Option(..., "--admin-password", prompt=True, hide_input=True),
    database_tier: str = typer.Option("shared", "--database-tier", help="shared or dedicated"),
    compute_tier: str = typer.Option("small", "--compute-tier", help="small, medium or large"),
    database_quota_gb: int = typer.Option(1, "--database-quota-gb"),
    storage_quota_gb: int = typer.Option(5, "--storage-quota-gb"),
    app_version: str | None = typer.Option(None, "--app-version"),
    env: list[str] = typer.Option([], "--env", help="Extra environment variable as KEY=VALUE; repeatable."),
    env_json: str | None = typer.Option(None, "--env-json", help="JSON object of extra environment variables."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Path to a JSON file of extra environment variables."),
) -> None:
    try:
        environment = _parse_json_object_input(
            json_text=env_json,
            json_file=env_file,
            json_option_name="--env-json",
            file_option_name="--env-file",
        ) or {}
        environment.update(_parse_env_pairs(env))
    except ValueError as e:
        logger.warning("Invalid environment input: %s", e)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    request = dict(
        instance_id=instance_id,
        owner_id=owner_id,
        subdomain=subdomain,
        admin_email=admin_email,
        admin_password=admin_password,
        database_tier=database_tier,
        compute_tier=compute_tier,
        database_quota_gb=database_quota_gb,
        storage_quota_gb=storage_quota_gb,
        app_version=app_version,
        environment=environment,
    )
    orchestrator = get_orchestrator()
    cancel = threading.Event()
    outcome: dict[str, object] = {}

    def _run() -> None:
        try:
            outcome["result"] = orchestrator.provision_instance(request, cancel=cancel)
        except BaseException as exc:
            # Re-raised on the calling thread below.
            outcome["error"] = exc

    worker = threading.Thread(target=_run, name=f"provision-{instance_id}")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        typer.echo("Cancelling; rolling back created resources...", err=True)
        cancel.set()
        worker.join()

    error = outcome.get("error")
    if isinstance(error, StratusException):
        _exit_for_domain_error(error)
    if isinstance(error, BaseException):
        raise error
    result = outcome["result"]
    assert isinstance(result, ProvisionResult)
    _echo_yaml_entity(result.as_dict())
    if result.status != INSTANCE_STATUS_RUNNING:
        typer.echo(f"Error: Provisioning of {instance_id} failed: {result.error.message}", err=True)
        raise typer.Exit(code=1)


@app.command("destroy")
def destroy(instance_id: str) -> None:
    try:
        result = get_orchestrator().destroy_instance(instance_id)
    except StratusException as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity(result.as_dict())


@app.command("get-instance")
def get_instance(instance_id: str) -> None:
    try:
        instance = get_orchestrator().get_instance(instance_id)
    except StratusException as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity(instance)


@app.command("health-check")
def health_check(instance_id: str, url: str | None = typer.Option(None, "--url")) -> None:
    try:
        healthy = get_orchestrator().health_check(instance_id, url)
    except StratusException as e:
        _exit_for_domain_error(e)
    _echo_yaml_entity({"instance_id": instance_id, "healthy": healthy})
    if not healthy:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
