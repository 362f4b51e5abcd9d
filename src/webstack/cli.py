from __future__ import annotations

import functools
import os
import typing

import click
import pulumi.automation as auto
import yaml

import webstack
import webstack.aws_stack
import webstack.junkdrawer
import webstack.paths
import webstack.pulumi_resources.aws_web_stack

PROJECT_NAME = "webstack"


def handle_errors(fn: typing.Callable) -> typing.Callable:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ValueError, RuntimeError, auto.CommandError) as e:
            click.secho(f"error: {e}", fg="red", bold=True, err=True)
            raise click.exceptions.Exit(1) from e

    return wrapper


def load_stack(name: str) -> webstack.aws_stack.AWSStack:
    return webstack.aws_stack.AWSStack(name)


def workspace_stack(stack: webstack.aws_stack.AWSStack) -> auto.Stack:
    """Select (or create) the engine stack for a stack directory, running the program in-process."""

    def program():
        webstack.pulumi_resources.aws_web_stack.AWSWebStack(stack=stack)

    work_dir = webstack.paths.Paths().workspaces / stack.name
    work_dir.mkdir(parents=True, exist_ok=True)

    ws_stack = auto.create_or_select_stack(
        stack_name=stack.name,
        project_name=PROJECT_NAME,
        program=program,
        opts=auto.LocalWorkspaceOptions(
            work_dir=str(work_dir),
            env_vars=stack.stack_env(),
            secrets_provider=stack.secrets_provider_url,
        ),
    )
    ws_stack.set_config("aws:region", auto.ConfigValue(value=stack.cfg.region))

    return ws_stack


def ensure_backend(stack: webstack.aws_stack.AWSStack) -> None:
    if "WEBSTACK_SECRETS_PROVIDER" in os.environ:
        click.secho(f"using secrets provider {stack.secrets_provider_url} from the environment", fg="yellow")
    elif webstack.aws_ensure_state_key(stack.cfg.region):
        click.secho(f"state key {webstack.STATE_KMS_KEY_ALIAS} is ready", fg="green")
    else:
        msg = f"unable to ensure state key {webstack.STATE_KMS_KEY_ALIAS!r}"
        raise RuntimeError(msg)

    if "PULUMI_BACKEND_URL" in os.environ:
        click.secho(f"using backend {os.environ['PULUMI_BACKEND_URL']} from the environment", fg="yellow")
        return

    if not webstack.aws_ensure_state_bucket(stack.state_bucket, stack.cfg.region):
        msg = f"unable to ensure state bucket {stack.state_bucket!r}"
        raise RuntimeError(msg)

    click.secho(f"state bucket {stack.state_bucket} is ready", fg="green")


@click.group()
@click.option(
    "--root",
    type=click.Path(file_okay=False, exists=True),
    envvar="WEBSTACK_ROOT",
    help="Directory holding __stacks__/ (defaults to $WEBSTACK_ROOT)",
)
def cli(root: str | None):
    """Manage webstack AWS stacks."""
    if root is not None:
        os.environ["WEBSTACK_ROOT"] = root


@cli.command("list")
@handle_errors
def list_stacks():
    """List the stack directories under the root."""
    stacks_dir = webstack.paths.Paths().stacks
    if not stacks_dir.exists():
        return

    for d in sorted(stacks_dir.iterdir()):
        if (d / "webstack.yaml").exists():
            click.echo(d.name)


@cli.command()
@click.argument("name")
@handle_errors
def show(name: str):
    """Print the resolved stack config."""
    stack = load_stack(name)
    cfg = stack.as_dict()

    click.echo(yaml.safe_dump({"name": stack.name, "spec": cfg}, sort_keys=True))
    click.secho(f"signature: {webstack.junkdrawer.json_signature(cfg)}", fg="white", bold=True)


@cli.command()
@click.argument("name")
@click.option("--check-account/--no-check-account", default=True, help="Compare against the current AWS account")
@handle_errors
def validate(name: str, check_account: bool):
    """Load and validate a stack config."""
    stack = load_stack(name)

    if check_account:
        current_account_id = webstack.aws_current_account_id()
        if current_account_id == "":
            click.secho("unable to determine the current AWS account; skipping account check", fg="yellow")
        elif current_account_id != stack.cfg.account_id:
            click.secho(
                f"stack {stack.name} targets account {stack.cfg.account_id} "
                f"but current credentials are for {current_account_id}",
                fg="yellow",
                bold=True,
            )

    click.secho(f"{stack.name} is valid", fg="green", bold=True)


@cli.command()
@click.argument("name")
@handle_errors
def status(name: str):
    """Look up what already exists in AWS for a stack."""
    stack = load_stack(name)

    vpc = stack.vpc()
    if vpc:
        click.secho(f"vpc: {vpc['VpcId']} ({vpc.get('CidrBlock', '')})", fg="green")
    else:
        click.secho("vpc: not found", fg="yellow")

    for site_name in stack.site_names():
        site = stack.cfg.sites[site_name]
        zone = stack.domain_hosted_zone(site_name)
        cert_arn = stack.domain_certificate_arn(site_name)

        click.secho(f"site {site_name} ({site.domain})", bold=True)
        if zone:
            click.echo(f"  zone: {zone['Id']}")
            for ns in zone["NameServers"]:
                click.echo(f"    {ns}")
        else:
            click.secho("  zone: not found", fg="yellow")
        click.echo(f"  certificate: {cert_arn or 'not found'}")


@cli.command()
@click.argument("name")
@click.option("--parallel", type=int, default=None, help="Maximum number of concurrent resource operations")
@handle_errors
def preview(name: str, parallel: int | None):
    """Show the changes `up` would make."""
    stack = load_stack(name)
    ws_stack = workspace_stack(stack)

    result = ws_stack.preview(on_output=print, parallel=parallel)
    click.secho(f"{stack.name}: {result.change_summary}", fg="green", bold=True)


@cli.command()
@click.argument("name")
@click.option("--parallel", type=int, default=None, help="Maximum number of concurrent resource operations")
@click.option("--refresh", is_flag=True, default=False, help="Refresh state before updating")
@handle_errors
def up(name: str, parallel: int | None, refresh: bool):
    """Create or update a stack's resources."""
    stack = load_stack(name)

    steps: list[tuple[str, typing.Callable[[], typing.Any]]] = [
        ("ensure backend", lambda: ensure_backend(stack)),
        (
            "up",
            lambda: workspace_stack(stack).up(on_output=print, parallel=parallel, refresh=refresh),
        ),
    ]

    webstack.junkdrawer.print_steps(steps)

    result = None
    for step_name, step in steps:
        click.secho(f"∙ {step_name}", bold=True)
        result = step()

    if result is not None:
        click.secho(f"{stack.name}: {result.summary.result}", fg="green", bold=True)
        for key, output in sorted(result.outputs.items()):
            click.echo(f"  {key}: {output.value}")


@cli.command()
@click.argument("name")
@click.option("--parallel", type=int, default=None, help="Maximum number of concurrent resource operations")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@handle_errors
def destroy(name: str, parallel: int | None, yes: bool):
    """Delete every resource in a stack."""
    stack = load_stack(name)

    if stack.cfg.protect_persistent_resources:
        click.secho(
            "protect_persistent_resources is enabled; protected resources will block the destroy",
            fg="yellow",
        )

    if not yes:
        click.confirm(f"Destroy every resource in {stack.name}?", abort=True)

    result = workspace_stack(stack).destroy(on_output=print, parallel=parallel)
    click.secho(f"{stack.name}: {result.summary.result}", fg="green", bold=True)


@cli.command("ensure-backend")
@click.argument("name")
@handle_errors
def ensure_backend_command(name: str):
    """Create the S3 state bucket and KMS state key for a stack."""
    ensure_backend(load_stack(name))


@cli.command()
@handle_errors
def whoami():
    """Show the current AWS caller identity."""
    identity, ok = webstack.aws_whoami()
    if not ok:
        msg = "unable to determine AWS caller identity; check your credentials"
        raise RuntimeError(msg)

    for key in ("Account", "Arn", "UserId"):
        click.echo(f"{key}: {identity[key]}")


def main():
    cli()
