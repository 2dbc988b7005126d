"""stackql-deploy command line.

Usage:
    stackql-deploy build STACK_DIR STACK_ENV       # Create or update resources
    stackql-deploy test STACK_DIR STACK_ENV        # Confirm resources are in the desired state
    stackql-deploy teardown STACK_DIR STACK_ENV    # Delete resources in reverse order
"""

from __future__ import annotations

import functools
import logging
import sys

import click

from .build import Provisioner
from .client import DEFAULT_SERVER_HOST, DEFAULT_SERVER_PORT, StackQLClient
from .env import load_env_vars
from .errors import DeployError
from .runner import StackRunner
from .teardown import Deprovisioner
from .validator import StackValidator

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def common_options(func):
    """Arguments and options shared by every stack command."""

    @click.argument("stack_dir", type=click.Path(exists=True, file_okay=False))
    @click.argument("stack_env")
    @click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default="INFO")
    @click.option("--env-file", default=".env", show_default=True, help="Environment variables file.")
    @click.option("-e", "--env", "env_vars", multiple=True, metavar="KEY=VALUE", help="Set an environment variable.")
    @click.option("--dry-run", is_flag=True, help="Show what would be done without dispatching any statement.")
    @click.option("--show-queries", is_flag=True, help="Log rendered queries.")
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def _run(
    obj: dict,
    runner_cls: type[StackRunner],
    stack_dir: str,
    stack_env: str,
    *,
    log_level: str,
    env_file: str,
    env_vars: tuple[str, ...],
    dry_run: bool,
    show_queries: bool,
    **run_kwargs,
) -> None:
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    client = StackQLClient(obj["server"], obj["port"])
    try:
        env = load_env_vars(env_file, env_vars)
        runner = runner_cls.from_stack(
            stack_dir,
            stack_env,
            client,
            env_vars=env,
            dry_run=dry_run,
            show_queries=show_queries,
        )
        runner.run(**run_kwargs)
    except DeployError as exc:
        logger.error("%s", exc)
        click.secho("stackql-deploy operation failed", fg="red", err=True)
        sys.exit(1)
    finally:
        client.close()


@click.group()
@click.option("--server", default=DEFAULT_SERVER_HOST, show_default=True, help="StackQL server host.")
@click.option("--port", default=DEFAULT_SERVER_PORT, show_default=True, type=int, help="StackQL server port.")
@click.version_option(package_name="stackql-deploy")
@click.pass_context
def main(ctx: click.Context, server: str, port: int) -> None:
    """Declarative resource provisioning with StackQL."""
    ctx.obj = {"server": server, "port": port}


@main.command()
@common_options
@click.option("--output-file", type=click.Path(dir_okay=False), help="Write stack exports to this JSON file.")
@click.pass_obj
def build(obj, stack_dir, stack_env, output_file, **options):
    """Create or update the resources in a stack."""
    _run(obj, Provisioner, stack_dir, stack_env, output_file=output_file, **options)


@main.command()
@common_options
@click.option("--output-file", type=click.Path(dir_okay=False), help="Write stack exports to this JSON file.")
@click.pass_obj
def test(obj, stack_dir, stack_env, output_file, **options):
    """Check that the resources in a stack are in the desired state."""
    _run(obj, StackValidator, stack_dir, stack_env, output_file=output_file, **options)


@main.command()
@common_options
@click.pass_obj
def teardown(obj, stack_dir, stack_env, **options):
    """Delete the resources in a stack."""
    _run(obj, Deprovisioner, stack_dir, stack_env, **options)
