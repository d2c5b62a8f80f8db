"""Edge operator CLI (edgectl).

One-shot access to the reconciliation pipeline for operators and CI.

Usage:
    edgectl plan                 # Print the JSON plan, change nothing
    edgectl apply                # Run one reconciliation pass
    edgectl destroy --yes        # Delete everything recorded in the state file
    edgectl run                  # Run the long-lived operator loop

Settings come from the same environment variables as the operator process;
the options below override them.

Exit codes: 0 success, 1 plan or apply error, 2 usage or configuration error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from collections.abc import Callable
from typing import Any

import click

from . import __version__
from .backends import BackendRegistry, build_default_registry
from .config import Config, ConfigurationError
from .main import main as operator_main
from .main import setup_logging
from .reconciler import DriftReconciler, ReconcileResult
from .resource_graph import ResourceGraph

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

RegistryFactory = Callable[[Config], BackendRegistry]


def _emit(data: dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _build(ctx: click.Context, allow_partial: bool = False) -> DriftReconciler:
    """Config and reconciler for one command.

    Raises:
        click.UsageError: If the configuration is invalid (exit code 2).
    """
    env = dict(os.environ)
    env.update(ctx.obj["overrides"])
    if allow_partial:
        env["ALLOW_PARTIAL_STATE"] = "true"

    factory: RegistryFactory = ctx.obj.get("registry_factory", build_default_registry)
    try:
        config = Config.from_env(env)
        registry = factory(config)
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from e
    return DriftReconciler(config, registry)


def _run_pass(reconciler: DriftReconciler, **kwargs: Any) -> ReconcileResult:
    try:
        return asyncio.run(reconciler.reconcile_once(**kwargs))
    finally:
        reconciler.close()


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="edgectl")
@click.option("--spec", "spec_path", type=click.Path(), help="Declaration file or directory")
@click.option("--state-file", type=click.Path(), help="Persisted state file")
@click.option("--region", help="AWS region")
@click.option("--profile", help="AWS profile")
@click.option("--kube-context", help="kubeconfig context")
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO instead of WARNING")
@click.pass_context
def cli(
    ctx: click.Context,
    spec_path: str | None,
    state_file: str | None,
    region: str | None,
    profile: str | None,
    kube_context: str | None,
    verbose: bool,
) -> None:
    """Edge operator CLI (edgectl).

    Plans and applies the declared edge: Kubernetes Ingress routes, the AWS
    load balancer in front of them, its WAF and the Route 53 records.

    \b
    Quick Start:
        edgectl --spec edge.yaml plan     # Preview changes as JSON
        edgectl --spec edge.yaml apply    # Converge
    """
    # Logs go to stderr so stdout stays machine-readable
    setup_logging(logging.INFO if verbose else logging.WARNING, stream=sys.stderr)

    ctx.ensure_object(dict)
    overrides = {
        "SPEC_PATH": spec_path,
        "STATE_FILE": state_file,
        "AWS_REGION": region,
        "AWS_PROFILE": profile,
        "KUBE_CONTEXT": kube_context,
    }
    ctx.obj["overrides"] = {k: v for k, v in overrides.items() if v is not None}


@cli.command()
@click.option(
    "--allow-partial", is_flag=True, help="Plan around backends that cannot be read"
)
@click.pass_context
def plan(ctx: click.Context, allow_partial: bool) -> None:
    """Print the scheduled plan as JSON without changing anything."""
    reconciler = _build(ctx, allow_partial=allow_partial)
    result = _run_pass(reconciler, dry_run=True)

    if result.plan is None:
        click.secho(f"Plan failed: {result.report.error}", fg="red", err=True)
        ctx.exit(EXIT_FAILED)
    _emit(result.plan.to_dict())
    if result.error is not None:
        # Planned but refused, e.g. over the change limit
        click.secho(f"Plan refused: {result.report.error}", fg="red", err=True)
        ctx.exit(EXIT_FAILED)


@cli.command()
@click.pass_context
def apply(ctx: click.Context) -> None:
    """Run one reconciliation pass and print its report."""
    reconciler = _build(ctx)
    result = _run_pass(reconciler, dry_run=False)
    _emit(result.report.to_dict())
    ctx.exit(EXIT_OK if result.report.success else EXIT_FAILED)


@cli.command()
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Delete every managed resource (apply an empty declaration)."""
    reconciler = _build(ctx)
    if not yes:
        click.confirm(
            f"Delete every resource recorded in {reconciler.config.state_file}?", abort=True
        )
    result = _run_pass(reconciler, dry_run=False, graph=ResourceGraph())
    _emit(result.report.to_dict())
    ctx.exit(EXIT_OK if result.report.success else EXIT_FAILED)


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the operator loop until SIGTERM or SIGINT."""
    os.environ.update(ctx.obj["overrides"])
    ctx.exit(asyncio.run(operator_main()))


if __name__ == "__main__":
    cli()
