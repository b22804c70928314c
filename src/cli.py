#!/usr/bin/env python3
"""
apimanagerctl - command line companion of the APIManager operator.

Runs the operator, lists the API kinds the cluster serves and dry-runs
Deployment mutator pipelines against manifests offline.
"""

import asyncio
import json
from typing import Callable, Dict, List

import click
import yaml
from kubernetes_asyncio.client import ApiClient
from tabulate import tabulate

from capabilities import CapabilityProbe
from config import KubernetesConfig
from errors import ReconcileError
from main import create_api_client
from main import main as run_operator
from reconcilers.deployment import (
    deployment_env_var_mutator,
    deployment_listener_args_mutator,
    deployment_listener_async_disable_args_mutator,
    deployment_listener_async_disable_env_mutator,
    deployment_listener_env_mutator,
    deployment_mutator,
    deployment_pod_init_container_mutator,
    deployment_remove_duplicate_env_var_mutator,
    deployment_remove_tls_volumes_and_mounts_mutator,
    deployment_replicas_mutator,
    deployment_sync_volumes_and_mounts_mutator,
    generic_backend_deployment_mutators,
)
from reconcilers.helpers import object_diff
from reconcilers.pipeline import MutateFn, MutatorPipeline
from store import ObjectStore


def _generic() -> List[MutateFn]:
    return generic_backend_deployment_mutators() + [
        deployment_replicas_mutator,
        deployment_env_var_mutator,
    ]


def _backend_listener(async_disabled: bool) -> List[MutateFn]:
    if async_disabled:
        mode = [
            deployment_listener_async_disable_args_mutator,
            deployment_listener_async_disable_env_mutator,
        ]
    else:
        mode = [deployment_listener_args_mutator, deployment_listener_env_mutator]
    return _generic() + mode


def _system_app() -> List[MutateFn]:
    return _generic() + [
        deployment_pod_init_container_mutator,
        deployment_sync_volumes_and_mounts_mutator,
        deployment_remove_tls_volumes_and_mounts_mutator,
    ]


PLAN_PIPELINES: Dict[str, Callable[..., List[MutateFn]]] = {
    "generic": _generic,
    "backend-listener": _backend_listener,
    "system-app": _system_app,
}

# Pipelines whose mutators depend on the async mode
ASYNC_MODE_PIPELINES = frozenset({"backend-listener"})


def build_plan_pipeline(name: str, async_disabled: bool = False) -> MutatorPipeline:
    if name in ASYNC_MODE_PIPELINES:
        mutators = PLAN_PIPELINES[name](async_disabled)
    else:
        mutators = PLAN_PIPELINES[name]()
    mutators.append(deployment_remove_duplicate_env_var_mutator)
    return deployment_mutator(*mutators)


def _load_manifest(filename: str) -> dict:
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


def _render(data, output: str) -> str:
    if output == "json":
        return json.dumps(data, indent=2)
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


@click.group()
def cli():
    """APIManager operator CLI"""
    pass


@cli.command()
def run():
    """Run the operator (configured from the environment)"""
    asyncio.run(run_operator())


@cli.command()
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.option("--kubeconfig", type=click.Path(), default=None, help="Kubeconfig file")
@click.option("--context", default=None, help="Kubeconfig context")
@click.option("--in-cluster", is_flag=True, help="Use the in-cluster service account")
def capabilities(output, kubeconfig, context, in_cluster):
    """List the API kinds served by the cluster"""

    async def discover():
        api_client = await create_api_client(
            KubernetesConfig(in_cluster=in_cluster, kubeconfig=kubeconfig, context=context)
        )
        async with api_client:
            return await CapabilityProbe(api_client).discover()

    try:
        snapshot = asyncio.run(discover())
    except ReconcileError as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)

    rows = [{"group": group or "core", "kind": kind} for group, kind in snapshot.kinds()]
    if output == "table":
        click.echo(tabulate(rows, headers="keys", tablefmt="simple"))
    else:
        click.echo(_render(rows, output))


@cli.command()
@click.argument("desired", type=click.Path(exists=True))
@click.argument("existing", type=click.Path(exists=True))
@click.option(
    "--pipeline",
    "pipeline_name",
    type=click.Choice(sorted(PLAN_PIPELINES)),
    default="generic",
    help="Deployment mutator pipeline to run",
)
@click.option(
    "--async-disabled", is_flag=True, help="Use the async-disabled mode (backend-listener only)"
)
@click.option("--output", "-o", type=click.Choice(["diff", "yaml", "json"]), default="diff")
def plan(desired, existing, pipeline_name, async_disabled, output):
    """Dry-run a Deployment pipeline of DESIRED against EXISTING"""
    desired_data = _load_manifest(desired)
    existing_data = _load_manifest(existing)
    pipeline = build_plan_pipeline(pipeline_name, async_disabled)

    async def run_pipeline():
        async with ApiClient() as api_client:
            store = ObjectStore(api_client)
            desired_obj = store.to_model("Deployment", desired_data)
            existing_obj = store.to_model("Deployment", existing_data)
            changed = pipeline.run(desired_obj, existing_obj)
            return changed, store.to_dict(existing_obj)

    try:
        changed, result = asyncio.run(run_pipeline())
    except ReconcileError as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)

    click.echo(f"Pipeline: {pipeline_name} ({len(pipeline)} mutators)")
    click.echo(f"Write needed: {'yes' if changed else 'no'}")
    if output == "diff":
        if changed:
            click.echo(object_diff(existing_data, result))
    else:
        click.echo(_render(result, output))


if __name__ == "__main__":
    cli()
