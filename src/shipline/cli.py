# cli.py
from __future__ import annotations

import asyncio
import json
import signal
import sys
import urllib.error
import urllib.request
import uuid
from pathlib import Path
from urllib.parse import urljoin

import click

from shipline.artifacts import ArtifactStore
from shipline.context import CancelToken, RetryPolicy
from shipline.dag import build_graph
from shipline.errors import GraphError, PromotionDenied, RunNotFound, ShiplineError, WorkflowError
from shipline.gate import evaluate
from shipline.git_facts.git import discover_ref
from shipline.history import RunHistory
from shipline.loader import load_policy, load_workflow
from shipline.model import RunStatus
from shipline.runner import print_transition, run_dag
from shipline.settings import Settings
from shipline.step_workflows.deploy import DirectoryDeployTarget, deploy_run
from shipline.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("shipline_workflow.py", "shipline.yaml", "shipline.yml")

EXIT_FAILED = 1
EXIT_DENIED = 3
EXIT_INTERRUPTED = 130


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory: the defaults plus *_workflow.py."""
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]
    for path in current_dir.glob("*_workflow.py"):
        if path not in found:
            found.append(path)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the --workflow argument or the current directory.
    Exits with an error when none, or more than one, can be found.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  shipline run --workflow my_workflow.py",
            )
            sys.exit(EXIT_FAILED)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Create shipline_workflow.py or shipline.yaml, or pass --workflow.",
        )
        sys.exit(EXIT_FAILED)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  shipline run --workflow shipline_workflow.py",
        )
        sys.exit(EXIT_FAILED)

    return workflow_files[0]


def _fail(e: BaseException) -> None:
    get_console().print_exception(e)
    sys.exit(EXIT_FAILED)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """shipline: dependency-ordered build/test/deploy pipelines with promotion gates."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to shipline_workflow.py / shipline.yaml)")
@click.option("--ref", default=None, help="Triggering git ref (defaults to the current checkout)")
@click.option("--workers", default=None, type=int, help="Maximum jobs running at once")
@click.option("--store-dir", default=None, help="Artifact store directory")
@click.option("--deploy-dir", default=None, help="Directory deploy steps write into")
@click.option("--retries", default=None, type=int, help="Retries for transient artifact store errors")
@click.option("--stop-on-failure/--no-stop-on-failure", default=False, help="Stop dispatching new jobs after the first failure")
@click.option("--history/--no-history", "use_history", default=True, show_default=True, help="Persist the run record")
@click.pass_context
def run(ctx, workflow, ref, workers, store_dir, deploy_dir, retries, stop_on_failure, use_history):
    """Run a workflow to completion."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    workflow_path = discover_workflow(workflow)

    try:
        jobs = load_workflow(workflow_path)
        graph = build_graph(jobs)
    except (GraphError, WorkflowError, TypeError, FileNotFoundError) as e:
        console.print_error("Invalid workflow", str(e), details=[f"workflow={workflow_path}"])
        sys.exit(EXIT_FAILED)

    ref = ref or discover_ref()
    run_id = uuid.uuid4().hex
    console.print_run_started(run_id=run_id, workflow=workflow_path.name, job_count=len(graph), ref=ref)

    cancel = CancelToken()
    try:
        result = run_dag(
            jobs,
            ref=ref,
            workflow=str(workflow_path),
            run_id=run_id,
            repo_root=".",
            store_root=store_dir or settings.store_dir,
            work_root=settings.work_dir,
            max_workers=workers or settings.max_workers,
            retry=RetryPolicy(
                retries=settings.retries if retries is None else retries,
                backoff=settings.backoff,
            ),
            stop_on_failure=stop_on_failure,
            deploy_target=DirectoryDeployTarget(deploy_dir or settings.deploy_dir),
            history=RunHistory(settings.database_url) if use_history else None,
            listeners=[print_transition],
            cancel=cancel,
            interrupt_signals=(signal.SIGINT, signal.SIGTERM),
        )
    except KeyboardInterrupt:
        # Ctrl-C before the event loop took over the signal
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except ShiplineError as e:
        _fail(e)

    console.print_results(result)
    if cancel.cancelled:
        console.print_info("Interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    if result.status is not RunStatus.SUCCEEDED:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file")
@click.pass_context
def plan(ctx, workflow):
    """Validate a workflow and print its stages without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        graph = build_graph(load_workflow(workflow_path))
    except (GraphError, WorkflowError, TypeError, FileNotFoundError) as e:
        console.print_error("Invalid workflow", str(e), details=[f"workflow={workflow_path}"])
        sys.exit(EXIT_FAILED)
    console.print_plan(graph.levels())


async def _with_history(settings: Settings, fn):
    history = RunHistory(settings.database_url)
    await history.init()
    try:
        return await fn(history)
    finally:
        await history.close()


@cli.command()
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw run record")
@click.pass_context
def show(ctx, run_id, as_json):
    """Show a stored run."""
    console = get_console()
    try:
        run_record = asyncio.run(_with_history(ctx.obj["settings"], lambda h: h.load(run_id)))
    except RunNotFound as e:
        console.print_error("Run not found", str(e))
        sys.exit(EXIT_FAILED)
    if as_json:
        click.echo(json.dumps(run_record.to_dict(), indent=2))
    else:
        console.print_run(run_record)


@cli.command()
@click.option("--limit", default=20, show_default=True, type=int)
@click.pass_context
def runs(ctx, limit):
    """List recent runs."""
    records = asyncio.run(_with_history(ctx.obj["settings"], lambda h: h.list_runs(limit)))
    for r in records:
        click.echo(f"{r.run_id}  {r.status.value:<9}  {r.ref or '-'}  {r.reason}")


@cli.command()
@click.argument("run_id")
@click.option("--env", "environment", default=None, help="Target environment (defaults to the first rung of the policy ladder)")
@click.option("--policy", "policy_file", default=None, help="YAML file with a 'promotion:' section")
@click.option("--deploy/--no-deploy", default=False, help="Deploy the run's artifacts when approved")
@click.option("--deploy-dir", default=None, help="Directory deploy target root")
@click.pass_context
def promote(ctx, run_id, environment, policy_file, deploy, deploy_dir):
    """Evaluate the promotion gate for a stored run (exit 3 when denied)."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]

    try:
        policy = load_policy(policy_file or settings.policy_file)
        environment = environment or policy.next_environment()
        if not environment:
            console.print_error(
                "No target environment",
                "Pass --env or list environments in the promotion policy.",
            )
            sys.exit(EXIT_FAILED)

        async def _decide(history: RunHistory):
            record = await history.load(run_id)
            decision = evaluate(record, policy, environment)
            await history.record_promotion(decision)
            return decision

        decision = asyncio.run(_with_history(settings, _decide))
    except RunNotFound as e:
        console.print_error("Run not found", str(e))
        sys.exit(EXIT_FAILED)
    except (ShiplineError, FileNotFoundError) as e:
        _fail(e)

    console.print_decision(decision)
    if not decision.approved:
        sys.exit(EXIT_DENIED)

    if deploy:
        try:
            deployed = deploy_run(
                decision,
                ArtifactStore(settings.store_dir),
                DirectoryDeployTarget(deploy_dir or settings.deploy_dir),
            )
        except PromotionDenied as e:
            console.print_error("Promotion denied", str(e))
            sys.exit(EXIT_DENIED)
        except ShiplineError as e:
            _fail(e)
        console.print_info(f"Deployed {len(deployed)} artifact(s) to {decision.target_environment}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx, host, port):
    """Serve the control plane API (trigger, inspect, cancel, promote)."""
    import uvicorn

    from shipline.cloud.main import create_app

    uvicorn.run(create_app(ctx.obj["settings"]), host=host, port=port)


@cli.command()
@click.option("--poll-interval", default=5, type=int, help="Seconds between queue polls / cancel checks")
@click.option("--repo-root", default=".", help="Checkout the queued workflows run in")
@click.pass_context
def agent(ctx, poll_interval, repo_root):
    """Run an agent that executes runs triggered through the API."""
    from shipline.agent.agent import run_agent

    try:
        run_agent(ctx.obj["settings"], repo_root=repo_root, poll_interval=poll_interval)
    except KeyboardInterrupt:
        get_console().print_info("\nAgent stopped by user")
        sys.exit(0)
    except Exception as e:
        _fail(e)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--workflow", default=None, help="Workflow file path, relative to the agent's checkout")
@click.option("--ref", default=None, help="Triggering git ref (defaults to the current checkout)")
@click.pass_context
def submit(ctx, api, workflow, ref):
    """Trigger a run through the control plane API."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    ref = ref or discover_ref()

    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", "runs")
    req_data = json.dumps({"workflow": str(workflow_path), "ref": ref}).encode("utf-8")
    req = urllib.request.Request(
        url, data=req_data, headers={"Content-Type": "application/json"}, method="POST"
    )

    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(EXIT_FAILED)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(EXIT_FAILED)
    except json.JSONDecodeError as e:
        console.print_error("Invalid API response", "Could not parse JSON response from API.", details=[str(e)])
        sys.exit(EXIT_FAILED)

    console.print_info(f"Submitted run {result.get('run_id')} to {base_url} ({result.get('status')})")


if __name__ == "__main__":
    cli()
