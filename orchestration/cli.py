#!/usr/bin/python3

import logging
import signal
import threading
from contextlib import ExitStack
from pathlib import Path

import click

from orchestration.accounts import load_signer
from orchestration.chain import Web3ChainClient
from orchestration.config import OrchestratorConfig
from orchestration.exceptions import OrchestrationError
from orchestration.ledger import Ledger, registry_from_ledger
from orchestration.options import (
    account_option,
    autosign_option,
    confirmations_option,
    dry_run_option,
    ledger_dir_option,
    network_option,
    plan_file_argument,
    plan_files_argument,
    plan_id_option,
    rpc_url_option,
    workers_option,
)
from orchestration.orchestrator import Orchestrator, load_plans
from orchestration.plan import Plan


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
    )


def _connect(stack: ExitStack, network, rpc_url, account, autosign) -> Web3ChainClient:
    if network and rpc_url:
        raise click.BadOptionUsage("network", "Use either --network or --rpc-url, not both.")
    if not (network or rpc_url):
        raise click.UsageError("A live run needs --network or --rpc-url.")
    signer = load_signer(alias=account, autosign=autosign)
    if network:
        from ape import networks

        provider = stack.enter_context(networks.parse_network_choice(network))
        click.echo(f"Connected to {provider.network.name} network.")
        return Web3ChainClient(web3=provider.web3, signer=signer)
    return Web3ChainClient.from_rpc_url(rpc_url, signer=signer)


@click.group()
@click.option("--verbose", "-v", count=True, help="Increase log verbosity.")
def cli(verbose):
    """Contract deployment orchestrator."""
    _configure_logging(verbose)


@cli.command()
@plan_files_argument
@dry_run_option
@plan_id_option
@confirmations_option
@ledger_dir_option
@rpc_url_option
@network_option
@account_option
@autosign_option
@workers_option
@click.pass_context
def run(
    ctx,
    plan_files,
    dry_run,
    plan_id,
    confirmations,
    ledger_dir,
    rpc_url,
    network,
    account,
    autosign,
    workers,
):
    """Execute one or more deployment plans."""
    cancel = threading.Event()
    previous_handler = signal.signal(signal.SIGTERM, lambda *_: cancel.set())

    try:
        plans = load_plans(list(plan_files), plan_id=plan_id)
        config = OrchestratorConfig().merged(ledger_dir=ledger_dir)
        with ExitStack() as stack:
            client = None
            if not dry_run or network or rpc_url:
                client = _connect(stack, network, rpc_url, account, autosign)
            orchestrator = Orchestrator(config=config, client=client)
            if len(plans) == 1:
                reports = [
                    orchestrator.run(
                        plans[0],
                        dry_run=dry_run,
                        confirmations=confirmations,
                        cancel=cancel,
                    )
                ]
            else:
                reports = orchestrator.run_many(
                    plans,
                    max_workers=workers,
                    dry_run=dry_run,
                    confirmations=confirmations,
                    cancel=cancel,
                )
    except OrchestrationError as e:
        raise click.ClickException(str(e))
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    for report in reports:
        click.echo()
        click.echo(report.table())
        click.echo(report.summary())
    ctx.exit(max(report.exit_code for report in reports))


@cli.command()
@plan_file_argument
@plan_id_option
@ledger_dir_option
@click.option(
    "--output",
    "-o",
    help="Filepath of the registry file to write",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
)
def export(plan_file, plan_id, ledger_dir, output):
    """Export a plan's ledger as a contract registry."""
    try:
        plan = Plan.from_yaml(plan_file, plan_id=plan_id)
        ledger = Ledger.open(plan.plan_id, ledger_dir, chain_id=plan.chain_id)
        registry_from_ledger(ledger, output_filepath=output)
    except OrchestrationError as e:
        raise click.ClickException(str(e))


if __name__ == "__main__":
    cli()
