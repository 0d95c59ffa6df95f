from pathlib import Path

import click

from orchestration.constants import DEFAULT_LEDGER_DIR, RPC_URL_ENVVAR
from orchestration.types import PlanId

plan_files_argument = click.argument(
    "plan_files",
    nargs=-1,
    required=True,
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
)

plan_file_argument = click.argument(
    "plan_file",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
)

dry_run_option = click.option(
    "--dry-run",
    help="Validate every step without sending any transaction.",
    is_flag=True,
    default=False,
)

plan_id_option = click.option(
    "--plan-id",
    help="Ledger key for this run; defaults to the id declared in the plan file.",
    type=PlanId(),
    required=False,
)

confirmations_option = click.option(
    "--confirmations",
    "-c",
    help="Blocks required on top of the inclusion block before a step is final.",
    type=click.IntRange(min=0),
    required=False,
)

ledger_dir_option = click.option(
    "--ledger-dir",
    help="Directory holding the deployment ledgers.",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_LEDGER_DIR,
    show_default=True,
)

rpc_url_option = click.option(
    "--rpc-url",
    help="JSON-RPC endpoint of the target chain.",
    envvar=RPC_URL_ENVVAR,
    required=False,
)

network_option = click.option(
    "--network",
    help="Ape network choice (e.g. ethereum:sepolia:infura), used instead of --rpc-url.",
    required=False,
)

account_option = click.option(
    "--account",
    help="Alias of the ape account used for signing; defaults to DEPLOYER_PRIVATE_KEY.",
    required=False,
)

autosign_option = click.option(
    "--autosign",
    help="Sign with the ape account without prompting.",
    is_flag=True,
    default=False,
)

workers_option = click.option(
    "--workers",
    "-w",
    help="Number of plans executed concurrently.",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
)
