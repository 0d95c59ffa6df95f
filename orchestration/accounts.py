import os
from typing import Optional

import click
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from orchestration.chain import LocalAccountSigner, Signer, TxParams
from orchestration.constants import PRIVATE_KEY_ENVVAR


class ApeAccountSigner(Signer):
    """Signs with an account managed by ape (keyfile, hardware wallet, ...)."""

    def __init__(self, account):
        self._account = account

    @classmethod
    def load(cls, alias: str, autosign: bool = False) -> "ApeAccountSigner":
        # plugins are only loaded when an ape account is actually requested
        from ape import accounts

        account = accounts.load(alias)
        if autosign:
            click.echo("WARNING: Autosign is enabled. Transactions will be signed automatically.")
            account.set_autosign(True)
        return cls(account)

    @property
    def address(self) -> ChecksumAddress:
        return to_checksum_address(self._account.address)

    def sign_transaction(self, tx: TxParams) -> bytes:
        from ape import networks

        provider = networks.active_provider
        ecosystem = provider.network.ecosystem if provider else networks.ethereum
        txn = ecosystem.create_transaction(**tx)
        signed = self._account.sign_transaction(txn)
        if signed is None:
            raise click.Abort()
        return bytes(signed.serialize_transaction())


def load_signer(alias: Optional[str] = None, autosign: bool = False) -> Signer:
    """
    Returns the signer for a run: an ape account when an alias is given,
    otherwise the key in DEPLOYER_PRIVATE_KEY.
    """
    if alias:
        return ApeAccountSigner.load(alias, autosign=autosign)
    private_key = os.environ.get(PRIVATE_KEY_ENVVAR)
    if not private_key:
        raise click.UsageError(
            f"No signing account: pass --account or set {PRIVATE_KEY_ENVVAR}."
        )
    return LocalAccountSigner.from_key(private_key)
