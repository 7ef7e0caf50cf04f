"""dGPU token transfer on Solana.

Rentals are paid by moving dGPU (an SPL token) from the renter's
associated token account to the treasury's. The renter's wallet signs
and broadcasts; this module only builds the instruction and checks the
balance first. ``verify_payment`` checks a signature handed in by a
browser wallet before a rental is recorded against it.

Each call is a single attempt. There is no retry and no idempotency key,
so a caller that retries after an ambiguous failure may pay twice.
"""

import json
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
import structlog

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address, transfer
from spl.token.models import TransferParams

from ..config import get_settings
from ..exceptions import PaymentRejectedError, TransferError
from ..log import short

logger = structlog.get_logger()


class WalletSigner(ABC):
    """A wallet able to sign and broadcast a transaction.

    Cancellation and confirmation prompts belong to the wallet itself;
    ``send_transaction`` may block until the user acts.
    """

    @property
    @abstractmethod
    def public_key(self) -> Pubkey:
        ...

    @abstractmethod
    async def send_transaction(self, instructions: list[Instruction], client: AsyncClient) -> str:
        """Sign, broadcast and return the transaction signature."""
        ...


class KeypairWallet(WalletSigner):
    """Wallet backed by a local keypair (e.g. the Solana CLI id.json)."""

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @classmethod
    def from_file(cls, path: str | Path) -> "KeypairWallet":
        secret = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        return cls(Keypair.from_bytes(bytes(secret)))

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    async def send_transaction(self, instructions: list[Instruction], client: AsyncClient) -> str:
        latest = await client.get_latest_blockhash()
        tx = Transaction.new_signed_with_payer(
            instructions,
            self.keypair.pubkey(),
            [self.keypair],
            latest.value.blockhash,
        )
        resp = await client.send_raw_transaction(bytes(tx))
        return str(resp.value)


def to_base_units(amount: float, decimals: int) -> int:
    """dGPU amount to the token's smallest unit (rounded down)."""
    return int(math.floor(amount * (10 ** decimals)))


class TokenTransferSubmitter:
    """Submits dGPU transfers from a renter to the treasury."""

    def __init__(
        self,
        client: Optional[AsyncClient] = None,
        mint: Optional[str] = None,
        treasury: Optional[str] = None,
        decimals: Optional[int] = None,
    ):
        settings = get_settings()
        self.client = client or AsyncClient(settings.solana_rpc_url, commitment=Confirmed)
        self.mint = Pubkey.from_string(mint or settings.dgpu_mint)
        self.treasury = Pubkey.from_string(treasury or settings.treasury_wallet)
        self.decimals = settings.dgpu_decimals if decimals is None else decimals

    def build_instruction(self, sender: Pubkey, raw_amount: int) -> Instruction:
        """SPL transfer from the sender's token account to the treasury's."""
        source = get_associated_token_address(sender, self.mint)
        dest = get_associated_token_address(self.treasury, self.mint)
        return transfer(
            TransferParams(
                program_id=TOKEN_PROGRAM_ID,
                source=source,
                dest=dest,
                owner=sender,
                amount=raw_amount,
            )
        )

    async def token_balance(self, owner: Pubkey) -> int:
        """dGPU balance of ``owner`` in base units."""
        account = get_associated_token_address(owner, self.mint)
        resp = await self.client.get_token_account_balance(account)
        return int(resp.value.amount)

    async def transfer(self, wallet: WalletSigner, amount: float) -> str:
        """Send ``amount`` dGPU to the treasury. Returns the signature.

        Raises:
            TransferError: bad amount, insufficient balance, wallet
                rejection or RPC failure. Nothing was charged.
        """
        if not amount or amount <= 0:
            raise TransferError(f"Invalid transfer amount: {amount}")

        raw_amount = to_base_units(amount, self.decimals)
        if raw_amount <= 0:
            raise TransferError(f"Transfer amount {amount} is below the smallest unit")

        sender = wallet.public_key

        try:
            balance = await self.token_balance(sender)
        except Exception as e:
            logger.error("dgpu_balance_lookup_failed", sender=short(str(sender)), error=str(e))
            raise TransferError(f"Could not read dGPU balance: {e}") from e

        if balance < raw_amount:
            logger.warning(
                "dgpu_insufficient_balance",
                sender=short(str(sender)),
                balance=balance,
                required=raw_amount,
            )
            raise TransferError(
                f"Insufficient dGPU balance: have {balance}, need {raw_amount} base units"
            )

        ix = self.build_instruction(sender, raw_amount)

        logger.info("dgpu_transfer_submitting", sender=short(str(sender)), amount=amount, raw_amount=raw_amount)

        try:
            signature = await wallet.send_transaction([ix], self.client)
        except Exception as e:
            logger.error("dgpu_transfer_failed", sender=short(str(sender)), error=str(e))
            raise TransferError(f"Transfer failed: {e}") from e

        if not signature:
            raise TransferError("Wallet returned no transaction signature")

        logger.info("dgpu_transfer_submitted", signature=short(signature, 20), amount=amount)
        return signature

    # ============================================================
    # Payment verification
    # ============================================================

    def _balance_change(self, meta, owner: Pubkey) -> int:
        """Net change of ``owner``'s dGPU balance across a transaction."""

        def total(balances) -> int:
            return sum(
                int(b.ui_token_amount.amount)
                for b in balances or []
                if str(b.mint) == str(self.mint) and str(b.owner) == str(owner)
            )

        return total(meta.post_token_balances) - total(meta.pre_token_balances)

    async def verify_payment(self, signature: str, payer: str) -> int:
        """Check that ``signature`` moved dGPU from ``payer`` to the treasury.

        Returns the base units the treasury received.

        Raises:
            PaymentRejectedError: malformed, unknown or failed transaction,
                or one that is not a dGPU payment from ``payer``
            TransferError: the RPC lookup itself failed
        """
        try:
            sig = Signature.from_string(signature)
            payer_key = Pubkey.from_string(payer)
        except ValueError as e:
            raise PaymentRejectedError(signature, "malformed signature or wallet") from e

        try:
            resp = await self.client.get_transaction(sig, max_supported_transaction_version=0)
        except Exception as e:
            logger.error("dgpu_payment_lookup_failed", signature=short(signature, 20), error=str(e))
            raise TransferError(f"Could not look up transaction: {e}") from e

        if resp.value is None:
            raise PaymentRejectedError(signature, "transaction not found")

        meta = resp.value.transaction.meta
        if meta is None or meta.err is not None:
            raise PaymentRejectedError(signature, "transaction failed")

        received = self._balance_change(meta, self.treasury)
        paid = -self._balance_change(meta, payer_key)
        if received <= 0 or paid <= 0:
            logger.warning(
                "dgpu_payment_rejected",
                signature=short(signature, 20),
                payer=short(payer),
                received=received,
                paid=paid,
            )
            raise PaymentRejectedError(signature, "no dGPU moved from the wallet to the treasury")

        logger.info("dgpu_payment_verified", signature=short(signature, 20), received=received)
        return received
