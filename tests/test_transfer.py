"""Tests for dGPU SPL transfers."""

import pytest
from solders.keypair import Keypair
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from solders.signature import Signature

from dgpu_market.exceptions import PaymentRejectedError, TransferError
from dgpu_market.payments import TokenTransferSubmitter, to_base_units

from conftest import FakeRpcClient, FakeWallet, transfer_meta

MINT = str(Keypair().pubkey())
TREASURY = str(Keypair().pubkey())


def submitter(balance=0, fail=False) -> TokenTransferSubmitter:
    return TokenTransferSubmitter(
        client=FakeRpcClient(balance=balance, fail=fail),
        mint=MINT,
        treasury=TREASURY,
        decimals=6,
    )


def test_to_base_units_rounds_down():
    assert to_base_units(10.0, 6) == 10_000_000
    assert to_base_units(1.5, 6) == 1_500_000
    assert to_base_units(0.0000004, 6) == 0


def test_instruction_moves_tokens_between_associated_accounts():
    sub = submitter()
    sender = Keypair().pubkey()

    ix = sub.build_instruction(sender, 1_000)

    assert ix.program_id == TOKEN_PROGRAM_ID
    accounts = [meta.pubkey for meta in ix.accounts]
    assert accounts[0] == get_associated_token_address(sender, sub.mint)
    assert accounts[1] == get_associated_token_address(sub.treasury, sub.mint)
    assert accounts[2] == sender


@pytest.mark.asyncio
async def test_transfer_returns_wallet_signature():
    wallet = FakeWallet(signature="4kSigOk")

    signature = await submitter(balance=20_000_000).transfer(wallet, 10.0)

    assert signature == "4kSigOk"
    assert len(wallet.sent) == 1
    assert len(wallet.sent[0]) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1.0, 0.0000001])
async def test_transfer_rejects_unpayable_amounts(amount):
    wallet = FakeWallet()
    with pytest.raises(TransferError):
        await submitter(balance=10**12).transfer(wallet, amount)
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_insufficient_balance_is_not_sent():
    wallet = FakeWallet()

    with pytest.raises(TransferError, match="Insufficient"):
        await submitter(balance=9_999_999).transfer(wallet, 10.0)

    assert wallet.sent == []


@pytest.mark.asyncio
async def test_balance_lookup_failure_is_transfer_error():
    wallet = FakeWallet()
    with pytest.raises(TransferError, match="balance"):
        await submitter(fail=True).transfer(wallet, 1.0)
    assert wallet.sent == []


@pytest.mark.asyncio
async def test_wallet_rejection_is_transfer_error():
    with pytest.raises(TransferError, match="rejected"):
        await submitter(balance=10**12).transfer(FakeWallet(reject=True), 1.0)


@pytest.mark.asyncio
async def test_empty_signature_is_transfer_error():
    with pytest.raises(TransferError):
        await submitter(balance=10**12).transfer(FakeWallet(signature=""), 1.0)


# ============================================================
# Payment verification
# ============================================================

def paid_submitter(amount: int, payer: str, err=None):
    sub = submitter()
    signature = str(Signature.new_unique())
    sub.client.transactions[signature] = transfer_meta(sub.mint, payer, sub.treasury, amount, err=err)
    return sub, signature


@pytest.mark.asyncio
async def test_verify_payment_returns_treasury_credit():
    payer = str(Keypair().pubkey())
    sub, signature = paid_submitter(21_000_000, payer)

    assert await sub.verify_payment(signature, payer) == 21_000_000


@pytest.mark.asyncio
async def test_made_up_signature_is_rejected():
    payer = str(Keypair().pubkey())
    with pytest.raises(PaymentRejectedError, match="malformed"):
        await submitter().verify_payment("5xPaid", payer)


@pytest.mark.asyncio
async def test_unknown_transaction_is_rejected():
    signature = str(Signature.new_unique())
    with pytest.raises(PaymentRejectedError, match="not found") as exc_info:
        await submitter().verify_payment(signature, str(Keypair().pubkey()))
    assert exc_info.value.tx_signature == signature


@pytest.mark.asyncio
async def test_failed_transaction_is_rejected():
    payer = str(Keypair().pubkey())
    sub, signature = paid_submitter(21_000_000, payer, err={"InstructionError": [0, "Custom"]})

    with pytest.raises(PaymentRejectedError, match="failed"):
        await sub.verify_payment(signature, payer)


@pytest.mark.asyncio
async def test_payment_from_another_wallet_is_rejected():
    sub, signature = paid_submitter(21_000_000, str(Keypair().pubkey()))

    with pytest.raises(PaymentRejectedError, match="treasury"):
        await sub.verify_payment(signature, str(Keypair().pubkey()))


@pytest.mark.asyncio
async def test_transfer_of_another_mint_is_rejected():
    payer = str(Keypair().pubkey())
    sub = submitter()
    signature = str(Signature.new_unique())
    sub.client.transactions[signature] = transfer_meta(Keypair().pubkey(), payer, sub.treasury, 21_000_000)

    with pytest.raises(PaymentRejectedError):
        await sub.verify_payment(signature, payer)


@pytest.mark.asyncio
async def test_transaction_lookup_failure_is_transfer_error():
    with pytest.raises(TransferError, match="look up"):
        await submitter(fail=True).verify_payment(str(Signature.new_unique()), str(Keypair().pubkey()))
