"""Shared fixtures: in-memory stores and fake collaborators."""

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from dgpu_market.cache import MemoryPriceCache
from dgpu_market.clock import FixedClock
from dgpu_market.exceptions import DuplicateRentalError, PaymentRejectedError, TransferError
from dgpu_market.llm import ProviderProxy
from dgpu_market.models import Agent, ChatMessage, Rental, UsageLog
from dgpu_market.payments.transfer import WalletSigner
from dgpu_market.pricing.oracle import PriceOracle
from dgpu_market.services import build_services
from dgpu_market.stores import AgentStore, ChatStore, RentalStore, UsageStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ============================================================
# In-memory stores
# ============================================================

class MemoryRentalStore(RentalStore):
    def __init__(self):
        self.rentals: list[Rental] = []

    async def insert(self, rental: Rental) -> Rental:
        if any(r.tx_signature == rental.tx_signature for r in self.rentals):
            raise DuplicateRentalError(rental.tx_signature)
        self.rentals.append(rental)
        return rental

    async def latest(self, user_wallet: str, agent_slug: str) -> Optional[Rental]:
        matches = [
            r for r in self.rentals
            if r.user_wallet == user_wallet and r.agent_slug == agent_slug
        ]
        return max(matches, key=lambda r: r.end_time) if matches else None


class FailingRentalStore(MemoryRentalStore):
    async def insert(self, rental: Rental) -> Rental:
        raise RuntimeError("write rejected")


class MemoryAgentStore(AgentStore):
    def __init__(self):
        self.agents: dict[str, Agent] = {}

    async def create(self, agent: Agent) -> Agent:
        self.agents[agent.slug] = agent
        return agent

    async def get(self, slug: str) -> Optional[Agent]:
        return self.agents.get(slug)

    async def list_agents(self, category=None, status="active", limit=100) -> list[Agent]:
        agents = [
            a for a in self.agents.values()
            if (category is None or a.category == category)
            and (status is None or a.status == status)
        ]
        agents.sort(key=lambda a: (-a.rating, -a.deployments))
        return agents[:limit]

    async def update(self, slug: str, updates: dict[str, Any]) -> bool:
        if slug not in self.agents:
            return False
        self.agents[slug] = self.agents[slug].model_copy(update=updates)
        return True

    async def increment(self, slug: str, field: str, amount: int = 1) -> bool:
        if slug not in self.agents:
            return False
        current = getattr(self.agents[slug], field)
        return await self.update(slug, {field: current + amount})


class MemoryChatStore(ChatStore):
    def __init__(self):
        self.messages: list[ChatMessage] = []

    async def append(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        return message

    async def history(self, user_wallet: str, agent_slug: Optional[str] = None) -> list[ChatMessage]:
        found = [
            m for m in self.messages
            if m.user_wallet == user_wallet and (agent_slug is None or m.agent_slug == agent_slug)
        ]
        return sorted(found, key=lambda m: m.created_at)

    async def clear(self, user_wallet: str) -> int:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.user_wallet != user_wallet]
        return before - len(self.messages)


class MemoryUsageStore(UsageStore):
    def __init__(self):
        self.entries: list[UsageLog] = []

    async def append(self, entry: UsageLog) -> None:
        self.entries.append(entry)

    async def daily_usage(self, tool_id, start=None, end=None) -> list[dict]:
        rows = [e for e in self.entries if e.tool_id == tool_id]
        if not rows:
            return []
        return [{
            "day": rows[0].invoked_at.strftime("%Y-%m-%d"),
            "calls": len(rows),
            "errors": sum(1 for e in rows if e.status == "error"),
            "avg_duration_ms": sum(e.duration_ms for e in rows) / len(rows),
        }]


# ============================================================
# Fake collaborators
# ============================================================

class StaticOracle(PriceOracle):
    """Oracle returning a preset price."""

    def __init__(self, price: float = 0.05):
        super().__init__(url="http://oracle.test/price", token_key="dante")
        self.price = price
        self.calls = 0

    async def get_token_price_usd(self) -> float:
        self.calls += 1
        return self.price


class FakeSubmitter:
    """Stands in for TokenTransferSubmitter."""

    decimals = 6

    def __init__(self, signature: str = "5xSig111", error: Optional[str] = None):
        self.signature = signature
        self.error = error
        self.transfers: list[tuple[str, float]] = []
        # signature -> base units the treasury received
        self.paid: dict[str, int] = {}

    async def transfer(self, wallet: WalletSigner, amount: float) -> str:
        if self.error:
            raise TransferError(self.error)
        self.transfers.append((str(wallet.public_key), amount))
        return self.signature

    async def verify_payment(self, signature: str, payer: str) -> int:
        if self.error:
            raise TransferError(self.error)
        if signature not in self.paid:
            raise PaymentRejectedError(signature, "transaction not found")
        return self.paid[signature]


class FakeWallet(WalletSigner):
    def __init__(self, signature: str = "5xSig111", reject: bool = False):
        self._pubkey = Keypair().pubkey()
        self.signature = signature
        self.reject = reject
        self.sent: list = []

    @property
    def public_key(self) -> Pubkey:
        return self._pubkey

    async def send_transaction(self, instructions, client) -> str:
        if self.reject:
            raise RuntimeError("User rejected the request")
        self.sent.append(instructions)
        return self.signature


class FakeRpcClient:
    """Minimal async Solana RPC client for balance lookups."""

    def __init__(self, balance: int = 0, fail: bool = False):
        self.balance = balance
        self.fail = fail
        # str(signature) -> transaction meta
        self.transactions: dict[str, Any] = {}

    async def get_token_account_balance(self, pubkey):
        if self.fail:
            raise RuntimeError("account not found")
        return SimpleNamespace(value=SimpleNamespace(amount=str(self.balance)))

    async def get_transaction(self, signature, max_supported_transaction_version=None):
        if self.fail:
            raise RuntimeError("rpc unavailable")
        meta = self.transactions.get(str(signature))
        if meta is None:
            return SimpleNamespace(value=None)
        return SimpleNamespace(value=SimpleNamespace(transaction=SimpleNamespace(meta=meta)))


def token_balance(mint, owner, amount: int):
    return SimpleNamespace(
        mint=mint, owner=owner, ui_token_amount=SimpleNamespace(amount=str(amount)),
    )


def transfer_meta(mint, payer, treasury, amount: int, err=None):
    """Transaction meta for a dGPU transfer of ``amount`` base units."""
    return SimpleNamespace(
        err=err,
        pre_token_balances=[token_balance(mint, payer, 1_000_000_000), token_balance(mint, treasury, 0)],
        post_token_balances=[
            token_balance(mint, payer, 1_000_000_000 - amount),
            token_balance(mint, treasury, amount),
        ],
    )


class EchoProvider(ProviderProxy):
    """Provider that echoes prompts instead of calling upstream."""

    def __init__(self):
        super().__init__()
        self.prompts: list[tuple[str, str]] = []

    async def query_llm(self, slug: str, prompt: str, system_prompt=None) -> str:
        self.prompts.append((slug, prompt))
        return f"echo: {prompt}"


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def wallet_address():
    return str(Keypair().pubkey())


@pytest.fixture
def services(clock):
    return build_services(
        clock=clock,
        agents=MemoryAgentStore(),
        rentals=MemoryRentalStore(),
        chat_messages=MemoryChatStore(),
        usage=MemoryUsageStore(),
        cache=MemoryPriceCache(),
        oracle=StaticOracle(0.05),
        submitter=FakeSubmitter(),
        provider=EchoProvider(),
    )
