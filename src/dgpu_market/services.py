"""Application service container.

Holds the collaborators the API and CLI share. Everything is built once
and passed by reference; nothing here is a module-level global.
"""

from dataclasses import dataclass
from typing import Optional

from .cache import FilePriceCache, PriceCache
from .catalog import Catalog
from .chat import ChatService
from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .llm import ProviderProxy
from .payments.transfer import TokenTransferSubmitter
from .pricing.calculator import RentalPriceCalculator
from .pricing.oracle import PriceOracle
from .rentals.flow import RentalFlow
from .rentals.record import RentalRecordWriter
from .stores import (
    AgentStore,
    ChatStore,
    MongoAgentStore,
    MongoChatStore,
    MongoRentalStore,
    MongoUsageStore,
    RentalStore,
    UsageStore,
)


@dataclass
class Services:
    settings: Settings
    clock: Clock
    agents: AgentStore
    rentals: RentalStore
    chat_messages: ChatStore
    usage: UsageStore
    cache: PriceCache
    oracle: PriceOracle
    calculator: RentalPriceCalculator
    submitter: TokenTransferSubmitter
    writer: RentalRecordWriter
    flow: RentalFlow
    catalog: Catalog
    provider: ProviderProxy
    chat: ChatService


def build_services(
    settings: Optional[Settings] = None,
    *,
    clock: Optional[Clock] = None,
    agents: Optional[AgentStore] = None,
    rentals: Optional[RentalStore] = None,
    chat_messages: Optional[ChatStore] = None,
    usage: Optional[UsageStore] = None,
    cache: Optional[PriceCache] = None,
    oracle: Optional[PriceOracle] = None,
    submitter: Optional[TokenTransferSubmitter] = None,
    provider: Optional[ProviderProxy] = None,
) -> Services:
    """Wire the default (MongoDB + Solana RPC) services, with overrides."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    agents = agents or MongoAgentStore()
    rentals = rentals or MongoRentalStore()
    chat_messages = chat_messages or MongoChatStore()
    usage = usage or MongoUsageStore()
    cache = cache or FilePriceCache(settings.price_cache_path)
    oracle = oracle or PriceOracle(settings.oracle_url, settings.oracle_token_key)
    submitter = submitter or TokenTransferSubmitter()
    provider = provider or ProviderProxy(settings)

    calculator = RentalPriceCalculator(
        oracle,
        cache,
        prices_usd=settings.agent_prices_usd,
        default_rate_usd=settings.default_rate_usd,
    )
    catalog = Catalog(agents)
    writer = RentalRecordWriter(rentals, clock=clock, catalog=catalog)

    return Services(
        settings=settings,
        clock=clock,
        agents=agents,
        rentals=rentals,
        chat_messages=chat_messages,
        usage=usage,
        cache=cache,
        oracle=oracle,
        calculator=calculator,
        submitter=submitter,
        writer=writer,
        flow=RentalFlow(
            calculator, submitter, writer, clock=clock, payment_tolerance=settings.payment_tolerance,
        ),
        catalog=catalog,
        provider=provider,
        chat=ChatService(chat_messages, rentals, provider, clock=clock),
    )
