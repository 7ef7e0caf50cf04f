"""Exceptions raised across the rental, chat and provider flows."""

from typing import Optional


class MarketError(Exception):
    """Base class for dGPU market errors."""


class PricingUnavailableError(MarketError):
    """No oracle price and no cached price: a quote cannot be produced.

    Nothing has been charged when this is raised.
    """

    def __init__(self, agent_slug: str):
        self.agent_slug = agent_slug
        super().__init__(f"dGPU pricing unavailable for agent '{agent_slug}'")


class TransferError(MarketError):
    """The token transfer was rejected or could not be broadcast.

    Covers wallet rejection, RPC failures and insufficient balance. No
    charge occurred.
    """


class RentalPersistenceError(MarketError):
    """The transfer went through but the rental record could not be written.

    The payment is unreconciled; ``tx_signature`` identifies it.
    """

    def __init__(self, tx_signature: str, reason: str):
        self.tx_signature = tx_signature
        self.reason = reason
        super().__init__(
            f"Payment {tx_signature} submitted but rental was not recorded: {reason}"
        )


class PaymentRejectedError(MarketError):
    """A signature offered as payment is not a sufficient dGPU transfer to the treasury."""

    def __init__(self, tx_signature: str, reason: str):
        self.tx_signature = tx_signature
        self.reason = reason
        super().__init__(f"Payment {tx_signature} not accepted: {reason}")


class DuplicateRentalError(MarketError):
    """A rental already exists for this transaction signature."""

    def __init__(self, tx_signature: str):
        self.tx_signature = tx_signature
        super().__init__(f"Transaction {tx_signature} has already been used for a rental")


class RentalExpiredError(MarketError):
    """Chat access attempted without an active rental."""

    def __init__(self, wallet: str, agent_slug: str):
        self.wallet = wallet
        self.agent_slug = agent_slug
        super().__init__(f"No active rental for agent '{agent_slug}'")


class RentalInProgressError(MarketError):
    """A rental for the same wallet and agent is already being processed."""


class UnsupportedAgentError(MarketError):
    """No provider route exists for an agent slug."""


class ProviderError(MarketError):
    """An upstream LLM or image provider failed."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider} failed: {message}")
