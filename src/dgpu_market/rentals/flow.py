"""End-to-end rental flow: quote, pay, record.

Flow:
1. Quote the rental in dGPU (oracle price, else cached price)
2. Transfer dGPU from the renter's wallet to the treasury
3. Record the rental window against the transfer signature

Nothing is retried. A failure at step 1 or 2 means nothing was charged;
a failure at step 3 means the renter paid but holds no rental, which is
surfaced as RentalPersistenceError carrying the signature.

When the browser wallet pays, only step 3 runs here, after the signature
has been checked on chain against the quote (``record_payment``).
"""

from contextlib import contextmanager
from typing import Optional
import structlog

from ..clock import Clock, SystemClock
from ..exceptions import PaymentRejectedError, RentalInProgressError
from ..log import short
from ..models import Rental, RentalQuote, RentalStatus, RentalView
from ..payments.transfer import TokenTransferSubmitter, WalletSigner, to_base_units
from ..pricing.calculator import RentalPriceCalculator
from .countdown import remaining_seconds, rental_status
from .record import RentalRecordWriter

logger = structlog.get_logger()


class RentalFlow:
    """Sequences pricing, settlement and persistence for one rental."""

    def __init__(
        self,
        calculator: RentalPriceCalculator,
        submitter: TokenTransferSubmitter,
        writer: RentalRecordWriter,
        clock: Optional[Clock] = None,
        payment_tolerance: float = 0.05,
    ):
        self.calculator = calculator
        self.submitter = submitter
        self.writer = writer
        self.clock = clock or SystemClock()
        self.payment_tolerance = payment_tolerance
        self._in_flight: set[tuple[str, str]] = set()

    async def quote(self, agent_slug: str, hours: int = 1) -> RentalQuote:
        return await self.calculator.quote(agent_slug, hours)

    async def rent(self, wallet: WalletSigner, agent_slug: str, hours: int = 1) -> Rental:
        """Pay for and record a rental.

        Raises:
            ValueError: hours is not positive
            RentalInProgressError: Same wallet/agent rental already running
            PricingUnavailableError: No price; nothing charged
            TransferError: Payment failed; nothing charged
            RentalPersistenceError: Paid, but the rental was not recorded
        """
        if hours <= 0:
            raise ValueError("hours must be positive")

        wallet_address = str(wallet.public_key)
        with self._single_flight(wallet_address, agent_slug):
            quote = await self.calculator.quote(agent_slug, hours)

            logger.info(
                "rental_payment_starting",
                wallet=short(wallet_address),
                agent_slug=agent_slug,
                hours=hours,
                dgpu_amount=quote.dgpu_amount,
                price_source=quote.price_source.value,
            )

            signature = await self.submitter.transfer(wallet, quote.dgpu_amount)

            # Only reached with a signature in hand
            return await self.writer.create_rental(wallet_address, agent_slug, hours, signature)

    async def record_payment(
        self,
        wallet_address: str,
        agent_slug: str,
        hours: int,
        signature: str,
    ) -> Rental:
        """Record a rental for a transfer the renter's own wallet sent.

        The signature must be a confirmed dGPU transfer from the wallet to
        the treasury covering the current quote, less the payment tolerance.

        Raises:
            ValueError: hours is not positive
            RentalInProgressError: Same wallet/agent rental already running
            PaymentRejectedError: Unknown, failed or short payment
            TransferError: The chain could not be queried
            PricingUnavailableError: No price to check the payment against
            DuplicateRentalError: The signature already backs a rental
            RentalPersistenceError: Verified, but the rental was not recorded
        """
        if hours <= 0:
            raise ValueError("hours must be positive")

        with self._single_flight(wallet_address, agent_slug):
            received = await self.submitter.verify_payment(signature, wallet_address)

            quote = await self.calculator.quote(agent_slug, hours)
            required = to_base_units(quote.dgpu_amount, self.submitter.decimals)
            minimum = int(required * (1 - self.payment_tolerance))
            if received < minimum:
                logger.warning(
                    "rental_payment_short",
                    wallet=short(wallet_address),
                    agent_slug=agent_slug,
                    received=received,
                    required=required,
                )
                raise PaymentRejectedError(
                    signature, f"paid {received} base units, rental needs {required}"
                )

            return await self.writer.create_rental(wallet_address, agent_slug, hours, signature)

    @contextmanager
    def _single_flight(self, wallet_address: str, agent_slug: str):
        key = (wallet_address, agent_slug)
        if key in self._in_flight:
            raise RentalInProgressError(
                f"A rental for '{agent_slug}' is already being processed for this wallet"
            )
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)

    async def status(self, wallet_address: str, agent_slug: str) -> RentalView:
        """Current rental state for a wallet and agent."""
        rental = await self.writer.latest(wallet_address, agent_slug)
        now = self.clock.now()
        state = rental_status(rental, now)
        if state == RentalStatus.NONE:
            return RentalView(status=state)
        return RentalView(
            status=state,
            remaining_seconds=remaining_seconds(rental.end_time, now),
            rental=rental,
        )
