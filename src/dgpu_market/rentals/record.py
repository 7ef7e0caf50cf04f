"""Rental record creation after a dGPU payment."""

from typing import Optional
import structlog

from ..catalog import Catalog
from ..clock import Clock, SystemClock
from ..exceptions import DuplicateRentalError, RentalPersistenceError
from ..log import short
from ..models import Rental
from ..stores import RentalStore

logger = structlog.get_logger()


class RentalRecordWriter:
    """Persists rental windows once a transfer signature exists."""

    def __init__(
        self,
        store: RentalStore,
        clock: Optional[Clock] = None,
        catalog: Optional[Catalog] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.catalog = catalog

    async def create_rental(
        self,
        wallet: str,
        agent_slug: str,
        hours: int,
        signature: str,
    ) -> Rental:
        """Record a rental starting now and lasting ``hours``.

        Raises:
            ValueError: Invalid hours or missing signature
            DuplicateRentalError: The signature already backs a rental
            RentalPersistenceError: The write was rejected. The payment
                behind ``signature`` is then unreconciled.
        """
        if not signature:
            raise ValueError("A transaction signature is required to record a rental")

        rental = Rental.starting_at(
            user_wallet=wallet,
            agent_slug=agent_slug,
            duration_hours=hours,
            start_time=self.clock.now(),
            tx_signature=signature,
        )

        try:
            await self.store.insert(rental)
        except DuplicateRentalError:
            logger.warning("rental_signature_reused", wallet=short(wallet), tx_signature=signature)
            raise
        except Exception as e:
            logger.error(
                "rental_record_failed",
                wallet=short(wallet),
                agent_slug=agent_slug,
                tx_signature=signature,
                error=str(e),
            )
            raise RentalPersistenceError(signature, str(e)) from e

        logger.info(
            "rental_created",
            wallet=short(wallet),
            agent_slug=agent_slug,
            hours=hours,
            end_time=rental.end_time.isoformat(),
        )

        if self.catalog is not None:
            # A failed count never undoes the rental
            try:
                await self.catalog.record_deployment(agent_slug)
            except Exception as e:
                logger.warning("deployment_count_failed", agent_slug=agent_slug, error=str(e))

        return rental

    async def latest(self, wallet: str, agent_slug: str) -> Optional[Rental]:
        """Most recent rental for the wallet and agent."""
        return await self.store.latest(wallet, agent_slug)
