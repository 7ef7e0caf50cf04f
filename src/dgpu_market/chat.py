"""Chat with rented agents.

Chat is gated on the rental: without an active rental for the agent the
message is refused and nothing is sent upstream.
"""

import uuid
from typing import Optional
from pydantic import BaseModel, ConfigDict
import structlog

from .clock import Clock, SystemClock
from .exceptions import RentalExpiredError
from .llm import ProviderProxy
from .log import short
from .models import ChatMessage, RentalStatus
from .rentals.countdown import rental_status
from .stores import ChatStore, RentalStore

logger = structlog.get_logger()


class ChatTranscript(BaseModel):
    """Immutable snapshot of a conversation."""
    model_config = ConfigDict(frozen=True)

    user_wallet: str
    agent_slug: Optional[str] = None
    messages: tuple[ChatMessage, ...] = ()

    def with_messages(self, *new: ChatMessage) -> "ChatTranscript":
        return self.model_copy(update={"messages": self.messages + tuple(new)})

    @property
    def last(self) -> Optional[ChatMessage]:
        return self.messages[-1] if self.messages else None


class ChatService:
    """Sends user messages to agents and keeps the history."""

    def __init__(
        self,
        messages: ChatStore,
        rentals: RentalStore,
        provider: ProviderProxy,
        clock: Optional[Clock] = None,
    ):
        self.messages = messages
        self.rentals = rentals
        self.provider = provider
        self.clock = clock or SystemClock()

    async def ensure_access(self, wallet: str, agent_slug: str) -> None:
        """Raise RentalExpiredError unless the wallet holds an active rental."""
        rental = await self.rentals.latest(wallet, agent_slug)
        if rental_status(rental, self.clock.now()) != RentalStatus.ACTIVE:
            logger.info("chat_gated", wallet=short(wallet), agent_slug=agent_slug)
            raise RentalExpiredError(wallet, agent_slug)

    def _message(self, wallet: str, agent_slug: str, content: str, is_bot: bool, is_markdown: bool) -> ChatMessage:
        return ChatMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            user_wallet=wallet,
            agent_slug=agent_slug,
            content=content,
            is_bot=is_bot,
            is_markdown=is_markdown,
            created_at=self.clock.now(),
        )

    async def send_message(
        self,
        wallet: str,
        agent_slug: str,
        content: str,
        is_markdown: bool = False,
        system_prompt: Optional[str] = None,
    ) -> tuple[ChatMessage, ChatMessage]:
        """Append the user's message and the agent's reply.

        Returns:
            (user_message, bot_message)
        """
        if not content or not content.strip():
            raise ValueError("Message content is empty")

        await self.ensure_access(wallet, agent_slug)

        user_message = self._message(wallet, agent_slug, content, is_bot=False, is_markdown=is_markdown)

        # Nothing is stored unless the provider answers
        reply = await self.provider.query_llm(agent_slug, content, system_prompt)

        await self.messages.append(user_message)
        # Provider replies are rendered as markdown
        bot_message = await self.messages.append(
            self._message(wallet, agent_slug, reply, is_bot=True, is_markdown=True)
        )

        logger.info("chat_exchange", wallet=short(wallet), agent_slug=agent_slug, reply_chars=len(reply))
        return user_message, bot_message

    async def history(self, wallet: str, agent_slug: Optional[str] = None) -> ChatTranscript:
        messages = await self.messages.history(wallet, agent_slug)
        return ChatTranscript(user_wallet=wallet, agent_slug=agent_slug, messages=tuple(messages))

    async def clear(self, wallet: str) -> int:
        return await self.messages.clear(wallet)
