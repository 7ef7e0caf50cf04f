"""Persistence interfaces for the market, with MongoDB implementations.

The flows depend on these abstract stores rather than on ``db`` directly,
so a deployment can swap the backend and tests can run in memory.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from pymongo.errors import DuplicateKeyError

from . import db
from .exceptions import DuplicateRentalError
from .models import Agent, ChatMessage, Rental, UsageLog


class RentalStore(ABC):
    """Rental records keyed by wallet and agent."""

    @abstractmethod
    async def insert(self, rental: Rental) -> Rental:
        """Persist a rental.

        Raises DuplicateRentalError when the signature was already used;
        any other exception means the write was rejected.
        """
        ...

    @abstractmethod
    async def latest(self, user_wallet: str, agent_slug: str) -> Optional[Rental]:
        """Rental with the latest end_time, or None."""
        ...


class AgentStore(ABC):
    """Agent catalog."""

    @abstractmethod
    async def create(self, agent: Agent) -> Agent:
        ...

    @abstractmethod
    async def get(self, slug: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def list_agents(
        self,
        category: Optional[str] = None,
        status: Optional[str] = "active",
        limit: int = 100,
    ) -> list[Agent]:
        ...

    @abstractmethod
    async def update(self, slug: str, updates: dict[str, Any]) -> bool:
        ...

    @abstractmethod
    async def increment(self, slug: str, field: str, amount: int = 1) -> bool:
        ...


class ChatStore(ABC):
    """Append-only conversation history."""

    @abstractmethod
    async def append(self, message: ChatMessage) -> ChatMessage:
        ...

    @abstractmethod
    async def history(self, user_wallet: str, agent_slug: Optional[str] = None) -> list[ChatMessage]:
        ...

    @abstractmethod
    async def clear(self, user_wallet: str) -> int:
        ...


class UsageStore(ABC):
    """Audit log of proxied provider calls."""

    @abstractmethod
    async def append(self, entry: UsageLog) -> None:
        ...

    @abstractmethod
    async def daily_usage(
        self,
        tool_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        ...


# ============================================================
# MongoDB implementations
# ============================================================

class MongoRentalStore(RentalStore):

    async def insert(self, rental: Rental) -> Rental:
        try:
            await db.create_rental(rental.model_dump())
        except DuplicateKeyError as e:
            raise DuplicateRentalError(rental.tx_signature) from e
        return rental

    async def latest(self, user_wallet: str, agent_slug: str) -> Optional[Rental]:
        doc = await db.get_latest_rental(user_wallet, agent_slug)
        return Rental.model_validate(doc) if doc else None


class MongoAgentStore(AgentStore):

    async def create(self, agent: Agent) -> Agent:
        await db.create_agent(agent.model_dump())
        return agent

    async def get(self, slug: str) -> Optional[Agent]:
        doc = await db.get_agent_by_slug(slug)
        return Agent.model_validate(doc) if doc else None

    async def list_agents(
        self,
        category: Optional[str] = None,
        status: Optional[str] = "active",
        limit: int = 100,
    ) -> list[Agent]:
        docs = await db.list_agents(category=category, status=status, limit=limit)
        return [Agent.model_validate(doc) for doc in docs]

    async def update(self, slug: str, updates: dict[str, Any]) -> bool:
        return await db.update_agent(slug, updates)

    async def increment(self, slug: str, field: str, amount: int = 1) -> bool:
        return await db.increment_agent(slug, field, amount)


class MongoChatStore(ChatStore):

    async def append(self, message: ChatMessage) -> ChatMessage:
        await db.insert_chat_message(message.model_dump())
        return message

    async def history(self, user_wallet: str, agent_slug: Optional[str] = None) -> list[ChatMessage]:
        docs = await db.get_chat_messages(user_wallet, agent_slug)
        return [ChatMessage.model_validate(doc) for doc in docs]

    async def clear(self, user_wallet: str) -> int:
        return await db.delete_chat_messages(user_wallet)


class MongoUsageStore(UsageStore):

    async def append(self, entry: UsageLog) -> None:
        await db.insert_usage_log(entry.model_dump())

    async def daily_usage(
        self,
        tool_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        return await db.get_tool_daily_usage(tool_id, start, end)
