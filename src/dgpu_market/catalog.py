"""Agent catalog: registration, lookup, reviews and admin status."""

import re
import uuid
from datetime import datetime, timezone
from typing import Optional
import structlog

from .config import get_settings
from .models import Agent, AgentStatus, TechnicalSpecs
from .stores import AgentStore

logger = structlog.get_logger()

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """URL-safe slug: 'Gemini 2.0 Flash' -> 'gemini-2-0-flash'."""
    return _NON_SLUG.sub("-", name.lower()).strip("-")


# Agents served by the LLM proxy routes
DEFAULT_AGENTS = [
    {"name": "GPT-4o", "category": "general", "description": "OpenAI's flagship multimodal chat model.",
     "capabilities": ["chat", "reasoning", "code"], "context_length": 128000, "response_speed": "fast"},
    {"name": "Claude 3.5 Sonnet", "category": "general", "description": "Anthropic's balanced reasoning model.",
     "capabilities": ["chat", "reasoning", "writing"], "context_length": 200000, "response_speed": "fast"},
    {"name": "Gemini 2.0 Flash", "category": "general", "description": "Google's low-latency Gemini model.",
     "capabilities": ["chat", "summarization"], "context_length": 1000000, "response_speed": "very fast"},
    {"name": "Gemini 1.5 Pro", "category": "general", "description": "Google's long-context Gemini model.",
     "capabilities": ["chat", "analysis"], "context_length": 2000000, "response_speed": "standard"},
    {"name": "Grok 2", "category": "general", "description": "x.ai's conversational model.",
     "capabilities": ["chat"], "context_length": 131072, "response_speed": "fast"},
    {"name": "DeepSeek V3 FW", "category": "code", "description": "DeepSeek chat model.",
     "capabilities": ["chat", "code"], "context_length": 64000, "response_speed": "standard"},
    {"name": "Tokenomics Analys Agent", "category": "crypto", "description": "Token supply, emission and incentive analysis.",
     "capabilities": ["tokenomics", "analysis"], "context_length": 32000, "response_speed": "standard"},
    {"name": "Audit Analys Agent", "category": "crypto", "description": "Smart-contract security review.",
     "capabilities": ["security", "code-review"], "context_length": 32000, "response_speed": "standard"},
    {"name": "Article Writer Agent", "category": "content", "description": "Long-form article drafting.",
     "capabilities": ["writing"], "context_length": 32000, "response_speed": "standard"},
]


class Catalog:
    """Operations over the agent catalog."""

    def __init__(self, store: AgentStore):
        self.store = store

    async def register_agent(
        self,
        name: str,
        description: str,
        creator: str = "",
        category: str = "general",
        price: float = 0.25,
        technical_specs: Optional[TechnicalSpecs] = None,
    ) -> Agent:
        """Create a catalog entry. Raises ValueError on a bad or taken name."""
        slug = slugify(name)
        if not slug:
            raise ValueError(f"Agent name '{name}' does not produce a usable slug")

        if await self.store.get(slug):
            raise ValueError(f"An agent with slug '{slug}' already exists")

        agent = Agent(
            agent_id=f"agent_{uuid.uuid4().hex[:8]}",
            name=name,
            description=description,
            category=category,
            creator=creator,
            slug=slug,
            price=price,
            technical_specs=technical_specs or TechnicalSpecs(),
        )
        await self.store.create(agent)

        logger.info("agent_registered", agent_id=agent.agent_id, slug=slug, category=category)
        return agent

    async def get_agent(self, slug: str) -> Optional[Agent]:
        return await self.store.get(slug)

    async def list_agents(
        self,
        category: Optional[str] = None,
        status: Optional[str] = AgentStatus.ACTIVE.value,
        limit: int = 100,
    ) -> list[Agent]:
        return await self.store.list_agents(category=category, status=status, limit=limit)

    async def rate_agent(self, slug: str, rating: int) -> Agent:
        """Fold a 1-5 star review into the agent's running mean."""
        if not 1 <= rating <= 5:
            raise ValueError("rating must be between 1 and 5")

        agent = await self.store.get(slug)
        if not agent:
            raise LookupError(f"Agent '{slug}' not found")

        count = agent.rating_count + 1
        mean = (agent.rating * agent.rating_count + rating) / count
        updates = {
            "rating": round(mean, 2),
            "rating_count": count,
            "updated_at": datetime.now(timezone.utc),
        }
        await self.store.update(slug, updates)

        logger.info("agent_rated", slug=slug, rating=rating, new_mean=updates["rating"])
        return agent.model_copy(update=updates)

    async def set_agent_status(self, slug: str, status: AgentStatus) -> Agent:
        """Admin activate/deactivate. Agents are never hard-deleted."""
        agent = await self.store.get(slug)
        if not agent:
            raise LookupError(f"Agent '{slug}' not found")

        status_value = AgentStatus(status).value
        updates = {"status": status_value, "updated_at": datetime.now(timezone.utc)}
        await self.store.update(slug, updates)

        logger.info("agent_status_changed", slug=slug, status=status_value)
        return agent.model_copy(update=updates)

    async def record_deployment(self, slug: str) -> bool:
        """Count one more rental against the agent. False if unknown."""
        return await self.store.increment(slug, "deployments")

    async def seed_defaults(self, creator: str = "dgpu-market") -> list[Agent]:
        """Register the built-in agents that are not in the catalog yet."""
        settings = get_settings()
        created = []
        for spec in DEFAULT_AGENTS:
            slug = slugify(spec["name"])
            if await self.store.get(slug):
                continue
            agent = await self.register_agent(
                name=spec["name"],
                description=spec["description"],
                creator=creator,
                category=spec["category"],
                price=settings.agent_prices_usd.get(slug, settings.default_rate_usd),
                technical_specs=TechnicalSpecs(
                    capabilities=spec["capabilities"],
                    context_length=spec["context_length"],
                    response_speed=spec["response_speed"],
                ),
            )
            created.append(agent)
        return created
