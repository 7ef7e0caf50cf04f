"""Pydantic models for all dGPU market collections."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field, ConfigDict, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Enums
# ============================================================

class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class RentalStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    NONE = "none"  # No rental on record


class PriceSource(str, Enum):
    ORACLE = "oracle"
    CACHE = "cache"


class UsageStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ============================================================
# Agent Models
# ============================================================

class TechnicalSpecs(BaseModel):
    """Advertised capabilities of an agent."""
    capabilities: list[str] = Field(default_factory=list)
    context_length: int = 0
    response_speed: str = "standard"


class Agent(BaseModel):
    """Cataloged chat persona backed by a third-party provider."""
    model_config = ConfigDict(use_enum_values=True)

    agent_id: str
    name: str
    description: str
    category: str = "general"
    creator: str = ""
    slug: str

    # Listing price shown in the catalog (USD/hour)
    price: float = 0.25

    # Reputation
    rating: float = 0.0
    rating_count: int = 0
    deployments: int = 0

    technical_specs: TechnicalSpecs = Field(default_factory=TechnicalSpecs)
    status: AgentStatus = AgentStatus.ACTIVE

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# Rental Models
# ============================================================

SECONDS_PER_HOUR = 3600


class Rental(BaseModel):
    """Time-boxed access grant paid for by an on-chain dGPU transfer.

    Immutable once created. ``end_time`` is always exactly
    ``start_time + duration_hours`` hours.
    """
    model_config = ConfigDict(frozen=True)

    user_wallet: str
    agent_slug: str
    duration_hours: int = Field(gt=0)
    start_time: datetime
    end_time: datetime
    tx_signature: str

    @model_validator(mode="after")
    def _check_window(self) -> "Rental":
        expected = self.start_time + timedelta(seconds=self.duration_hours * SECONDS_PER_HOUR)
        if self.end_time != expected:
            raise ValueError("end_time must equal start_time + duration_hours")
        return self

    @classmethod
    def starting_at(
        cls,
        user_wallet: str,
        agent_slug: str,
        duration_hours: int,
        start_time: datetime,
        tx_signature: str,
    ) -> "Rental":
        """Build a rental whose window begins at ``start_time``."""
        return cls(
            user_wallet=user_wallet,
            agent_slug=agent_slug,
            duration_hours=duration_hours,
            start_time=start_time,
            end_time=start_time + timedelta(hours=duration_hours),
            tx_signature=tx_signature,
        )


class RentalQuote(BaseModel):
    """Price breakdown for renting an agent."""
    agent_slug: str
    hours: int
    usd_rate: float
    usd_total: float
    token_price_usd: float
    price_source: PriceSource
    dgpu_amount: float


class RentalView(BaseModel):
    """Rental state as shown to a user at a point in time."""
    status: RentalStatus
    remaining_seconds: int = 0
    rental: Optional[Rental] = None


# ============================================================
# Chat Models
# ============================================================

class ChatMessage(BaseModel):
    """A single message in a user's conversation."""
    model_config = ConfigDict(frozen=True)

    message_id: str
    user_wallet: str
    agent_slug: Optional[str] = None
    content: str
    is_bot: bool = False
    is_markdown: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# Usage Models
# ============================================================

class UsageLog(BaseModel):
    """Audit row for a proxied provider call."""
    model_config = ConfigDict(use_enum_values=True)

    user_id: Optional[str] = None
    tool_id: Optional[str] = None
    invoked_at: datetime = Field(default_factory=utcnow)
    params: Optional[Any] = None
    duration_ms: int
    status: UsageStatus
    error_code: Optional[str] = None
    source: str = "api"
