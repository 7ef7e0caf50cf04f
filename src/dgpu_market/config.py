"""Configuration settings for the dGPU agent market.

## Rental Pricing

Agents are rented by the hour. Each agent has a fixed USD hourly rate;
the amount charged is that rate converted to dGPU at the current oracle
price:

    dgpu_amount = (usd_rate * hours) / dgpu_price_usd

Agents not listed in ``agent_prices_usd`` are charged the default rate
($0.25/hour). When the oracle is down the last good price from the price
cache is used; with neither available no quote is produced.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings


DEFAULT_AGENT_PRICES_USD = {
    "gpt-4o": 0.50,
    "claude-3-5-sonnet": 0.50,
    "gemini-1-5-pro": 0.35,
    "grok-2": 0.35,
    "deepseek-v3-fw": 0.20,
    "tokenomics-analys-agent": 0.40,
    "audit-analys-agent": 0.60,
    "article-writer-agent": 0.30,
}

DEFAULT_USAGE_TOOL_MAP = {
    "/api/gemini": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
    "/api/deepseek": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
    "/api/grok2": "99999999-8888-7777-6666-555555555555",
    "/api/llm": "22222222-3333-4444-5555-666666666666",
    "/api/image": "33333333-4444-5555-6666-777777777777",
}


class Settings(BaseSettings):
    """dGPU market settings from environment."""

    # MongoDB
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "dgpu_market"

    # Price oracle (CoinGecko simple price)
    oracle_url: str = "https://api.coingecko.com/api/v3/simple/price"
    oracle_token_key: str = "dante"
    oracle_timeout_seconds: float = 10.0
    price_cache_path: str = ".dgpu_price_cache.json"

    # Solana
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    dgpu_mint: str = "DGPUgHtqe1Qc3YKXFEj2PQH6YtqGhFETCe4HHCgDoCR3"
    treasury_wallet: str = "5VDb4wQtVicSPhHWX9Pd9ZpvVpweZPAk4q5oL2fECWB9"
    dgpu_decimals: int = 6
    # Browser payments may undershoot the server quote by this fraction
    payment_tolerance: float = 0.05

    # Rental pricing
    default_rate_usd: float = 0.25
    agent_prices_usd: dict[str, float] = DEFAULT_AGENT_PRICES_USD

    # LLM providers
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    gemini_api_key: str = ""
    gemini_model: str = "models/gemini-1.5-pro-001"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    grok2_api_key: str = ""
    grok2_model: str = "grok-2-1212"
    deepseek_api_key: str = ""
    deepseek_model: str = "deepseek-chat"
    stability_api_key: str = ""
    provider_timeout_seconds: float = 120.0

    # Usage logging (request path -> tool id)
    usage_tool_map: dict[str, str] = DEFAULT_USAGE_TOOL_MAP

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
