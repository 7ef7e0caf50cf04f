"""dGPU agent market API.

Serves the agent catalog, rental pricing and records, rental countdowns,
rental-gated chat and the provider proxy routes.
"""

import json
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from fastapi import FastAPI, HTTPException, Depends, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, Response, JSONResponse
from solders.pubkey import Pubkey
import structlog

from dotenv import load_dotenv

from .config import get_settings
from .db import init_db, close_db
from .exceptions import (
    DuplicateRentalError,
    PaymentRejectedError,
    PricingUnavailableError,
    ProviderError,
    RentalExpiredError,
    RentalInProgressError,
    RentalPersistenceError,
    TransferError,
    UnsupportedAgentError,
)
from .log import setup_logging, short
from .models import AgentStatus, RentalStatus, TechnicalSpecs
from .rentals.countdown import Countdown
from .services import Services, build_services
from .usage import UsageLogMiddleware

load_dotenv()
logger = structlog.get_logger()

VERSION = "0.1.0"


# ============================================================
# Request/Response Models
# ============================================================

class AgentCreateRequest(BaseModel):
    """Request to list a new agent in the catalog."""
    name: str
    description: str
    creator: str = ""
    category: str = "general"
    price: float = 0.25
    technical_specs: Optional[TechnicalSpecs] = None


class ReviewRequest(BaseModel):
    rating: int = Field(ge=1, le=5)


class AgentStatusRequest(BaseModel):
    status: AgentStatus


class RentalCreateRequest(BaseModel):
    """Rental to record after the browser wallet has paid."""
    user_wallet: str
    agent_slug: str
    duration_hours: int = Field(gt=0)
    tx_signature: str = Field(min_length=1)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_wallet: str
    content: str
    is_markdown: bool = Field(default=False, alias="isMarkdown")


class PromptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = ""
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")


class LLMRequest(PromptRequest):
    slug: str = ""


class ImageRequest(BaseModel):
    inputs: str = ""


def validate_wallet(wallet: str) -> str:
    """Reject anything that is not a Solana public key."""
    try:
        Pubkey.from_string(wallet)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Solana wallet address")
    return wallet


def provider_http_error(e: ProviderError) -> HTTPException:
    status = e.status_code if e.status_code and e.status_code >= 400 else 502
    return HTTPException(status_code=status, detail={"error": f"{e.provider} failed", "detail": str(e)})


# ============================================================
# App factory
# ============================================================

def get_services(request: Request) -> Services:
    """Service container for the running app (built on first use)."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


def create_app(services: Optional[Services] = None) -> FastAPI:
    settings = services.settings if services else get_settings()

    app = FastAPI(
        title="dGPU Agent Market",
        description="AI agent marketplace with dGPU pay-per-hour rentals",
        version=VERSION,
    )
    app.state.services = services

    def usage_store():
        if app.state.services is None:
            app.state.services = build_services()
        return app.state.services.usage

    app.add_middleware(UsageLogMiddleware, store=usage_store, tool_map=settings.usage_tool_map)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup():
        setup_logging(settings.log_level)
        await init_db()
        logger.info("dgpu_market_api_started")

    @app.on_event("shutdown")
    async def shutdown():
        await close_db()
        logger.info("dgpu_market_api_stopped")

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    @app.get("/")
    def root():
        return {
            "name": "dGPU Agent Market",
            "version": VERSION,
            "status": "operational",
            "features": ["agent_catalog", "dgpu_rentals", "rental_countdown", "llm_proxy"],
        }

    # ============================================================
    # Price Oracle
    # ============================================================

    @app.get("/api/price")
    async def get_price(services: Services = Depends(get_services)):
        """Current dGPU price in the oracle's shape (0 when unknown)."""
        price = await services.oracle.get_token_price_usd()
        return {services.oracle.token_key: {"usd": price}}

    # ============================================================
    # Catalog
    # ============================================================

    @app.get("/api/agents")
    async def list_agents(
        category: Optional[str] = None,
        status: Optional[AgentStatus] = AgentStatus.ACTIVE,
        services: Services = Depends(get_services),
    ):
        agents = await services.catalog.list_agents(
            category=category,
            status=status.value if status else None,
        )
        return {"agents": [a.model_dump(mode="json") for a in agents], "count": len(agents)}

    @app.get("/api/agents/{slug}")
    async def get_agent(slug: str, services: Services = Depends(get_services)):
        agent = await services.catalog.get_agent(slug)
        if not agent:
            raise HTTPException(status_code=404, detail="Agent not found")
        return agent.model_dump(mode="json")

    @app.post("/api/agents", status_code=201)
    async def create_agent(request: AgentCreateRequest, services: Services = Depends(get_services)):
        try:
            agent = await services.catalog.register_agent(
                name=request.name,
                description=request.description,
                creator=request.creator,
                category=request.category,
                price=request.price,
                technical_specs=request.technical_specs,
            )
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return agent.model_dump(mode="json")

    @app.post("/api/agents/{slug}/reviews")
    async def review_agent(slug: str, request: ReviewRequest, services: Services = Depends(get_services)):
        try:
            agent = await services.catalog.rate_agent(slug, request.rating)
        except LookupError:
            raise HTTPException(status_code=404, detail="Agent not found")
        return {"slug": slug, "rating": agent.rating, "rating_count": agent.rating_count}

    @app.put("/api/admin/agents/{slug}/status")
    async def set_agent_status(slug: str, request: AgentStatusRequest, services: Services = Depends(get_services)):
        try:
            agent = await services.catalog.set_agent_status(slug, request.status)
        except LookupError:
            raise HTTPException(status_code=404, detail="Agent not found")
        return {"slug": slug, "status": agent.status}

    # ============================================================
    # Rentals
    # ============================================================

    @app.get("/api/rentals/quote")
    async def quote_rental(
        agent_slug: str,
        hours: int = Query(1, gt=0),
        services: Services = Depends(get_services),
    ):
        """dGPU amount to rent an agent. 503 when no price is available."""
        try:
            quote = await services.calculator.quote(agent_slug, hours)
        except PricingUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return quote.model_dump(mode="json")

    @app.post("/api/rentals", status_code=201)
    async def create_rental(request: RentalCreateRequest, services: Services = Depends(get_services)):
        """Record a rental paid for by ``tx_signature``.

        The signature is looked up on chain first: it must be a confirmed
        dGPU transfer from ``user_wallet`` to the treasury covering the
        quote (402 otherwise). A signature already backing a rental is a
        409. A failed write means the payment is unreconciled; the response
        carries the signature so it can be followed up.
        """
        validate_wallet(request.user_wallet)
        try:
            rental = await services.flow.record_payment(
                request.user_wallet,
                request.agent_slug,
                request.duration_hours,
                request.tx_signature,
            )
        except PaymentRejectedError as e:
            return JSONResponse(
                status_code=402,
                content={"error": "payment_rejected", "detail": e.reason, "tx_signature": e.tx_signature},
            )
        except DuplicateRentalError as e:
            return JSONResponse(
                status_code=409,
                content={
                    "error": "duplicate_signature",
                    "detail": "This payment already backs a rental",
                    "tx_signature": e.tx_signature,
                },
            )
        except RentalInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except (TransferError, PricingUnavailableError) as e:
            raise HTTPException(status_code=503, detail=str(e))
        except RentalPersistenceError as e:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "rental_not_recorded",
                    "detail": "Payment was submitted but the rental could not be recorded",
                    "tx_signature": e.tx_signature,
                },
            )
        return rental.model_dump(mode="json")

    @app.get("/api/rentals/{wallet}/{agent_slug}")
    async def get_rental_status(wallet: str, agent_slug: str, services: Services = Depends(get_services)):
        view = await services.flow.status(wallet, agent_slug)
        return view.model_dump(mode="json")

    @app.get("/api/rentals/{wallet}/{agent_slug}/countdown")
    async def rental_countdown(wallet: str, agent_slug: str, services: Services = Depends(get_services)):
        """Server-sent events with the remaining seconds, once per second."""
        rental = await services.rentals.latest(wallet, agent_slug)
        if rental is None:
            raise HTTPException(status_code=404, detail="No rental found")

        countdown = Countdown(rental.end_time, services.clock)

        async def events():
            async for left in countdown.ticks():
                state = RentalStatus.ACTIVE if left > 0 else RentalStatus.EXPIRED
                payload = {"remaining_seconds": left, "status": state.value}
                yield f"data: {json.dumps(payload)}\n\n"

        return StreamingResponse(events(), media_type="text/event-stream")

    # ============================================================
    # Chat
    # ============================================================

    @app.post("/api/chat/{agent_slug}")
    async def send_chat(agent_slug: str, request: ChatRequest, services: Services = Depends(get_services)):
        try:
            user_message, bot_message = await services.chat.send_message(
                request.user_wallet,
                agent_slug,
                request.content,
                is_markdown=request.is_markdown,
            )
        except RentalExpiredError:
            raise HTTPException(
                status_code=403,
                detail={"error": "rental_expired", "message": "Rent this agent to continue chatting"},
            )
        except UnsupportedAgentError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ProviderError as e:
            raise provider_http_error(e)

        return {
            "messages": [
                user_message.model_dump(mode="json"),
                bot_message.model_dump(mode="json"),
            ]
        }

    @app.get("/api/chat")
    async def chat_history(
        user_wallet: str,
        agent_slug: Optional[str] = None,
        services: Services = Depends(get_services),
    ):
        transcript = await services.chat.history(user_wallet, agent_slug)
        return {
            "messages": [m.model_dump(mode="json") for m in transcript.messages],
            "count": len(transcript.messages),
        }

    @app.delete("/api/chat")
    async def clear_chat(user_wallet: str, services: Services = Depends(get_services)):
        deleted = await services.chat.clear(user_wallet)
        logger.info("chat_cleared", wallet=short(user_wallet), deleted=deleted)
        return {"deleted": deleted}

    # ============================================================
    # Provider proxies
    # ============================================================

    @app.post("/api/llm")
    async def unified_llm(request: LLMRequest, services: Services = Depends(get_services)):
        if not request.slug or not request.prompt:
            raise HTTPException(status_code=400, detail="Missing slug or prompt.")
        try:
            result = await services.provider.query_llm(request.slug, request.prompt, request.system_prompt)
        except UnsupportedAgentError:
            raise HTTPException(status_code=400, detail=f"Unknown slug: {request.slug}")
        except ProviderError as e:
            raise provider_http_error(e)
        return {"result": result}

    @app.post("/api/gemini")
    async def gemini_proxy(request: PromptRequest, services: Services = Depends(get_services)):
        if not request.prompt:
            raise HTTPException(status_code=400, detail="No prompt provided")
        try:
            return {"result": await services.provider.call_gemini(request.prompt, request.system_prompt)}
        except ProviderError as e:
            raise provider_http_error(e)

    @app.post("/api/deepseek")
    async def deepseek_proxy(request: PromptRequest, services: Services = Depends(get_services)):
        if not request.prompt:
            raise HTTPException(status_code=400, detail="No prompt provided")
        try:
            return {"result": await services.provider.call_deepseek(request.prompt)}
        except ProviderError as e:
            raise provider_http_error(e)

    @app.post("/api/grok2")
    async def grok2_proxy(request: PromptRequest, services: Services = Depends(get_services)):
        if not request.prompt:
            raise HTTPException(status_code=400, detail="No prompt provided")
        try:
            return {"result": await services.provider.call_grok(request.prompt)}
        except ProviderError as e:
            raise provider_http_error(e)

    @app.post("/api/image")
    async def image_proxy(request: ImageRequest, services: Services = Depends(get_services)):
        if not request.inputs:
            raise HTTPException(status_code=400, detail="No prompt provided")
        try:
            png = await services.provider.generate_image(request.inputs)
        except ProviderError as e:
            logger.error("image_generation_failed", error=str(e))
            raise HTTPException(status_code=500, detail="Image generation failed")
        return Response(content=png, media_type="image/png")

    # ============================================================
    # Usage analytics
    # ============================================================

    @app.get("/api/providers/{provider_id}/tools/{tool_id}/usage")
    async def tool_usage(
        provider_id: str,
        tool_id: str,
        start: Optional[datetime] = Query(None, alias="from"),
        end: Optional[datetime] = Query(None, alias="to"),
        services: Services = Depends(get_services),
    ):
        usage = await services.usage.daily_usage(tool_id, start, end)
        return {"provider_id": provider_id, "tool_id": tool_id, "usage": usage}


app = create_app()
