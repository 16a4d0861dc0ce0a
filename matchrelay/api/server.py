from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from matchrelay.core.publisher import EventPublisher
from matchrelay.infrastructure.logging import get_logger

logger = get_logger(__name__)


# --- Data Models ---

class BreakerModel(BaseModel):
    name: str
    state: str
    failure_count: int
    stats: Dict[str, Any]


class HealthModel(BaseModel):
    status: str  # "ok" when every breaker is closed, else "degraded"
    breakers: Dict[str, BreakerModel]
    cache: Dict[str, Any]


# --- API Implementation ---

def create_app(publisher: EventPublisher) -> FastAPI:
    """Build the health probe API around an already-wired publisher."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Health API starting up")
        yield
        logger.info("Health API shutting down")

    app = FastAPI(title="matchrelay", lifespan=lifespan)
    app.state.publisher = publisher

    @app.get("/health", response_model=HealthModel)
    async def health(request: Request):
        report = request.app.state.publisher.health()
        breakers = report["breakers"]
        degraded = any(b["state"] != "closed" for b in breakers.values())
        return HealthModel(
            status="degraded" if degraded else "ok",
            breakers={name: BreakerModel(**stats) for name, stats in breakers.items()},
            cache=report["cache"],
        )

    @app.get("/breakers/{name}")
    async def breaker_state(name: str, request: Request):
        try:
            state = request.app.state.publisher.get_breaker_state(name)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown breaker: {name}")
        return {"name": name, "state": state.value}

    return app
