"""Orchestrator - FastAPI Application.

Exposes the assistant gateway over HTTP:
- Chat API that runs one interaction per request
- In-memory session continuation
- Tool listing
- Health check
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from shared.config import get_settings
from shared.logging import get_logger, setup_logging
from shared.models import AttachmentPart
from orchestrator.gateway import AssistantGateway, build_gateway

logger = get_logger(__name__)


class ChatRequest(BaseModel):
    """Chat request from a client."""
    message: str = Field(..., min_length=1, description="User message")
    session_id: Optional[str] = Field(default=None, description="Session to continue; a new one is started if omitted")
    attachments: list[AttachmentPart] = Field(default_factory=list)


class ChatResponse(BaseModel):
    """Chat response to a client."""
    interaction_id: str
    session_id: str
    response: str
    completed: bool
    state: str
    iterations: int
    error: Optional[str] = None
    transcript: list[dict[str, Any]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    provider: str
    tool_count: int


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        settings.log_level,
        json_output=settings.json_logs or settings.environment == "production"
    )

    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = build_gateway(settings)

    logger.info("Orchestrator started", provider=settings.llm.provider)
    yield
    logger.info("Shutting down Orchestrator")


app = FastAPI(
    title="Tool Loop Orchestrator",
    description="Tool-calling assistant gateway",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_gateway() -> AssistantGateway:
    gateway = getattr(app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Gateway not initialized"
        )
    return gateway


@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Health check endpoint."""
    info = await _get_gateway().health_check()
    return HealthResponse(
        status=info["gateway"],
        provider=info["provider"],
        tool_count=info["tool_count"],
    )


@app.post("/chat", response_model=ChatResponse, tags=["Chat"])
async def chat(request: ChatRequest):
    """Run one interaction for the given message, continuing its session."""
    gateway = _get_gateway()
    session = gateway.get_session(request.session_id)

    try:
        result = await gateway.process_message(
            user_message=request.message,
            attachments=tuple(request.attachments),
            session=session,
        )
    except Exception as e:
        logger.error("Chat processing failed", error=str(e), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process message: {e}"
        )

    return ChatResponse(**result)


@app.delete("/sessions/{session_id}", tags=["Chat"])
async def end_session(session_id: str):
    """Discard an in-memory session."""
    if not _get_gateway().end_session(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session not found: {session_id}"
        )
    return {"session_id": session_id, "ended": True}


@app.get("/tools", tags=["Tools"])
async def list_tools():
    """List tools available to the model."""
    tools = _get_gateway().registry.get_tools_for_llm()
    return {"tools": tools, "count": len(tools)}


def main():
    """Run the Orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.orchestrator.host,
        port=settings.orchestrator.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
