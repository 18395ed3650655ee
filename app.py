"""
FastAPI Application for the Trip Planner API

Endpoints:
- POST /generate: run one chat turn; answers with a question, a confirmation,
  or a generationId to poll while the itinerary is generated in the background
- GET /generate?generationId=...: latest progress snapshot for a generation
- GET /health: Health check
- GET/DELETE /session/{session_id}, GET /itinerary/{session_id}: debug helpers

Every body is an envelope: {"success": true, "data": ...} or
{"success": false, "error": "...", "detail"?: "..."} (detail only in DEV_MODE).
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from conversation_state import ConversationStateManager, summarize
from errors import GenerationFailed
from graph import DialogController
from llm_client import GeminiLLMClient, LLMClient
from places_client import LocationIQPlacesClient, PlacesClient
from progress_store import ProgressStore
from progressive_generator import ProgressiveTripGenerator
from stategraph import ConfirmationProgress, GenerationRequest, QuestionProgress, WireModel
from trip_extractor import TripExtractor
from logger_config import setup_logger

# Setup logger
logger = setup_logger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================

class GenerateRequest(WireModel):
    """Request body for POST /generate."""
    message: str = Field(..., description="The user's message", examples=["5 days in Paris, then 3 days in Rome"])
    session_id: str = Field(..., min_length=1, description="Client-held session identifier", examples=["sess-12345"])
    conversation_context: Optional[str] = Field(None, description="Opaque context string returned by a previous turn")

    @field_validator("message")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be empty")
        return v.strip()


class GenerationStarted(WireModel):
    type: str = "processing"
    generation_id: str
    poll_url: str
    message: str
    conversation_context: str


class HealthResponse(WireModel):
    """Response body for health check."""
    status: str
    service: str
    timestamp: str
    active_sessions: int
    running_generations: int


# =============================================================================
# Envelope helpers
# =============================================================================

def _dump(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    return data


def success(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": _dump(data)})


def failure(status_code: int, error: str, detail: Optional[str] = None, dev_mode: bool = config.DEV_MODE) -> JSONResponse:
    content = {"success": False, "error": error}
    if detail and dev_mode:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content)


# =============================================================================
# FastAPI App Setup
# =============================================================================

def create_app(
    controller: Optional[DialogController] = None,
    generator: Optional[ProgressiveTripGenerator] = None,
    state_manager: Optional[ConversationStateManager] = None,
    progress_store: Optional[ProgressStore] = None,
    llm: Optional[LLMClient] = None,
    places: Optional[PlacesClient] = None,
    sweep_interval: float = config.SWEEP_INTERVAL_SECONDS,
    dev_mode: bool = config.DEV_MODE,
) -> FastAPI:
    """
    Build the API with its collaborators. Anything not passed in is created
    from config (Gemini LLM, LocationIQ places when a key is set).
    """
    if state_manager is None:
        state_manager = controller.state_manager if controller is not None else ConversationStateManager()
    if llm is None and (controller is None or generator is None):
        llm = GeminiLLMClient()
    if places is None and config.LOCATIONIQ_API_KEY:
        places = LocationIQPlacesClient()
    if controller is None:
        controller = DialogController(state_manager, TripExtractor(llm), llm)
    if generator is None:
        generator = ProgressiveTripGenerator(llm, places)
    if progress_store is None:
        progress_store = ProgressStore(dev_mode=dev_mode)

    async def sweeper():
        while True:
            await asyncio.sleep(sweep_interval)
            try:
                state_manager.sweep()
                progress_store.sweep()
            except Exception as e:
                logger.error(f"Sweep failed: {str(e)}", exc_info=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweep_task = asyncio.create_task(sweeper())
        logger.info("Trip planner API started")
        try:
            yield
        finally:
            sweep_task.cancel()
            try:
                await sweep_task
            except asyncio.CancelledError:
                pass
            await progress_store.shutdown()
            logger.info("Trip planner API stopped")

    app = FastAPI(
        title="Trip Planner API",
        description="Conversational multi-destination trip planning with progressive itinerary generation",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware for frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.controller = controller
    app.state.generator = generator
    app.state.state_manager = state_manager
    app.state.progress_store = progress_store

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Malformed request to {request.url.path}: {exc.errors()}")
        return failure(400, "Invalid request body.", detail=str(exc.errors()), dev_mode=dev_mode)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return failure(exc.status_code, str(exc.detail), dev_mode=dev_mode)

    # -------------------------------------------------------------------------
    # Background generation
    # -------------------------------------------------------------------------

    def start_generation(session_id: str, request: GenerationRequest) -> str:
        generation_id = uuid.uuid4().hex

        async def run_generation(on_progress):
            try:
                itinerary = await generator.generate_progressive(request, on_progress)
            except GenerationFailed as e:
                logger.warning(f"Generation {generation_id} failed for {e.city or 'trip'}: {e}")
                state_manager.update(session_id, error=f"Generation failed: {e}")
                return None
            state_manager.update(session_id, itinerary=itinerary)
            return itinerary

        progress_store.submit(generation_id, run_generation)
        return generation_id

    # -------------------------------------------------------------------------
    # API Endpoints
    # -------------------------------------------------------------------------

    @app.post("/generate")
    async def generate_endpoint(body: GenerateRequest):
        """
        Main chat endpoint.

        Flow:
        1. Classify + extract + merge into session context (synchronous)
        2. Missing information -> question / confirmation payload
        3. Complete intent -> start background generation, return generationId
        """
        logger.info(f"Received generate request for session: {body.session_id}")
        logger.debug(f"User message: {body.message}")

        try:
            turn = await controller.process_turn(body.session_id, body.message, body.conversation_context)
        except Exception as e:
            logger.error(f"Error in generate_endpoint: {str(e)}", exc_info=True)
            return failure(
                500,
                "Something went wrong understanding your request. Please try again.",
                detail=f"{type(e).__name__}: {e}",
                dev_mode=dev_mode,
            )

        if turn.response_type == "question":
            return success(QuestionProgress(
                status="needs_input",
                message=turn.message,
                missing_fields=turn.missing_fields,
                conversation_context=turn.conversation_context,
            ))

        if turn.response_type == "confirmation":
            return success(ConfirmationProgress(
                status="awaiting_confirmation",
                message=turn.message,
                destinations=turn.destinations,
                conversation_context=turn.conversation_context,
            ))

        try:
            generation_id = start_generation(body.session_id, turn.generation_request)
        except Exception as e:
            logger.error(f"Could not start generation: {str(e)}", exc_info=True)
            return failure(500, "Could not start planning your trip. Please try again.", detail=str(e), dev_mode=dev_mode)

        logger.info(f"Started generation {generation_id} for session {body.session_id}")
        return success(GenerationStarted(
            generation_id=generation_id,
            poll_url=f"/generate?{urlencode({'generationId': generation_id})}",
            message=turn.message,
            conversation_context=turn.conversation_context,
        ))

    @app.get("/generate")
    async def poll_generation(generation_id: Optional[str] = Query(None, alias="generationId")):
        """Latest progress snapshot for a generation."""
        if not generation_id:
            return failure(400, "generationId is required.", dev_mode=dev_mode)
        snapshot = progress_store.get(generation_id)
        if snapshot is None:
            return failure(404, "Generation not found or expired.", dev_mode=dev_mode)
        return success(snapshot)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return success(HealthResponse(
            status="healthy",
            service="trip-planner-api",
            timestamp=datetime.now().isoformat(),
            active_sessions=len(state_manager.active_sessions()),
            running_generations=len(progress_store.running()),
        ))

    @app.get("/session/{session_id}")
    async def get_session(session_id: str):
        """
        Debug endpoint: Get current state for a session.

        Useful for debugging and understanding state progression.
        """
        state = state_manager.get(session_id)
        if state is None:
            return failure(404, "Session not found.", dev_mode=dev_mode)

        return success({
            "sessionId": state.session_id,
            "phase": state.context.phase.value,
            "summary": summarize(state),
            "context": state.context.model_dump(mode="json", by_alias=True),
            "messageCount": state.metadata.message_count,
            "hasItinerary": state.current_itinerary is not None,
            "errors": state.metadata.errors,
        })

    @app.delete("/session/{session_id}")
    async def clear_session(session_id: str):
        """Clear/reset a conversation session."""
        if state_manager.clear(session_id):
            return success({"message": f"Session {session_id} cleared"})
        return success({"message": f"Session {session_id} not found (already cleared)"})

    @app.get("/itinerary/{session_id}")
    async def get_itinerary(session_id: str):
        """Get the latest generated itinerary for a session."""
        state = state_manager.get(session_id)
        if state is None:
            return failure(404, "Session not found.", dev_mode=dev_mode)
        if state.current_itinerary is None:
            return failure(404, "No itinerary has been generated for this session yet.", dev_mode=dev_mode)
        return success(state.current_itinerary)

    return app


app = create_app()


# =============================================================================
# Run with: uvicorn app:app --reload --port 8006
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host=config.API_HOST, port=config.API_PORT, reload=config.DEV_MODE)
