"""
Session management API endpoints.

This module handles story session creation, turn processing, and save/load.
Each session owns one StoryEngine held in process memory; a per-session lock
keeps turns from overlapping.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from impressionist.engine.orchestrator import StoryEngine
from impressionist.providers.language_model import LanguageModel, create_language_model
from impressionist.schemas.state import GameResponse, GameState, PlayerAction
from impressionist.utils.logger import get_logger
from impressionist.utils.metrics import MetricsCollector

# Set up logging
logger = get_logger(__name__)

router = APIRouter()


class Session:
    """A running story session"""

    def __init__(self, session_id: str, engine: StoryEngine, metrics: MetricsCollector):
        self.id = session_id
        self.engine = engine
        self.metrics = metrics
        self.lock = asyncio.Lock()
        self.created_at = datetime.now()


# In-memory session registry
sessions_db: Dict[str, Session] = {}


def get_language_model() -> LanguageModel:
    """Language model shared by new sessions (overridden in tests)"""
    return create_language_model()


class SessionCreateRequest(BaseModel):
    """Request to create a new session"""

    story: Dict[str, Any] = Field(..., description="Parsed story document")
    engine_mode: Optional[Literal["flags", "classifier"]] = Field(
        default=None, description="Overrides the configured engine mode"
    )


class SessionCreateResponse(BaseModel):
    """Response from session creation"""

    id: str
    title: str
    engine_mode: str
    initial_text: str
    game_state: GameState


class SessionStateResponse(BaseModel):
    id: str
    title: str
    engine_mode: str
    game_state: GameState
    flags: Dict[str, Any]
    memory: Dict[str, Any]
    metrics: Dict[str, Any]


class SaveResponse(BaseModel):
    save_data: str


class LoadRequest(BaseModel):
    save_data: str


def _get_session(session_id: str) -> Session:
    session = sessions_db.get(session_id)
    if session is None:
        logger.warning(f"[API] Session not found: {session_id}")
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _ensure_idle(session: Session) -> None:
    if session.lock.locked():
        logger.warning(f"[API] Session {session.id} is busy")
        raise HTTPException(
            status_code=409, detail="A turn is already in progress for this session"
        )


@router.post("/", response_model=SessionCreateResponse)
async def create_session(
    request: SessionCreateRequest,
    language_model: LanguageModel = Depends(get_language_model),
):
    """
    Create a new session from a story document.

    Args:
        request: Story document and optional engine mode

    Returns:
        SessionCreateResponse with session ID, entry sketch and initial state

    Raises:
        HTTPException 400: Story failed validation
    """
    metrics = MetricsCollector()
    engine = StoryEngine(
        language_model=language_model, observer=metrics, engine_mode=request.engine_mode
    )
    result = engine.load_story(request.story)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)

    assert engine.story is not None and result.data is not None
    session_id = str(uuid.uuid4())
    sessions_db[session_id] = Session(session_id, engine, metrics)
    logger.info(f"[API] Created session {session_id} for '{engine.story.title}'")

    return SessionCreateResponse(
        id=session_id,
        title=engine.story.title,
        engine_mode=engine.engine_mode,
        initial_text=engine.get_initial_text(),
        game_state=result.data,
    )


@router.get("/")
async def list_sessions() -> List[Dict[str, Any]]:
    """List all active sessions"""
    return [
        {
            "id": session.id,
            "title": session.engine.story.title if session.engine.story else None,
            "current_scene_id": session.engine.game_state.current_scene_id,
            "is_ended": session.engine.game_state.is_ended,
            "created_at": session.created_at.isoformat(),
        }
        for session in sessions_db.values()
    ]


@router.get("/{session_id}", response_model=SessionStateResponse)
async def get_session(session_id: str):
    """
    Get a session's state, flags, memory statistics and metrics.

    Raises:
        HTTPException 404: Session not found
    """
    session = _get_session(session_id)
    engine = session.engine
    return SessionStateResponse(
        id=session.id,
        title=engine.story.title if engine.story else "",
        engine_mode=engine.engine_mode,
        game_state=engine.get_game_state(),
        flags=engine.flags.get_all_flags(),
        memory=engine.memory.stats(),
        metrics=session.metrics.summary(),
    )


@router.post("/{session_id}/start", response_model=GameResponse)
async def start_session(session_id: str):
    """
    Narrate the opening scene.

    Raises:
        HTTPException 404: Session not found
        HTTPException 409: A turn is already in progress
    """
    session = _get_session(session_id)
    _ensure_idle(session)
    async with session.lock:
        return await session.engine.establish_opening()


@router.post("/{session_id}/actions", response_model=GameResponse)
async def process_action(session_id: str, action: PlayerAction):
    """
    Process one player action.

    Raises:
        HTTPException 404: Session not found
        HTTPException 409: A turn is already in progress
    """
    session = _get_session(session_id)
    _ensure_idle(session)
    async with session.lock:
        response = await session.engine.process_action(action)
    logger.debug(f"[API] Session {session_id} turn metadata: {response.metadata}")
    return response


@router.get("/{session_id}/save", response_model=SaveResponse)
async def save_session(session_id: str):
    """Serialize the session into a save document"""
    session = _get_session(session_id)
    _ensure_idle(session)
    return SaveResponse(save_data=session.engine.save_game())


@router.post("/{session_id}/load", response_model=GameState)
async def load_session(session_id: str, request: LoadRequest):
    """
    Restore a save document into the session.

    Raises:
        HTTPException 400: Save document rejected (the session is unchanged)
    """
    session = _get_session(session_id)
    _ensure_idle(session)
    async with session.lock:
        result = session.engine.load_game(request.save_data)
    if not result.success:
        logger.warning(f"[API] Load rejected for session {session_id}: {result.error}")
        raise HTTPException(status_code=400, detail=result.error)
    return result.data


@router.post("/{session_id}/restart", response_model=GameState)
async def restart_session(session_id: str):
    """Restart the session's story from the beginning"""
    session = _get_session(session_id)
    _ensure_idle(session)
    async with session.lock:
        result = session.engine.restart()
        session.metrics.reset()
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return result.data


@router.delete("/{session_id}")
async def delete_session(session_id: str):
    """
    Delete a session, cancelling any in-flight memory compaction.

    Raises:
        HTTPException 404: Session not found
    """
    session = _get_session(session_id)
    del sessions_db[session_id]
    session.engine.memory.cancel_compaction()
    logger.info(f"[API] Deleted session {session_id}")
    return {"message": f"Session {session_id} deleted successfully"}
