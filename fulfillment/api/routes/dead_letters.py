"""Dead-letter API routes — inspection and manual replay.

Endpoints:
- GET  /dead-letters                      — List dead letters (unreplayed by default)
- GET  /dead-letters/{dead_letter_id}     — Return one dead letter
- POST /dead-letters/{dead_letter_id}/replay — Republish the original event to its topic
"""

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict

from fulfillment.core.exceptions import EventPublishError
from fulfillment.db.base import get_session_factory
from fulfillment.events.log import EventLog
from fulfillment.ledger.dead_letter import DeadLetterSink

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# Pydantic response models
# ──────────────────────────────────────────────────────────────────────────────


class DeadLetterResponse(BaseModel):
    """Response schema for a single dead-letter record."""

    id: uuid.UUID
    event_id: str
    correlation_id: str | None
    event_type: str | None
    consumer: str
    original_event: dict[str, Any]
    error: str
    error_type: str
    attempt_count: int
    topic: str | None
    failed_at: datetime
    replayed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


# ──────────────────────────────────────────────────────────────────────────────
# Dependencies
# ──────────────────────────────────────────────────────────────────────────────


def get_dead_letter_sink() -> DeadLetterSink:
    return DeadLetterSink(get_session_factory())


def get_event_log(request: Request) -> EventLog:
    event_log = getattr(request.app.state, "event_log", None)
    if event_log is None:
        raise HTTPException(status_code=503, detail="Event log not available")
    return event_log


# ──────────────────────────────────────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────────────────────────────────────


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    consumer: str | None = None,
    include_replayed: bool = False,
    limit: int = Query(default=100, ge=1, le=1000),
    sink: DeadLetterSink = Depends(get_dead_letter_sink),
):
    rows = await sink.list_dead_letters(consumer=consumer, include_replayed=include_replayed, limit=limit)
    return [DeadLetterResponse.model_validate(row) for row in rows]


@router.get("/dead-letters/{dead_letter_id}", response_model=DeadLetterResponse)
async def get_dead_letter(dead_letter_id: uuid.UUID, sink: DeadLetterSink = Depends(get_dead_letter_sink)):
    row = await sink.get(dead_letter_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Dead letter not found")
    return DeadLetterResponse.model_validate(row)


@router.post("/dead-letters/{dead_letter_id}/replay", response_model=DeadLetterResponse)
async def replay_dead_letter(
    dead_letter_id: uuid.UUID,
    sink: DeadLetterSink = Depends(get_dead_letter_sink),
    event_log: EventLog = Depends(get_event_log),
):
    try:
        row = await sink.replay(dead_letter_id, event_log)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except EventPublishError as exc:
        raise HTTPException(status_code=502, detail="Event log rejected the replay") from exc
    if row is None:
        raise HTTPException(status_code=404, detail="Dead letter not found")
    return DeadLetterResponse.model_validate(row)
