"""
Change Capture Endpoints

Webhook-style capture: the booking system (or a CDC relay) posts change
envelopes, which are appended to the ingestion buffer.
"""

from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Body, Depends, status
from pydantic import BaseModel, Field

from booking_cdc.errors import DuplicateEventError, MalformedEnvelopeError
from booking_cdc.ingestion.buffer import IngestionBuffer
from booking_cdc.ingestion.events import change_event_from_envelope
from booking_cdc.serving.api.dependencies import get_buffer

router = APIRouter()
logger = structlog.get_logger(__name__)


class AppendedEvent(BaseModel):
    sequence: int
    dedup_key: str


class RejectedEnvelope(BaseModel):
    index: int
    error: str


class IngestReport(BaseModel):
    appended: List[AppendedEvent] = Field(default_factory=list)
    duplicates: List[str] = Field(default_factory=list)
    rejected: List[RejectedEnvelope] = Field(default_factory=list)


@router.post("/event", response_model=AppendedEvent, status_code=status.HTTP_201_CREATED)
async def ingest_event(
    envelope: Dict[str, Any] = Body(...),
    buffer: IngestionBuffer = Depends(get_buffer),
) -> AppendedEvent:
    """
    Append one change envelope.

    Responds 409 for an already ingested event and 422 for an envelope
    without an interpretable operation or timestamp.
    """
    stored = await buffer.append(change_event_from_envelope(envelope))
    return AppendedEvent(sequence=stored.sequence, dedup_key=stored.dedup_key)


@router.post("/events", response_model=IngestReport)
async def ingest_events(
    envelopes: List[Dict[str, Any]] = Body(...),
    buffer: IngestionBuffer = Depends(get_buffer),
) -> IngestReport:
    """Append a batch of envelopes in order; per-envelope outcomes are reported"""
    report = IngestReport()
    for index, envelope in enumerate(envelopes):
        try:
            stored = await buffer.append(change_event_from_envelope(envelope))
        except MalformedEnvelopeError as e:
            report.rejected.append(RejectedEnvelope(index=index, error=e.message))
            continue
        except DuplicateEventError as e:
            report.duplicates.append(e.dedup_key)
            continue
        report.appended.append(AppendedEvent(sequence=stored.sequence, dedup_key=stored.dedup_key))

    logger.info(
        "Change batch ingested",
        appended=len(report.appended),
        duplicates=len(report.duplicates),
        rejected=len(report.rejected),
    )
    return report
