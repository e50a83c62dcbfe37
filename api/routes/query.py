"""Query endpoint: the core of the journal RAG API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import get_current_owner, get_pipeline
from journal_rag.errors import ValidationError
from journal_rag.orchestrator import PipelineContext, answer_question, question_from_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["query"])


# --- Request / Response Models ---

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConversationTurnIn(_CamelModel):
    role: str = "user"
    content: str = ""
    timestamp: Optional[str] = None
    category: Optional[str] = None


class RequesterProfileIn(_CamelModel):
    timezone: str = "UTC"
    record_count: Optional[int] = Field(default=None, alias="recordCount", ge=0)
    locale: str = "en"


class TimeRangeIn(_CamelModel):
    start: Optional[str] = None
    end: Optional[str] = None


class QueryRequest(_CamelModel):
    message: str = Field(..., min_length=1, max_length=2000)
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    # Accepted for compatibility; the owner always comes from the token
    requester_id: Optional[str] = Field(default=None, alias="requesterId")
    conversation_context: List[ConversationTurnIn] = Field(default_factory=list, alias="conversationContext")
    requester_profile: RequesterProfileIn = Field(default_factory=RequesterProfileIn, alias="requesterProfile")
    time_range: Optional[TimeRangeIn] = Field(default=None, alias="timeRange")


class AnalysisOut(_CamelModel):
    search_method: str = Field(alias="searchMethod")
    fallbacks_used: List[str] = Field(default_factory=list, alias="fallbacksUsed")
    results_count: int = Field(0, alias="resultsCount")
    processing_time_ms: int = Field(0, alias="processingTimeMs")
    degraded: bool = False
    classification: Optional[str] = None
    route_used: Optional[str] = Field(default=None, alias="routeUsed")
    sub_question_count: int = Field(0, alias="subQuestionCount")
    failed_fragments: List[str] = Field(default_factory=list, alias="failedFragments")
    no_evidence: bool = Field(False, alias="noEvidence")


class QueryResponse(_CamelModel):
    response: str
    analysis: AnalysisOut
    reference_records: List[Dict[str, Any]] = Field(default_factory=list, alias="referenceRecords")
    statistical_data: Optional[Dict[str, Any]] = Field(default=None, alias="statisticalData")


# --- Endpoint ---

@router.post(
    "/query",
    response_model=QueryResponse,
    response_model_by_alias=True,
)
async def run_query(
    request: QueryRequest,
    owner_id: str = Depends(get_current_owner),
    pipeline: PipelineContext = Depends(get_pipeline),
):
    """Answer a question about the caller's own journal.

    Flow:
    1. Build the Question, scoped to the token's owner (payload requesterId ignored)
    2. Run the pipeline (classify -> decompose -> plan -> execute -> aggregate -> answer)
    3. Return the answer with its analysis metadata and reference records
    """
    if request.requester_id and request.requester_id != owner_id:
        logger.warning("Ignoring payload requesterId that does not match the token owner")

    payload = request.model_dump(by_alias=True, exclude={"requester_id"})
    try:
        question = question_from_payload(payload, owner_id)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    return await answer_question(question, pipeline)
