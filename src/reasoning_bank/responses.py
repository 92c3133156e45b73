"""Response payloads returned by the MCP tools."""

from pydantic import BaseModel, Field

from reasoning_bank.models import Memory, MemoryResult


class MemoryResponse(BaseModel):
    """A stored memory as reported back to the caller."""

    id: str
    project_id: str
    title: str
    content: str
    description: str = ""
    outcome: str
    confidence: float
    declared_confidence: float | None = None
    usage_count: int = 0
    tags: list[str] = Field(default_factory=list)
    state: str
    created_at: str
    updated_at: str


class SearchResultResponse(BaseModel):
    """One search hit, already scrubbed and above the confidence floor."""

    id: str
    title: str
    content: str
    confidence: float
    score: float
    outcome: str
    tags: list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    project_id: str
    query: str
    results: list[SearchResultResponse]


class MemoryListResponse(BaseModel):
    """One page of a project's memories."""

    project_id: str
    limit: int
    offset: int
    memories: list[MemoryResponse]


class ConfidenceResponse(BaseModel):
    """Confidence after a feedback or outcome signal."""

    memory_id: str
    confidence: float
    message: str


def memory_to_response(memory: Memory) -> MemoryResponse:
    return MemoryResponse(**memory.to_metadata())


def result_to_response(result: MemoryResult) -> SearchResultResponse:
    return SearchResultResponse(
        id=result.id,
        title=result.title,
        content=result.content,
        confidence=result.confidence,
        score=result.score,
        outcome=result.outcome.value,
        tags=list(result.tags),
    )


def success_response(message: str, **data) -> dict:
    return {"success": True, "message": message, **data}


def error_response(error: str) -> dict:
    return {"success": False, "error": error}
