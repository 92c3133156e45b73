"""FastMCP server exposing the reasoning bank as memory tools."""

from typing import Annotated

from fastmcp import FastMCP
from pydantic import Field

from reasoning_bank.config import get_settings
from reasoning_bank.logging import configure_logging, get_logger
from reasoning_bank.models import (
    DISTILLED_CONFIDENCE,
    ReasoningBankError,
    new_memory,
)
from reasoning_bank.responses import (
    ConfidenceResponse,
    MemoryListResponse,
    MemoryResponse,
    SearchResponse,
    error_response,
    memory_to_response,
    result_to_response,
    success_response,
)
from reasoning_bank.service import create_service

log = get_logger("server")

# Initialize
settings = get_settings()
configure_logging(level=settings.log_level, log_format=settings.log_format)
service = create_service(settings)
mcp = FastMCP("reasoning-bank")

log.info("ReasoningBank server initialized")


def _project(project_id: str | None) -> str:
    return project_id or settings.default_project_id


@mcp.tool
def memory_record(
    title: Annotated[str, Field(description="Short summary of what was learned")],
    content: Annotated[str, Field(description="The strategy, fix or anti-pattern in detail")],
    outcome: Annotated[
        str,
        Field(
            description=(
                "'success' (a strategy that worked) or 'failure' (an anti-pattern to avoid)"
            )
        ),
    ] = "success",
    project_id: Annotated[
        str | None, Field(description="Project the memory belongs to (default from settings)")
    ] = None,
    description: Annotated[str, Field(description="Optional provenance note")] = "",
    tags: Annotated[list[str] | None, Field(description="Tags for categorization")] = None,
    distilled: Annotated[
        bool,
        Field(
            description=(
                "True if the memory was extracted from a session transcript rather than "
                "written deliberately. Distilled memories start below the search threshold."
            )
        ),
    ] = False,
) -> MemoryResponse | dict:
    """Record a memory. Explicitly recorded memories are immediately searchable."""
    log.debug("memory_record() called: project={} outcome={} tags={}", project_id, outcome, tags)
    try:
        memory = new_memory(_project(project_id), title, content, outcome=outcome, tags=tags)
        memory.description = description
        if distilled:
            memory.confidence = DISTILLED_CONFIDENCE
        memory = service.record(memory, explicit=not distilled)
    except ReasoningBankError as e:
        return error_response(str(e))
    return memory_to_response(memory)


@mcp.tool
def memory_search(
    query: Annotated[str, Field(description="What you are trying to do or fix")],
    project_id: Annotated[
        str | None, Field(description="Project to search (default from settings)")
    ] = None,
    limit: Annotated[
        int, Field(description="Maximum results (0 uses the configured default)")
    ] = 0,
) -> SearchResponse | dict:
    """Search trusted memories by meaning.

    Only memories at or above the confidence threshold are returned. Every
    returned memory is counted as used.
    """
    project = _project(project_id)
    try:
        results = service.search(project, query, limit)
    except ReasoningBankError as e:
        return error_response(str(e))
    return SearchResponse(
        project_id=project,
        query=query,
        results=[result_to_response(r) for r in results],
    )


@mcp.tool
def memory_feedback(
    memory_id: Annotated[str, Field(description="ID of the memory being rated")],
    helpful: Annotated[bool, Field(description="Whether the memory helped")],
) -> ConfidenceResponse | dict:
    """Rate a memory. Confidence is recomputed from its full signal history."""
    try:
        confidence = service.feedback(memory_id, helpful)
    except ReasoningBankError as e:
        return error_response(str(e))
    verdict = "helpful" if helpful else "unhelpful"
    return ConfidenceResponse(
        memory_id=memory_id,
        confidence=confidence,
        message=f"Recorded {verdict} feedback, confidence now {confidence:.2f}",
    )


@mcp.tool
def memory_outcome(
    memory_id: Annotated[str, Field(description="ID of the memory that was applied")],
    succeeded: Annotated[bool, Field(description="Whether the task it was used for succeeded")],
    session_id: Annotated[
        str | None, Field(description="Session the outcome was observed in")
    ] = None,
) -> ConfidenceResponse | dict:
    """Report the outcome of a task a memory was used for."""
    try:
        confidence = service.record_outcome(memory_id, succeeded, session_id)
    except ReasoningBankError as e:
        return error_response(str(e))
    verdict = "success" if succeeded else "failure"
    return ConfidenceResponse(
        memory_id=memory_id,
        confidence=confidence,
        message=f"Recorded {verdict} outcome, confidence now {confidence:.2f}",
    )


@mcp.tool
def memory_count(
    project_id: Annotated[
        str | None, Field(description="Project to count (default from settings)")
    ] = None,
) -> dict:
    """Count memories stored for a project."""
    project = _project(project_id)
    try:
        count = service.count(project)
    except ReasoningBankError as e:
        return error_response(str(e))
    return success_response(f"{count} memories in {project}", project_id=project, count=count)


@mcp.tool
def memory_list(
    project_id: Annotated[
        str | None, Field(description="Project to list (default from settings)")
    ] = None,
    limit: Annotated[int, Field(description="Page size (0 = all)")] = 20,
    offset: Annotated[int, Field(description="Number of memories to skip")] = 0,
) -> MemoryListResponse | dict:
    """List a project's memories in storage order, including untrusted ones."""
    project = _project(project_id)
    try:
        memories = service.list_memories(project, limit=limit, offset=offset)
    except ReasoningBankError as e:
        return error_response(str(e))
    return MemoryListResponse(
        project_id=project,
        limit=limit,
        offset=offset,
        memories=[memory_to_response(m) for m in memories],
    )


# ========== Entry Point ==========


def main():
    """Run the MCP server."""
    log.info("Starting ReasoningBank server...")
    mcp.run()


if __name__ == "__main__":
    main()
