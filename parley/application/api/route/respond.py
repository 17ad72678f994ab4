from typing import Annotated
from fastapi import APIRouter, Depends
import structlog

from parley.bootstrap import Container
from ..dependencies import get_container
from ..schema.messages import InterjectRequest, InterjectResponse, RespondRequest, RespondResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["responses"])


@router.post("/respond", response_model=RespondResponse)
async def respond(
    request: RespondRequest,
    container: Annotated[Container, Depends(get_container)]
):
    """Generate a reply; failures come back as the fallback reply, never an error"""

    response = await container.orchestrator.generate_response(
        request.message,
        request.channel_id,
        request.user_id,
        request.user_name,
        thread_id=request.thread_id
    )
    return RespondResponse(text=response.text, metadata=response.metadata)


@router.post("/interject", response_model=InterjectResponse)
async def interject(
    request: InterjectRequest,
    container: Annotated[Container, Depends(get_container)]
):
    decision = await container.interjection.should_interject(request.recent_messages, request.channel_id)
    return InterjectResponse(should=decision.should, message=decision.message)
