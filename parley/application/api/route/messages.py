from typing import Annotated
from fastapi import APIRouter, Depends
import structlog

from parley.bootstrap import Container
from parley.infrastructure.errors import ProviderError
from ..dependencies import get_container
from ..schema.messages import IngestRequest, IngestResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["messages"])


@router.post("/messages", response_model=IngestResponse)
async def ingest_messages(
    request: IngestRequest,
    container: Annotated[Container, Depends(get_container)]
):
    """
    Store channel messages and attach embeddings to the ones without.

    Messages are kept even when embedding fails; they are still found by
    keyword search and can be indexed on a later call.
    """

    await container.message_store.add_many(request.messages)

    try:
        indexed = await container.indexer.index_messages(request.messages)
    except ProviderError as e:
        logger.warning("message_indexing_failed", count=len(request.messages), error=str(e))
        indexed = 0

    return IngestResponse(stored=len(request.messages), indexed=indexed)
