"""
FastAPI routes for knowledge base operations.

Provides HTTP endpoints for managing an owner's knowledge items, searching
them, building grounding context and triggering extraction.
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .knowledge_base import KnowledgeBaseManager, KnowledgeItem
from .knowledge_base.errors import OwnerMismatch, StoreUnavailable
from .knowledge_base.models import (
    MAX_CONTENT_CHARS,
    MAX_SUMMARY_CHARS,
    MAX_TITLE_CHARS,
    KnowledgeType,
    TranscriptMessage,
)


class ItemRequest(BaseModel):
    """Request body for creating or replacing a knowledge item."""

    title: str = Field(..., min_length=1, max_length=MAX_TITLE_CHARS)
    content: str = Field("", max_length=MAX_CONTENT_CHARS)
    summary: Optional[str] = Field(None, max_length=MAX_SUMMARY_CHARS)
    type: str = KnowledgeType.NOTE.value
    tags: List[str] = Field(default_factory=list)
    collection: Optional[str] = None
    source_url: Optional[str] = None


class SearchRequest(BaseModel):
    """Request body for hybrid search."""

    query: str
    limit: Optional[int] = None


class ContextRequest(BaseModel):
    """Request body for building grounding context."""

    query: str


class ExtractionRequest(BaseModel):
    """Request body for triggering knowledge extraction."""

    conversation_id: Optional[str] = None
    transcript: Optional[List[TranscriptMessage]] = None
    collection: Optional[str] = None
    background: bool = True


def _item_to_dict(item: KnowledgeItem, dimension: int) -> dict:
    data = item.model_dump(mode="json", exclude={"embedding"})
    data["has_embedding"] = item.has_embedding(dimension)
    return data


def _http_error(action: str, e: Exception) -> HTTPException:
    """Map a knowledge base failure onto an HTTP error."""
    if isinstance(e, OwnerMismatch):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, StoreUnavailable):
        return HTTPException(status_code=503, detail=f"{action} failed: {str(e)}")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=f"{action} failed: {str(e)}")


def init_kb_routes(kb_manager: KnowledgeBaseManager) -> APIRouter:
    """
    Create and return API routes for knowledge base operations.

    Args:
        kb_manager: KnowledgeBaseManager instance

    Returns:
        APIRouter: Configured router with KB endpoints
    """
    router = APIRouter(prefix="/kb", tags=["knowledge_base"])
    dimension = kb_manager.store.dimension

    async def _save(owner_id: str, request: ItemRequest, item_id: Optional[str] = None):
        fields = request.model_dump()
        if item_id is not None:
            fields["id"] = item_id
        item = await kb_manager.upsert_item(KnowledgeItem(owner_id=owner_id, **fields))
        return JSONResponse(
            status_code=200,
            content={
                "success": True,
                "message": f"Knowledge item '{item.title}' saved successfully",
                "data": _item_to_dict(item, dimension),
            },
        )

    @router.post("/{owner_id}/items")
    async def create_item(owner_id: str, request: ItemRequest):
        """
        Add a knowledge item. The embedding is generated immediately.

        Args:
            owner_id: Owner of the knowledge base
            request: Item fields

        Returns:
            The stored item
        """
        try:
            return await _save(owner_id, request)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Failed to create knowledge item: {e}")
            raise _http_error("Create", e)

    @router.put("/{owner_id}/items/{item_id}")
    async def update_item(owner_id: str, item_id: str, request: ItemRequest):
        """
        Create or replace a knowledge item, regenerating its embedding.

        Args:
            owner_id: Owner of the knowledge base
            item_id: Item id
            request: Item fields

        Returns:
            The stored item
        """
        try:
            return await _save(owner_id, request, item_id)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Failed to update knowledge item: {e}")
            raise _http_error("Update", e)

    @router.get("/{owner_id}/items")
    async def list_items(
        owner_id: str,
        type: Optional[str] = Query(None, description="Filter by item type"),
        tag: Optional[str] = Query(None, description="Filter by tag"),
        collection: Optional[str] = Query(None, description="Filter by collection"),
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
    ):
        """
        List an owner's knowledge items, most recently updated first.
        """
        try:
            items = await kb_manager.list_items(
                owner_id,
                type=type,
                tag=tag,
                collection=collection,
                limit=limit,
                offset=offset,
            )

            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "data": {
                        "owner_id": owner_id,
                        "items": [_item_to_dict(item, dimension) for item in items],
                        "count": len(items),
                    },
                },
            )

        except Exception as e:
            logger.error(f"Failed to list knowledge items: {e}")
            raise _http_error("List", e)

    @router.get("/{owner_id}/items/{item_id}")
    async def get_item(owner_id: str, item_id: str):
        """Get a single knowledge item."""
        try:
            item = await kb_manager.get_item(owner_id, item_id)

            if item is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"Knowledge item '{item_id}' not found for '{owner_id}'",
                )

            return JSONResponse(
                status_code=200,
                content={"success": True, "data": _item_to_dict(item, dimension)},
            )

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Failed to get knowledge item: {e}")
            raise _http_error("Get", e)

    @router.delete("/{owner_id}/items/{item_id}")
    async def delete_item(owner_id: str, item_id: str):
        """
        Delete a knowledge item.

        Args:
            owner_id: Owner of the knowledge base
            item_id: Item id to delete

        Returns:
            Deletion confirmation
        """
        try:
            deleted = await kb_manager.delete_item(owner_id, item_id)

            if not deleted:
                raise HTTPException(
                    status_code=404,
                    detail=f"Knowledge item '{item_id}' not found for '{owner_id}'",
                )

            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "message": f"Knowledge item '{item_id}' deleted successfully",
                },
            )

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Failed to delete knowledge item: {e}")
            raise _http_error("Delete", e)

    @router.get("/{owner_id}/items/{item_id}/related")
    async def related_items(owner_id: str, item_id: str, k: int = Query(5, ge=1, le=50)):
        """Find items similar to an existing item."""
        try:
            related = await kb_manager.related_items(owner_id, item_id, k)

            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "data": {"item_id": item_id, "related": related, "count": len(related)},
                },
            )

        except Exception as e:
            logger.error(f"Failed to find related items: {e}")
            raise _http_error("Related", e)

    @router.get("/{owner_id}/tags")
    async def list_tags(owner_id: str):
        """List the tags used in an owner's knowledge base."""
        try:
            tags = await kb_manager.list_tags(owner_id)
            return JSONResponse(status_code=200, content={"success": True, "data": tags})
        except Exception as e:
            logger.error(f"Failed to list tags: {e}")
            raise _http_error("Tags", e)

    @router.get("/{owner_id}/types")
    async def list_types(owner_id: str):
        """List the item types used in an owner's knowledge base."""
        try:
            types = await kb_manager.list_types(owner_id)
            return JSONResponse(status_code=200, content={"success": True, "data": types})
        except Exception as e:
            logger.error(f"Failed to list types: {e}")
            raise _http_error("Types", e)

    @router.post("/{owner_id}/search")
    async def search(owner_id: str, request: SearchRequest):
        """
        Hybrid search over an owner's knowledge.

        Args:
            owner_id: Owner of the knowledge base
            request: Query and optional limit

        Returns:
            Ranked results, degradation metadata and the formatted context
        """
        try:
            results = await kb_manager.search(owner_id, request.query, request.limit)

            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "data": {
                        **results.to_dict(),
                        "formatted_context": kb_manager.format_results(results),
                    },
                },
            )

        except Exception as e:
            logger.error(f"Failed to search: {e}")
            raise _http_error("Search", e)

    @router.post("/{owner_id}/context")
    async def build_context(owner_id: str, request: ContextRequest):
        """Build the grounding block for a message."""
        try:
            context = await kb_manager.get_relevant_context(owner_id, request.query)

            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "data": {"query": request.query, "context": context},
                },
            )

        except Exception as e:
            logger.error(f"Failed to build context: {e}")
            raise _http_error("Context", e)

    @router.post("/{owner_id}/extract")
    async def extract(owner_id: str, request: ExtractionRequest):
        """
        Extract knowledge from a conversation.

        Runs in the background unless `background` is false.
        """
        try:
            if request.conversation_id is None and request.transcript is None:
                raise HTTPException(
                    status_code=400,
                    detail="Either conversation_id or transcript is required",
                )

            result = await kb_manager.extract_from_conversation(
                owner_id,
                conversation_id=request.conversation_id,
                transcript=request.transcript,
                collection=request.collection,
                background=request.background,
            )

            return JSONResponse(
                status_code=202 if request.background else 200,
                content={"success": True, "data": result},
            )

        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Failed to extract knowledge: {e}")
            raise _http_error("Extraction", e)

    @router.post("/{owner_id}/reembed")
    async def reembed_missing(owner_id: str, batch_size: int = Query(50, ge=1, le=500)):
        """Replace fallback embeddings with provider embeddings."""
        try:
            updated = await kb_manager.reembed_missing(owner_id, batch_size)

            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "message": f"Re-embedded {updated} knowledge items",
                    "data": {"updated": updated},
                },
            )

        except Exception as e:
            logger.error(f"Failed to re-embed items: {e}")
            raise _http_error("Re-embed", e)

    @router.get("/{owner_id}/stats")
    async def get_stats(owner_id: str):
        """
        Get statistics about an owner's knowledge base.

        Args:
            owner_id: Owner of the knowledge base

        Returns:
            KB statistics
        """
        try:
            stats = await kb_manager.get_stats(owner_id)

            return JSONResponse(
                status_code=200,
                content={
                    "success": True,
                    "data": {
                        "owner_id": owner_id,
                        **stats,
                    },
                },
            )

        except Exception as e:
            logger.error(f"Failed to get stats: {e}")
            raise _http_error("Stats", e)

    return router
