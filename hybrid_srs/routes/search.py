"""
Semantic search routes.

Search is the one surface that fails loudly: 403 when vector search is
switched off, 503 when it is on but cannot run.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from hybrid_srs.api import APIResponse, get_container
from hybrid_srs.learning.vector_search import VOCABULARY_COLLECTION
from hybrid_srs.routes.schemas import IndexRequest, SearchRequest

router = APIRouter(tags=["search"])


def _results_payload(results, query: str, collection: str):
    return {
        "results": [result.to_dict() for result in results],
        "count": len(results),
        "query": query,
        "collection": collection
    }


@router.post("/search")
async def search(request: SearchRequest, container=Depends(get_container)):
    if request.sql_filter:
        results = await container.vector_search.hybrid_search(
            request.query,
            collection=request.collection,
            sql_filter=request.sql_filter,
            limit=request.limit,
            threshold=request.threshold
        )
    else:
        results = await container.vector_search.search(
            request.query,
            collection=request.collection,
            limit=request.limit,
            threshold=request.threshold
        )
    return APIResponse.success(data=_results_payload(results, request.query, request.collection))


@router.get("/search")
async def search_query(
    q: str = Query(..., min_length=1),
    collection: str = Query(VOCABULARY_COLLECTION),
    limit: Optional[int] = Query(None, ge=1),
    threshold: Optional[float] = Query(None, ge=-1.0, le=1.0),
    container=Depends(get_container)
):
    results = await container.vector_search.search(q, collection=collection, limit=limit, threshold=threshold)
    return APIResponse.success(data=_results_payload(results, q, collection))


@router.get("/search/similar/{item_id}")
async def similar_items(
    item_id: str,
    collection: str = Query(VOCABULARY_COLLECTION),
    limit: int = Query(10, ge=1),
    threshold: float = Query(0.0, ge=-1.0, le=1.0),
    container=Depends(get_container)
):
    """Items closest to an indexed item; 404 when it was never indexed."""
    results = await container.vector_search.find_similar(
        collection, item_id, limit=limit, threshold=threshold, missing_ok=False
    )
    return APIResponse.success(data={
        "results": [result.to_dict() for result in results],
        "count": len(results),
        "item_id": item_id,
        "collection": collection
    })


@router.post("/search/index")
async def index_items(request: IndexRequest, container=Depends(get_container)):
    """Embed and index documents; per-item failures are reported, not raised."""
    if request.collection == VOCABULARY_COLLECTION:
        result = await container.vector_search.index_vocabulary(
            [item.to_vocabulary_item() for item in request.items]
        )
    else:
        result = await container.vector_search.batch_index(
            request.collection,
            [item.to_document() for item in request.items]
        )
    return APIResponse.success(
        data=result.to_dict(),
        message=f"Indexed {result.indexed} of {len(request.items)} item(s)"
    )
