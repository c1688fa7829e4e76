"""
Embedding routes.

- ``POST /embed`` embeds ``text`` or ``texts``
- ``PUT /embed`` scores the cosine similarity of two texts or two vectors
"""

from fastapi import APIRouter, Depends

from hybrid_srs.api import APIResponse, get_container
from hybrid_srs.learning.embedding import EmbeddingService
from hybrid_srs.routes.schemas import EmbedRequest, SimilarityRequest

router = APIRouter(tags=["embed"])


@router.post("/embed")
async def embed(request: EmbedRequest, container=Depends(get_container)):
    service = container.embedding_service
    if request.text is not None:
        record = await service.embed(request.text, model=request.model, dimensions=request.dimensions)
        return APIResponse.success(data=record.to_dict(include_vector=request.include_vector))

    records = await service.batch_embed(request.texts, model=request.model, dimensions=request.dimensions)
    return APIResponse.success(data={
        "records": [record.to_dict(include_vector=request.include_vector) for record in records],
        "count": len(records),
        "cached": sum(1 for record in records if record.cached),
        "fallback": sum(1 for record in records if record.fallback)
    })


@router.put("/embed")
async def similarity(request: SimilarityRequest, container=Depends(get_container)):
    fallback = False
    if request.vector_a is not None:
        vector_a, vector_b = request.vector_a, request.vector_b
    else:
        record_a, record_b = await container.embedding_service.batch_embed([request.text_a, request.text_b])
        vector_a, vector_b = record_a.vector, record_b.vector
        fallback = record_a.fallback or record_b.fallback
    return APIResponse.success(data={
        "similarity": EmbeddingService.similarity(vector_a, vector_b),
        "fallback": fallback
    })
