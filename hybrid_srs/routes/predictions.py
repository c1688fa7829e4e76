"""
Prediction routes.
"""

from fastapi import APIRouter, Depends, Query

from hybrid_srs.api import APIResponse, get_container
from hybrid_srs.routes.schemas import PredictionRequest

router = APIRouter(tags=["predictions"])


@router.post("/predictions")
async def predict(request: PredictionRequest, container=Depends(get_container)):
    """Predicted outcome of the user's next review of one item."""
    prediction = await container.learning_service.get_prediction(request.user_id, request.vocabulary_id)
    data = prediction.to_dict()
    data["enhanced"] = not prediction.baseline_only
    return APIResponse.success(data=data)


@router.get("/predictions")
async def confusion_pairs(
    user_id: str = Query(..., alias="userId", min_length=1),
    limit: int = Query(20, ge=1, le=100),
    container=Depends(get_container)
):
    """The user's strongest confusion pairs."""
    pairs = await container.learning_service.get_confusion_pairs(user_id, limit=limit)
    return APIResponse.success(data={
        "pairs": [pair.to_dict() for pair in pairs],
        "count": len(pairs),
        "graph_enabled": container.graph_service.enabled
    })
