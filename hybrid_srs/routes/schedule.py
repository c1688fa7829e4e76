"""
Schedule routes.

- ``GET /schedule`` ranks the user's due cards
- ``POST /schedule`` blends SM-2 dates with predictions for the given cards
- ``PUT /schedule`` returns a card with its ease adapted to the learner

Only ``GET`` reads stored cards; nothing here writes them.
"""

from fastapi import APIRouter, Depends, Query

from hybrid_srs.api import APIResponse, get_container
from hybrid_srs.learning.models import ScheduleSource
from hybrid_srs.routes.schemas import AdaptDifficultyRequest, ScheduleRequest

router = APIRouter(tags=["schedule"])


@router.get("/schedule")
async def get_schedule(
    user_id: str = Query(..., alias="userId", min_length=1),
    limit: int = Query(20, ge=1, le=100),
    container=Depends(get_container)
):
    entries = await container.learning_service.get_optimal_review_schedule(user_id, limit=limit)
    cards = await container.cards.list_for_user(user_id)
    return APIResponse.success(data={
        "entries": [entry.to_dict() for entry in entries],
        "count": len(entries),
        "enhanced": any(entry.source != ScheduleSource.SM2 for entry in entries),
        "statistics": container.core.statistics(cards)
    })


@router.post("/schedule")
async def hybrid_schedule(request: ScheduleRequest, container=Depends(get_container)):
    cards = [payload.to_card(request.user_id) for payload in request.cards]
    schedule = await container.bridge.get_hybrid_schedule(request.user_id, cards)
    return APIResponse.success(data=schedule.to_dict())


@router.put("/schedule")
async def adapt_difficulty(request: AdaptDifficultyRequest, container=Depends(get_container)):
    card = request.card.to_card(request.user_id)
    adapted = await container.bridge.adapt_difficulty(card, request.user_id)
    return APIResponse.success(data={
        "card": adapted.to_dict(),
        "adapted": adapted.ease_factor != card.ease_factor,
        "enhanced": container.bridge.is_gnn_available()
    })
