"""
Interaction routes.

``POST /interactions`` takes one review or a list of them. Each is applied
through the bridge on its own, so one bad item does not reject the batch.
"""

from typing import Any, Dict, List, Union

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from hybrid_srs.api import APIResponse, get_container
from hybrid_srs.common.error_handling import EngineError, ErrorCode, ValidationError
from hybrid_srs.common.logger import app_logger
from hybrid_srs.routes.schemas import MAX_BATCH_SIZE, InteractionRequest

logger = app_logger.getChild("routes.interactions")

router = APIRouter(tags=["interactions"])


@router.post("/interactions")
async def record_interactions(
    payload: Union[List[Dict[str, Any]], Dict[str, Any]] = Body(...),
    container=Depends(get_container)
):
    """
    Record review interactions and advance the matching cards.

    Returns ``{accepted, rejected, errors, results}``; 422 when nothing was
    accepted.
    """
    items = payload if isinstance(payload, list) else [payload]
    if not items:
        raise ValidationError("At least one interaction is required")
    if len(items) > MAX_BATCH_SIZE:
        raise ValidationError(
            f"At most {MAX_BATCH_SIZE} interactions per request",
            details={"received": len(items)}
        )

    results = []
    errors = []
    for index, raw in enumerate(items):
        try:
            request = InteractionRequest.model_validate(raw)
        except PydanticValidationError as e:
            errors.append({
                "index": index,
                "code": ErrorCode.VALIDATION_ERROR.value,
                "message": "; ".join(
                    f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
                )
            })
            continue

        try:
            outcome = await container.bridge.submit_review(
                request.user_id,
                request.vocabulary_id,
                request.success,
                request.response_time_ms,
                confused_with=request.confused_with,
                word=request.word
            )
        except EngineError as e:
            errors.append({"index": index, "code": e.code.value, "message": e.message})
            continue
        results.append(outcome.to_dict())

    data = {
        "accepted": len(results),
        "rejected": len(errors),
        "errors": errors,
        "results": results
    }
    if not results:
        logger.info(f"Rejected all {len(errors)} interaction(s)")
        return JSONResponse(
            status_code=422,
            content=APIResponse.error(
                "No interactions accepted",
                details=data,
                code=ErrorCode.VALIDATION_ERROR.value
            )
        )
    return APIResponse.success(data=data, message=f"Recorded {len(results)} interaction(s)")
