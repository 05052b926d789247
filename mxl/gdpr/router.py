"""
MxL GDPR Endpoints
POST /gdpr/export     {userId}
POST /gdpr/delete     {userId}
POST /gdpr/anonymize  {userId}

Auth: API key required
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from mxl.errors import EventValidationError
from mxl.ingestion.auth import require_api_key

router = APIRouter(prefix="/gdpr", tags=["gdpr"], dependencies=[Depends(require_api_key)])


class UserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)


async def _user_id(request: Request) -> str:
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    try:
        return UserRequest.model_validate(payload).user_id
    except ValidationError as e:
        raise EventValidationError([
            {"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"], "type": err["type"]}
            for err in e.errors()
        ])


@router.post("/export")
async def export_user(request: Request):
    user_id = await _user_id(request)
    data = await run_in_threadpool(request.app.state.pipeline.gdpr.export_user, user_id)
    return {"success": True, "data": data}


@router.post("/delete")
async def delete_user(request: Request):
    user_id = await _user_id(request)
    counts = await run_in_threadpool(request.app.state.pipeline.gdpr.delete_user, user_id)
    return {"success": True, "message": "User data deleted successfully", "deleted": counts}


@router.post("/anonymize")
async def anonymize_user(request: Request):
    user_id = await _user_id(request)
    result = await run_in_threadpool(request.app.state.pipeline.gdpr.anonymize_user, user_id)
    return {
        "success": True,
        "message": "User data anonymized successfully",
        "anonymousId": result["anonymousId"],
    }
