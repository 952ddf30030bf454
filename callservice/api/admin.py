"""
Staff API: centers, users, call history and maintenance.

Every route requires the ``X-Admin-Key`` header.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, status

from callservice.api.dependencies import get_services, require_admin_key
from callservice.models.api_models import (
    CenterCreateRequest,
    CenterUpdateRequest,
    ReconcileResponse,
    UserCreateRequest,
    UserUpdateRequest,
)
from callservice.models.internal_models import Call, CallStatus, Center, Transcript, User
from callservice.observability import trace_function
from callservice.services.errors import CallServiceError, InvalidInput, NotFound, UpstreamFailure
from callservice.services.token_validator import generate_login_token
from callservice.utils.time_utils import isoformat

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


def center_to_dict(center: Center) -> Dict[str, Any]:
    return {
        "id": center.id,
        "name": center.name,
        "timezone": center.timezone,
        "createdAt": isoformat(center.created_at) if center.created_at else None,
    }


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "fullName": user.full_name,
        "loginToken": user.login_token,
        "centerId": user.center_id,
        "centerTimezone": user.center_timezone,
        "createdAt": isoformat(user.created_at) if user.created_at else None,
    }


def call_to_dict(call: Call) -> Dict[str, Any]:
    return {
        "id": call.id,
        "userId": call.user_id,
        "centerId": call.center_id,
        "status": call.status,
        "startedAt": isoformat(call.started_at),
        "endedAt": isoformat(call.ended_at) if call.ended_at else None,
        "durationSeconds": call.duration_seconds,
        "conversationId": call.elevenlabs_conversation_id,
    }


def transcript_to_dict(transcript: Transcript) -> Dict[str, Any]:
    return {
        "content": transcript.content,
        "metadata": transcript.metadata,
        "createdAt": isoformat(transcript.created_at) if transcript.created_at else None,
    }


async def _storage(operation, description: str):
    """Run a repository call, translating storage errors."""
    try:
        return await operation
    except CallServiceError:
        raise
    except Exception as e:
        logger.error("Staff storage operation failed", operation=description, error=str(e))
        raise UpstreamFailure(f"Could not {description}")


# Centers

@router.get("/centers")
async def list_centers(request: Request) -> List[Dict[str, Any]]:
    db = get_services(request).db
    centers = await _storage(db.centers.list_centers(), "list centers")
    return [center_to_dict(c) for c in centers]


@router.post("/centers", status_code=status.HTTP_201_CREATED)
async def create_center(body: CenterCreateRequest, request: Request) -> Dict[str, Any]:
    db = get_services(request).db
    center = await _storage(db.centers.create_center(body.name, body.timezone), "create center")
    logger.info("Center created", center_id=center.id)
    return center_to_dict(center)


@router.patch("/centers/{center_id}")
async def update_center(center_id: str, body: CenterUpdateRequest, request: Request) -> Dict[str, Any]:
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise InvalidInput("No fields to update")

    db = get_services(request).db
    center = await _storage(db.centers.update_center(center_id, fields), "update center")
    if center is None:
        raise NotFound(f"Center {center_id} not found")
    return center_to_dict(center)


@router.delete("/centers/{center_id}")
async def delete_center(center_id: str, request: Request) -> Dict[str, Any]:
    db = get_services(request).db
    if not await _storage(db.centers.delete_center(center_id), "delete center"):
        raise NotFound(f"Center {center_id} not found")
    logger.info("Center deleted", center_id=center_id)
    return {"success": True}


# Users

async def _require_center(db, center_id: Optional[str]) -> None:
    if center_id and await _storage(db.centers.get_center(center_id), "look up center") is None:
        raise InvalidInput(f"Center {center_id} does not exist")


@router.get("/users")
async def list_users(request: Request, centerId: Optional[str] = Query(None)) -> List[Dict[str, Any]]:
    db = get_services(request).db
    users = await _storage(db.users.list_users(centerId), "list users")
    return [user_to_dict(u) for u in users]


@router.post("/users", status_code=status.HTTP_201_CREATED)
@trace_function("admin_create_user")
async def create_user(body: UserCreateRequest, request: Request) -> Dict[str, Any]:
    db = get_services(request).db
    await _require_center(db, body.centerId)

    user = await _storage(
        db.users.create_user(body.fullName, body.centerId, generate_login_token()),
        "create user"
    )
    logger.info("User created", user_id=user.id, center_id=user.center_id)
    return user_to_dict(user)


@router.get("/users/{user_id}")
async def get_user(user_id: str, request: Request) -> Dict[str, Any]:
    db = get_services(request).db
    user = await _storage(db.users.get_user_by_id(user_id), "fetch user")
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user_to_dict(user)


@router.patch("/users/{user_id}")
async def update_user(user_id: str, body: UserUpdateRequest, request: Request) -> Dict[str, Any]:
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise InvalidInput("No fields to update")

    db = get_services(request).db
    await _require_center(db, changes.get("centerId"))

    fields = {}
    if "fullName" in changes:
        fields["full_name"] = changes["fullName"]
    if "centerId" in changes:
        fields["center_id"] = changes["centerId"]

    user = await _storage(db.users.update_user(user_id, fields), "update user")
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user_to_dict(user)


@router.post("/users/{user_id}/rotate-token")
async def rotate_user_token(user_id: str, request: Request) -> Dict[str, Any]:
    """Issue a new login link; the old token stops working immediately."""
    db = get_services(request).db
    user = await _storage(
        db.users.update_user(user_id, {"login_token": generate_login_token()}),
        "rotate token"
    )
    if user is None:
        raise NotFound(f"User {user_id} not found")
    logger.info("Login token rotated", user_id=user_id)
    return user_to_dict(user)


@router.delete("/users/{user_id}")
async def delete_user(user_id: str, request: Request) -> Dict[str, Any]:
    db = get_services(request).db
    if not await _storage(db.users.delete_user(user_id), "delete user"):
        raise NotFound(f"User {user_id} not found")
    logger.info("User deleted", user_id=user_id)
    return {"success": True}


# Calls

@router.get("/calls")
async def list_calls(
    request: Request,
    userId: Optional[str] = Query(None),
    centerId: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500)
) -> List[Dict[str, Any]]:
    if status_filter and status_filter not in CallStatus.ALL:
        raise InvalidInput(f"Unknown status: {status_filter}")

    db = get_services(request).db
    calls = await _storage(db.calls.list_calls(userId, centerId, status_filter, limit), "list calls")
    return [call_to_dict(c) for c in calls]


@router.get("/calls/{call_id}")
async def get_call(call_id: str, request: Request) -> Dict[str, Any]:
    db = get_services(request).db
    call = await _storage(db.calls.get_call(call_id), "fetch call")
    if call is None:
        raise NotFound(f"Call {call_id} not found")

    transcript = await _storage(db.transcripts.get_transcript_by_call_id(call_id), "fetch transcript")
    result = call_to_dict(call)
    result["transcript"] = transcript_to_dict(transcript) if transcript else None
    return result


@router.post("/calls/reconcile", response_model=ReconcileResponse)
@trace_function("admin_reconcile_calls")
async def reconcile_calls(
    request: Request,
    olderThanMinutes: Optional[int] = Query(None, ge=1)
) -> ReconcileResponse:
    """Move calls stuck in ``started`` past the threshold to ``failed``."""
    swept = await get_services(request).lifecycle.reconcile_stale(olderThanMinutes)
    return ReconcileResponse(swept=len(swept), callIds=swept)
