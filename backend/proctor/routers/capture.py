from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..errors import status_for_code
from ..runtime import Runtime, get_runtime
from ..schemas import CaptureEvent, CaptureOutcome
from .auth import User, get_current_user, require_admin

router = APIRouter(prefix="/capture", tags=["capture"])


class CaptureBody(BaseModel):
	subject: Optional[str] = None


class AdminCaptureBody(BaseModel):
	user_id: str
	subject: Optional[str] = None
	target_url: Optional[str] = None


class BulkSummary(BaseModel):
	success: bool
	message: str
	total: int
	successful: int
	failed: int
	results: List[CaptureOutcome]


def _respond(outcome: CaptureOutcome) -> Any:
	if outcome.success:
		return outcome
	status = 409 if outcome.error_code == "no-workspace" else status_for_code(outcome.error_code)
	return JSONResponse(status_code=status, content=outcome.model_dump(mode="json"))


@router.post("/manual", response_model=CaptureOutcome)
async def capture_manual(body: Optional[CaptureBody] = None, user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	return _respond(await rt.scheduler.capture_manual(user.username, body.subject if body else None))


@router.post("/desktop", response_model=CaptureOutcome)
async def capture_desktop(body: Optional[CaptureBody] = None, user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	return _respond(await rt.scheduler.capture_desktop(user.username, body.subject if body else None))


@router.post("/admin/test", response_model=CaptureOutcome)
async def capture_admin_test(body: AdminCaptureBody, admin: User = Depends(require_admin), rt: Runtime = Depends(get_runtime)):
	return _respond(await rt.scheduler.admin_test(body.user_id, body.target_url, body.subject))


@router.post("/admin/desktop", response_model=CaptureOutcome)
async def capture_admin_desktop(body: AdminCaptureBody, admin: User = Depends(require_admin), rt: Runtime = Depends(get_runtime)):
	return _respond(await rt.scheduler.capture_desktop(body.user_id, body.subject or "admin-desktop", CaptureEvent.ADMIN_TEST))


@router.post("/admin/bulk", response_model=BulkSummary)
async def capture_admin_bulk(admin: User = Depends(require_admin), rt: Runtime = Depends(get_runtime)):
	summary: Dict[str, Any] = await rt.scheduler.capture_all_active()
	return BulkSummary(
		success=True,
		message=f"Captured {summary['successful']} of {summary['total']} active workspace(s)",
		**summary,
	)
