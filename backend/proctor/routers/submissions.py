from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..activity import SUBMISSION
from ..runtime import Runtime, get_runtime
from .auth import User, get_current_user

router = APIRouter(prefix="/submissions", tags=["submissions"])

logger = logging.getLogger(__name__)


class SubmissionRequest(BaseModel):
	subject: str = Field(min_length=1, max_length=128)
	code: str


class SubmissionResponse(BaseModel):
	success: bool
	message: str
	submission_id: int
	capture_scheduled: bool


@router.post("", response_model=SubmissionResponse, status_code=201)
async def submit(req: SubmissionRequest, user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	try:
		submission_id = rt.activity.append(user.username, SUBMISSION, {"subject": req.subject, "code": req.code})
	except Exception as e:
		logger.error("Failed to record submission of user %s: %s", user.username, e)
		raise HTTPException(status_code=500, detail="Could not record submission")
	# Capture runs in the background; its outcome never affects the submission
	task = rt.scheduler.on_submission(user.username, req.subject)
	return SubmissionResponse(
		success=True,
		message="Submission recorded",
		submission_id=submission_id,
		capture_scheduled=task is not None,
	)
