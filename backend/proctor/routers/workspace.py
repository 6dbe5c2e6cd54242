from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..errors import ProctorError
from ..runtime import Runtime, get_runtime
from .auth import User, get_current_user

router = APIRouter(prefix="/workspace", tags=["workspace"])

logger = logging.getLogger(__name__)


class ProvisionRequest(BaseModel):
	language: str


class WorkspaceResponse(BaseModel):
	success: bool
	message: str
	editor_url: Optional[str] = None
	instance_id: Optional[str] = None
	language: Optional[str] = None
	state: Optional[str] = None


@router.post("/provision", response_model=WorkspaceResponse)
async def provision(req: ProvisionRequest, user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	try:
		session = await rt.provisioner.provision(user.username, req.language)
	except ProctorError as e:
		raise HTTPException(status_code=e.http_status, detail=e.message)
	return WorkspaceResponse(
		success=True,
		message=f"{session.language.value} workspace ready",
		editor_url=session.editor_url,
		instance_id=session.instance_id,
		language=session.language.value,
		state=session.state.value,
	)


@router.post("/stop", response_model=WorkspaceResponse)
async def stop(user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	session = rt.provisioner.session_for(user.username)
	await rt.provisioner.release_user(user.username)
	if session is None:
		return WorkspaceResponse(success=True, message="No active workspace")
	return WorkspaceResponse(success=True, message="Workspace stopped", instance_id=session.instance_id)


@router.get("", response_model=WorkspaceResponse)
async def current(user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	session = rt.provisioner.session_for(user.username)
	if session is None:
		return WorkspaceResponse(success=False, message="No active workspace")
	return WorkspaceResponse(
		success=True,
		message="Workspace active",
		editor_url=session.editor_url,
		instance_id=session.instance_id,
		language=session.language.value,
		state=session.state.value,
	)
