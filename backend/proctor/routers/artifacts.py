from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel

from ..errors import ArtifactNotFoundError
from ..runtime import Runtime, get_runtime
from ..schemas import ArtifactStats, CaptureArtifact, CaptureLogEntry, Resolution
from .auth import User, get_current_user, require_admin

router = APIRouter(prefix="/artifacts", tags=["artifacts"])


class ArtifactInfo(BaseModel):
	id: str
	owner_user_id: str
	captured_at_utc: datetime
	capture_method: str
	resolution: Resolution
	byte_size: int
	image_format: str
	source_event: str
	source_subject: str
	filename: str
	target_url: Optional[str] = None

	@classmethod
	def of(cls, artifact: CaptureArtifact) -> "ArtifactInfo":
		return cls(**artifact.model_dump(mode="json"))


def _load(ref: str, user: User, rt: Runtime) -> CaptureArtifact:
	try:
		artifact = rt.store.resolve(ref)
	except ArtifactNotFoundError as e:
		raise HTTPException(status_code=e.http_status, detail=e.message)
	# Students only ever see their own captures; same 404 to avoid leaking existence
	if not user.is_admin and artifact.owner_user_id != user.username:
		raise HTTPException(status_code=404, detail=f"Artifact not found: {ref}")
	return artifact


@router.get("", response_model=List[ArtifactInfo])
async def list_artifacts(
	user_id: Optional[str] = None,
	limit: int = Query(default=50, ge=1, le=500),
	user: User = Depends(get_current_user),
	rt: Runtime = Depends(get_runtime),
):
	if not user.is_admin:
		user_id = user.username
	artifacts = rt.store.list_by_user(user_id, limit) if user_id else rt.store.list_recent(limit)
	return [ArtifactInfo.of(a) for a in artifacts]


@router.get("/stats", response_model=ArtifactStats)
async def artifact_stats(admin: User = Depends(require_admin), rt: Runtime = Depends(get_runtime)):
	return rt.store.stats()


@router.get("/logs", response_model=List[CaptureLogEntry])
async def capture_logs(
	user_id: Optional[str] = None,
	limit: int = Query(default=100, ge=1, le=1000),
	admin: User = Depends(require_admin),
	rt: Runtime = Depends(get_runtime),
):
	return rt.activity.capture_entries(user_id, limit)


@router.get("/{ref}", response_model=ArtifactInfo)
async def artifact_info(ref: str, user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	return ArtifactInfo.of(_load(ref, user, rt))


@router.get("/{ref}/image")
async def artifact_image(ref: str, user: User = Depends(get_current_user), rt: Runtime = Depends(get_runtime)):
	artifact = _load(ref, user, rt)
	return Response(
		content=artifact.image_bytes,
		media_type=f"image/{artifact.image_format}",
		headers={"Content-Disposition": f'inline; filename="{artifact.filename}"'},
	)
