from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..cleanup import SweepReport, purge_stale_staging, sweep_stray_browsers
from ..runtime import Runtime, get_runtime
from ..settings import settings
from .auth import User, require_admin

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


class SweepResponse(BaseModel):
	success: bool
	message: str
	report: SweepReport


class PurgeRequest(BaseModel):
	older_than_hours: float = Field(default=24.0, gt=0)


@router.post("/sweep-browsers", response_model=SweepResponse)
async def sweep_browsers(admin: User = Depends(require_admin), rt: Runtime = Depends(get_runtime)):
	# The shared browser goes too; the next editor capture relaunches it
	await rt.engine.shutdown()
	report = await asyncio.to_thread(sweep_stray_browsers)
	return SweepResponse(
		success=not report.errors,
		message=f"Stopped {report.terminated + report.killed} of {report.matched} stray browser process(es)",
		report=report,
	)


@router.post("/purge-staging")
async def purge_staging(req: Optional[PurgeRequest] = None, admin: User = Depends(require_admin)):
	removed = await asyncio.to_thread(purge_stale_staging, settings.staging_dir, timedelta(hours=(req or PurgeRequest()).older_than_hours))
	return {"success": True, "message": f"Removed {removed} staging file(s)", "removed": removed}
