from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .activity import ActivityLog
from .artifacts import ArtifactStore
from .capture import CaptureEngine
from .scheduler import CaptureScheduler
from .workspace import WorkspaceProvisioner

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
	provisioner: WorkspaceProvisioner
	engine: CaptureEngine
	store: ArtifactStore
	activity: ActivityLog
	scheduler: CaptureScheduler

	async def shutdown(self) -> None:
		await self.scheduler.shutdown()
		failures = await self.provisioner.release_all()
		if failures:
			logger.warning("%d workspace(s) could not be released on shutdown", len(failures))
		await self.engine.shutdown()


_runtime: Optional[Runtime] = None


def build_runtime() -> Runtime:
	provisioner = WorkspaceProvisioner()
	engine = CaptureEngine()
	store = ArtifactStore()
	activity = ActivityLog()
	scheduler = CaptureScheduler(engine, store, activity, provisioner)
	return Runtime(provisioner=provisioner, engine=engine, store=store, activity=activity, scheduler=scheduler)


def get_runtime() -> Runtime:
	global _runtime
	if _runtime is None:
		_runtime = build_runtime()
	return _runtime


def reset_runtime() -> Optional[Runtime]:
	global _runtime
	runtime, _runtime = _runtime, None
	return runtime
