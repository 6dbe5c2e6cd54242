"""
Capture Scheduler
=================

Decides *when* captures happen and turns each successful capture into exactly
one stored artifact plus one activity-log entry:

- submission:  handed off to a background task; the submitter never waits
- periodic:    one loop per ready workspace, cancelled when the workspace ends
- manual/admin: awaited, the caller gets a CaptureOutcome back
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from .activity import ActivityLog
from .artifacts import ArtifactStore
from .capture import CaptureEngine
from .errors import LogFailedError, ProctorError
from .languages import Language
from .schemas import (
	DESKTOP_TARGET,
	ArtifactDraft,
	CaptureEvent,
	CaptureLogEntry,
	CaptureOutcome,
	CaptureRequest,
)
from .settings import settings
from .workspace import WorkspaceProvisioner, WorkspaceSession

logger = logging.getLogger(__name__)


class CaptureScheduler:
	def __init__(
		self,
		engine: CaptureEngine,
		store: ArtifactStore,
		activity: ActivityLog,
		provisioner: Optional[WorkspaceProvisioner] = None,
		*,
		periodic_enabled: Optional[bool] = None,
		periodic_interval: Optional[float] = None,
	) -> None:
		self.engine = engine
		self.store = store
		self.activity = activity
		self.provisioner = provisioner
		self.periodic_enabled = settings.periodic_capture_enabled if periodic_enabled is None else periodic_enabled
		self.periodic_interval = settings.periodic_capture_seconds if periodic_interval is None else periodic_interval
		self._background: Set[asyncio.Task] = set()
		self._periodic: Dict[str, asyncio.Task] = {}
		if provisioner is not None:
			provisioner.add_listener(self)

	# ------------------------------------------------------------ pipeline

	async def capture_now(self, request: CaptureRequest, language: Optional[Language] = None) -> CaptureOutcome:
		event = request.capture_event
		result = await self.engine.capture(request, language)
		if not result.success:
			logger.error(
				"%s capture for user %s failed at capture step (%s): %s",
				event.value, request.user_id, result.error_code, result.error,
			)
			return CaptureOutcome(
				success=False,
				message="Screenshot capture failed",
				user_id=request.user_id,
				capture_event=event,
				capture_method=result.method,
				error=result.error,
				error_code=result.error_code,
			)

		draft = ArtifactDraft(
			owner_user_id=request.user_id,
			captured_at_utc=result.captured_at or datetime.utcnow(),
			capture_method=result.method,
			resolution=result.resolution,
			image=result.image.data_url if result.image else None,
			source_event=event,
			source_subject=request.subject,
			filename=result.filename,
			target_url=request.target_url,
			staging_path=result.staging_path,
		)
		try:
			artifact_id = self.store.save(draft)
		except ProctorError as e:
			logger.error("%s capture for user %s failed at store step (%s): %s", event.value, request.user_id, e.code, e.message)
			return CaptureOutcome(
				success=False,
				message="Screenshot could not be stored",
				user_id=request.user_id,
				capture_event=event,
				capture_method=result.method,
				filename=result.filename,
				error=e.message,
				error_code=e.code,
			)

		try:
			self.activity.record_capture(
				CaptureLogEntry(
					user_id=request.user_id,
					artifact_id=artifact_id,
					filename=result.filename,
					capture_event=event.value,
					capture_method=result.method.value,
					subject=request.subject,
					timestamp=draft.captured_at_utc,
				)
			)
		except SQLAlchemyError as e:
			logger.error("%s capture for user %s failed at log step, artifact %s kept: %s", event.value, request.user_id, artifact_id, e)
			return CaptureOutcome(
				success=False,
				message="Screenshot stored but not logged",
				user_id=request.user_id,
				capture_event=event,
				artifact_id=artifact_id,
				filename=result.filename,
				capture_method=result.method,
				error=str(e),
				error_code=LogFailedError.code,
			)
		return CaptureOutcome(
			success=True,
			message="Screenshot captured and stored",
			user_id=request.user_id,
			capture_event=event,
			artifact_id=artifact_id,
			filename=result.filename,
			capture_method=result.method,
			resolution=result.resolution,
			byte_size=result.byte_size,
		)

	def _spawn(self, request: CaptureRequest, language: Optional[Language] = None) -> asyncio.Task:
		task = asyncio.create_task(self._guarded(request, language))
		self._background.add(task)
		task.add_done_callback(self._background.discard)
		return task

	async def _guarded(self, request: CaptureRequest, language: Optional[Language]) -> Optional[CaptureOutcome]:
		try:
			return await self.capture_now(request, language)
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("Background %s capture for user %s crashed", request.capture_event.value, request.user_id)
			return None

	# ------------------------------------------------------------ triggers

	def on_submission(self, user_id: str, subject: str) -> Optional[asyncio.Task]:
		"""Hand a capture of the user's workspace to a background task and return immediately."""
		session = self.provisioner.session_for(user_id) if self.provisioner else None
		if session is None:
			logger.warning("Submission by user %s has no active workspace, no capture taken", user_id)
			return None
		logger.info("Triggering submission capture for user %s", user_id)
		request = CaptureRequest(
			user_id=user_id,
			subject=subject or session.language.value,
			capture_event=CaptureEvent.SUBMISSION,
			target_url=session.editor_url,
		)
		return self._spawn(request, session.language)

	async def capture_manual(self, user_id: str, subject: Optional[str] = None) -> CaptureOutcome:
		session = self.provisioner.session_for(user_id) if self.provisioner else None
		if session is None:
			return CaptureOutcome(
				success=False,
				message="No active workspace to capture",
				user_id=user_id,
				capture_event=CaptureEvent.MANUAL,
				error="no active workspace",
				error_code="no-workspace",
			)
		request = CaptureRequest(
			user_id=user_id,
			subject=subject or session.language.value,
			capture_event=CaptureEvent.MANUAL,
			target_url=session.editor_url,
		)
		return await self.capture_now(request, session.language)

	async def capture_desktop(self, user_id: str, subject: Optional[str] = None, event: CaptureEvent = CaptureEvent.MANUAL) -> CaptureOutcome:
		request = CaptureRequest(user_id=user_id, subject=subject or "desktop", capture_event=event, target_url=DESKTOP_TARGET)
		return await self.capture_now(request)

	async def admin_test(self, user_id: str, target_url: Optional[str] = None, subject: Optional[str] = None) -> CaptureOutcome:
		session = self.provisioner.session_for(user_id) if self.provisioner else None
		language = session.language if session else None
		if target_url is None:
			target_url = session.editor_url if session else DESKTOP_TARGET
		request = CaptureRequest(
			user_id=user_id,
			subject=subject or (language.value if language else "admin-test"),
			capture_event=CaptureEvent.ADMIN_TEST,
			target_url=target_url,
		)
		return await self.capture_now(request, language)

	async def capture_all_active(self) -> Dict[str, object]:
		sessions = self.provisioner.sessions() if self.provisioner else []
		logger.info("Admin bulk capture of %d active workspace(s)", len(sessions))
		requests = [
			(
				CaptureRequest(
					user_id=s.user_id,
					subject=s.language.value,
					capture_event=CaptureEvent.ADMIN_BULK,
					target_url=s.editor_url,
				),
				s.language,
			)
			for s in sessions
		]
		outcomes = await asyncio.gather(*(self._guarded(r, lang) for r, lang in requests))
		results: List[CaptureOutcome] = []
		for (request, _), outcome in zip(requests, outcomes):
			if outcome is None:
				outcome = CaptureOutcome(
					success=False,
					message="Screenshot capture crashed",
					user_id=request.user_id,
					capture_event=CaptureEvent.ADMIN_BULK,
					error="unexpected error",
					error_code="internal",
				)
			results.append(outcome)
		successful = sum(1 for o in results if o.success)
		return {
			"total": len(results),
			"successful": successful,
			"failed": len(results) - successful,
			"results": results,
		}

	# ------------------------------------------------------------ periodic

	def session_started(self, session: WorkspaceSession) -> None:
		if not self.periodic_enabled or session.instance_id is None:
			return
		self._cancel_periodic(session.instance_id)
		self._periodic[session.instance_id] = asyncio.create_task(self._periodic_loop(session))
		logger.info("Periodic capture every %.0fs started for user %s", self.periodic_interval, session.user_id)

	def session_ended(self, session: WorkspaceSession) -> None:
		if session.instance_id and self._cancel_periodic(session.instance_id):
			logger.info("Periodic capture stopped for user %s", session.user_id)

	def periodic_active(self, instance_id: str) -> bool:
		task = self._periodic.get(instance_id)
		return task is not None and not task.done()

	def _cancel_periodic(self, instance_id: str) -> bool:
		task = self._periodic.pop(instance_id, None)
		if task is None or task.done():
			return False
		task.cancel()
		return True

	async def _periodic_loop(self, session: WorkspaceSession) -> None:
		request = CaptureRequest(
			user_id=session.user_id,
			subject=session.language.value,
			capture_event=CaptureEvent.PERIODIC,
			target_url=session.editor_url,
		)
		while True:
			await asyncio.sleep(self.periodic_interval)
			# shielded so that cancelling the loop never aborts a capture in flight
			await asyncio.shield(self._spawn(request, session.language))

	# ------------------------------------------------------------ lifecycle

	async def shutdown(self) -> None:
		for instance_id in list(self._periodic):
			self._cancel_periodic(instance_id)
		pending = list(self._background)
		if pending:
			logger.info("Waiting for %d background capture(s)", len(pending))
			await asyncio.gather(*pending, return_exceptions=True)
