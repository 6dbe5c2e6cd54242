from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from .db import SessionLocal
from .models import ActivityLogRow
from .schemas import CaptureLogEntry

logger = logging.getLogger(__name__)

SCREENSHOT = "screenshot"
SUBMISSION = "submission"


class ActivityLog:
	"""Append-only activity log shared with the rest of the platform."""

	def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
		self._session_factory = session_factory

	def append(self, user_id: str, type: str, data: Optional[Dict[str, Any]] = None) -> int:
		db = self._session_factory()
		try:
			row = ActivityLogRow(
				user_id=user_id,
				type=type,
				data=json.dumps(data or {}, default=str),
				timestamp=datetime.utcnow(),
			)
			db.add(row)
			db.commit()
			return row.id
		except Exception:
			db.rollback()
			raise
		finally:
			db.close()

	def list(self, type: Optional[str] = None, user_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
		db = self._session_factory()
		try:
			q = db.query(ActivityLogRow)
			if type:
				q = q.filter(ActivityLogRow.type == type)
			if user_id:
				q = q.filter(ActivityLogRow.user_id == user_id)
			rows = q.order_by(ActivityLogRow.timestamp.desc(), ActivityLogRow.id.desc()).limit(limit).all()
			return [
				{
					"id": r.id,
					"user_id": r.user_id,
					"type": r.type,
					"data": json.loads(r.data) if r.data else {},
					"timestamp": r.timestamp,
				}
				for r in rows
			]
		finally:
			db.close()

	def record_capture(self, entry: CaptureLogEntry) -> int:
		return self.append(entry.user_id, SCREENSHOT, entry.model_dump(exclude={"id", "user_id", "inline_image"}, mode="json"))

	def capture_entries(self, user_id: Optional[str] = None, limit: int = 100) -> List[CaptureLogEntry]:
		entries = []
		for item in self.list(SCREENSHOT, user_id, limit):
			data = item["data"]
			entries.append(
				CaptureLogEntry(
					id=item["id"],
					user_id=item["user_id"],
					artifact_id=data.get("artifact_id"),
					filename=data.get("filename"),
					capture_event=data.get("capture_event"),
					capture_method=data.get("capture_method"),
					subject=data.get("subject"),
					timestamp=item["timestamp"],
					# legacy client-side rows stored the image itself under "screenshot"
					inline_image=data.get("screenshot"),
				)
			)
		return entries
