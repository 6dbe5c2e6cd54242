from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Callable, Dict, List

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import SessionLocal
from .errors import ArtifactNotFoundError, PersistFailedError, ValidationRejectedError
from .models import CaptureArtifactRow
from .schemas import (
	ArtifactDraft,
	ArtifactStats,
	CaptureArtifact,
	CaptureEvent,
	CaptureMethod,
	EncodedImage,
	Resolution,
)

logger = logging.getLogger(__name__)


def is_safe_filename(filename: str) -> bool:
	if not filename or filename in (".", ".."):
		return False
	return not any(c in filename for c in ("/", "\\", "\x00")) and ".." not in filename


def _to_artifact(row: CaptureArtifactRow) -> CaptureArtifact:
	image = EncodedImage.from_data_url(row.image)
	return CaptureArtifact(
		id=row.id,
		owner_user_id=row.owner_user_id,
		captured_at_utc=row.captured_at,
		capture_method=CaptureMethod(row.capture_method),
		resolution=Resolution(width=row.width, height=row.height),
		byte_size=row.byte_size,
		image_format=row.image_format,
		image_bytes=image.decode(),
		source_event=CaptureEvent(row.source_event),
		source_subject=row.source_subject,
		filename=row.filename,
		target_url=row.target_url,
	)


def _breakdown(db: Session, column) -> Dict[str, int]:
	return {key: n for key, n in db.query(column, func.count(CaptureArtifactRow.id)).group_by(column).all()}


class ArtifactStore:
	"""Durable store of capture artifacts; the only gate through which images are persisted."""

	def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
		self._session_factory = session_factory

	def save(self, draft: ArtifactDraft) -> str:
		try:
			image = EncodedImage.from_data_url(draft.image)
		except ValueError as e:
			logger.error("Rejected artifact %s of user %s: %s", draft.filename, draft.owner_user_id, e)
			raise ValidationRejectedError(f"Rejected image payload: {e}") from e
		raw = image.decode()

		artifact_id = uuid.uuid4().hex
		row = CaptureArtifactRow(
			id=artifact_id,
			owner_user_id=draft.owner_user_id,
			captured_at=draft.captured_at_utc,
			capture_method=draft.capture_method.value,
			source_event=draft.source_event.value,
			source_subject=draft.source_subject,
			filename=draft.filename,
			target_url=draft.target_url,
			width=draft.resolution.width,
			height=draft.resolution.height,
			byte_size=len(raw),
			image_format=image.format,
			image=image.data_url,
		)
		db = self._session_factory()
		try:
			db.add(row)
			db.commit()
		except SQLAlchemyError as e:
			db.rollback()
			logger.error("Failed to persist artifact %s, staging file kept: %s", draft.filename, e)
			raise PersistFailedError(f"Failed to persist artifact {draft.filename}: {e}") from e
		finally:
			db.close()

		logger.info("Stored artifact %s (%s, %dKB) for user %s", artifact_id, draft.filename, len(raw) // 1024, draft.owner_user_id)
		if draft.staging_path:
			self._discard_staging(draft.staging_path)
		return artifact_id

	def get(self, artifact_id: str) -> CaptureArtifact:
		db = self._session_factory()
		try:
			row = db.get(CaptureArtifactRow, artifact_id)
			if row is None:
				raise ArtifactNotFoundError(f"Artifact not found: {artifact_id}")
			return _to_artifact(row)
		finally:
			db.close()

	def get_by_filename(self, filename: str) -> CaptureArtifact:
		if not is_safe_filename(filename):
			raise ArtifactNotFoundError(f"Invalid artifact filename: {filename!r}")
		db = self._session_factory()
		try:
			row = db.query(CaptureArtifactRow).filter(CaptureArtifactRow.filename == filename).first()
			if row is None:
				raise ArtifactNotFoundError(f"Artifact not found: {filename}")
			return _to_artifact(row)
		finally:
			db.close()

	def resolve(self, ref: str) -> CaptureArtifact:
		"""Look an artifact up by id, falling back to its filename."""
		try:
			return self.get(ref)
		except ArtifactNotFoundError:
			return self.get_by_filename(ref)

	def list_by_user(self, user_id: str, limit: int = 50) -> List[CaptureArtifact]:
		db = self._session_factory()
		try:
			rows = (
				db.query(CaptureArtifactRow)
				.filter(CaptureArtifactRow.owner_user_id == user_id)
				.order_by(CaptureArtifactRow.captured_at.desc())
				.limit(limit)
				.all()
			)
			return [_to_artifact(r) for r in rows]
		finally:
			db.close()

	def list_recent(self, limit: int = 50) -> List[CaptureArtifact]:
		db = self._session_factory()
		try:
			rows = db.query(CaptureArtifactRow).order_by(CaptureArtifactRow.captured_at.desc()).limit(limit).all()
			return [_to_artifact(r) for r in rows]
		finally:
			db.close()

	def stats(self) -> ArtifactStats:
		db = self._session_factory()
		try:
			count, total, newest, oldest = db.query(
				func.count(CaptureArtifactRow.id),
				func.coalesce(func.sum(CaptureArtifactRow.byte_size), 0),
				func.max(CaptureArtifactRow.captured_at),
				func.min(CaptureArtifactRow.captured_at),
			).one()
			by_method = _breakdown(db, CaptureArtifactRow.capture_method)
			by_event = _breakdown(db, CaptureArtifactRow.source_event)
			by_subject = _breakdown(db, CaptureArtifactRow.source_subject)
		finally:
			db.close()
		return ArtifactStats(
			count=count,
			total_bytes=int(total),
			average_bytes=int(total) // count if count else 0,
			by_method=by_method,
			by_event=by_event,
			by_subject=by_subject,
			newest=newest,
			oldest=oldest,
		)

	@staticmethod
	def _discard_staging(path: str) -> None:
		try:
			Path(path).unlink(missing_ok=True)
		except OSError as e:
			logger.warning("Could not delete staging file %s: %s", path, e)
