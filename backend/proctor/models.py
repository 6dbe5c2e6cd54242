from __future__ import annotations
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Text, Index
from .db import Base


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username; it doubles as the opaque user id of the core
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	# "student" or "admin"
	role = Column(String(16), default="student", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class CaptureArtifactRow(Base):
	__tablename__ = "capture_artifacts"
	id = Column(String(32), primary_key=True)
	owner_user_id = Column(String(128), nullable=False)
	captured_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	capture_method = Column(String(32), nullable=False)
	source_event = Column(String(32), nullable=False)
	source_subject = Column(String(128), nullable=False)
	filename = Column(String(256), nullable=False, unique=True)
	target_url = Column(String(512), nullable=True)
	width = Column(Integer, nullable=False)
	height = Column(Integer, nullable=False)
	byte_size = Column(Integer, nullable=False)
	image_format = Column(String(16), nullable=False)
	# Full data URI: data:image/<format>;base64,<payload>
	image = Column(Text, nullable=False)

	__table_args__ = (
		Index("ix_capture_artifacts_owner_captured", "owner_user_id", "captured_at"),
		Index("ix_capture_artifacts_event", "source_event"),
	)


class ActivityLogRow(Base):
	__tablename__ = "activity_logs"
	id = Column(Integer, primary_key=True, autoincrement=True)
	user_id = Column(String(128), nullable=False)
	# 'screenshot' | 'submission' | 'tab-switch' | 'screen-share' ...
	type = Column(String(32), nullable=False)
	data = Column(Text, nullable=True)  # JSON string
	timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

	__table_args__ = (Index("ix_activity_logs_user_type", "user_id", "type", "timestamp"),)
