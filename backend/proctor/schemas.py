from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


# Sentinel target meaning "the entire virtual display" instead of an editor URL
DESKTOP_TARGET = "desktop-capture"


class CaptureEvent(str, Enum):
	SUBMISSION = "submission"
	MANUAL = "manual"
	PERIODIC = "periodic"
	ADMIN_TEST = "admin-test"
	ADMIN_BULK = "admin-bulk"


class CaptureMethod(str, Enum):
	EDITOR_VIEWPORT = "editor-viewport"
	VIRTUAL_DISPLAY = "virtual-display"


class Resolution(BaseModel):
	width: int = Field(gt=0)
	height: int = Field(gt=0)


# ============================================================================
# IMAGE PAYLOAD ENCODING
# ============================================================================

_DATA_URL_RE = re.compile(r"^data:image/(?P<format>[a-z]+);(?P<encoding>base64),(?P<data>.*)$", re.DOTALL)

_MIME_FORMATS = {"jpeg", "png", "webp"}


def _magic_matches(image_format: str, raw: bytes) -> bool:
	if image_format == "jpeg":
		return raw[:3] == b"\xff\xd8\xff"
	if image_format == "png":
		return raw[:8] == b"\x89PNG\r\n\x1a\n"
	if image_format == "webp":
		return raw[:4] == b"RIFF" and raw[8:12] == b"WEBP"
	return False


class EncodedImage(BaseModel):
	"""An image payload with an explicit ``(format, encoding)`` tag.

	The tag is carried alongside the data and rendered as a
	``data:image/<format>;base64,`` prefix; consumers never guess it.
	"""
	format: str
	encoding: str = "base64"
	data: str = Field(repr=False)

	@classmethod
	def from_bytes(cls, raw: bytes, image_format: str = "jpeg") -> "EncodedImage":
		image = cls(format=image_format, data=base64.b64encode(raw).decode("ascii"))
		image.verify()
		return image

	@classmethod
	def from_data_url(cls, value: Optional[str]) -> "EncodedImage":
		"""Parse and verify a tagged data URL; raises ValueError when it is not one."""
		if not value:
			raise ValueError("image payload is missing")
		m = _DATA_URL_RE.match(value)
		if not m:
			raise ValueError("image payload lacks a data:image/<format>;base64, tag")
		image = cls(format=m.group("format"), encoding=m.group("encoding"), data=m.group("data"))
		image.verify()
		return image

	@property
	def data_url(self) -> str:
		return f"data:image/{self.format};{self.encoding},{self.data}"

	@property
	def mime_type(self) -> str:
		return f"image/{self.format}"

	def decode(self) -> bytes:
		try:
			return base64.b64decode(self.data, validate=True)
		except (binascii.Error, ValueError) as e:
			raise ValueError(f"image payload is not valid base64: {e}") from e

	def verify(self) -> bytes:
		if self.format not in _MIME_FORMATS:
			raise ValueError(f"unsupported image format tag: {self.format}")
		if self.encoding != "base64":
			raise ValueError(f"unsupported image encoding tag: {self.encoding}")
		raw = self.decode()
		if not raw:
			raise ValueError("image payload is empty")
		if not _magic_matches(self.format, raw):
			raise ValueError(f"image bytes do not match the declared {self.format} format")
		return raw


# ============================================================================
# CAPTURE
# ============================================================================

class CaptureRequest(BaseModel):
	user_id: str
	subject: str = "code"
	capture_event: CaptureEvent = CaptureEvent.MANUAL
	target_url: str = DESKTOP_TARGET

	@property
	def is_desktop(self) -> bool:
		return self.target_url == DESKTOP_TARGET


class CaptureResult(BaseModel):
	success: bool
	method: CaptureMethod
	image: Optional[EncodedImage] = Field(default=None, exclude=True, repr=False)
	staging_path: Optional[str] = None
	filename: Optional[str] = None
	resolution: Optional[Resolution] = None
	byte_size: int = 0
	captured_at: Optional[datetime] = None
	duration_ms: int = 0
	content_found: Optional[bool] = None
	error: Optional[str] = None
	error_code: Optional[str] = None


# ============================================================================
# ARTIFACTS
# ============================================================================

class ArtifactDraft(BaseModel):
	"""What the capture pipeline hands to the store; ``image`` must be a tagged data URL."""
	owner_user_id: str
	captured_at_utc: datetime
	capture_method: CaptureMethod
	resolution: Resolution
	image: Optional[str] = Field(default=None, repr=False)
	source_event: CaptureEvent
	source_subject: str
	filename: str
	target_url: Optional[str] = None
	staging_path: Optional[str] = None


class CaptureArtifact(BaseModel):
	id: str
	owner_user_id: str
	captured_at_utc: datetime
	capture_method: CaptureMethod
	resolution: Resolution
	byte_size: int
	image_format: str
	image_bytes: bytes = Field(exclude=True, repr=False)
	source_event: CaptureEvent
	source_subject: str
	filename: str
	target_url: Optional[str] = None

	@property
	def data_url(self) -> str:
		return EncodedImage.from_bytes(self.image_bytes, self.image_format).data_url


class ArtifactStats(BaseModel):
	count: int = 0
	total_bytes: int = 0
	average_bytes: int = 0
	by_method: Dict[str, int] = Field(default_factory=dict)
	by_event: Dict[str, int] = Field(default_factory=dict)
	by_subject: Dict[str, int] = Field(default_factory=dict)
	newest: Optional[datetime] = None
	oldest: Optional[datetime] = None


class CaptureLogEntry(BaseModel):
	id: Optional[int] = None
	user_id: str
	artifact_id: Optional[str] = None
	filename: Optional[str] = None
	capture_event: Optional[str] = None
	capture_method: Optional[str] = None
	subject: Optional[str] = None
	timestamp: datetime
	# Deprecated: legacy client-side rows carried the image inline
	inline_image: Optional[str] = Field(default=None, repr=False)


class CaptureOutcome(BaseModel):
	success: bool
	message: str
	user_id: str
	capture_event: CaptureEvent
	artifact_id: Optional[str] = None
	filename: Optional[str] = None
	capture_method: Optional[CaptureMethod] = None
	resolution: Optional[Resolution] = None
	byte_size: int = 0
	error: Optional[str] = None
	error_code: Optional[str] = None
