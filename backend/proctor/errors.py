"""Error taxonomy of the workspace and capture core.

Routers translate these into HTTP responses through ``http_status``. Dialogs that
never show up or editor content that is not detected are ordinary outcomes and
never raise.
"""

from __future__ import annotations


class ProctorError(Exception):
	http_status: int = 500
	code: str = "proctor-error"

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message


# Provisioning

class UnsupportedLanguageError(ProctorError):
	http_status = 400
	code = "unsupported-language"

	def __init__(self, language: str) -> None:
		super().__init__(f"Unsupported language: {language}")
		self.language = language


class ProvisionTimeoutError(ProctorError):
	http_status = 504
	code = "provision-timeout"


class ProvisionFailedError(ProctorError):
	http_status = 502
	code = "provision-failed"


# Driving

class NavigationError(ProctorError):
	http_status = 502
	code = "navigation-failed"


# Capture

class CaptureTimeoutError(ProctorError):
	http_status = 504
	code = "capture-timeout"


class CaptureFailedError(ProctorError):
	http_status = 502
	code = "capture-failed"


class InvalidImagePayloadError(ProctorError):
	http_status = 502
	code = "invalid-image-payload"


# Storage

class ValidationRejectedError(ProctorError):
	http_status = 422
	code = "validation-rejected"


class PersistFailedError(ProctorError):
	http_status = 500
	code = "persist-failed"


class LogFailedError(ProctorError):
	http_status = 500
	code = "log-failed"


class ArtifactNotFoundError(ProctorError):
	http_status = 404
	code = "artifact-not-found"


def status_for_code(code: str | None, default: int = 500) -> int:
	stack = list(ProctorError.__subclasses__())
	while stack:
		cls = stack.pop()
		if cls.code == code:
			return cls.http_status
		stack.extend(cls.__subclasses__())
	return default
