from __future__ import annotations

import itertools
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
from docker.errors import NotFound
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from proctor import models  # noqa: F401  registers the tables
from proctor.activity import ActivityLog
from proctor.artifacts import ArtifactStore
from proctor.capture import READ_CAPTURE_STATE_JS, build_filename
from proctor.db import Base
from proctor.editor_driver import (
	AttributeMatcher,
	DISMISS_OVERLAYS_JS,
	DriverTimings,
	EXPLORER_FILES_JS,
	FOCUS_EDITOR_JS,
	OPEN_FILE_JS,
	PASSWORD_SELECTOR,
	SNAPSHOT_JS,
	TAB_LABELS_JS,
	_SHADOW_MATCH_JS,
	_TEXT_MATCH_JS,
	_XPATH_MATCH_JS,
)
from proctor.schemas import CaptureMethod, CaptureResult, EncodedImage, Resolution
from proctor.workspace import WorkspaceProvisioner


JPEG_BYTES = b"\xff\xd8\xff\xe0" + bytes(range(256)) * 8 + b"\xff\xd9"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

PRIME_SNAPSHOT = {
	"viewLines": ["function isPrime(num) {\n    if (num <= 1) return false;"],
	"activeViewLines": "function isPrime(num) {",
	"tabs": ["main.js"],
	"terminals": [],
}

WELCOME_SNAPSHOT = {
	"viewLines": ["Welcome", "Get Started with VS Code"],
	"activeViewLines": "",
	"tabs": ["Welcome"],
	"terminals": [],
}

FAST_TIMINGS = DriverTimings(
	navigation=5.0,
	login=0.01,
	trust_dialog=0.0,
	trust_poll=0.0,
	content_attempts=2,
	content_interval=0.0,
	settle=0.0,
)


# ============================================================================
# STORAGE
# ============================================================================

@pytest.fixture
def session_factory():
	engine = create_engine(
		"sqlite://",
		connect_args={"check_same_thread": False},
		poolclass=StaticPool,
		future=True,
	)
	Base.metadata.create_all(bind=engine)
	yield sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
	engine.dispose()


@pytest.fixture
def store(session_factory) -> ArtifactStore:
	return ArtifactStore(session_factory)


@pytest.fixture
def activity(session_factory) -> ActivityLog:
	return ActivityLog(session_factory)


# ============================================================================
# DOCKER
# ============================================================================

class FakeContainer:
	def __init__(self, containers: "FakeContainers", container_id: str, name: str, host_port: int) -> None:
		self._containers = containers
		self.id = container_id
		self.name = name
		self.attrs = {"NetworkSettings": {"Ports": {"8080/tcp": [{"HostIp": "0.0.0.0", "HostPort": str(host_port)}]}}}
		self.stopped = False
		self.removed = False
		self.stop_error: Optional[Exception] = None
		self.stop_delay = 0.0

	def reload(self) -> None:
		pass

	def stop(self, timeout: Optional[int] = None) -> None:
		if self.stop_delay:
			time.sleep(self.stop_delay)
		if self.stop_error is not None:
			raise self.stop_error
		self.stopped = True

	def remove(self, force: bool = False) -> None:
		self.removed = True
		self._containers.live.pop(self.id, None)


class FakeContainers:
	def __init__(self) -> None:
		self.live: Dict[str, FakeContainer] = {}
		self.runs: List[Dict[str, Any]] = []
		self.run_error: Optional[Exception] = None
		self._ids = itertools.count(1)

	def run(self, image: str, **kwargs: Any) -> FakeContainer:
		if self.run_error is not None:
			raise self.run_error
		host_port = list(kwargs["ports"].values())[0]
		container = FakeContainer(self, f"container{next(self._ids):04d}", kwargs["name"], host_port)
		self.runs.append({"image": image, **kwargs})
		self.live[container.id] = container
		return container

	def get(self, container_id: str) -> FakeContainer:
		if container_id not in self.live:
			raise NotFound(f"No such container: {container_id}")
		return self.live[container_id]


class FakeDockerClient:
	def __init__(self) -> None:
		self.containers = FakeContainers()


def readiness_client(status: int = 200, *, refuse: bool = False) -> httpx.AsyncClient:
	def handler(request: httpx.Request) -> httpx.Response:
		if refuse:
			raise httpx.ConnectError("connection refused", request=request)
		return httpx.Response(status, text="code-server")

	return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def docker_client() -> FakeDockerClient:
	return FakeDockerClient()


@pytest.fixture
def provisioner(docker_client, tmp_path) -> WorkspaceProvisioner:
	ports = itertools.count(41000)
	return WorkspaceProvisioner(
		docker_client,
		http_client=readiness_client(),
		timeout=1.0,
		template_dir=str(tmp_path / "template-workspace"),
		port_allocator=lambda: next(ports),
	)


# ============================================================================
# BROWSER
# ============================================================================

class FakeElement:
	def __init__(self, page: "FakePage", name: str, text: str = "") -> None:
		self.page = page
		self.name = name
		self.text = text

	async def fill(self, value: str) -> None:
		self.page.filled.append(value)

	async def click(self) -> None:
		self.page.clicks.append(self.name)

	async def text_content(self) -> str:
		return self.text


class FakeKeyboard:
	def __init__(self) -> None:
		self.pressed: List[str] = []
		self.inserted: List[str] = []

	async def press(self, key: str) -> None:
		self.pressed.append(key)

	async def insert_text(self, text: str) -> None:
		self.inserted.append(text)


_TRUST_SCRIPTS = {_TEXT_MATCH_JS: "text", _XPATH_MATCH_JS: "xpath", _SHADOW_MATCH_JS: "shadow-dom"}


class FakePage:
	"""Just enough of a Playwright page to drive the editor and display flows."""

	def __init__(
		self,
		*,
		snapshot: Optional[dict] = None,
		tabs: Optional[List[str]] = None,
		explorer: Optional[List[str]] = None,
		password: bool = False,
		trust_via: Optional[str] = None,
		goto_error: Optional[Exception] = None,
		display_states: Optional[List[dict]] = None,
		screenshot_bytes: bytes = JPEG_BYTES,
	) -> None:
		self.snapshot = snapshot if snapshot is not None else PRIME_SNAPSHOT
		self.tabs = list(tabs) if tabs is not None else ["main.js"]
		self.explorer = list(explorer or [])
		self.password = password
		self.trust_via = trust_via
		self.goto_error = goto_error
		self.display_states = list(display_states or [{}])
		self.screenshot_bytes = screenshot_bytes
		self.keyboard = FakeKeyboard()
		self.visited: List[str] = []
		self.filled: List[str] = []
		self.clicks: List[str] = []
		self.screenshots: List[Dict[str, Any]] = []
		self.content: Optional[str] = None
		self.closed = False

	async def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> None:
		self.visited.append(url)
		if self.goto_error is not None:
			raise self.goto_error

	async def wait_for_load_state(self, state: str, timeout: Optional[float] = None) -> None:
		pass

	async def wait_for_selector(self, selector: str, timeout: Optional[float] = None) -> FakeElement:
		return FakeElement(self, "workbench")

	async def query_selector(self, selector: str) -> Optional[FakeElement]:
		if selector == PASSWORD_SELECTOR and self.password:
			return FakeElement(self, "password")
		if selector == AttributeMatcher.selector and self.trust_via == "aria-label":
			return FakeElement(self, "trust")
		return None

	async def query_selector_all(self, selector: str) -> List[FakeElement]:
		if self.trust_via == "element-text":
			return [FakeElement(self, "cancel", "Cancel"), FakeElement(self, "trust", "Yes, I trust the authors")]
		return []

	async def evaluate(self, script: str, arg: Any = None) -> Any:
		if script == SNAPSHOT_JS:
			return self.snapshot
		if script == TAB_LABELS_JS:
			return list(self.tabs)
		if script == DISMISS_OVERLAYS_JS:
			return 1
		if script == EXPLORER_FILES_JS:
			return list(self.explorer)
		if script == OPEN_FILE_JS:
			if arg in self.explorer:
				self.tabs.append(arg)
				return True
			return False
		if script == FOCUS_EDITOR_JS:
			return None
		if script in _TRUST_SCRIPTS:
			if self.trust_via == _TRUST_SCRIPTS[script]:
				self.clicks.append("trust")
				return True
			return False
		if script == READ_CAPTURE_STATE_JS:
			if len(self.display_states) > 1:
				return self.display_states.pop(0)
			return self.display_states[0]
		raise AssertionError(f"unexpected script: {script[:40]!r}")

	async def screenshot(self, path: Optional[str] = None, **kwargs: Any) -> bytes:
		self.screenshots.append({"path": path, **kwargs})
		if path:
			Path(path).write_bytes(self.screenshot_bytes)
		return self.screenshot_bytes

	async def set_content(self, html: str, wait_until: Optional[str] = None) -> None:
		self.content = html

	async def click(self, selector: str, timeout: Optional[float] = None) -> None:
		self.clicks.append(selector)

	async def close(self) -> None:
		self.closed = True


class FakeBrowser:
	def __init__(self, page: FakePage) -> None:
		self.page = page
		self.page_options: List[Dict[str, Any]] = []
		self.handlers: Dict[str, Any] = {}
		self.connected = True
		self.closed = False

	async def new_page(self, **kwargs: Any) -> FakePage:
		self.page_options.append(kwargs)
		return self.page

	def is_connected(self) -> bool:
		return self.connected

	def on(self, event: str, handler: Any) -> None:
		self.handlers[event] = handler

	async def close(self) -> None:
		self.closed = True
		self.connected = False


def display_launcher(browser: FakeBrowser):
	@asynccontextmanager
	async def launch(resolution: Resolution):
		try:
			yield browser
		finally:
			await browser.close()

	return launch


# ============================================================================
# CAPTURE
# ============================================================================

class FakeEngine:
	"""Stands in for CaptureEngine: stages a JPEG and reports success or a canned failure."""

	def __init__(self, staging_dir: Path, *, error_code: Optional[str] = None) -> None:
		self.staging_dir = staging_dir
		self.error_code = error_code
		self.requests: List[Any] = []
		self.gate: Optional[Any] = None

	async def capture(self, request, language=None) -> CaptureResult:
		self.requests.append(request)
		if self.gate is not None:
			await self.gate.wait()
		method = CaptureMethod.VIRTUAL_DISPLAY if request.is_desktop else CaptureMethod.EDITOR_VIEWPORT
		if self.error_code:
			return CaptureResult(success=False, method=method, error="simulated failure", error_code=self.error_code)
		filename = build_filename(request, desktop=request.is_desktop)
		self.staging_dir.mkdir(parents=True, exist_ok=True)
		path = self.staging_dir / filename
		path.write_bytes(JPEG_BYTES)
		return CaptureResult(
			success=True,
			method=method,
			image=EncodedImage.from_bytes(JPEG_BYTES, "jpeg"),
			staging_path=str(path),
			filename=filename,
			resolution=Resolution(width=1280, height=720),
			byte_size=len(JPEG_BYTES),
			captured_at=datetime.utcnow(),
		)

	async def shutdown(self) -> None:
		pass


def unique_name(prefix: str = "shot") -> str:
	return f"{prefix}-{uuid.uuid4().hex[:8]}.jpg"
