"""Screenshot capture strategies.

Editor captures reuse one lazily-launched headless Chromium (see ``BrowserHandle``);
display captures always launch their own visible browser because a display-media
grant only lives as long as the session that requested it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .editor_driver import RemoteEditorDriver
from .errors import CaptureFailedError, CaptureTimeoutError, InvalidImagePayloadError, ProctorError
from .languages import Language
from .schemas import CaptureMethod, CaptureRequest, CaptureResult, EncodedImage, Resolution
from .settings import settings

logger = logging.getLogger(__name__)

USER_AGENT = (
	"Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
	"(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

_BASE_ARGS = [
	"--no-sandbox",
	"--disable-setuid-sandbox",
	"--disable-dev-shm-usage",
	"--disable-gpu",
]

# Rounds after which the capture button is clicked again
_REGRANT_FROM_ROUND = 3
# A data URL shorter than this cannot hold a real frame
_MIN_DATA_URL_LENGTH = 1000


DISPLAY_CAPTURE_HTML = """
<!DOCTYPE html>
<html>
<head><title>Display Capture</title></head>
<body>
	<video id="video" autoplay muted playsinline></video>
	<button id="start" onclick="startCapture()">Start capture</button>
	<div id="status">ready</div>
	<canvas id="canvas" style="display: none;"></canvas>
	<script>
		window.capturedImageData = null;
		window.captureError = null;
		let stream = null;
		const video = document.getElementById('video');
		const canvas = document.getElementById('canvas');
		const status = document.getElementById('status');
		function takeFrame() {
			if (!video.videoWidth || !video.videoHeight) { setTimeout(takeFrame, 1000); return; }
			canvas.width = video.videoWidth;
			canvas.height = video.videoHeight;
			canvas.getContext('2d').drawImage(video, 0, 0, canvas.width, canvas.height);
			const data = canvas.toDataURL('image/jpeg', QUALITY);
			window.captureWidth = canvas.width;
			window.captureHeight = canvas.height;
			window.capturedImageData = data;
			status.textContent = 'captured';
			if (stream) stream.getTracks().forEach(t => t.stop());
		}
		async function startCapture() {
			if (stream) return;
			try {
				status.textContent = 'requesting';
				stream = await navigator.mediaDevices.getDisplayMedia({video: true, audio: false});
				video.srcObject = stream;
				video.onloadedmetadata = () => setTimeout(takeFrame, 1500);
				await video.play();
			} catch (error) {
				stream = null;
				status.textContent = 'failed';
				window.captureError = error && error.message ? error.message : String(error);
			}
		}
		window.addEventListener('load', () => setTimeout(startCapture, 500));
	</script>
</body>
</html>
"""

READ_CAPTURE_STATE_JS = """
() => ({
	imageData: window.capturedImageData || null,
	error: window.captureError || null,
	width: window.captureWidth || null,
	height: window.captureHeight || null,
	status: (document.querySelector('#status') || {}).textContent || null,
})
"""

SCREEN_SIZE_JS = "() => ({width: screen.width, height: screen.height})"


def build_filename(request: CaptureRequest, *, desktop: bool, ext: str = "jpg") -> str:
	subject = re.sub(r"[^A-Za-z0-9_.+-]", "-", request.subject) or "code"
	user = re.sub(r"[^A-Za-z0-9_.-]", "-", request.user_id) or "user"
	stamp = datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
	prefix = "desktop-user" if desktop else "user"
	# suffix keeps concurrent captures of the same user apart
	return f"{prefix}-{user}-{subject}-{request.capture_event.value}-{stamp}-{uuid.uuid4().hex[:6]}.{ext}"


# ============================================================================
# SHARED RESOURCES
# ============================================================================

class DisplayResolution:
	"""System display resolution, detected once per process and never refreshed."""

	def __init__(self, detector: Optional[Callable[[], Any]] = None, fallback: Optional[Resolution] = None) -> None:
		self._detector = detector or self._detect_with_browser
		self.fallback = fallback or Resolution(width=settings.fallback_width, height=settings.fallback_height)
		self._cached: Optional[Resolution] = None
		self._lock = asyncio.Lock()

	async def get(self) -> Resolution:
		if self._cached is not None:
			return self._cached
		async with self._lock:
			if self._cached is None:
				try:
					self._cached = await self._detector()
					logger.info("System display detected: %dx%d", self._cached.width, self._cached.height)
				except Exception as e:
					logger.warning(
						"Display detection failed, using %dx%d: %s", self.fallback.width, self.fallback.height, e
					)
					self._cached = self.fallback
		return self._cached

	@staticmethod
	async def _detect_with_browser() -> Resolution:
		async with async_playwright() as p:
			browser = await p.chromium.launch(
				headless=False, args=_BASE_ARGS, executable_path=settings.browser_executable_path
			)
			try:
				page = await browser.new_page()
				info = await page.evaluate(SCREEN_SIZE_JS)
			finally:
				await browser.close()
		return Resolution(width=int(info["width"]), height=int(info["height"]))


class BrowserHandle:
	"""Process-wide headless browser, launched on first use and closed by ``shutdown``."""

	def __init__(self, launcher: Optional[Callable[[Resolution], Any]] = None) -> None:
		self._launcher = launcher
		self._playwright: Any = None
		self._browser: Any = None
		self._lock = asyncio.Lock()

	@property
	def active(self) -> bool:
		return self._browser is not None

	async def get(self, resolution: Resolution) -> Any:
		async with self._lock:
			if self._browser is None or not self._browser.is_connected():
				logger.info("Launching shared headless browser (%dx%d)", resolution.width, resolution.height)
				if self._launcher is not None:
					self._browser = await self._launcher(resolution)
				else:
					self._browser = await self._launch_chromium(resolution)
				self._browser.on("disconnected", self._on_disconnected)
			return self._browser

	async def _launch_chromium(self, resolution: Resolution) -> Any:
		if self._playwright is None:
			self._playwright = await async_playwright().start()
		return await self._playwright.chromium.launch(
			headless=True,
			executable_path=settings.browser_executable_path,
			args=_BASE_ARGS + [
				f"--window-size={resolution.width},{resolution.height}",
				"--force-device-scale-factor=1",
				"--disable-background-timer-throttling",
				"--disable-backgrounding-occluded-windows",
				"--disable-renderer-backgrounding",
			],
		)

	def _on_disconnected(self, *_: Any) -> None:
		logger.warning("Shared browser disconnected; it will be relaunched on next use")
		self._browser = None

	async def shutdown(self) -> None:
		async with self._lock:
			browser, self._browser = self._browser, None
			if browser is not None:
				logger.info("Closing shared browser")
				try:
					await browser.close()
				except PlaywrightError as e:
					logger.warning("Error closing shared browser: %s", e)
			if self._playwright is not None:
				try:
					await self._playwright.stop()
				finally:
					self._playwright = None


@asynccontextmanager
async def launch_display_browser(resolution: Resolution) -> AsyncIterator[Any]:
	async with async_playwright() as p:
		browser = await p.chromium.launch(
			headless=False,
			executable_path=settings.browser_executable_path,
			args=_BASE_ARGS + [
				f"--window-size={resolution.width},{resolution.height}",
				"--use-fake-ui-for-media-stream",
				"--enable-usermedia-screen-capturing",
				"--allow-http-screen-capture",
				"--auto-select-desktop-capture-source=Entire screen",
			],
		)
		try:
			yield browser
		finally:
			await browser.close()


# ============================================================================
# ENGINE
# ============================================================================

class CaptureEngine:
	def __init__(
		self,
		*,
		driver: Optional[RemoteEditorDriver] = None,
		browser: Optional[BrowserHandle] = None,
		resolution: Optional[DisplayResolution] = None,
		display_launcher: Callable[[Resolution], Any] = launch_display_browser,
		staging_dir: Optional[str] = None,
		jpeg_quality: Optional[int] = None,
		display_rounds: Optional[int] = None,
		display_interval: Optional[float] = None,
	) -> None:
		self.driver = driver or RemoteEditorDriver()
		self.browser = browser or BrowserHandle()
		self.resolution = resolution or DisplayResolution()
		self._display_launcher = display_launcher
		self.staging_dir = Path(staging_dir or settings.staging_dir)
		self.jpeg_quality = jpeg_quality or settings.jpeg_quality
		self.display_rounds = display_rounds or settings.display_capture_rounds
		self.display_interval = settings.display_capture_interval_seconds if display_interval is None else display_interval

	async def capture(self, request: CaptureRequest, language: Optional[Language] = None) -> CaptureResult:
		if request.is_desktop:
			return await self.capture_display(request)
		return await self.capture_editor(request, language)

	async def shutdown(self) -> None:
		await self.browser.shutdown()

	# ------------------------------------------------------------ strategy A

	async def capture_editor(self, request: CaptureRequest, language: Optional[Language] = None) -> CaptureResult:
		method = CaptureMethod.EDITOR_VIEWPORT
		started = time.monotonic()
		page = None
		try:
			res = await self.resolution.get()
			browser = await self.browser.get(res)
			page = await browser.new_page(
				viewport={"width": res.width, "height": res.height},
				device_scale_factor=1,
				user_agent=USER_AGENT,
			)
			logger.info("Capturing editor %s for user %s", request.target_url, request.user_id)
			report = await self.driver.prepare(page, request.target_url, language)
			raw = await page.screenshot(
				type="jpeg",
				quality=self.jpeg_quality,
				full_page=False,
				clip={"x": 0, "y": 0, "width": res.width, "height": res.height},
			)
			image = self._encode(raw)
			filename = build_filename(request, desktop=False)
			return self._success(method, image, raw, filename, res, started, content_found=report.content.found)
		except ProctorError as e:
			return self._failure(request, method, e.message, e.code, started)
		except PlaywrightError as e:
			return self._failure(request, method, f"Browser error: {e}", CaptureFailedError.code, started)
		except OSError as e:
			return self._failure(request, method, f"Could not stage capture: {e}", CaptureFailedError.code, started)
		finally:
			if page is not None:
				try:
					await page.close()
				except PlaywrightError as e:
					logger.debug("Error closing page: %s", e)

	# ------------------------------------------------------------ strategy B

	async def capture_display(self, request: CaptureRequest) -> CaptureResult:
		method = CaptureMethod.VIRTUAL_DISPLAY
		started = time.monotonic()
		try:
			res = await self.resolution.get()
			async with self._display_launcher(res) as browser:
				page = await browser.new_page(viewport={"width": res.width, "height": res.height})
				html = DISPLAY_CAPTURE_HTML.replace("QUALITY", f"{self.jpeg_quality / 100:.2f}")
				await page.set_content(html, wait_until="domcontentloaded")
				state = await self._poll_display_frame(page)
			try:
				image = EncodedImage.from_data_url(state["imageData"])
			except ValueError as e:
				raise InvalidImagePayloadError(f"Display frame is not a valid image: {e}") from e
			raw = image.decode()
			frame = res
			if state.get("width") and state.get("height"):
				frame = Resolution(width=int(state["width"]), height=int(state["height"]))
			filename = build_filename(request, desktop=True)
			return self._success(method, image, raw, filename, frame, started)
		except ProctorError as e:
			return self._failure(request, method, e.message, e.code, started)
		except PlaywrightError as e:
			return self._failure(request, method, f"Browser error: {e}", CaptureFailedError.code, started)
		except OSError as e:
			return self._failure(request, method, f"Could not stage capture: {e}", CaptureFailedError.code, started)

	async def _poll_display_frame(self, page: Any) -> dict:
		for round_no in range(self.display_rounds):
			state = await page.evaluate(READ_CAPTURE_STATE_JS) or {}
			if state.get("error"):
				raise CaptureFailedError(f"Display capture failed: {state['error']}")
			data = state.get("imageData")
			if data and len(data) > _MIN_DATA_URL_LENGTH:
				return state
			if round_no >= _REGRANT_FROM_ROUND:
				try:
					await page.click("#start", timeout=1000)
				except PlaywrightError:
					pass
			await asyncio.sleep(self.display_interval)
		raise CaptureTimeoutError(
			f"Display capture timed out after {self.display_rounds} rounds of {self.display_interval:.0f}s"
		)

	# ------------------------------------------------------------ helpers

	def _encode(self, raw: bytes, image_format: str = "jpeg") -> EncodedImage:
		try:
			return EncodedImage.from_bytes(raw, image_format)
		except ValueError as e:
			raise InvalidImagePayloadError(f"Captured image is not a valid {image_format}: {e}") from e

	def _stage(self, filename: str, raw: bytes) -> Path:
		self.staging_dir.mkdir(parents=True, exist_ok=True)
		path = self.staging_dir / filename
		path.write_bytes(raw)
		return path

	def _success(
		self,
		method: CaptureMethod,
		image: EncodedImage,
		raw: bytes,
		filename: str,
		resolution: Resolution,
		started: float,
		*,
		content_found: Optional[bool] = None,
	) -> CaptureResult:
		path = self._stage(filename, raw)
		duration = int((time.monotonic() - started) * 1000)
		logger.info(
			"Captured %s (%dKB) at %dx%d via %s in %dms",
			filename, len(raw) // 1024, resolution.width, resolution.height, method.value, duration,
		)
		return CaptureResult(
			success=True,
			method=method,
			image=image,
			staging_path=str(path),
			filename=filename,
			resolution=resolution,
			byte_size=len(raw),
			captured_at=datetime.utcnow(),
			duration_ms=duration,
			content_found=content_found,
		)

	def _failure(
		self, request: CaptureRequest, method: CaptureMethod, error: str, code: str, started: float
	) -> CaptureResult:
		logger.error(
			"Capture failed for user %s (%s, %s): %s", request.user_id, request.capture_event.value, method.value, error
		)
		return CaptureResult(
			success=False,
			method=method,
			error=error,
			error_code=code,
			duration_ms=int((time.monotonic() - started) * 1000),
		)
