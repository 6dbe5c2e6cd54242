"""
Remote Editor Driver
====================

Brings a browser page pointed at a code-server instance into a state where the
viewport shows the student's code. The editor UI is third-party and its state
is unknown in advance, so every step after navigation is best-effort:

1. Navigate (hard failure raises NavigationError)
2. Log in when the editor asks for its local password
3. Accept the "trust the authors" dialog if it shows up
4. Dismiss overlays and make sure a code file is open (open or create one)
5. Poll until real code is visible

Steps 2-5 log and continue on any miss; the capture is taken regardless.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import BaseModel, Field

from .errors import NavigationError
from .languages import EXTENSIONS, SAMPLE_SNIPPETS, Language
from .settings import settings

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

WORKBENCH_SELECTOR = ", ".join([
	".monaco-workbench",
	".monaco-editor",
	".vs-dark",
	".vs-light",
	'[data-keybinding="workbench"]',
])

PASSWORD_SELECTOR = 'input[type="password"]'
EDITOR_INPUT_SELECTOR = ".monaco-editor textarea"

PLACEHOLDER_TEXTS = ("Get Started", "Welcome", "Choose a language")

CODE_TOKENS = (
	"function",
	"console.log",
	"print(",
	"public class",
	"#include",
	"def ",
	"=",
	"{",
	";",
)

SOURCE_EXTENSIONS = (".js", ".py", ".java", ".cpp", ".html", ".css")
OPENABLE_EXTENSIONS = SOURCE_EXTENSIONS + (".json", ".md")

TRUST_PHRASE = "trust the authors"


# ============================================================================
# PAGE SCRIPTS
# ============================================================================

SNAPSHOT_JS = """
() => {
	const text = (el) => (el && el.textContent) ? el.textContent : '';
	const active = document.querySelector('.monaco-editor.focused .view-lines, .monaco-editor .view-lines');
	return {
		viewLines: Array.from(document.querySelectorAll('.monaco-editor .view-lines')).map(text),
		activeViewLines: text(active),
		tabs: Array.from(document.querySelectorAll('.tab .label-name')).map(text),
		terminals: Array.from(document.querySelectorAll('.terminal .xterm-screen')).map(text),
	};
}
"""

TAB_LABELS_JS = """
() => Array.from(document.querySelectorAll('.tab .label-name')).map(t => t.textContent || '')
"""

DISMISS_OVERLAYS_JS = """
() => {
	let dismissed = 0;
	const click = (el) => { if (el instanceof HTMLElement) { el.click(); dismissed++; } };
	document.querySelectorAll('[aria-label="Close"], [title="Close"], .codicon-close, .action-label.codicon-close')
		.forEach(b => { if (b instanceof HTMLElement && b.offsetParent !== null) click(b); });
	document.querySelectorAll('.notifications-toasts .notification-toast')
		.forEach(n => click(n.querySelector('.codicon-close')));
	document.querySelectorAll('.tab .label-name').forEach(tab => {
		if (tab.textContent && tab.textContent.includes('Get Started')) {
			const container = tab.closest('.tab');
			click(container ? container.querySelector('.codicon-close') : null);
		}
	});
	return dismissed;
}
"""

EXPLORER_FILES_JS = """
() => {
	const explorer = document.querySelector('[aria-label="Explorer"], [title="Explorer"]');
	if (explorer instanceof HTMLElement) explorer.click();
	const rows = document.querySelectorAll(
		'.explorer-viewlet .monaco-list-row .label-name, .explorer-viewlet .monaco-tree-row .label-name');
	return Array.from(rows).map(r => r.textContent || '').filter(Boolean);
}
"""

OPEN_FILE_JS = """
(name) => {
	const rows = document.querySelectorAll(
		'.explorer-viewlet .monaco-list-row .label-name, .explorer-viewlet .monaco-tree-row .label-name');
	for (const row of rows) {
		if (row.textContent === name && row instanceof HTMLElement) { row.click(); return true; }
	}
	return false;
}
"""

FOCUS_EDITOR_JS = """
() => {
	const editor = document.querySelector('.monaco-editor textarea');
	if (editor instanceof HTMLElement) editor.focus();
	document.querySelectorAll('.monaco-dialog, .notification-toast, .context-view')
		.forEach(o => { if (o instanceof HTMLElement) o.style.display = 'none'; });
}
"""

_TEXT_MATCH_JS = """
(phrase) => {
	const candidates = document.querySelectorAll('button, a.monaco-button, [role="button"]');
	for (const el of candidates) {
		if ((el.textContent || '').toLowerCase().includes(phrase) && el instanceof HTMLElement) {
			el.click();
			return true;
		}
	}
	return false;
}
"""

_XPATH_MATCH_JS = """
(phrase) => {
	const lower = "translate(normalize-space(.),'ABCDEFGHIJKLMNOPQRSTUVWXYZ','abcdefghijklmnopqrstuvwxyz')";
	const xpath = `//*[self::button or self::a][contains(${lower}, '${phrase}')]`;
	const node = document.evaluate(xpath, document, null, XPathResult.FIRST_ORDERED_NODE_TYPE, null).singleNodeValue;
	if (node instanceof HTMLElement) { node.click(); return true; }
	return false;
}
"""

_SHADOW_MATCH_JS = """
(phrase) => {
	const visit = (root) => {
		for (const el of root.querySelectorAll('*')) {
			if (el.shadowRoot) {
				for (const b of el.shadowRoot.querySelectorAll('button, [role="button"]')) {
					if ((b.textContent || '').toLowerCase().includes(phrase)) return b;
				}
				const nested = visit(el.shadowRoot);
				if (nested) return nested;
			}
		}
		return null;
	};
	const found = visit(document);
	if (found instanceof HTMLElement) { found.click(); return true; }
	return false;
}
"""


# ============================================================================
# CONTENT HEURISTICS
# ============================================================================

class EditorSnapshot(BaseModel):
	view_lines: List[str] = Field(default_factory=list, validation_alias="viewLines")
	active_view_lines: str = Field(default="", validation_alias="activeViewLines")
	tabs: List[str] = Field(default_factory=list)
	terminals: List[str] = Field(default_factory=list)

	model_config = {"populate_by_name": True}


class ContentProbe(BaseModel):
	found: bool = False
	# monaco-code | code-file | terminal | none
	kind: str = "none"
	excerpt: str = ""


def is_placeholder(text: str) -> bool:
	lowered = text.lower()
	return any(p.lower() in lowered for p in PLACEHOLDER_TEXTS)


def looks_like_code(text: str) -> bool:
	return any(token in text for token in CODE_TOKENS)


def has_code_tab(tabs: Sequence[str]) -> bool:
	return any(t and t.strip() and not is_placeholder(t) for t in tabs)


def pick_source_file(names: Sequence[str]) -> Optional[str]:
	for extensions in (SOURCE_EXTENSIONS, OPENABLE_EXTENSIONS):
		for name in names:
			if name.endswith(extensions):
				return name
	return None


def detect_content(snapshot: EditorSnapshot) -> ContentProbe:
	"""Decide whether the page shows genuine code rather than an empty or welcome screen."""
	for text in snapshot.view_lines:
		content = text.strip()
		if len(content) > 10 and not is_placeholder(content) and looks_like_code(content):
			return ContentProbe(found=True, kind="monaco-code", excerpt=content[:100])

	if any(t.strip().endswith(OPENABLE_EXTENSIONS) for t in snapshot.tabs):
		content = snapshot.active_view_lines.strip()
		if len(content) > 5 and not is_placeholder(content):
			return ContentProbe(found=True, kind="code-file", excerpt=content[:100])

	for text in snapshot.terminals:
		content = text.strip()
		if len(content) > 10:
			return ContentProbe(found=True, kind="terminal", excerpt=content[:100])

	return ContentProbe()


# ============================================================================
# TRUST DIALOG MATCHERS
# ============================================================================

class TrustMatcher:
	"""One independent way of finding (and clicking) the workspace-trust button."""
	name = "matcher"

	async def __call__(self, page: Any) -> bool:
		raise NotImplementedError


class AttributeMatcher(TrustMatcher):
	name = "aria-label"
	selector = 'button[aria-label*="trust" i][aria-label*="authors" i], a.monaco-button[aria-label*="trust" i][aria-label*="authors" i]'

	async def __call__(self, page: Any) -> bool:
		handle = await page.query_selector(self.selector)
		if handle is None:
			return False
		await handle.click()
		return True


class ScriptMatcher(TrustMatcher):
	def __init__(self, name: str, script: str, phrase: str = TRUST_PHRASE) -> None:
		self.name = name
		self.script = script
		self.phrase = phrase

	async def __call__(self, page: Any) -> bool:
		return bool(await page.evaluate(self.script, self.phrase))


class HandleTextMatcher(TrustMatcher):
	name = "element-text"

	def __init__(self, phrase: str = TRUST_PHRASE) -> None:
		self.phrase = phrase

	async def __call__(self, page: Any) -> bool:
		for handle in await page.query_selector_all("button, a.monaco-button"):
			text = (await handle.text_content() or "").lower()
			if self.phrase in text:
				await handle.click()
				return True
		return False


def default_trust_matchers() -> List[TrustMatcher]:
	return [
		AttributeMatcher(),
		ScriptMatcher("text", _TEXT_MATCH_JS),
		ScriptMatcher("xpath", _XPATH_MATCH_JS),
		ScriptMatcher("shadow-dom", _SHADOW_MATCH_JS),
		HandleTextMatcher(),
	]


async def first_match(page: Any, matchers: Sequence[TrustMatcher]) -> Optional[str]:
	"""Run matchers in order and return the name of the first that clicked something."""
	for matcher in matchers:
		try:
			if await matcher(page):
				return matcher.name
		except PlaywrightError as e:
			logger.debug("Trust matcher %s errored: %s", matcher.name, e)
	return None


# ============================================================================
# DRIVER
# ============================================================================

class DriverTimings(BaseModel):
	navigation: float = 45.0
	login: float = 15.0
	trust_dialog: float = 20.0
	trust_poll: float = 1.0
	content_attempts: int = 5
	content_interval: float = 2.0
	settle: float = 2.0

	@classmethod
	def from_settings(cls) -> "DriverTimings":
		return cls(
			navigation=settings.navigation_timeout_seconds,
			login=settings.login_timeout_seconds,
			trust_dialog=settings.trust_dialog_timeout_seconds,
			content_attempts=settings.content_poll_attempts,
			content_interval=settings.content_poll_interval_seconds,
			settle=settings.ui_settle_seconds,
		)


class PreparationReport(BaseModel):
	authenticated: bool = False
	trusted: bool = False
	trust_matcher: Optional[str] = None
	diagnostic_path: Optional[str] = None
	overlays_dismissed: int = 0
	# existing-tab | opened | created | none
	file_state: str = "none"
	content: ContentProbe = Field(default_factory=ContentProbe)
	soft_failures: List[str] = Field(default_factory=list)


def _ms(seconds: float) -> float:
	return max(0.0, seconds) * 1000


class RemoteEditorDriver:
	def __init__(
		self,
		timings: Optional[DriverTimings] = None,
		*,
		credential: Optional[str] = None,
		staging_dir: Optional[str] = None,
		matchers: Optional[Sequence[TrustMatcher]] = None,
	) -> None:
		self.timings = timings or DriverTimings.from_settings()
		self.credential = credential if credential is not None else settings.editor_password
		self.staging_dir = Path(staging_dir or settings.staging_dir)
		self.matchers = list(matchers) if matchers is not None else default_trust_matchers()

	async def prepare(self, page: Any, url: str, language: Optional[Language] = None) -> PreparationReport:
		report = PreparationReport()
		await self.navigate(page, url)

		async def login() -> None:
			report.authenticated = await self.authenticate(page)

		async def trust() -> None:
			await self.accept_trust(page, report)

		async def normalize() -> None:
			await self.normalize_workspace(page, language, report)

		async def content() -> None:
			report.content = await self.wait_for_content(page)

		for step, run in (("login", login), ("trust-dialog", trust), ("workspace", normalize), ("content", content)):
			try:
				await run()
			except PlaywrightError as e:
				logger.warning("Editor step %s failed at %s, continuing: %s", step, url, e)
				report.soft_failures.append(step)

		if report.content.found:
			logger.info("Editor content detected (%s): %s", report.content.kind, report.content.excerpt[:60])
		else:
			logger.warning("No substantial editor content detected at %s, capturing anyway", url)
		return report

	async def navigate(self, page: Any, url: str) -> None:
		started = time.monotonic()
		try:
			await page.goto(url, wait_until="domcontentloaded", timeout=_ms(self.timings.navigation))
		except PlaywrightError as e:
			raise NavigationError(f"Failed to load editor at {url}: {e}") from e
		remaining = self.timings.navigation - (time.monotonic() - started)
		if remaining <= 0:
			return
		try:
			await page.wait_for_load_state("networkidle", timeout=_ms(remaining))
		except PlaywrightTimeoutError:
			logger.info("Network never went idle at %s, continuing", url)

	async def authenticate(self, page: Any) -> bool:
		field = await page.query_selector(PASSWORD_SELECTOR)
		if field is None:
			return False
		logger.info("Editor login prompt detected, authenticating")
		await field.fill(self.credential)
		await page.keyboard.press("Enter")
		try:
			await page.wait_for_selector(WORKBENCH_SELECTOR, timeout=_ms(self.timings.login))
		except PlaywrightTimeoutError:
			logger.warning("Editor shell did not appear within %.0fs of logging in", self.timings.login)
		return True

	async def accept_trust(self, page: Any, report: PreparationReport) -> bool:
		loop = asyncio.get_running_loop()
		deadline = loop.time() + self.timings.trust_dialog
		while True:
			name = await first_match(page, self.matchers)
			if name:
				logger.info("Workspace trust accepted via %s matcher", name)
				report.trusted = True
				report.trust_matcher = name
				await asyncio.sleep(self.timings.settle)
				return True
			if loop.time() >= deadline:
				break
			await asyncio.sleep(self.timings.trust_poll)

		report.diagnostic_path = await self._diagnostic_snapshot(page, "trust-dialog")
		logger.info("Trust dialog not found; snapshot at %s", report.diagnostic_path)
		return False

	async def normalize_workspace(self, page: Any, language: Optional[Language], report: PreparationReport) -> str:
		report.overlays_dismissed = int(await page.evaluate(DISMISS_OVERLAYS_JS) or 0)
		await asyncio.sleep(self.timings.settle)

		if has_code_tab(await page.evaluate(TAB_LABELS_JS) or []):
			report.file_state = "existing-tab"
		else:
			names = await page.evaluate(EXPLORER_FILES_JS) or []
			candidate = pick_source_file(names)
			if candidate and await page.evaluate(OPEN_FILE_JS, candidate):
				logger.info("Opened existing file %s", candidate)
				await asyncio.sleep(self.timings.settle)
			if candidate and has_code_tab(await page.evaluate(TAB_LABELS_JS) or []):
				report.file_state = "opened"
			else:
				await self._create_sample_file(page, language or Language.JAVASCRIPT)
				report.file_state = "created"

		await page.evaluate(FOCUS_EDITOR_JS)
		return report.file_state

	async def wait_for_content(self, page: Any) -> ContentProbe:
		probe = ContentProbe()
		attempts = max(1, self.timings.content_attempts)
		for attempt in range(attempts):
			snapshot = EditorSnapshot.model_validate(await page.evaluate(SNAPSHOT_JS) or {})
			probe = detect_content(snapshot)
			if probe.found:
				return probe
			if attempt < attempts - 1:
				await asyncio.sleep(self.timings.content_interval)
		return probe

	async def _create_sample_file(self, page: Any, language: Language) -> None:
		filename = f"student_work.{EXTENSIONS[language]}"
		logger.info("No code file open, creating %s", filename)
		await page.keyboard.press("Control+N")
		await asyncio.sleep(self.timings.settle / 2)
		# insert_text bypasses auto-closing of brackets
		await page.keyboard.insert_text(SAMPLE_SNIPPETS[language])
		await page.keyboard.press("Control+S")
		await asyncio.sleep(self.timings.settle / 4)
		await page.keyboard.insert_text(filename)
		await page.keyboard.press("Enter")
		await asyncio.sleep(self.timings.settle)

	async def _diagnostic_snapshot(self, page: Any, label: str) -> Optional[str]:
		self.staging_dir.mkdir(parents=True, exist_ok=True)
		stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S%f")
		path = self.staging_dir / f"debug-{label}-{stamp}.jpeg"
		try:
			await page.screenshot(path=str(path), full_page=True, type="jpeg")
		except PlaywrightError as e:
			logger.debug("Diagnostic snapshot failed: %s", e)
			return None
		return str(path)
