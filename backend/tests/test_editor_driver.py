from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import FAST_TIMINGS, FakePage, PRIME_SNAPSHOT, WELCOME_SNAPSHOT
from proctor.editor_driver import (
	EditorSnapshot,
	RemoteEditorDriver,
	TrustMatcher,
	default_trust_matchers,
	detect_content,
	first_match,
	pick_source_file,
)
from proctor.errors import NavigationError
from proctor.languages import SAMPLE_SNIPPETS, Language


def test_function_in_view_lines_counts_as_content():
	probe = detect_content(EditorSnapshot.model_validate(PRIME_SNAPSHOT))
	assert probe.found
	assert probe.kind == "monaco-code"
	assert "isPrime" in probe.excerpt


def test_welcome_placeholders_are_not_content():
	probe = detect_content(EditorSnapshot.model_validate(WELCOME_SNAPSHOT))
	assert not probe.found
	assert probe.kind == "none"


def test_terminal_output_is_a_last_resort():
	snapshot = EditorSnapshot(view_lines=[], terminals=["$ node main.js\nisPrime(7): true"])
	probe = detect_content(snapshot)
	assert probe.found and probe.kind == "terminal"


def test_source_files_are_preferred_over_docs():
	assert pick_source_file(["README.md", "package.json", "main.js"]) == "main.js"
	assert pick_source_file(["README.md"]) == "README.md"
	assert pick_source_file(["Makefile"]) is None


class Exploding(TrustMatcher):
	name = "exploding"

	async def __call__(self, page):
		raise PlaywrightError("Execution context was destroyed")


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", ["aria-label", "text", "xpath", "shadow-dom", "element-text"])
async def test_every_matcher_in_the_chain_can_accept_trust(strategy):
	page = FakePage(trust_via=strategy)
	assert await first_match(page, default_trust_matchers()) == strategy
	assert "trust" in page.clicks


@pytest.mark.asyncio
async def test_matcher_errors_fall_through_to_the_next_matcher():
	page = FakePage(trust_via="xpath")
	assert await first_match(page, [Exploding()] + default_trust_matchers()) == "xpath"


@pytest.mark.asyncio
async def test_prepare_logs_in_trusts_and_opens_a_source_file(tmp_path):
	page = FakePage(password=True, trust_via="text", tabs=[], explorer=["README.md", "main.js"])
	driver = RemoteEditorDriver(FAST_TIMINGS, credential="cs1234", staging_dir=str(tmp_path))

	report = await driver.prepare(page, "http://localhost:41000", Language.JAVASCRIPT)

	assert page.visited == ["http://localhost:41000"]
	assert page.filled == ["cs1234"]
	assert "Enter" in page.keyboard.pressed
	assert report.authenticated and report.trusted
	assert report.trust_matcher == "text"
	assert report.file_state == "opened"
	assert page.tabs == ["main.js"]
	assert report.content.found
	assert report.soft_failures == []


@pytest.mark.asyncio
async def test_prepare_creates_a_sample_file_when_the_workspace_is_empty(tmp_path):
	page = FakePage(tabs=["Welcome"], explorer=[], trust_via="aria-label")
	driver = RemoteEditorDriver(FAST_TIMINGS, staging_dir=str(tmp_path))

	report = await driver.prepare(page, "http://localhost:41001", Language.PYTHON)

	assert report.file_state == "created"
	assert page.keyboard.inserted == [SAMPLE_SNIPPETS[Language.PYTHON], "student_work.py"]
	assert page.keyboard.pressed[:2] == ["Control+N", "Control+S"]


@pytest.mark.asyncio
async def test_missing_trust_dialog_leaves_a_diagnostic_snapshot(tmp_path):
	page = FakePage(trust_via=None)
	driver = RemoteEditorDriver(FAST_TIMINGS, staging_dir=str(tmp_path))

	report = await driver.prepare(page, "http://localhost:41002", Language.JAVA)

	assert report.trusted is False
	assert report.diagnostic_path is not None
	assert Path(report.diagnostic_path).exists()
	assert report.file_state == "existing-tab"


@pytest.mark.asyncio
async def test_placeholder_only_page_still_prepares(tmp_path):
	page = FakePage(snapshot=WELCOME_SNAPSHOT, trust_via="text")
	driver = RemoteEditorDriver(FAST_TIMINGS, staging_dir=str(tmp_path))

	report = await driver.prepare(page, "http://localhost:41003")

	assert report.content.found is False


@pytest.mark.asyncio
async def test_navigation_failure_is_a_hard_error(tmp_path):
	page = FakePage(goto_error=PlaywrightError("net::ERR_CONNECTION_REFUSED"))
	driver = RemoteEditorDriver(FAST_TIMINGS, staging_dir=str(tmp_path))

	with pytest.raises(NavigationError):
		await driver.prepare(page, "http://localhost:1")
