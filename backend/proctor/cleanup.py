from __future__ import annotations

import logging
import os
import platform
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol

import psutil
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Only automation-launched browsers carry these flags; a user's own browser is left alone
AUTOMATION_MARKERS = ("--remote-debugging-pipe", "--remote-debugging-port", "--headless")

_BROWSER_NAMES = {
	"windows": ("chrome.exe", "chromium.exe", "headless_shell.exe"),
	"darwin": ("chromium", "google chrome", "chrome", "headless_shell"),
	"linux": ("chrome", "chromium", "chromium-browser", "headless_shell"),
}


class SweepReport(BaseModel):
	platform: str
	matched: int = 0
	terminated: int = 0
	killed: int = 0
	pids: List[int] = Field(default_factory=list)
	errors: List[str] = Field(default_factory=list)


class ProcessTable(Protocol):
	def candidates(self) -> Iterable[psutil.Process]: ...


class PsutilProcessTable:
	"""Stray automation browsers of the current platform, found by name and command line."""

	def __init__(self, system: Optional[str] = None) -> None:
		self.system = (system or platform.system()).lower()
		self.names = _BROWSER_NAMES.get(self.system, _BROWSER_NAMES["linux"])

	def candidates(self) -> Iterable[psutil.Process]:
		own = os.getpid()
		for proc in psutil.process_iter(["pid", "name", "cmdline"]):
			try:
				name = (proc.info["name"] or "").lower()
				cmdline = " ".join(proc.info["cmdline"] or [])
				if proc.info["pid"] == own:
					continue
				if not any(name.startswith(n) for n in self.names):
					continue
				if any(marker in cmdline for marker in AUTOMATION_MARKERS):
					yield proc
			except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
				continue


def sweep_stray_browsers(table: Optional[ProcessTable] = None, grace_seconds: float = 3.0) -> SweepReport:
	"""Terminate orphaned automation browsers; survivors of the grace period are killed."""
	table = table or PsutilProcessTable()
	report = SweepReport(platform=getattr(table, "system", platform.system().lower()))
	procs = []
	for proc in table.candidates():
		report.matched += 1
		report.pids.append(proc.pid)
		try:
			proc.terminate()
			procs.append(proc)
		except (psutil.NoSuchProcess, psutil.ZombieProcess):
			continue
		except psutil.AccessDenied as e:
			report.errors.append(f"{proc.pid}: {e}")
	if procs:
		gone, alive = psutil.wait_procs(procs, timeout=grace_seconds)
		report.terminated = len(gone)
		for proc in alive:
			try:
				proc.kill()
				report.killed += 1
			except psutil.NoSuchProcess:
				report.terminated += 1
			except psutil.AccessDenied as e:
				report.errors.append(f"{proc.pid}: {e}")
	logger.info(
		"Browser sweep on %s: matched=%d terminated=%d killed=%d errors=%d",
		report.platform, report.matched, report.terminated, report.killed, len(report.errors),
	)
	return report


def purge_stale_staging(staging_dir: str, older_than: timedelta = timedelta(days=1), now: Optional[Callable[[], float]] = None) -> int:
	"""Delete staging images older than ``older_than``; files kept after a failed persist end up here."""
	root = Path(staging_dir)
	if not root.is_dir():
		return 0
	threshold = (now or time.time)() - older_than.total_seconds()
	removed = 0
	for path in root.iterdir():
		if not path.is_file() or path.suffix.lower() not in (".jpg", ".jpeg", ".png"):
			continue
		try:
			if path.stat().st_mtime < threshold:
				path.unlink()
				removed += 1
		except OSError as e:
			logger.warning("Could not purge staging file %s: %s", path, e)
	logger.info("Purged %d staging file(s) older than %s from %s", removed, older_than, root)
	return removed
