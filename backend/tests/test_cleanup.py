import os
import subprocess
import sys
import time
from datetime import timedelta

import psutil

from proctor.cleanup import PsutilProcessTable, purge_stale_staging, sweep_stray_browsers


class StaticTable:
	system = "linux"

	def __init__(self, procs):
		self.procs = procs

	def candidates(self):
		return iter(self.procs)


def test_sweep_with_nothing_to_do():
	report = sweep_stray_browsers(StaticTable([]))
	assert report.matched == 0
	assert report.pids == []
	assert report.errors == []


def test_sweep_terminates_matched_processes():
	child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
	try:
		report = sweep_stray_browsers(StaticTable([psutil.Process(child.pid)]), grace_seconds=5)
		assert report.matched == 1
		assert report.pids == [child.pid]
		assert report.terminated + report.killed == 1
	finally:
		if child.poll() is None:
			child.kill()
		child.wait(timeout=5)


def test_process_table_knows_each_platforms_browser_names():
	assert "chrome.exe" in PsutilProcessTable("Windows").names
	assert "headless_shell" in PsutilProcessTable("Darwin").names
	assert "chromium" in PsutilProcessTable("Linux").names
	assert PsutilProcessTable("Plan9").names == PsutilProcessTable("Linux").names


def test_process_table_ignores_this_process():
	pids = [p.pid for p in PsutilProcessTable().candidates()]
	assert os.getpid() not in pids


def test_purge_only_removes_stale_images(tmp_path):
	stale = tmp_path / "user-1-js-manual-a.jpg"
	fresh = tmp_path / "user-1-js-manual-b.jpg"
	notes = tmp_path / "notes.txt"
	for path in (stale, fresh, notes):
		path.write_bytes(b"x")
	old = time.time() - 3 * 24 * 3600
	os.utime(stale, (old, old))
	os.utime(notes, (old, old))

	removed = purge_stale_staging(str(tmp_path), timedelta(days=1))

	assert removed == 1
	assert not stale.exists()
	assert fresh.exists() and notes.exists()


def test_purge_of_missing_directory_is_a_noop(tmp_path):
	assert purge_stale_staging(str(tmp_path / "missing")) == 0
