"""Per-user ephemeral code-editor containers.

One code-server container per user, started from the image of the chosen
language and tracked by owner so that a new request replaces the previous
instance instead of leaking it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
import time
from collections import defaultdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import docker
import httpx
from docker.errors import APIError, DockerException, NotFound
from pydantic import BaseModel

from .errors import ProvisionFailedError, ProvisionTimeoutError
from .languages import Language, image_for, parse_language
from .settings import settings

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
	REQUESTED = "requested"
	STARTING = "starting"
	READY = "ready"
	STOPPING = "stopping"
	GONE = "gone"


_TRANSITIONS: Dict[SessionState, set] = {
	SessionState.REQUESTED: {SessionState.STARTING},
	# Starting -> Gone only on provisioning failure
	SessionState.STARTING: {SessionState.READY, SessionState.STOPPING, SessionState.GONE},
	SessionState.READY: {SessionState.STOPPING},
	SessionState.STOPPING: {SessionState.GONE},
	SessionState.GONE: set(),
}


class WorkspaceSession(BaseModel):
	user_id: str
	language: Language
	container_name: str
	host_port: int
	editor_url: str
	instance_id: Optional[str] = None
	state: SessionState = SessionState.REQUESTED
	created_at: datetime

	def advance(self, state: SessionState) -> None:
		if state not in _TRANSITIONS[self.state]:
			raise ValueError(f"illegal workspace transition {self.state.value} -> {state.value}")
		self.state = state


class WorkspaceListener(Protocol):
	def session_started(self, session: WorkspaceSession) -> None: ...

	def session_ended(self, session: WorkspaceSession) -> None: ...


def find_free_port(host: str = "127.0.0.1") -> int:
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
		s.bind((host, 0))
		return s.getsockname()[1]


def _container_name(user_id: str) -> str:
	safe = re.sub(r"[^a-zA-Z0-9_.-]", "-", user_id) or "user"
	return f"codespace_{safe}_{int(time.time() * 1000)}"


class WorkspaceProvisioner:
	def __init__(
		self,
		client: Any = None,
		*,
		http_client: Optional[httpx.AsyncClient] = None,
		timeout: Optional[float] = None,
		template_dir: Optional[str] = None,
		port_allocator=find_free_port,
	) -> None:
		self._client = client
		self._http = http_client
		self.timeout = settings.provision_timeout_seconds if timeout is None else timeout
		self.template_dir = Path(template_dir or settings.template_workspace_dir).resolve()
		self._allocate_port = port_allocator
		self._sessions: Dict[str, WorkspaceSession] = {}
		self._by_user: Dict[str, List[str]] = {}
		self._user_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
		self._listeners: List[WorkspaceListener] = []

	@property
	def client(self) -> Any:
		if self._client is None:
			if settings.docker_base_url:
				self._client = docker.DockerClient(base_url=settings.docker_base_url)
			else:
				self._client = docker.from_env()
		return self._client

	def add_listener(self, listener: WorkspaceListener) -> None:
		self._listeners.append(listener)

	# ------------------------------------------------------------------ queries

	def session_for(self, user_id: str) -> Optional[WorkspaceSession]:
		for instance_id in reversed(self._by_user.get(user_id, [])):
			session = self._sessions.get(instance_id)
			if session and session.state in (SessionState.READY, SessionState.STARTING):
				return session
		return None

	def sessions(self) -> List[WorkspaceSession]:
		return [s for s in self._sessions.values() if s.state == SessionState.READY]

	def live_instances(self, user_id: str) -> List[str]:
		return list(self._by_user.get(user_id, []))

	# --------------------------------------------------------------- operations

	async def provision(self, user_id: str, language: str | Language) -> WorkspaceSession:
		lang = language if isinstance(language, Language) else parse_language(language)
		async with self._user_locks[user_id]:
			await self._release_user(user_id)

			host_port = self._allocate_port()
			session = WorkspaceSession(
				user_id=user_id,
				language=lang,
				container_name=_container_name(user_id),
				host_port=host_port,
				editor_url=f"http://{settings.editor_host}:{host_port}",
				created_at=datetime.utcnow(),
			)
			session.advance(SessionState.STARTING)
			try:
				container = await asyncio.to_thread(self._start_container, session)
			except DockerException as e:
				session.advance(SessionState.GONE)
				logger.error("Failed to start %s workspace for user %s: %s", lang.value, user_id, e)
				raise ProvisionFailedError(f"Failed to start workspace container: {e}") from e

			session.instance_id = container.id
			mapped = await asyncio.to_thread(self._mapped_port, container)
			if mapped and mapped != host_port:
				session.host_port = mapped
				session.editor_url = f"http://{settings.editor_host}:{mapped}"
			self._track(session)
			logger.info("Workspace %s for user %s starting at %s", session.instance_id, user_id, session.editor_url)

			# On timeout the instance stays tracked (and running) so a later release can reap it
			await self._wait_reachable(session)
			session.advance(SessionState.READY)
			logger.info("Workspace %s ready (%s)", session.instance_id, lang.value)
			for listener in self._listeners:
				listener.session_started(session)
			return session

	async def release(self, instance_id: str) -> bool:
		"""Stop and remove an instance. Returns False when it was already gone."""
		session = self._sessions.get(instance_id)
		if session and session.state in (SessionState.READY, SessionState.STARTING):
			session.advance(SessionState.STOPPING)
		try:
			existed = await asyncio.to_thread(self._stop_container, instance_id)
		except DockerException as e:
			logger.error("Failed to stop workspace %s: %s", instance_id, e)
			raise ProvisionFailedError(f"Failed to stop workspace {instance_id}: {e}") from e
		self._untrack(instance_id)
		if existed:
			logger.info("Stopped workspace %s", instance_id)
		else:
			logger.info("Workspace %s was already stopped", instance_id)
		return existed

	async def release_user(self, user_id: str) -> None:
		async with self._user_locks[user_id]:
			await self._release_user(user_id)

	async def _release_user(self, user_id: str) -> None:
		# Caller holds the user lock; _untrack drops each released id from _by_user
		for instance_id in self.live_instances(user_id):
			try:
				await self.release(instance_id)
			except ProvisionFailedError as e:
				logger.warning("Workspace %s of user %s may already be stopped: %s", instance_id, user_id, e)
				self._untrack(instance_id)

	async def release_all(self) -> Dict[str, str]:
		"""Release every tracked instance; failures are collected, never raised."""
		failures: Dict[str, str] = {}
		instance_ids = list(self._sessions.keys())
		logger.info("Releasing %d workspace(s)", len(instance_ids))
		for instance_id in instance_ids:
			try:
				await self.release(instance_id)
			except Exception as e:
				failures[instance_id] = str(e)
				self._untrack(instance_id)
		if failures:
			logger.warning("Workspace shutdown sweep had %d failure(s): %s", len(failures), failures)
		return failures

	# ----------------------------------------------------------------- internals

	def _ensure_template(self) -> Path:
		if not self.template_dir.exists():
			self.template_dir.mkdir(parents=True, exist_ok=True)
			(self.template_dir / "README.md").write_text("# Welcome to your workspace\n", encoding="utf-8")
		return self.template_dir

	def _start_container(self, session: WorkspaceSession) -> Any:
		port = settings.editor_container_port
		project = settings.editor_project_path
		template = self._ensure_template()
		return self.client.containers.run(
			image_for(session.language),
			command=["code-server", "--bind-addr", f"0.0.0.0:{port}", "--auth", "none", project],
			name=session.container_name,
			detach=True,
			tty=True,
			ports={f"{port}/tcp": session.host_port},
			environment={"CS_DISABLE_IFRAME_PROTECTION": "true"},
			# Mounted at the path code-server already trusts
			volumes={str(template): {"bind": project, "mode": "rw"}},
			labels={"proctor.user": session.user_id, "proctor.language": session.language.value},
			auto_remove=True,
		)

	def _mapped_port(self, container: Any) -> Optional[int]:
		try:
			container.reload()
			ports = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
			binding = ports.get(f"{settings.editor_container_port}/tcp") or []
			return int(binding[0]["HostPort"]) if binding else None
		except (DockerException, KeyError, ValueError, TypeError) as e:
			logger.debug("Could not read mapped port of %s: %s", getattr(container, "id", "?"), e)
			return None

	def _stop_container(self, instance_id: str) -> bool:
		try:
			container = self.client.containers.get(instance_id)
		except NotFound:
			return False
		try:
			container.stop(timeout=5)
		except NotFound:
			return False
		try:
			container.remove(force=True)
		except NotFound:
			pass
		except APIError as e:
			# 409: auto-remove already in progress
			if e.status_code != 409:
				raise
		return True

	async def _wait_reachable(self, session: WorkspaceSession) -> None:
		loop = asyncio.get_running_loop()
		deadline = loop.time() + self.timeout
		delay = 0.25
		client = self._http or httpx.AsyncClient(timeout=2.0)
		try:
			while True:
				try:
					r = await client.get(session.editor_url)
					if r.status_code < 500:
						return
				except httpx.HTTPError:
					pass
				remaining = deadline - loop.time()
				if remaining <= 0:
					logger.error(
						"Workspace %s for user %s not reachable at %s after %.0fs",
						session.instance_id, session.user_id, session.editor_url, self.timeout,
					)
					raise ProvisionTimeoutError(
						f"Workspace did not become reachable at {session.editor_url} within {self.timeout:.0f}s"
					)
				await asyncio.sleep(min(delay, remaining))
				delay = min(delay * 2, 2.0)
		finally:
			if self._http is None:
				await client.aclose()

	def _track(self, session: WorkspaceSession) -> None:
		self._sessions[session.instance_id] = session
		self._by_user.setdefault(session.user_id, []).append(session.instance_id)

	def _untrack(self, instance_id: str) -> None:
		session = self._sessions.pop(instance_id, None)
		if session is None:
			return
		ids = self._by_user.get(session.user_id)
		if ids and instance_id in ids:
			ids.remove(instance_id)
			if not ids:
				self._by_user.pop(session.user_id, None)
		if session.state == SessionState.STARTING:
			session.advance(SessionState.STOPPING)
		if session.state == SessionState.STOPPING:
			session.advance(SessionState.GONE)
		for listener in self._listeners:
			listener.session_ended(session)
