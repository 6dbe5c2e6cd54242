import asyncio

import pytest
from docker.errors import APIError, DockerException

from conftest import readiness_client
from proctor.errors import ProvisionFailedError, ProvisionTimeoutError, UnsupportedLanguageError
from proctor.languages import Language
from proctor.workspace import SessionState, WorkspaceProvisioner, WorkspaceSession


class RecordingListener:
	def __init__(self):
		self.started = []
		self.ended = []

	def session_started(self, session):
		self.started.append(session.instance_id)

	def session_ended(self, session):
		self.ended.append(session.instance_id)


@pytest.mark.asyncio
async def test_provision_starts_code_server_and_returns_reachable_url(provisioner, docker_client, tmp_path):
	session = await provisioner.provision("alice", "JavaScript")

	assert session.state == SessionState.READY
	assert session.editor_url == "http://localhost:41000"
	run = docker_client.containers.runs[0]
	assert run["image"] == "codespace-javascript"
	assert run["command"][:3] == ["code-server", "--bind-addr", "0.0.0.0:8080"]
	assert "--auth" in run["command"] and "none" in run["command"]
	assert run["environment"] == {"CS_DISABLE_IFRAME_PROTECTION": "true"}
	assert run["auto_remove"] is True
	assert (tmp_path / "template-workspace" / "README.md").exists()
	assert provisioner.session_for("alice") is session


@pytest.mark.asyncio
@pytest.mark.parametrize(
	"label, image",
	[("JavaScript", "codespace-javascript"), ("python", "codespace-python"), ("Java", "codespace-java"), ("c++", "codespace-cpp")],
)
async def test_each_supported_language_uses_its_image(provisioner, docker_client, label, image):
	session = await provisioner.provision("bob", label)
	assert docker_client.containers.runs[-1]["image"] == image
	assert session.language in set(Language)


@pytest.mark.asyncio
async def test_second_provision_replaces_the_first(provisioner, docker_client):
	first = await provisioner.provision("alice", "Python")
	second = await provisioner.provision("alice", "Java")

	old = docker_client.containers.runs[0]
	assert first.state == SessionState.GONE
	assert first.instance_id not in docker_client.containers.live
	assert provisioner.live_instances("alice") == [second.instance_id]
	assert [s.instance_id for s in provisioner.sessions()] == [second.instance_id]
	assert old["name"] != docker_client.containers.runs[1]["name"]


@pytest.mark.asyncio
async def test_stop_then_reprovision_keeps_the_new_workspace(provisioner, docker_client):
	first = await provisioner.provision("alice", "Python")
	docker_client.containers.live[first.instance_id].stop_delay = 0.2

	_, second = await asyncio.gather(
		provisioner.release_user("alice"),
		provisioner.provision("alice", "Java"),
	)

	assert first.state == SessionState.GONE
	assert second.state == SessionState.READY
	assert provisioner.session_for("alice") is second
	assert provisioner.live_instances("alice") == [second.instance_id]
	assert list(docker_client.containers.live) == [second.instance_id]


@pytest.mark.asyncio
async def test_overlapping_provision_and_stop_leave_no_orphans(provisioner, docker_client):
	first = await provisioner.provision("alice", "Python")
	docker_client.containers.live[first.instance_id].stop_delay = 0.2

	await asyncio.gather(
		provisioner.provision("alice", "Java"),
		provisioner.release_user("alice"),
	)
	assert sorted(docker_client.containers.live) == sorted(provisioner.live_instances("alice"))

	third = await provisioner.provision("alice", "C++")

	assert list(docker_client.containers.live) == [third.instance_id]
	assert provisioner.session_for("alice") is third


@pytest.mark.asyncio
async def test_unsupported_language_provisions_and_destroys_nothing(provisioner, docker_client):
	existing = await provisioner.provision("alice", "Python")

	with pytest.raises(UnsupportedLanguageError) as exc:
		await provisioner.provision("alice", "COBOL")

	assert exc.value.http_status == 400
	assert len(docker_client.containers.runs) == 1
	assert provisioner.session_for("alice") is existing
	assert existing.state == SessionState.READY


@pytest.mark.asyncio
async def test_release_is_idempotent(provisioner):
	session = await provisioner.provision("carol", "C++")

	assert await provisioner.release(session.instance_id) is True
	assert await provisioner.release(session.instance_id) is False
	assert provisioner.session_for("carol") is None


@pytest.mark.asyncio
async def test_unreachable_editor_times_out_and_stays_tracked(docker_client, tmp_path):
	provisioner = WorkspaceProvisioner(
		docker_client,
		http_client=readiness_client(refuse=True),
		timeout=0.3,
		template_dir=str(tmp_path / "tpl"),
		port_allocator=lambda: 42000,
	)

	with pytest.raises(ProvisionTimeoutError):
		await provisioner.provision("dave", "Python")

	ids = provisioner.live_instances("dave")
	assert len(ids) == 1
	assert provisioner.session_for("dave").state == SessionState.STARTING
	# a later release reaps the orphan
	assert await provisioner.release(ids[0]) is True
	assert provisioner.live_instances("dave") == []


@pytest.mark.asyncio
async def test_server_errors_do_not_count_as_reachable(docker_client, tmp_path):
	provisioner = WorkspaceProvisioner(
		docker_client,
		http_client=readiness_client(status=502),
		timeout=0.3,
		template_dir=str(tmp_path / "tpl"),
		port_allocator=lambda: 42001,
	)
	with pytest.raises(ProvisionTimeoutError):
		await provisioner.provision("erin", "Java")


@pytest.mark.asyncio
async def test_engine_failure_raises_provision_failed(provisioner, docker_client):
	docker_client.containers.run_error = DockerException("image not found")

	with pytest.raises(ProvisionFailedError):
		await provisioner.provision("frank", "JavaScript")

	assert provisioner.live_instances("frank") == []


@pytest.mark.asyncio
async def test_release_all_collects_failures(provisioner, docker_client):
	ok = await provisioner.provision("u1", "Python")
	bad = await provisioner.provision("u2", "Python")
	docker_client.containers.live[bad.instance_id].stop_error = APIError("daemon hiccup")

	failures = await provisioner.release_all()

	assert list(failures) == [bad.instance_id]
	assert ok.state == SessionState.GONE
	assert provisioner.sessions() == []


@pytest.mark.asyncio
async def test_listeners_follow_the_lifecycle(provisioner):
	listener = RecordingListener()
	provisioner.add_listener(listener)

	session = await provisioner.provision("gina", "Python")
	await provisioner.release_user("gina")

	assert listener.started == [session.instance_id]
	assert listener.ended == [session.instance_id]


def test_illegal_transition_is_rejected():
	from datetime import datetime

	session = WorkspaceSession(
		user_id="x",
		language=Language.PYTHON,
		container_name="c",
		host_port=1,
		editor_url="http://localhost:1",
		created_at=datetime.utcnow(),
	)
	with pytest.raises(ValueError):
		session.advance(SessionState.READY)
