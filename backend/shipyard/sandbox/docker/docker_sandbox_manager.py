"""Docker-based sandbox manager.

Each session gets one container named after the session id. All metadata the
manager needs later (project, mode, branch, route) lives in container labels,
so the manager itself is stateless and any process can pick up a sandbox
created by another one.

The agent inside the container is reached by container name over the shared
SANDBOX_NETWORK. Only FULL sandboxes expose the preview app to the outside,
through the configured RoutingStrategy.
"""

import time
from collections.abc import Callable
from typing import Any

import httpx
from docker import DockerClient
from docker.errors import APIError
from docker.errors import NotFound
from docker.models.containers import Container

from shipyard.db.enums import SandboxMode
from shipyard.db.enums import SandboxStatus
from shipyard.db.enums import ServicesMode
from shipyard.sandbox.agent_client import AgentClientError
from shipyard.sandbox.agent_client import SandboxAgentClient
from shipyard.sandbox.base import SandboxCommandTimeoutError
from shipyard.sandbox.base import SandboxManager
from shipyard.sandbox.base import SandboxNotFoundError
from shipyard.sandbox.configs import AGENT_HEALTH_MAX_ATTEMPTS
from shipyard.sandbox.configs import AGENT_HEALTH_POLL_INTERVAL_SECONDS
from shipyard.sandbox.configs import AGENT_HEALTH_REQUEST_TIMEOUT_SECONDS
from shipyard.sandbox.configs import SANDBOX_AGENT_PORT
from shipyard.sandbox.configs import SANDBOX_COMMAND_POLL_INTERVAL_SECONDS
from shipyard.sandbox.configs import SANDBOX_CPU_SHARES
from shipyard.sandbox.configs import SANDBOX_DESTROY_STOP_TIMEOUT_SECONDS
from shipyard.sandbox.configs import SANDBOX_IMAGE
from shipyard.sandbox.configs import SANDBOX_MEMORY_LIMIT
from shipyard.sandbox.configs import SANDBOX_NETWORK
from shipyard.sandbox.configs import SANDBOX_PIDS_LIMIT
from shipyard.sandbox.configs import SANDBOX_STOP_TIMEOUT_SECONDS
from shipyard.sandbox.database import DatabaseProvisioner
from shipyard.sandbox.models import DestroyResult
from shipyard.sandbox.models import LABEL_PROJECT_ID
from shipyard.sandbox.models import LABEL_TYPE
from shipyard.sandbox.models import SANDBOX_LABEL_TYPE
from shipyard.sandbox.models import SandboxCreateOptions
from shipyard.sandbox.models import SandboxInfo
from shipyard.sandbox.models import SandboxRecord
from shipyard.sandbox.naming import sandbox_container_name
from shipyard.sandbox.routing import RoutingStrategy
from shipyard.utils.logger import setup_logger

logger = setup_logger()

# Environment variables understood by the sandbox image entrypoint
ENV_REPO_URL = "SHIPYARD_REPO_URL"
ENV_BRANCH = "SHIPYARD_BRANCH"
ENV_GITHUB_TOKEN = "SHIPYARD_GITHUB_TOKEN"
ENV_MODE = "SHIPYARD_MODE"
ENV_SERVICES_MODE = "SHIPYARD_SERVICES_MODE"
ENV_POSTGRES_URL = "SHIPYARD_POSTGRES_URL"
ENV_EXTERNAL_URL = "SHIPYARD_EXTERNAL_URL"
ENV_AGENT_PORT = "SHIPYARD_AGENT_PORT"

_CONTAINER_STATUS_MAP = {
    "running": SandboxStatus.RUNNING,
    "restarting": SandboxStatus.RUNNING,
    "created": SandboxStatus.STOPPED,
    "exited": SandboxStatus.STOPPED,
    "paused": SandboxStatus.STOPPED,
    "dead": SandboxStatus.ERROR,
}


class DockerSandboxManager(SandboxManager):
    """SandboxManager backed by a local or remote Docker daemon.

    All collaborators are injected; see get_sandbox_manager() for the wiring
    used in production.
    """

    def __init__(
        self,
        docker_client: DockerClient,
        provisioner: DatabaseProvisioner,
        routing: RoutingStrategy,
        agent_client_factory: Callable[[str], SandboxAgentClient] | None = None,
        image: str = SANDBOX_IMAGE,
        network: str = SANDBOX_NETWORK,
        agent_port: int = SANDBOX_AGENT_PORT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._docker = docker_client
        self._provisioner = provisioner
        self._routing = routing
        self._agent_client_factory = agent_client_factory or SandboxAgentClient
        self._image = image
        self._network = network
        self._agent_port = agent_port
        self._sleep = sleep
        self._clock = clock

    # --- Lookups ---

    def _find_container(self, session_id: str) -> Container | None:
        try:
            return self._docker.containers.get(sandbox_container_name(session_id))
        except NotFound:
            return None

    def _get_container(self, session_id: str) -> Container:
        container = self._find_container(session_id)
        if container is None:
            raise SandboxNotFoundError(session_id)
        return container

    def _to_info(self, container: Container) -> SandboxInfo:
        record = SandboxRecord.from_labels(container.labels)
        status = _CONTAINER_STATUS_MAP.get(container.status, SandboxStatus.ERROR)
        exit_code: int | None = None

        if record.services_mode == ServicesMode.COMMAND and container.status in (
            "exited",
            "dead",
        ):
            exit_code = _exit_code(container)
            status = (
                SandboxStatus.COMPLETED if exit_code == 0 else SandboxStatus.ERROR
            )

        return SandboxInfo(
            session_id=record.session_id,
            project_id=record.project_id,
            container_id=container.id,
            name=container.name,
            mode=record.mode,
            services_mode=record.services_mode,
            branch=record.branch,
            status=status,
            url=record.url,
            exit_code=exit_code,
        )

    def get(self, session_id: str) -> SandboxInfo | None:
        container = self._find_container(session_id)
        if container is None:
            return None
        return self._to_info(container)

    def get_agent_client(self, session_id: str) -> SandboxAgentClient:
        return self._agent_client_factory(self._agent_url(session_id))

    def _agent_url(self, session_id: str) -> str:
        return f"http://{sandbox_container_name(session_id)}:{self._agent_port}"

    # --- Create ---

    def create(self, options: SandboxCreateOptions) -> SandboxInfo:
        container_name = sandbox_container_name(options.session_id)
        existing = self._find_container(options.session_id)

        if options.services_mode == ServicesMode.COMMAND:
            if existing is not None:
                logger.info(
                    f"Removing previous command sandbox {container_name}",
                    session_id=options.session_id,
                )
                existing.remove(force=True, v=True)
        elif existing is not None:
            reused = self._reuse_existing(existing, options)
            if reused is not None:
                return reused

        container = self._create_container(options, container_name)

        if options.services_mode == ServicesMode.COMMAND:
            return self._run_to_completion(container, options)

        if not self.wait_for_agent(options.session_id):
            logger.warning(
                f"Sandbox {container_name} started but the agent is not ready yet",
                session_id=options.session_id,
            )
        return self._to_info(container)

    def _reuse_existing(
        self, container: Container, options: SandboxCreateOptions
    ) -> SandboxInfo | None:
        """Decide what to do with an existing container.

        Returns the sandbox info when the container can be reused, None when
        the caller must create a new container.
        """
        container_name = container.name
        container.reload()

        if container.status == "running":
            logger.info(
                f"Sandbox {container_name} already running, reusing",
                session_id=options.session_id,
            )
            return self._to_info(container)

        existing_mode = SandboxRecord.from_labels(container.labels).mode
        if existing_mode == SandboxMode.PRODUCTION:
            # A production preview must be rebuilt from scratch
            logger.info(
                f"Removing stopped production sandbox {container_name} "
                "for a fresh build",
                session_id=options.session_id,
            )
            container.remove(force=True, v=True)
            return None

        try:
            logger.info(
                f"Restarting stopped sandbox {container_name}",
                session_id=options.session_id,
            )
            container.restart(timeout=SANDBOX_STOP_TIMEOUT_SECONDS)
            if self.wait_for_agent(options.session_id) and options.credential:
                self._pull(options.session_id, options.branch, options.credential)
            container.reload()
            return self._to_info(container)
        except (APIError, AgentClientError, httpx.HTTPError) as e:
            logger.warning(
                f"Failed to restart sandbox {container_name}, recreating: {e}",
                session_id=options.session_id,
            )

        try:
            container.remove(force=True, v=True)
        except NotFound:
            pass
        return None

    def _create_container(
        self, options: SandboxCreateOptions, container_name: str
    ) -> Container:
        try:
            logger.info(f"Pulling sandbox image {self._image}")
            self._docker.images.pull(self._image)
        except APIError as e:
            logger.warning(f"Failed to pull image {self._image}, using local: {e}")

        postgres_url = self._provisioner.create_database(options.session_id)
        route = self._routing.prepare(options.session_id, options.services_mode)

        record = SandboxRecord(
            session_id=options.session_id,
            project_id=options.project_id,
            mode=options.mode,
            services_mode=options.services_mode,
            branch=options.branch,
            url=route.url,
            host_port=route.host_port,
            repo_url=options.repo_url,
        )
        labels = {**record.to_labels(), **route.labels}

        environment = {
            ENV_REPO_URL: options.repo_url or "",
            ENV_BRANCH: options.branch or "",
            ENV_GITHUB_TOKEN: options.credential or "",
            ENV_MODE: options.mode.value,
            ENV_SERVICES_MODE: options.services_mode.value,
            ENV_POSTGRES_URL: postgres_url,
            ENV_EXTERNAL_URL: route.url or "",
            ENV_AGENT_PORT: str(self._agent_port),
        }
        if options.services_mode == ServicesMode.COMMAND:
            environment.update(options.command_env)

        create_kwargs: dict[str, Any] = {
            "image": self._image,
            "name": container_name,
            "detach": True,
            "environment": environment,
            "labels": labels,
            "network": self._network,
            "mem_limit": SANDBOX_MEMORY_LIMIT,
            "cpu_shares": SANDBOX_CPU_SHARES,
            "pids_limit": SANDBOX_PIDS_LIMIT,
        }
        if route.port_bindings:
            create_kwargs["ports"] = route.port_bindings
        if options.command:
            create_kwargs["command"] = options.command

        logger.info(
            f"Creating container {container_name}", session_id=options.session_id
        )
        container = self._docker.containers.create(**create_kwargs)
        container.start()
        container.reload()

        logger.notice(
            f"Sandbox {container_name} started, preview url: {route.url}",
            session_id=options.session_id,
        )
        return container

    def _run_to_completion(
        self, container: Container, options: SandboxCreateOptions
    ) -> SandboxInfo:
        """Block until a command container exits, relaying its output."""
        deadline = self._clock() + options.command_timeout
        log_offset = 0

        while True:
            container.reload()
            log_offset = self._relay_logs(container, log_offset, options.session_id)

            if container.status in ("exited", "dead"):
                break

            if self._clock() >= deadline:
                logger.error(
                    f"Command in {container.name} exceeded {options.command_timeout}s, "
                    "stopping",
                    session_id=options.session_id,
                )
                container.stop(timeout=SANDBOX_STOP_TIMEOUT_SECONDS)
                raise SandboxCommandTimeoutError(
                    options.session_id, container.name, options.command_timeout
                )

            self._sleep(SANDBOX_COMMAND_POLL_INTERVAL_SECONDS)

        info = self._to_info(container)
        logger.info(
            f"Command in {container.name} exited with code {info.exit_code}",
            session_id=options.session_id,
        )
        return info

    def _relay_logs(self, container: Container, offset: int, session_id: str) -> int:
        output: bytes = container.logs(stdout=True, stderr=True)
        if len(output) <= offset:
            return offset

        for line in output[offset:].decode("utf-8", errors="replace").splitlines():
            if line:
                logger.info(f"[{container.name}] {line}", session_id=session_id)
        return len(output)

    # --- Stop / restart / destroy ---

    def stop(self, session_id: str) -> None:
        container = self._get_container(session_id)
        logger.info(f"Stopping sandbox {container.name}", session_id=session_id)
        container.stop(timeout=SANDBOX_STOP_TIMEOUT_SECONDS)

    def restart(self, session_id: str, pull: bool = True) -> SandboxInfo:
        container = self._get_container(session_id)
        logger.info(f"Restarting sandbox {container.name}", session_id=session_id)
        container.restart(timeout=SANDBOX_STOP_TIMEOUT_SECONDS)

        if pull:
            record = SandboxRecord.from_labels(container.labels)
            credential = _container_env(container).get(ENV_GITHUB_TOKEN)
            if record.branch and credential and self.wait_for_agent(session_id):
                self._pull(session_id, record.branch, credential)

        container.reload()
        return self._to_info(container)

    def destroy(self, session_id: str) -> None:
        container = self._find_container(session_id)

        try:
            if container is not None:
                try:
                    container.stop(timeout=SANDBOX_DESTROY_STOP_TIMEOUT_SECONDS)
                except APIError as e:
                    logger.debug(f"Ignoring stop failure for {container.name}: {e}")

                container.remove(force=True, v=True)
                logger.info(f"Removed sandbox {container.name}", session_id=session_id)
            else:
                logger.info(
                    "No container for session, dropping database only",
                    session_id=session_id,
                )
        finally:
            # The database goes even when container removal fails
            self._provisioner.drop_database(session_id)

    # --- Agent ---

    def wait_for_agent(
        self, session_id: str, max_attempts: int = AGENT_HEALTH_MAX_ATTEMPTS
    ) -> bool:
        client = self.get_agent_client(session_id)
        try:
            for attempt in range(1, max_attempts + 1):
                health = client.get_health(timeout=AGENT_HEALTH_REQUEST_TIMEOUT_SECONDS)
                if health is not None and health.alive and health.ready:
                    logger.info(
                        f"Agent ready after {attempt} attempt(s)", session_id=session_id
                    )
                    return True

                if attempt < max_attempts:
                    self._sleep(AGENT_HEALTH_POLL_INTERVAL_SECONDS)
        except Exception as e:
            logger.warning(f"Agent health polling failed: {e}", session_id=session_id)
            return False
        finally:
            client.close()

        logger.warning(
            f"Agent not ready after {max_attempts} attempts", session_id=session_id
        )
        return False

    def _pull(self, session_id: str, branch: str | None, credential: str) -> None:
        if not branch:
            return

        client = self.get_agent_client(session_id)
        try:
            result = client.pull(branch, credential)
        finally:
            client.close()

        if result.success:
            logger.info(
                "Code updated: "
                + ("changes pulled" if result.changed else "already up to date"),
                session_id=session_id,
            )
        else:
            logger.warning(f"Pull failed: {result.error}", session_id=session_id)

    def update_sandbox(self, session_id: str, branch: str, credential: str) -> None:
        container = self._get_container(session_id)
        record = SandboxRecord.from_labels(container.labels)

        self._pull(session_id, branch, credential)

        if record.mode == SandboxMode.PRODUCTION:
            logger.info(
                f"Restarting production sandbox {container.name} to rebuild",
                session_id=session_id,
            )
            container.restart(timeout=SANDBOX_STOP_TIMEOUT_SECONDS)

    # --- Project-wide ---

    def _project_containers(self, project_id: str) -> list[Container]:
        return self._docker.containers.list(
            all=True,
            filters={
                "label": [
                    f"{LABEL_TYPE}={SANDBOX_LABEL_TYPE}",
                    f"{LABEL_PROJECT_ID}={project_id}",
                ]
            },
        )

    def list_project_sandboxes(self, project_id: str) -> list[SandboxInfo]:
        sandboxes: list[SandboxInfo] = []
        for container in self._project_containers(project_id):
            try:
                sandboxes.append(self._to_info(container))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping container {container.name}: {e}")
        return sandboxes

    def destroy_all_project_sandboxes(self, project_id: str) -> DestroyResult:
        destroyed = 0
        failed = 0

        for sandbox in self.list_project_sandboxes(project_id):
            try:
                self.destroy(sandbox.session_id)
                destroyed += 1
            except Exception as e:
                logger.error(f"Failed to destroy sandbox {sandbox.name}: {e}")
                failed += 1

        logger.info(
            f"Destroyed {destroyed} sandbox(es) for project {project_id}, "
            f"{failed} failed"
        )
        return DestroyResult(destroyed=destroyed, failed=failed)


def _exit_code(container: Container) -> int | None:
    return container.attrs.get("State", {}).get("ExitCode")


def _container_env(container: Container) -> dict[str, str]:
    env_list = container.attrs.get("Config", {}).get("Env") or []
    env: dict[str, str] = {}
    for entry in env_list:
        key, _, value = entry.partition("=")
        env[key] = value
    return env
