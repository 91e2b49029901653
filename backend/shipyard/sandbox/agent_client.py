"""HTTP client for the agent control API running inside each sandbox.

The agent exposes plain JSON endpoints (health, files, git) plus
Server-Sent-Events endpoints for the plan, build and requirements streams.
Every SSE frame carries an optional `event:` line and a `data:` line; the
stream ends with a literal `data: [DONE]`.

Usage:
    client = SandboxAgentClient("http://shipyard-sandbox_abc:9000")
    health = client.get_health()
    for event in client.stream_plan("Add a login page", cwd="/app/project"):
        print(event["type"], event["data"])
"""

import json
from collections.abc import Generator
from collections.abc import Iterator
from typing import Any

import httpx

from shipyard.sandbox.configs import PLAN_TEST
from shipyard.sandbox.configs import SANDBOX_PROJECT_DIR
from shipyard.sandbox.models import AgentHealth
from shipyard.sandbox.models import FileInfo
from shipyard.sandbox.models import GitPullResult
from shipyard.sandbox.models import GitRevertResult
from shipyard.sandbox.models import RequirementsDocs
from shipyard.utils.logger import setup_logger

logger = setup_logger()

HEALTH_TIMEOUT = 3.0
DEFAULT_TIMEOUT = 30.0
# Plan and build streams stay open while the agent works
STREAM_TIMEOUT = httpx.Timeout(connect=10.0, read=None, write=30.0, pool=10.0)

SSE_DONE = "[DONE]"


class AgentClientError(Exception):
    """The agent answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def parse_sse_lines(lines: Iterator[str]) -> Generator[dict[str, Any], None, None]:
    """Turn raw SSE lines into event dicts.

    Frames with an `event:` line yield {"type": event, "data": payload},
    frames without one yield the decoded payload itself. Frames whose data is
    not valid JSON are logged and skipped. Stops at the [DONE] sentinel.
    """
    event_type: str | None = None
    event_data: str | None = None

    for line in lines:
        if line == "":
            # Blank line terminates a frame
            if event_data:
                if event_data == SSE_DONE:
                    return
                parsed = _decode_sse_data(event_data)
                if parsed is not None:
                    yield {"type": event_type, "data": parsed} if event_type else parsed
            event_type = None
            event_data = None
            continue

        if line.startswith("event:"):
            event_type = line[len("event:") :].strip()
        elif line.startswith("data:"):
            event_data = line[len("data:") :].strip()

    # Trailing frame without a final blank line
    if event_data and event_data != SSE_DONE:
        parsed = _decode_sse_data(event_data)
        if parsed is not None:
            yield {"type": event_type, "data": parsed} if event_type else parsed


def _decode_sse_data(event_data: str) -> Any | None:
    try:
        return json.loads(event_data)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse SSE event {event_data[:200]!r}: {e}")
        return None


class SandboxAgentClient:
    """Typed client for one sandbox's agent.

    The underlying httpx.Client can be injected (tests use httpx.MockTransport);
    otherwise one is created and owned by this instance.
    """

    def __init__(
        self,
        base_url: str,
        http_client: httpx.Client | None = None,
        project_dir: str = SANDBOX_PROJECT_DIR,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=DEFAULT_TIMEOUT)
        self._project_dir = project_dir

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SandboxAgentClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = self._client.request(method, self._url(path), **kwargs)
        if response.is_error:
            raise AgentClientError(
                f"{method} {path} failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    # --- Health ---

    def get_health(self, timeout: float = HEALTH_TIMEOUT) -> AgentHealth | None:
        """Return the agent's health, or None if it cannot be reached."""
        try:
            response = self._client.get(self._url("/agent/health"), timeout=timeout)
            if response.is_error:
                return None
            return AgentHealth.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Agent health check failed for {self.base_url}: {e}")
            return None

    # --- Files ---

    def list_files(self) -> list[FileInfo]:
        response = self._request(
            "POST", "/api/files", json={"cwd": self._project_dir}
        )
        data = response.json()
        entries = data["files"] if isinstance(data, dict) else data
        return [FileInfo.model_validate(entry) for entry in entries]

    def read_file(self, file_path: str) -> str:
        response = self._request(
            "POST",
            "/api/files/read",
            json={"cwd": self._project_dir, "path": file_path.lstrip("/")},
        )
        return response.json()["content"]

    def write_file(self, file_path: str, content: str) -> None:
        self._request(
            "POST",
            "/api/files/write",
            json={
                "cwd": self._project_dir,
                "path": file_path.lstrip("/"),
                "content": content,
            },
        )

    def file_exists(self, file_path: str) -> bool:
        try:
            self.read_file(file_path)
            return True
        except AgentClientError as e:
            if e.status_code == 404:
                return False
            raise

    def get_requirements(self) -> RequirementsDocs:
        response = self._request(
            "POST", "/api/requirements", json={"cwd": self._project_dir}
        )
        return RequirementsDocs.model_validate(response.json())

    # --- Git ---

    def pull(self, branch: str, credential: str) -> GitPullResult:
        response = self._request(
            "POST",
            "/git/pull",
            json={"branch": branch, "githubToken": credential},
            timeout=120.0,
        )
        return GitPullResult.model_validate(response.json())

    def revert(self, commit_sha: str, credential: str) -> GitRevertResult:
        response = self._request(
            "POST",
            "/api/git/revert",
            json={"commitSha": commit_sha, "githubToken": credential},
            timeout=60.0,
        )
        return GitRevertResult.model_validate(response.json())

    # --- Build control ---

    def cancel_build(self, build_id: str) -> bool:
        """Ask the agent to stop the running build. Never raises."""
        try:
            response = self._request(
                "POST", "/api/cancel", json={"buildId": build_id}
            )
            return bool(response.json().get("success", False))
        except (AgentClientError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to cancel build {build_id}: {e}")
            return False

    # --- Streaming ---

    def _stream(
        self, path: str, payload: dict[str, Any]
    ) -> Generator[dict[str, Any], None, None]:
        with self._client.stream(
            "POST",
            self._url(path),
            json=payload,
            headers={"Accept": "text/event-stream"},
            timeout=STREAM_TIMEOUT,
        ) as response:
            if response.is_error:
                response.read()
                raise AgentClientError(
                    f"POST {path} failed: {response.status_code} - {response.text}",
                    status_code=response.status_code,
                )
            yield from parse_sse_lines(response.iter_lines())

    def stream_plan(
        self,
        query: str,
        cwd: str | None = None,
        no_test: bool | None = None,
        resume: str | None = None,
        tickets_path: str | None = None,
        images: list[dict[str, Any]] | None = None,
        conversation_history: list[dict[str, str]] | None = None,
    ) -> Generator[dict[str, Any], None, None]:
        """Stream the plan phase.

        Args:
            query: The feature request, or the answer to a clarification
            cwd: Project directory inside the sandbox
            no_test: Skip test tickets. Defaults to the PLAN_TEST setting
            resume: Planner conversation id to continue
            tickets_path: Where the planner writes the generated tickets
            images: Optional image attachments
            conversation_history: Prior user/assistant turns for resumption
        """
        yield from self._stream(
            "/api/plan",
            {
                "query": query,
                "cwd": cwd or self._project_dir,
                "noTest": (not PLAN_TEST) if no_test is None else no_test,
                "resume": resume,
                "ticketsPath": tickets_path,
                "images": images,
                "conversationHistory": conversation_history or [],
            },
        )

    def stream_build(
        self,
        tickets: list[dict[str, Any]],
        tickets_path: str | None = None,
        cwd: str | None = None,
        db_url: str | None = None,
        review: bool = True,
        test_url: str | None = None,
        build_id: str | None = None,
        credential: str | None = None,
    ) -> Generator[dict[str, Any], None, None]:
        yield from self._stream(
            "/api/build",
            {
                "tickets": tickets,
                "ticketsPath": tickets_path,
                "cwd": cwd or self._project_dir,
                "dbUrl": db_url,
                "review": review,
                "url": test_url,
                "buildId": build_id,
                "githubToken": credential,
            },
        )

    def stream_requirements(
        self,
        message: str,
        cwd: str | None = None,
        previous_messages: list[dict[str, Any]] | None = None,
        is_first_request: bool = False,
    ) -> Generator[dict[str, Any], None, None]:
        yield from self._stream(
            "/api/requirements/chat",
            {
                "message": message,
                "cwd": cwd or self._project_dir,
                "previousMessages": previous_messages or [],
                "isFirstRequest": is_first_request,
            },
        )
