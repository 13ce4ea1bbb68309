"""Loader-daemon client: Load, Unload, List and Get over HTTP/JSON.

The daemon is the only component that touches the kernel. The agent asks
it to load and attach programs and reads back what it currently holds;
it never caches that answer across invocations.

Endpoints:
- POST   /v1/programs                   load, returns the LoadedProgram
- DELETE /v1/programs/{id}              unload (404 counts as done)
- GET    /v1/programs?programType=<int> list
- GET    /v1/programs/{id}              get (404 means absent)

Failure mapping:
- connection errors and timeouts -> DaemonUnavailable (transient)
- non-2xx answers                -> DaemonError (daemon-reported)
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from pydantic import ValidationError

from agent.errors import DaemonError, DaemonUnavailable
from agent.models import ProgramType
from ebpf.models import LoadedProgram, LoadRequest

logger = logging.getLogger(__name__)

PROGRAMS_PATH = "/v1/programs"

# Default per-call timeout, seconds.
DEFAULT_TIMEOUT = 10.0


class DaemonClient:
    """Blocking client for the node-local loader daemon.

    Args:
        base_url: Daemon address, e.g. ``http://127.0.0.1:50051``.
        timeout: Upper bound for every call, in seconds. A smaller
            per-call ``timeout`` (the caller's remaining deadline) wins.
        session: Optional pre-configured requests session.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url: str = base_url.rstrip("/")
        self.timeout: float = timeout
        self._session: requests.Session = session or requests.Session()

    def _timeout(self, timeout: float | None) -> float:
        if timeout is None:
            return self.timeout
        return max(0.0, min(timeout, self.timeout))

    def _request(
        self,
        method: str,
        path: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self._session.request(method, url, timeout=self._timeout(timeout), **kwargs)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise DaemonUnavailable(f"{method} {url}: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: requests.Response, action: str) -> None:
        if response.ok:
            return
        try:
            detail = response.json().get("error") or response.text
        except ValueError:
            detail = response.text
        raise DaemonError(f"{action} failed ({response.status_code}): {detail}", status=response.status_code)

    @staticmethod
    def _parse_program(raw: Any, action: str) -> LoadedProgram:
        try:
            return LoadedProgram.model_validate(raw)
        except ValidationError as exc:
            raise DaemonError(f"{action} returned an unreadable program: {exc}") from exc

    @staticmethod
    def _json(response: requests.Response, action: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise DaemonError(f"{action} returned invalid JSON: {exc}", status=response.status_code) from exc

    def load(self, request: LoadRequest, timeout: float | None = None) -> LoadedProgram:
        """Load and attach a program.

        Args:
            request: What to load and where to attach it.
            timeout: Remaining deadline for this call, in seconds.

        Returns:
            The program as the daemon now holds it, including its kernel id.

        Raises:
            DaemonError: If the daemon refuses or fails the load.
            DaemonUnavailable: If the daemon cannot be reached.
        """
        logger.debug("Loading program %s (%s)", request.program_id, request.name)
        response = self._request("POST", PROGRAMS_PATH, timeout=timeout, json=request.to_wire())
        action = f"load {request.program_id}"
        self._raise_for_status(response, action)
        program = self._parse_program(self._json(response, action), action)
        logger.info("Loaded program %s as kernel id %d", program.id, program.kernel_id)
        return program

    def unload(self, program_id: str, timeout: float | None = None) -> None:
        """Detach and unload a program. Unloading an unknown id succeeds."""
        logger.debug("Unloading program %s", program_id)
        response = self._request("DELETE", f"{PROGRAMS_PATH}/{program_id}", timeout=timeout)
        if response.status_code == 404:
            logger.debug("Program %s already unloaded", program_id)
            return
        self._raise_for_status(response, f"unload {program_id}")
        logger.info("Unloaded program %s", program_id)

    def list(
        self,
        program_type: ProgramType | None = None,
        timeout: float | None = None,
    ) -> dict[str, LoadedProgram]:
        """List loaded programs, keyed by program id.

        Programs without an id (loaded outside the agent) are skipped, and
        so are records the agent cannot read.
        """
        params = {"programType": program_type.kernel_type} if program_type is not None else None
        response = self._request("GET", PROGRAMS_PATH, timeout=timeout, params=params)
        self._raise_for_status(response, "list programs")
        programs: dict[str, LoadedProgram] = {}
        for raw in self._json(response, "list programs").get("results", []):
            try:
                program = LoadedProgram.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping unreadable program record: %s", exc)
                continue
            if program.id:
                programs[program.id] = program
        return programs

    def get(self, program_id: str, timeout: float | None = None) -> LoadedProgram | None:
        """Fetch one program, or None if the daemon does not hold it."""
        response = self._request("GET", f"{PROGRAMS_PATH}/{program_id}", timeout=timeout)
        if response.status_code == 404:
            return None
        action = f"get {program_id}"
        self._raise_for_status(response, action)
        return self._parse_program(self._json(response, action), action)

    def close(self) -> None:
        self._session.close()


def check_daemon(client: DaemonClient) -> tuple[bool, str]:
    """Verify that the loader daemon answers.

    Returns:
        Tuple of (reachable, reason). If not reachable, reason explains why.
    """
    try:
        client.list()
    except DaemonUnavailable as exc:
        return False, f"Loader daemon unreachable at {client.base_url}: {exc}"
    except DaemonError as exc:
        return False, f"Loader daemon at {client.base_url} returned an error: {exc}"
    return True, "Reachable"
