"""
HTTP client abstraction for the loadrig harness.

The request executor talks to the target system only through the `HttpClient`
interface, so tests (and alternative transports) can replace the network layer
without touching the executor.

Available implementations:
    - RequestsHttpClient: Default implementation backed by `requests`, one
      `requests.Session` per worker thread so connections are reused per VU.

Example:
    >>> from loadrig._http import RequestsHttpClient
    >>> client = RequestsHttpClient()
    >>> response = client.request("GET", "http://localhost:8999/health", timeout=5)
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any

from typing_extensions import override

import requests

from loadrig._config import LOADRIG

logger = logging.getLogger(__name__)

# Body read granularity; the request deadline is checked between chunks
_CHUNK_SIZE = 1024


# =============================================================================
# Abstract Base Class
# =============================================================================


class HttpClient(ABC):
    """
    Abstract base class for HTTP clients used by the request executor.

    Implementations must be safe to call from many worker threads at once.
    Transport failures are raised as `requests.RequestException` subclasses
    (or `TimeoutError`); HTTP error statuses are returned, never raised.

    Example:
        >>> class MyHttpClient(HttpClient):
        ...     def request(self, method, url, headers=None, body=None, timeout=30):
        ...         return requests.request(method, url, headers=headers, json=body, timeout=timeout)
    """

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute a single HTTP request.

        Args:
            method: HTTP method (GET, POST, ...).
            url: The full URL to request.
            headers: Additional headers to include.
            body: JSON-serializable body, or None for no body.
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response, whatever its status code.

        Raises:
            requests.RequestException: If the request fails at the transport level.
        """
        pass

    def close(self) -> None:
        """Release any pooled connections. Default implementation does nothing."""
        pass


# =============================================================================
# requests Implementation
# =============================================================================


class RequestsHttpClient(HttpClient):
    """
    HTTP client backed by `requests`, keeping one session per worker thread.

    `requests.Session` is not guaranteed to be thread-safe, so each worker
    thread lazily creates its own session on first use. All sessions are closed
    by `close()`.

    Args:
        user_agent: User-Agent header. Defaults to LOADRIG.config.http.user_agent.
        verify_tls: Whether to verify TLS certificates. Defaults to
            LOADRIG.config.http.verify_tls.
    """

    def __init__(
        self,
        user_agent: str | None = None,
        verify_tls: bool | None = None,
    ):
        cfg = LOADRIG.config.http
        self.user_agent = user_agent or cfg.user_agent
        self.verify_tls = cfg.verify_tls if verify_tls is None else verify_tls

        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._lock = threading.Lock()

    def _session(self) -> requests.Session:
        session: requests.Session | None = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = self.user_agent
            session.verify = self.verify_tls
            self._local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    @override
    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute the request on the calling thread's session.

        `timeout` is a deadline for the whole exchange, not only for each
        socket read: the body is streamed in chunks of `_CHUNK_SIZE` bytes and
        `requests.Timeout` is raised at the first chunk boundary past the
        deadline, so a target that trickles its body is cut off instead of
        being recorded as a slow success. The body is fully consumed before
        returning so the connection goes back to the pool and the measured
        latency includes the full transfer.

        Raises:
            requests.Timeout: If the response is not fully received within `timeout`.
        """
        assert method, "HTTP method can not be empty."
        assert url, "URL can not be empty."
        assert timeout > 0, "timeout must be greater than 0."

        deadline = time.monotonic() + timeout
        response = self._session().request(
            method=method.upper(),
            url=url,
            headers=headers,
            json=body,
            timeout=timeout,
            stream=True,
        )
        try:
            chunks: list[bytes] = []
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                _check_deadline(deadline, timeout, response)
                chunks.append(chunk)
            _check_deadline(deadline, timeout, response)
            # Same as what Response.content does for non-streamed requests
            response._content = b"".join(chunks)
        finally:
            response.close()
        return response

    @override
    def close(self) -> None:
        """Close every session created by worker threads."""
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        logger.debug(f"Closed {len(sessions)} HTTP session(s).")


def _check_deadline(deadline: float, timeout: float, response: requests.Response) -> None:
    if time.monotonic() > deadline:
        raise requests.Timeout(
            f"Response from {response.url} not fully received within {timeout}s.",
            response=response,
        )
