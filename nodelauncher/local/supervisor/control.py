"""
Clients for chain control endpoints, used to probe readiness and to request a
graceful shutdown before the supervisor falls back to signals.

Two protocols are spoken: JSON-RPC 1.0 over HTTP with basic auth (bitcoind
style) and Connect-style unary POSTs to ``<base>/<service>/<method>``.
"""

import asyncio
import logging
import aiohttp
from abc import ABC, abstractmethod
from typing import Any, List, Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import ControlError, ChainConfigError
from nodelauncher.local.chains import ControlSpec

log = logging.getLogger(__name__)


class ChainControl(ABC):
    """Base class for a chain's control endpoint."""

    def __init__(self, url: str, timeout: Optional[float] = None):
        self.url = url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout or app_globals.RPC_TIMEOUT)

    async def probe(self) -> bool:
        """True once the endpoint answers a lightweight request successfully."""
        try:
            await self._request_probe()
        except ControlError as e:
            log.debug(f"Probe of {self.url} failed: {e}")
            return False
        return True

    @abstractmethod
    async def shutdown(self) -> None:
        """Asks the chain to stop itself. Raises ControlError on failure."""

    @abstractmethod
    async def _request_probe(self) -> None:
        """Sends the lightweight readiness request. Raises ControlError on failure."""

    async def _post(self, url: str, payload: Any, auth: Optional[aiohttp.BasicAuth] = None) -> Any:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, auth=auth) as session:
                async with session.post(url, json=payload) as response:
                    body = await response.json(content_type=None)
                    if response.status >= 400 and not isinstance(body, dict):
                        raise ControlError(f"HTTP {response.status} from {url}")
                    return response.status, body
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ControlError(f"{type(e).__name__}: {e}") from e


class JsonRpcControl(ChainControl):

    def __init__(self, url: str, username: Optional[str] = None, password: Optional[str] = None,
                 probe_method: Optional[str] = None, stop_method: Optional[str] = None,
                 timeout: Optional[float] = None):
        super().__init__(url, timeout)
        self.auth = aiohttp.BasicAuth(username, password or "") if username else None
        self.probe_method = probe_method or "getblockchaininfo"
        self.stop_method = stop_method or "stop"

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Performs one JSON-RPC call.

        :param method: RPC method name.
        :param params: Positional parameters.
        :return: The ``result`` member of the response.
        :raises ControlError: On transport failures or an RPC error (including warm-up).
        """
        payload = {"jsonrpc": "1.0", "id": "nodelauncher", "method": method, "params": params or []}
        status, body = await self._post(self.url, payload, auth=self.auth)
        if not isinstance(body, dict):
            raise ControlError(f"Unexpected response to '{method}' (HTTP {status})")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise ControlError(f"RPC '{method}' failed: {message}")
        return body.get("result")

    async def _request_probe(self) -> None:
        await self.call(self.probe_method)

    async def shutdown(self) -> None:
        await self.call(self.stop_method)


class ConnectControl(ChainControl):

    def __init__(self, url: str, probe_method: Optional[str] = None, stop_method: Optional[str] = None,
                 timeout: Optional[float] = None):
        super().__init__(url, timeout)
        self.probe_method = probe_method
        self.stop_method = stop_method

    async def call(self, method: str, payload: Optional[dict] = None) -> Any:
        """POSTs ``payload`` to ``<url>/<method>`` and returns the decoded body."""
        status, body = await self._post(f"{self.url}/{method}", payload or {})
        if status >= 400:
            message = body.get("message", body) if isinstance(body, dict) else body
            raise ControlError(f"'{method}' failed with HTTP {status}: {message}")
        return body

    async def _request_probe(self) -> None:
        if not self.probe_method:
            raise ControlError("No probe method configured")
        await self.call(self.probe_method)

    async def shutdown(self) -> None:
        if not self.stop_method:
            raise ControlError("No stop method configured")
        await self.call(self.stop_method)


def control_from_spec(spec: Optional[ControlSpec], timeout: Optional[float] = None) -> Optional[ChainControl]:
    """Builds the control client described by a chain definition, if any."""
    if spec is None:
        return None
    if spec.kind == "jsonrpc":
        return JsonRpcControl(spec.url, spec.username, spec.password, spec.probe_method, spec.stop_method, timeout)
    if spec.kind == "connect":
        return ConnectControl(spec.url, spec.probe_method, spec.stop_method, timeout)
    raise ChainConfigError(f"Unknown control endpoint kind '{spec.kind}'")
