import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from .backpack_auth import RequestSigner


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.backpack.exchange"


class TransportError(Exception):
    """HTTP or stream level failure before the exchange produced a response."""

    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} transport failure: {cause!r}")


class BackpackAPIError(Exception):
    """Non-success HTTP status from the exchange, with the response body."""

    def __init__(
        self,
        operation: str,
        status: int,
        body: str,
        code: Optional[str] = None,
        msg: Optional[str] = None,
    ):
        self.operation = operation
        self.status = status
        self.body = body
        self.code = code
        self.msg = msg
        text = f"Backpack {operation} failed (status={status}, code={code}, msg={msg})"
        super().__init__(text)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class BackpackRESTClient:
    """Signed HTTP calls. One request in, one decoded payload or one error out; no retries."""

    def __init__(
        self,
        signer: RequestSigner,
        base_url: Optional[str] = None,
        timeout_s: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.signer = signer
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            return self._session

    async def close(self):
        async with self._lock:
            if self._owns_session and self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    async def request(
        self,
        method: str,
        path: str,
        instruction: str,
        params: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ) -> Any:
        operation = operation or instruction
        session = await self._get_session()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers = self.signer.sign(instruction, params)

        url = f"{self.base_url}{path}"
        method = method.upper()
        if method == "GET":
            query = {k: _query_value(v) for k, v in params.items()} or None
            body = None
        else:
            # DELETE carries a JSON body as well
            query = None
            body = json.dumps(params, separators=(",", ":")) if params else None

        try:
            async with session.request(
                method,
                url,
                params=query,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("%s %s transport error: %s", method, path, exc)
            raise TransportError(operation, exc) from exc

        payload = self._decode(text)
        if status >= 400:
            code = None
            msg = None
            if isinstance(payload, dict):
                code = payload.get("code")
                msg = payload.get("message") or payload.get("msg")
            raise BackpackAPIError(operation, status, text, code=code, msg=msg)
        return payload

    @staticmethod
    def _decode(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def get(self, path: str, instruction: str, params: Optional[Dict[str, Any]] = None, operation: Optional[str] = None) -> Any:
        return await self.request("GET", path, instruction, params=params, operation=operation)

    async def post(self, path: str, instruction: str, params: Optional[Dict[str, Any]] = None, operation: Optional[str] = None) -> Any:
        return await self.request("POST", path, instruction, params=params, operation=operation)

    async def delete(self, path: str, instruction: str, params: Optional[Dict[str, Any]] = None, operation: Optional[str] = None) -> Any:
        return await self.request("DELETE", path, instruction, params=params, operation=operation)

    async def patch(self, path: str, instruction: str, params: Optional[Dict[str, Any]] = None, operation: Optional[str] = None) -> Any:
        return await self.request("PATCH", path, instruction, params=params, operation=operation)
