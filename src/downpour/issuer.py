import asyncio
import logging
import os
from urllib.parse import quote

import aiohttp

from .models import ErrorKind, Operation, OperationKind, Outcome
from .utils import now, simplify_error

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
HEALTH_TIMEOUT_S = 5.0


class RequestIssuer:
    """Sends exactly one HTTP request per Operation. Never retries."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        request_timeout_s: float,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self.default_headers = dict(default_headers or {})
        self._payloads: dict[int, bytes] = {}

    # ────────────────────────────────
    # URL & Payload Construction
    # ────────────────────────────────

    def object_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/{quote(bucket, safe='')}/{quote(key, safe='/')}"

    def bucket_url(self, bucket: str) -> str:
        return f"{self.base_url}/{quote(bucket, safe='')}"

    def payload(self, size: int) -> bytes:
        # One random body per size, shared by every writer
        body = self._payloads.get(size)
        if body is None:
            body = os.urandom(size)
            self._payloads[size] = body
        return body

    def _prepare(self, op: Operation) -> tuple[str, str, dict | None, bytes | None]:
        if op.kind is OperationKind.WRITE:
            return "PUT", self.object_url(op.bucket, op.key), None, self.payload(op.payload_size)
        if op.kind is OperationKind.READ:
            return "GET", self.object_url(op.bucket, op.key), None, None
        if op.kind is OperationKind.LIST:
            return "GET", self.bucket_url(op.bucket), {"prefix": op.key}, None
        raise ValueError(f"Unsupported operation kind: {op.kind!r}")

    # ────────────────────────────────
    # HTTP Issue Logic
    # ────────────────────────────────

    async def issue(self, op: Operation) -> Outcome:
        method, url, params, body = self._prepare(op)
        headers = dict(self.default_headers)
        if body is not None:
            headers["Content-Type"] = "application/octet-stream"

        start = now()
        try:
            async with self.session.request(
                method, url, params=params, data=body, headers=headers, timeout=self.timeout
            ) as resp:
                content = await resp.read()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            duration = now() - start
            detail = simplify_error(e)
            logger.debug(f"[{op.role}] {method} {url} transport error: {detail}")
            return Outcome(
                operation=op,
                success=False,
                started_at=start,
                duration_s=duration,
                error_kind=ErrorKind.TRANSPORT,
                error_detail=detail,
            )
        duration = now() - start

        sent = len(body) if body is not None else 0
        if 200 <= status < 300:
            logger.debug(f"[{op.role}] {method} {url}: status={status} ({duration:.4f}s)")
            return Outcome(
                operation=op,
                success=True,
                started_at=start,
                duration_s=duration,
                status=status,
                bytes_sent=sent,
                bytes_received=len(content),
            )

        logger.debug(f"[{op.role}] {method} {url} failed: status={status}")
        return Outcome(
            operation=op,
            success=False,
            started_at=start,
            duration_s=duration,
            status=status,
            error_kind=ErrorKind.SERVER,
            error_detail=str(status),
            bytes_sent=sent,
            bytes_received=len(content),
        )

    # ────────────────────────────────
    # Health Probe & Seeding
    # ────────────────────────────────

    async def probe_health(self, timeout_s: float = HEALTH_TIMEOUT_S) -> str | None:
        """Returns None when the target is healthy, otherwise a failure detail."""
        url = self.base_url + HEALTH_PATH
        try:
            async with self.session.get(
                url, headers=self.default_headers, timeout=aiohttp.ClientTimeout(total=timeout_s)
            ) as resp:
                await resp.read()
                if 200 <= resp.status < 300:
                    logger.debug(f"Health probe {url}: status={resp.status}")
                    return None
                return f"health probe returned {resp.status}"
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return simplify_error(e)

    async def put_object(self, bucket: str, key: str, size: int) -> bool:
        url = self.object_url(bucket, key)
        try:
            async with self.session.put(
                url, data=self.payload(size), headers=self.default_headers, timeout=self.timeout
            ) as resp:
                await resp.read()
                return 200 <= resp.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Seeding {url} failed: {simplify_error(e)}")
            return False
