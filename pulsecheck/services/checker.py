"""Checker service - performs a single HTTP probe and evaluates assertions."""
import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, List, Dict, Any

import httpx

from ..utils.db_utils import utcnow

logger = logging.getLogger(__name__)

# Methods whose request body is sent
BODY_METHODS = ("POST", "PUT", "PATCH")

DEFAULT_SNIPPET_CHARS = 1000


@dataclass
class ProbeResult:
    """Result of one HTTP probe."""
    ok: bool
    checked_at: datetime
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None  # None when no response arrived
    body_hash: Optional[str] = None
    response_snippet: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat()
        return data


def sha256_hex(text: Optional[str]) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def evaluate_assertions(
    assertions: Optional[List[str]],
    status_code: Optional[int],
    response_text: Optional[str],
) -> bool:
    """Return True when every recognized assertion passes.

    Grammar:
        status==<N>              exact status code
        body_contains:<text>     response body contains text

    Anything else is ignored so newer assertion kinds never fail old workers.
    """
    for assertion in assertions or []:
        assertion = assertion.strip()
        if assertion.startswith("status=="):
            expected = assertion[len("status=="):].strip()
            try:
                if status_code != int(expected):
                    return False
            except ValueError:
                # A malformed number can never match
                return False
        elif assertion.startswith("body_contains:"):
            needle = assertion.split(":", 1)[1]
            if response_text is None or needle not in response_text:
                return False
    return True


class CheckerService:
    """Service for performing HTTP probes.

    Holds no state between probes. A transport can be injected for tests.
    Certificates are verified unless verify_tls is turned off for
    endpoints behind self-signed certificates.
    """

    def __init__(
        self,
        snippet_chars: int = DEFAULT_SNIPPET_CHARS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        verify_tls: bool = True,
    ):
        self.snippet_chars = snippet_chars
        self.transport = transport
        self.verify_tls = verify_tls

    async def check(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[str] = None,
        timeout_ms: int = 5000,
        assertions: Optional[List[str]] = None,
    ) -> ProbeResult:
        """Probe a URL.

        The whole request, body download included, is bounded by timeout_ms.
        Network failures and timeouts are returned as failed results, never raised.
        """
        method = (method or "GET").upper()
        timeout = max(timeout_ms, 1) / 1000

        status_code = None
        response_text = None
        error = None
        response_time = None

        start = time.monotonic()
        try:
            status_code, response_text = await asyncio.wait_for(
                self._request(url, method, headers or {}, body, timeout),
                timeout=timeout,
            )
            response_time = int((time.monotonic() - start) * 1000)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = "timeout"
        except httpx.ConnectError as e:
            error = f"Connection error: {e}"
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__

        if error is None:
            ok = evaluate_assertions(assertions, status_code, response_text)
        else:
            ok = False

        return ProbeResult(
            ok=ok,
            checked_at=utcnow(),
            status_code=status_code,
            response_time_ms=response_time,
            body_hash=sha256_hex(response_text) if response_text is not None else None,
            response_snippet=response_text[:self.snippet_chars] if response_text is not None else None,
            error=error,
        )

    async def _request(
        self,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Optional[str],
        timeout: float,
    ) -> tuple:
        content = body if body is not None and method in BODY_METHODS else None
        # Certificate failures surface as ConnectError, i.e. a down outcome
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            verify=self.verify_tls,
            transport=self.transport,
        ) as client:
            response = await client.request(method, url, headers=headers, content=content)
        return response.status_code, response.text
