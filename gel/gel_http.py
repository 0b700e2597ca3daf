"""
Default HTTP port built on httpx.
"""
import logging
import time
from typing import Any, Dict, Optional

import httpx

from gel.gel_ports import HttpPort
from gel.gel_serialize import deserialize, serialize

logger = logging.getLogger(__name__)


class HttpxInvoker(HttpPort):
    """
    Sends `http!` requests with a synchronous httpx client.

    config keys:
      - timeout: seconds (default 5.0); `timeout ms` in a script overrides it
      - retries: extra attempts on transport errors (default 2)
      - backoff: base delay in seconds, doubled per attempt (default 0.2)
      - headers: default request headers
      - base_url: prefix for relative targets

    2xx bodies are decoded by content type; any other status raises.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, *, transport: Optional[httpx.BaseTransport] = None):
        cfg = dict(config or {})
        self.timeout = float(cfg.pop('timeout', 5.0))
        self.retries = int(cfg.pop('retries', 2))
        self.backoff = float(cfg.pop('backoff', 0.2))
        self.headers = dict(cfg.pop('headers', {}))
        self.base_url = cfg.pop('base_url', "")
        self.transport = transport

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, base_url=self.base_url, transport=self.transport, follow_redirects=True)

    def request(self, verb: str, target: str, built_body: Dict[str, Any]) -> Any:
        timeout = self.timeout
        if built_body.get('timeout') is not None:
            timeout = built_body['timeout'] / 1000.0
        headers = {**self.headers, **built_body.get('headers', {})}

        content = None
        if 'json' in built_body and 'text' in built_body:
            raise ValueError("an http request takes either json or text, not both")
        if 'json' in built_body:
            content = serialize(built_body['json'], fmt='json', pretty=False).encode('utf-8')
            headers.setdefault("Content-Type", "application/json")
        elif 'text' in built_body:
            content = built_body['text'].encode('utf-8')
            headers.setdefault("Content-Type", "text/plain; charset=utf-8")

        with self._client(timeout) as client:
            for attempt in range(self.retries + 1):
                try:
                    resp = client.request(verb.upper(), target, headers=headers, content=content)
                    break
                except httpx.TransportError as e:
                    if attempt >= self.retries:
                        logger.error("http %s %s failed after %d attempt(s): %s", verb, target, attempt + 1, e)
                        raise
                    delay = self.backoff * (2 ** attempt)
                    logger.warning("http %s %s failed (%s); retrying in %.2fs", verb, target, e, delay)
                    time.sleep(delay)

        logger.debug("http %s %s -> %d", verb, target, resp.status_code)
        if not 200 <= resp.status_code < 300:
            preview = (resp.text or "")[:200]
            raise RuntimeError(f"HTTP {resp.status_code} for {target}: {preview}")
        if not resp.content:
            return None
        return deserialize(resp.content, content_type=resp.headers.get("Content-Type"))
