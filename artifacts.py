"""Fetching tenant code from the content-addressed artifact store."""
import re
import json
import time
import asyncio
import hashlib
import logging
import concurrent.futures
from collections import OrderedDict
from typing import Dict, Optional

import requests

from errors import FetchFailure

logger = logging.getLogger("runmeter.artifacts")

_REF_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def content_hash(code: bytes) -> str:
    """SHA-256 hex digest used as the integrity hash in artifact metadata."""
    return hashlib.sha256(code).hexdigest()


def unpack_artifact(raw: bytes, verify_hash: bool = True) -> bytes:
    """Extract code from a stored artifact.

    Artifacts are JSON envelopes ``{"code": ..., "metadata": {"contentHash": ...}}``.
    Anything else is treated as raw code.
    """
    try:
        envelope = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return raw

    if not isinstance(envelope, dict) or not isinstance(envelope.get("code"), str):
        return raw

    code = envelope["code"].encode("utf-8")
    metadata = envelope.get("metadata") or {}
    expected = metadata.get("contentHash") if isinstance(metadata, dict) else None
    if verify_hash and expected and content_hash(code) != expected:
        raise FetchFailure("Content integrity validation failed: hash mismatch")
    return code


class ArtifactStore:
    async def fetch_code(self, ref: str) -> bytes:
        raise NotImplementedError


class HttpArtifactStore(ArtifactStore):
    """Reads artifacts from an HTTP gateway (``GET {gateway}/{ref}``)."""

    def __init__(self, gateway_url: str, timeout: int = 30, retry_attempts: int = 3,
                 verify_hash: bool = True, cache_size: int = 128,
                 session: Optional[requests.Session] = None, retry_delay: float = 1.0):
        self.gateway_url = gateway_url.rstrip("/")
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.verify_hash = verify_hash
        self.cache_size = cache_size
        self.session = session or requests.Session()
        self._cache: "OrderedDict[str, bytes]" = OrderedDict()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=8,
            thread_name_prefix="artifact-fetch"
        )

    def _get(self, ref: str) -> bytes:
        response = self.session.get(f"{self.gateway_url}/{ref}", timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def _remember(self, ref: str, code: bytes):
        if self.cache_size <= 0:
            return
        self._cache[ref] = code
        self._cache.move_to_end(ref)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def fetch_code(self, ref: str) -> bytes:
        if not ref or not _REF_PATTERN.match(ref):
            raise FetchFailure(f"Invalid artifact reference: {ref!r}")

        if ref in self._cache:
            self._cache.move_to_end(ref)
            return self._cache[ref]

        loop = asyncio.get_running_loop()
        for attempt in range(1, self.retry_attempts + 1):
            start_time = time.time()
            try:
                raw = await asyncio.wait_for(
                    loop.run_in_executor(self._executor, self._get, ref),
                    timeout=self.timeout + 1
                )
                code = unpack_artifact(raw, self.verify_hash)
                logger.debug(f"Fetched artifact {ref} ({len(code)} bytes) in {time.time() - start_time:.2f}s")
                self._remember(ref, code)
                return code
            except (requests.RequestException, asyncio.TimeoutError) as e:
                error_msg = str(e) or type(e).__name__
                logger.warning(f"Artifact {ref} attempt {attempt}/{self.retry_attempts}: {error_msg}")
                if attempt < self.retry_attempts:
                    await asyncio.sleep(attempt * self.retry_delay)
                    continue
                raise FetchFailure(f"Failed to fetch code from artifact store: {error_msg}") from e

    def close(self):
        self._executor.shutdown(wait=False)
        self.session.close()


class InMemoryArtifactStore(ArtifactStore):
    """Artifacts registered in-process, keyed by reference."""

    def __init__(self, artifacts: Optional[Dict[str, bytes]] = None, verify_hash: bool = True):
        self.verify_hash = verify_hash
        self._artifacts: Dict[str, bytes] = dict(artifacts or {})

    def put(self, ref: str, code) -> str:
        if isinstance(code, str):
            code = code.encode("utf-8")
        self._artifacts[ref] = code
        return ref

    def put_envelope(self, code: str, metadata: Optional[Dict] = None) -> str:
        """Store code the way the artifact store does and return its reference."""
        encoded = code.encode("utf-8")
        digest = content_hash(encoded)
        envelope = {"code": code, "metadata": {**(metadata or {}), "contentHash": digest}}
        return self.put(digest, json.dumps(envelope))

    async def fetch_code(self, ref: str) -> bytes:
        if ref not in self._artifacts:
            raise FetchFailure(f"Failed to fetch code from artifact store: {ref} not found")
        return unpack_artifact(self._artifacts[ref], self.verify_hash)
