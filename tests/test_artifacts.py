"""
Tests for artifact unpacking, integrity checks and the HTTP artifact store.
"""

import json
import pytest
import requests
from unittest.mock import MagicMock

from artifacts import HttpArtifactStore, InMemoryArtifactStore, content_hash, unpack_artifact
from errors import FetchFailure


def envelope(code, digest=None):
    digest = digest or content_hash(code.encode("utf-8"))
    return json.dumps({"code": code, "metadata": {"contentHash": digest}}).encode("utf-8")


def ok_response(content):
    response = MagicMock()
    response.content = content
    response.raise_for_status.return_value = None
    return response


class TestUnpack:
    """Test envelope handling."""

    def test_envelope_verified(self):
        """Code with a matching hash is returned."""
        assert unpack_artifact(envelope("module.exports = 1")) == b"module.exports = 1"

    def test_hash_mismatch(self):
        """Tampered code is refused."""
        with pytest.raises(FetchFailure, match="hash mismatch"):
            unpack_artifact(envelope("evil()", digest="0" * 64))

    def test_mismatch_ignored_when_disabled(self):
        """Verification can be switched off."""
        assert unpack_artifact(envelope("x", digest="0" * 64), verify_hash=False) == b"x"

    def test_raw_code(self):
        """Non-envelope content is the code itself."""
        assert unpack_artifact(b"console.log(1)") == b"console.log(1)"


class TestInMemoryStore:
    """Test the in-process store."""

    @pytest.mark.asyncio
    async def test_put_envelope_is_content_addressed(self):
        """The reference is the code's digest."""
        store = InMemoryArtifactStore()
        ref = store.put_envelope("console.log('hi')", {"language": "javascript"})
        assert ref == content_hash(b"console.log('hi')")
        assert await store.fetch_code(ref) == b"console.log('hi')"

    @pytest.mark.asyncio
    async def test_missing(self):
        """Unknown references fail to fetch."""
        with pytest.raises(FetchFailure):
            await InMemoryArtifactStore().fetch_code("nope")


class TestHttpStore:
    """Test fetching over HTTP."""

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self):
        """A fetched artifact is served from the cache afterwards."""
        session = MagicMock()
        session.get.return_value = ok_response(envelope("code()"))
        store = HttpArtifactStore("http://gateway/ipfs/", session=session)

        assert await store.fetch_code("abc") == b"code()"
        assert await store.fetch_code("abc") == b"code()"
        session.get.assert_called_once_with("http://gateway/ipfs/abc", timeout=30)
        store.close()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """Transient errors are retried."""
        session = MagicMock()
        session.get.side_effect = [requests.ConnectionError("reset"), ok_response(b"code()")]
        store = HttpArtifactStore("http://gateway", session=session, retry_attempts=3, retry_delay=0)

        assert await store.fetch_code("abc") == b"code()"
        assert session.get.call_count == 2
        store.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        """Persistent errors become a fetch failure."""
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        store = HttpArtifactStore("http://gateway", session=session, retry_attempts=2, retry_delay=0)

        with pytest.raises(FetchFailure, match="refused"):
            await store.fetch_code("abc")
        assert session.get.call_count == 2
        store.close()

    @pytest.mark.asyncio
    async def test_integrity_failure_not_retried(self):
        """A hash mismatch fails at once."""
        session = MagicMock()
        session.get.return_value = ok_response(envelope("x", digest="0" * 64))
        store = HttpArtifactStore("http://gateway", session=session, retry_delay=0)

        with pytest.raises(FetchFailure, match="hash mismatch"):
            await store.fetch_code("abc")
        assert session.get.call_count == 1
        store.close()

    @pytest.mark.asyncio
    async def test_invalid_reference(self):
        """References cannot escape the gateway path."""
        store = HttpArtifactStore("http://gateway", session=MagicMock())
        with pytest.raises(FetchFailure, match="Invalid artifact reference"):
            await store.fetch_code("../etc/passwd")
        store.close()

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self):
        """The least recently used artifact is evicted."""
        session = MagicMock()
        session.get.side_effect = lambda url, timeout: ok_response(url.rsplit("/", 1)[1].encode())
        store = HttpArtifactStore("http://gateway", session=session, cache_size=2)

        for ref in ("a", "b", "a", "c"):
            await store.fetch_code(ref)
        await store.fetch_code("b")

        assert session.get.call_count == 4
        store.close()
