"""Tests for payload compression with identity fallback."""

import zlib
from unittest.mock import Mock

import pytest

from repo_resilience.services.compression import (
    DEFLATE,
    IDENTITY,
    CompressedPayload,
    PayloadCompressor,
    decompress_payload,
)


class TestPayloadCompressor:
    @pytest.mark.asyncio
    async def test_small_payload_is_not_compressed(self, coordinator):
        compressor = PayloadCompressor(coordinator, threshold=1024)

        payload = await compressor.compress(b"short")

        assert payload == CompressedPayload(b"short", IDENTITY)
        assert payload.compressed is False

    @pytest.mark.asyncio
    async def test_large_payload_is_deflated(self, coordinator):
        compressor = PayloadCompressor(coordinator, threshold=1024)
        data = b"frame-embedding " * 200

        payload = await compressor.compress(data)

        assert payload.encoding == DEFLATE
        assert len(payload.body) < len(data)
        assert decompress_payload(payload) == data

    @pytest.mark.asyncio
    async def test_threshold_override(self, coordinator):
        compressor = PayloadCompressor(coordinator, threshold=1024)

        payload = await compressor.compress(b"a" * 100, threshold=10)

        assert payload.compressed is True

    @pytest.mark.asyncio
    async def test_compression_failure_serves_raw_body(self, coordinator):
        failing = Mock(side_effect=zlib.error("invalid compression level"))
        compressor = PayloadCompressor(coordinator, threshold=0, compress=failing)
        data = b"payload"

        payload = await compressor.compress(data)

        assert payload == CompressedPayload(data, IDENTITY)
        events = coordinator.recent_events()
        assert len(events) == 1
        assert events[0].resource == "compression"

    def test_identity_payload_decompresses_to_itself(self):
        assert decompress_payload(CompressedPayload(b"raw", IDENTITY)) == b"raw"
