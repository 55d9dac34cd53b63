"""Payload compression that degrades to the uncompressed body."""

import zlib
from dataclasses import dataclass
from typing import Callable, Optional

from repo_resilience.logging_config import get_logger
from repo_resilience.resilience.degradation import (
    DegradationCoordinator,
    DegradationPolicy,
    always_eligible,
)

logger = get_logger(__name__)

DEFLATE = "deflate"
IDENTITY = "identity"


@dataclass(frozen=True)
class CompressedPayload:
    body: bytes
    encoding: str

    @property
    def compressed(self) -> bool:
        return self.encoding == DEFLATE


def decompress_payload(payload: CompressedPayload) -> bytes:
    if payload.encoding == DEFLATE:
        return zlib.decompress(payload.body)
    return payload.body


class PayloadCompressor:
    """
    Compresses payloads above ``threshold`` bytes.

    Compression is optional work: any failure serves the raw body with
    ``identity`` encoding and records a degradation event instead of failing
    the request.
    """

    def __init__(
        self,
        coordinator: DegradationCoordinator,
        threshold: int = 1024,
        level: int = 6,
        resource: str = "compression",
        compress: Callable[[bytes, int], bytes] = zlib.compress,
    ):
        self.coordinator = coordinator
        self.threshold = threshold
        self.level = level
        self.resource = resource
        self._compress = compress
        self._policy = coordinator.register(
            DegradationPolicy(
                resource=resource,
                primary=self._deflate,
                fallback=self._identity,
                is_eligible=always_eligible,
            )
        )

    async def compress(self, data: bytes, threshold: Optional[int] = None) -> CompressedPayload:
        limit = self.threshold if threshold is None else threshold
        if len(data) < limit:
            return CompressedPayload(data, IDENTITY)
        outcome = await self.coordinator.run(self._policy, data)
        return outcome.value

    def _deflate(self, data: bytes) -> CompressedPayload:
        body = self._compress(data, self.level)
        logger.debug(
            "Payload compressed",
            extra={"original_size": len(data), "compressed_size": len(body)},
        )
        return CompressedPayload(body, DEFLATE)

    def _identity(self, data: bytes) -> CompressedPayload:
        return CompressedPayload(data, IDENTITY)
