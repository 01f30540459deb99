from __future__ import annotations

import gzip
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class Compressor(Protocol):
    encoding: Optional[str]

    def compress(self, payload: bytes) -> Optional[bytes]:
        ...


class GzipCompressor:
    encoding: Optional[str] = "gzip"

    def __init__(self, level: int = 6) -> None:
        self.level = min(9, max(1, int(level)))

    def compress(self, payload: bytes) -> Optional[bytes]:
        try:
            return gzip.compress(payload, compresslevel=self.level)
        except (OSError, ValueError) as exc:
            logger.debug("gzip compression unavailable, sending raw payload: %s", exc)
            return None


class NullCompressor:
    encoding: Optional[str] = None

    def compress(self, payload: bytes) -> Optional[bytes]:
        del payload
        return None


def select_compressor(enabled: bool) -> Compressor:
    if not enabled:
        return NullCompressor()
    return GzipCompressor()
