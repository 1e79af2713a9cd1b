from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from docuflow.logging import get_logger
from docuflow.service.errors import GenerationError

logger = get_logger(__name__)

MIN_TOKEN_BYTES = 32


@dataclass(frozen=True)
class GeneratedToken:
    raw: str
    digest: str

    def __repr__(self) -> str:
        # keep the raw secret out of tracebacks and debug output
        return f"GeneratedToken(digest={self.digest[:8]}...)"


class TokenGenerator:
    """Produce raw single-use secrets and the digest that is stored for them."""

    def __init__(self, token_bytes: int = MIN_TOKEN_BYTES) -> None:
        if token_bytes < MIN_TOKEN_BYTES:
            raise ValueError(f"token_bytes must be at least {MIN_TOKEN_BYTES}")
        self.token_bytes = token_bytes

    @staticmethod
    def digest(raw: str) -> str:
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def generate(self) -> GeneratedToken:
        try:
            raw = secrets.token_hex(self.token_bytes)
        except (OSError, NotImplementedError) as exc:
            logger.error("token_entropy_unavailable", error=str(exc))
            raise GenerationError("secure random source unavailable") from exc
        return GeneratedToken(raw=raw, digest=self.digest(raw))
