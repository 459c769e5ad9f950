"""
Sentinel proof-of-work solver.

The upstream hands out a ``seed`` and a hex ``difficulty``. A candidate is a
JSON array encoded as base64; it is accepted when the hex prefix of
``sha3_512(seed + candidate)`` compares lexicographically ``<=`` the
difficulty string. The search is bounded so worst-case latency stays
predictable; when no candidate satisfies the bound a degraded token is
returned which the upstream may or may not accept.
"""

from __future__ import annotations

import base64
import hashlib
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from relaygate.core.models import ProofToken
from relaygate.observability.metrics import emit_counter
from relaygate.util.logger import logger

# 搜索上限：10 万次 SHA3-512 在普通 CPU 上约数百毫秒，足以覆盖常见难度
PROOF_MAX_ITERATIONS = 100_000
PROOF_TOKEN_PREFIX = "gAAAAAB"
# 上游对该降级前缀的接受条件未知，只能作为尽力而为的兜底
DEGRADED_TOKEN_PREFIX = "gAAAAABwQ8Lk5FbGpA2NcR9dShT6gYjU7VxZ4D"
# 候选数组中的固定大数（浏览器端 screen 相关字段）
PROOF_FIXED_NUMBER = 4294705152
PROOF_CONSTANT_RANGE = (2000, 8000)
_TIMESTAMP_FORMAT = "%a %b %d %Y %H:%M:%S GMT%z (Coordinated Universal Time)"


@dataclass(frozen=True, slots=True)
class ProofConstant:
    """Process-wide random value embedded in every candidate. Create once at startup."""

    value: int

    @classmethod
    def generate(cls) -> "ProofConstant":
        low, high = PROOF_CONSTANT_RANGE
        return cls(value=low + secrets.randbelow(high - low))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def build_candidate(constant: int, timestamp: str, counter: int, user_agent: str) -> str:
    payload = json.dumps(
        [constant, timestamp, PROOF_FIXED_NUMBER, counter, user_agent],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def hash_prefix(seed: str, candidate: str, difficulty: str) -> str:
    digest = hashlib.sha3_512(f"{seed}{candidate}".encode("utf-8")).digest()
    return digest[: len(difficulty) // 2].hex()


def degraded_token(seed: str) -> str:
    encoded = base64.b64encode(f'"{seed}"'.encode("utf-8")).decode("ascii")
    return f"{DEGRADED_TOKEN_PREFIX}{encoded}"


class ProofOfWorkSolver:
    def __init__(
        self,
        constant: ProofConstant,
        *,
        user_agent: str,
        max_iterations: int = PROOF_MAX_ITERATIONS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.constant = constant
        self.user_agent = user_agent
        self.max_iterations = max(1, int(max_iterations))
        self._clock = clock

    def solve(self, seed: str, difficulty: str) -> ProofToken:
        timestamp = format_timestamp(self._clock())
        for counter in range(self.max_iterations):
            candidate = build_candidate(self.constant.value, timestamp, counter, self.user_agent)
            if hash_prefix(seed, candidate, difficulty) <= difficulty:
                logger.debug("proof of work solved difficulty=%s iterations=%d", difficulty, counter + 1)
                emit_counter("proof_of_work_solved", labels={"difficulty": difficulty})
                return ProofToken(value=f"{PROOF_TOKEN_PREFIX}{candidate}")

        logger.warning(
            "proof of work exhausted difficulty=%s iterations=%d; using degraded token",
            difficulty,
            self.max_iterations,
        )
        emit_counter("proof_of_work_degraded", labels={"difficulty": difficulty})
        return ProofToken(value=degraded_token(seed), degraded=True)
