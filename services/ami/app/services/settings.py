from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DispatchSettings:
    """Dispatcher tuning.

    Env vars:
    - AMI_DISPATCH_MAX_ATTEMPTS (default: 3)
    - AMI_DISPATCH_BATCH_SIZE (default: 10)
    - AMI_DISPATCH_SEND_TIMEOUT_SECONDS (default: 10)
    - AMI_DISPATCH_CLAIM_TTL_SECONDS (default: 300)
    - AMI_DISPATCH_POLL_INTERVAL_SECONDS (default: 2)
    """

    max_attempts: int = 3
    batch_size: int = 10
    send_timeout_seconds: float = 10.0
    claim_ttl_seconds: int = 300
    poll_interval_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.send_timeout_seconds <= 0:
            raise ValueError("send_timeout_seconds must be positive")
        if self.claim_ttl_seconds <= self.send_timeout_seconds:
            # A shorter TTL would recycle items whose send is still in flight.
            raise ValueError(
                f"claim_ttl_seconds ({self.claim_ttl_seconds}) must exceed "
                f"send_timeout_seconds ({self.send_timeout_seconds:g})"
            )
        if self.poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must not be negative")

    @classmethod
    def from_env(cls) -> "DispatchSettings":
        return cls(
            max_attempts=int(os.getenv("AMI_DISPATCH_MAX_ATTEMPTS", "3")),
            batch_size=int(os.getenv("AMI_DISPATCH_BATCH_SIZE", "10")),
            send_timeout_seconds=float(os.getenv("AMI_DISPATCH_SEND_TIMEOUT_SECONDS", "10")),
            claim_ttl_seconds=int(os.getenv("AMI_DISPATCH_CLAIM_TTL_SECONDS", "300")),
            poll_interval_seconds=float(os.getenv("AMI_DISPATCH_POLL_INTERVAL_SECONDS", "2")),
        )
