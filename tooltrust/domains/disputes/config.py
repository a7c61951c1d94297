"""Dispute lifecycle and mutual-closure policy configuration."""

import os
from dataclasses import dataclass, field


@dataclass
class MutualClosureConfig:
    """Policy for two-party closure proposals.

    The refund ceiling is the payment amount minus the platform fee, capped at
    ``max_refund_amount``. A dispute without a payment allows no refund.
    """

    default_expiration_hours: int = 72
    min_expiration_hours: int = 24
    max_expiration_hours: int = 168
    max_refund_amount: float = 500.0
    platform_fee_pct: float = 0.05
    max_proposals_per_day: int = 3
    allow_with_external_escalation: bool = False
    allow_fraud_category: bool = False

    def __post_init__(self) -> None:
        if not (
            0 < self.min_expiration_hours
            <= self.default_expiration_hours
            <= self.max_expiration_hours
        ):
            raise ValueError(
                "Expiration hours must satisfy 0 < min <= default <= max, got "
                f"{self.min_expiration_hours}/{self.default_expiration_hours}/"
                f"{self.max_expiration_hours}"
            )
        if not 0.0 <= self.platform_fee_pct < 1.0:
            raise ValueError(f"platform_fee_pct must be in [0, 1), got {self.platform_fee_pct}")


@dataclass
class EvidenceConfig:
    max_file_bytes: int = 10 * 1024 * 1024
    max_files_per_upload: int = 10
    allowed_content_types: tuple[str, ...] = (
        "image/jpeg",
        "image/png",
        "image/heic",
        "application/pdf",
        "video/mp4",
    )


@dataclass
class DisputeConfig:
    response_due_days: int = 7
    processor_timeout_seconds: float = 10.0
    directory_timeout_seconds: float = 3.0
    storage_timeout_seconds: float = 30.0
    max_conflict_retries: int = 3
    currency: str = "USD"
    mutual_closure: MutualClosureConfig = field(default_factory=MutualClosureConfig)
    evidence: EvidenceConfig = field(default_factory=EvidenceConfig)

    @classmethod
    def from_env(cls) -> "DisputeConfig":
        """Load config with env var overrides. Env vars use DISPUTE_ prefix."""
        config = cls()

        if v := os.getenv("DISPUTE_RESPONSE_DUE_DAYS"):
            config.response_due_days = int(v)
        if v := os.getenv("DISPUTE_PROCESSOR_TIMEOUT_SECONDS"):
            config.processor_timeout_seconds = float(v)
        if v := os.getenv("DISPUTE_STORAGE_TIMEOUT_SECONDS"):
            config.storage_timeout_seconds = float(v)
        if v := os.getenv("DISPUTE_MAX_CONFLICT_RETRIES"):
            config.max_conflict_retries = int(v)

        # Mutual closure overrides
        if v := os.getenv("DISPUTE_CLOSURE_EXPIRATION_HOURS"):
            config.mutual_closure.default_expiration_hours = int(v)
        if v := os.getenv("DISPUTE_CLOSURE_MAX_REFUND"):
            config.mutual_closure.max_refund_amount = float(v)
        if v := os.getenv("DISPUTE_CLOSURE_MAX_PER_DAY"):
            config.mutual_closure.max_proposals_per_day = int(v)
        config.mutual_closure.__post_init__()

        return config


# Module-level default instance
default_config = DisputeConfig()
