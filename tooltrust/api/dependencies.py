"""Service wiring for the HTTP layer."""

from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import Request

from tooltrust.config import Settings
from tooltrust.domains.disputes.config import DisputeConfig
from tooltrust.domains.disputes.mutual_closure import MutualClosureWorkflow
from tooltrust.domains.disputes.orchestrator import DisputeOrchestrator
from tooltrust.domains.disputes.state_machine import DisputeStateMachine
from tooltrust.domains.disputes.store import (
    ClosureStore,
    DisputeStore,
    InMemoryClosureStore,
    InMemoryDisputeStore,
)
from tooltrust.domains.fraud.config import FraudConfig
from tooltrust.domains.fraud.detector import SuspiciousActivityDetector
from tooltrust.domains.fraud.service import FraudCheckService
from tooltrust.domains.fraud.store import (
    ActivityHistoryStore,
    FraudStore,
    InMemoryActivityHistoryStore,
    InMemoryFraudStore,
    InMemoryVelocityStore,
    VelocityStore,
)
from tooltrust.domains.fraud.velocity import VelocityLimiter
from tooltrust.integrations.directory import HttpUserDirectory, UserDirectory
from tooltrust.integrations.evidence import EvidenceStorage, HttpEvidenceStorage
from tooltrust.integrations.notifications import NotificationPublisher
from tooltrust.integrations.payments import HttpPaymentProcessor, PaymentProcessor
from tooltrust.shared.errors import ExternalServiceError

logger = structlog.get_logger()


@dataclass
class Stores:
    disputes: DisputeStore = field(default_factory=InMemoryDisputeStore)
    closures: ClosureStore = field(default_factory=InMemoryClosureStore)
    fraud: FraudStore = field(default_factory=InMemoryFraudStore)
    velocity: VelocityStore = field(default_factory=InMemoryVelocityStore)
    history: ActivityHistoryStore = field(default_factory=InMemoryActivityHistoryStore)


@dataclass
class TrustServices:
    orchestrator: DisputeOrchestrator
    fraud: FraudCheckService
    # HTTP clients and the like, closed on shutdown
    resources: list[Any] = field(default_factory=list)

    @property
    def disputes(self) -> DisputeStateMachine:
        return self.orchestrator.disputes

    @property
    def closures(self) -> MutualClosureWorkflow:
        return self.orchestrator.closures

    async def aclose(self) -> None:
        for resource in self.resources:
            await resource.aclose()


def build_services(
    directory: UserDirectory,
    processor: PaymentProcessor,
    evidence_storage: EvidenceStorage | None = None,
    publisher: NotificationPublisher | None = None,
    stores: Stores | None = None,
    fraud_config: FraudConfig | None = None,
    dispute_config: DisputeConfig | None = None,
) -> TrustServices:
    stores = stores or Stores()
    fraud_config = fraud_config or FraudConfig.from_env()
    dispute_config = dispute_config or DisputeConfig.from_env()

    fraud = FraudCheckService(
        store=stores.fraud,
        history=stores.history,
        velocity=VelocityLimiter(stores.velocity, fraud_config),
        detector=SuspiciousActivityDetector(stores.fraud, stores.history, fraud_config),
        directory=directory,
        publisher=publisher,
        config=fraud_config,
    )
    disputes = DisputeStateMachine(
        store=stores.disputes,
        closures=stores.closures,
        directory=directory,
        processor=processor,
        evidence_storage=evidence_storage,
        config=dispute_config,
    )
    closures = MutualClosureWorkflow(
        disputes=disputes,
        closures=stores.closures,
        directory=directory,
        processor=processor,
        config=dispute_config,
    )
    orchestrator = DisputeOrchestrator(disputes, closures, fraud=fraud, publisher=publisher)
    return TrustServices(orchestrator=orchestrator, fraud=fraud)


def build_stores(settings: Settings) -> Stores:
    """Pick store implementations for the configured backends."""
    stores = Stores()
    if settings.storage_backend == "database":
        from tooltrust.db.database import async_session_factory
        from tooltrust.db.repositories import (
            SqlActivityHistoryStore,
            SqlClosureStore,
            SqlDisputeStore,
            SqlFraudStore,
            SqlVelocityStore,
        )

        stores = Stores(
            disputes=SqlDisputeStore(async_session_factory),
            closures=SqlClosureStore(async_session_factory),
            fraud=SqlFraudStore(async_session_factory),
            velocity=SqlVelocityStore(async_session_factory),
            history=SqlActivityHistoryStore(async_session_factory),
        )
    if settings.velocity_backend == "redis":
        import redis.asyncio as aioredis

        from tooltrust.domains.fraud.redis_store import RedisVelocityStore

        stores.velocity = RedisVelocityStore(aioredis.from_url(settings.redis_url))
    logger.info(
        "stores_configured",
        storage_backend=settings.storage_backend,
        velocity_backend=settings.velocity_backend,
    )
    return stores


def build_default_services(
    settings: Settings, publisher: NotificationPublisher | None = None
) -> TrustServices:
    directory = HttpUserDirectory(settings.directory_url, timeout=settings.directory_timeout_seconds)
    processor = HttpPaymentProcessor(
        settings.payment_processor_url,
        settings.payment_processor_api_key,
        timeout=settings.payment_processor_timeout_seconds,
    )
    evidence = HttpEvidenceStorage(
        settings.evidence_storage_url, timeout=settings.evidence_storage_timeout_seconds
    )
    services = build_services(
        directory=directory,
        processor=processor,
        evidence_storage=evidence,
        publisher=publisher,
        stores=build_stores(settings),
    )
    services.resources.extend([directory, processor, evidence])
    return services


def get_services(request: Request) -> TrustServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ExternalServiceError("Services are not initialised", service="tooltrust")
    return services
