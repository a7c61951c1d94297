"""In-memory collaborators for dispute and fraud tests, and builders that wire them."""

import asyncio
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from tooltrust.domains.disputes.config import DisputeConfig
from tooltrust.domains.disputes.mutual_closure import MutualClosureWorkflow
from tooltrust.domains.disputes.orchestrator import DisputeOrchestrator
from tooltrust.domains.disputes.state_machine import DisputeStateMachine
from tooltrust.domains.disputes.store import InMemoryClosureStore, InMemoryDisputeStore
from tooltrust.domains.fraud.config import FraudConfig
from tooltrust.domains.fraud.detector import SuspiciousActivityDetector
from tooltrust.domains.fraud.service import FraudCheckService
from tooltrust.domains.fraud.store import (
    InMemoryActivityHistoryStore,
    InMemoryFraudStore,
    InMemoryVelocityStore,
)
from tooltrust.domains.fraud.velocity import VelocityLimiter
from tooltrust.integrations.directory import PaymentInfo, RentalInfo, UserProfile
from tooltrust.integrations.notifications import NotificationEvent
from tooltrust.integrations.payments import EscalationRequest, ExternalDisputeState
from tooltrust.shared.errors import ExternalServiceError

OWNER = "owner-1"
RENTER = "renter-1"
ADMIN = "admin-1"
OTHER_ADMIN = "admin-2"
STRANGER = "stranger-1"
RENTAL = "rental-1"
PAYMENT = "payment-1"


class FakeDirectory:
    def __init__(self) -> None:
        joined = datetime(2024, 1, 15, tzinfo=UTC)
        self.users: dict[str, UserProfile] = {
            OWNER: UserProfile(user_id=OWNER, display_name="Owner", created_at=joined),
            RENTER: UserProfile(user_id=RENTER, display_name="Renter", created_at=joined),
            ADMIN: UserProfile(user_id=ADMIN, display_name="Admin", is_admin=True),
            OTHER_ADMIN: UserProfile(user_id=OTHER_ADMIN, display_name="Admin 2", is_admin=True),
            STRANGER: UserProfile(user_id=STRANGER, display_name="Stranger"),
        }
        self.rentals: dict[str, RentalInfo] = {}
        self.payments: dict[str, PaymentInfo] = {}
        self.add_rental(RENTAL, payment_id=PAYMENT, amount=Decimal("100.00"))

    def add_rental(
        self,
        rental_id: str,
        payment_id: str | None = None,
        amount: Decimal = Decimal("100.00"),
        owner_id: str = OWNER,
        renter_id: str = RENTER,
    ) -> None:
        self.rentals[rental_id] = RentalInfo(
            rental_id=rental_id,
            owner_id=owner_id,
            renter_id=renter_id,
            payment_ids=[payment_id] if payment_id else [],
        )
        if payment_id:
            self.payments[payment_id] = PaymentInfo(
                payment_id=payment_id, rental_id=rental_id, payer_id=renter_id, amount=amount
            )

    async def get_user(self, user_id: str) -> UserProfile | None:
        return self.users.get(user_id)

    async def get_rental(self, rental_id: str) -> RentalInfo | None:
        return self.rentals.get(rental_id)

    async def get_payment(self, payment_id: str) -> PaymentInfo | None:
        return self.payments.get(payment_id)

    async def is_admin(self, user_id: str) -> bool:
        user = self.users.get(user_id)
        return user is not None and user.is_admin


class FakePaymentProcessor:
    """Honours idempotency keys: a repeated key returns the first transaction id."""

    def __init__(self) -> None:
        self.refunds: dict[str, tuple[str, Decimal, str]] = {}
        self.refund_calls: Counter[str] = Counter()
        self.escalations: list[EscalationRequest] = []
        self.states: dict[str, ExternalDisputeState] = {}
        self.fail_refunds = False
        self.fail_escalations = False
        self.delay = 0.0

    async def refund(
        self, payment_id: str, amount: Decimal, reason: str, idempotency_key: str
    ) -> str:
        self.refund_calls[idempotency_key] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_refunds:
            raise ExternalServiceError("processor down", service="payment_processor")
        if idempotency_key not in self.refunds:
            self.refunds[idempotency_key] = (f"txn-{len(self.refunds) + 1}", amount, payment_id)
        return self.refunds[idempotency_key][0]

    async def escalate_dispute(self, request: EscalationRequest) -> str:
        if self.fail_escalations:
            raise ExternalServiceError("processor down", service="payment_processor")
        self.escalations.append(request)
        return f"ext-{request.dispute_id}"

    async def get_dispute(self, external_dispute_id: str) -> ExternalDisputeState:
        return self.states[external_dispute_id]

    def refunded_total(self) -> Decimal:
        return sum((amount for _, amount, _ in self.refunds.values()), Decimal("0"))


class FakeEvidenceStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail = False

    async def store(self, file_name: str, content_type: str, content: bytes, folder: str) -> str:
        if self.fail:
            raise ConnectionError("storage unavailable")
        reference = f"{folder}/{len(self.objects) + 1}-{file_name}"
        self.objects[reference] = content
        return reference


class RecordingPublisher:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[NotificationEvent] = []
        self.fail = fail

    async def publish(self, event: NotificationEvent) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


class FrozenClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class DisputeHarness:
    directory: FakeDirectory
    processor: FakePaymentProcessor
    storage: FakeEvidenceStorage
    publisher: RecordingPublisher
    clock: FrozenClock
    disputes: DisputeStateMachine
    closures: MutualClosureWorkflow
    fraud: FraudCheckService
    orchestrator: DisputeOrchestrator
    closure_store: InMemoryClosureStore


def build_fraud_service(
    directory: FakeDirectory | None = None,
    publisher: RecordingPublisher | None = None,
    config: FraudConfig | None = None,
) -> FraudCheckService:
    config = config or FraudConfig()
    store = InMemoryFraudStore()
    history = InMemoryActivityHistoryStore()
    return FraudCheckService(
        store=store,
        history=history,
        velocity=VelocityLimiter(InMemoryVelocityStore(), config),
        detector=SuspiciousActivityDetector(store, history, config),
        directory=directory,
        publisher=publisher,
        config=config,
    )


def build_harness(config: DisputeConfig | None = None) -> DisputeHarness:
    config = config or DisputeConfig()
    directory = FakeDirectory()
    processor = FakePaymentProcessor()
    storage = FakeEvidenceStorage()
    publisher = RecordingPublisher()
    clock = FrozenClock()
    closure_store = InMemoryClosureStore()
    disputes = DisputeStateMachine(
        store=InMemoryDisputeStore(),
        closures=closure_store,
        directory=directory,
        processor=processor,
        evidence_storage=storage,
        config=config,
        clock=clock,
    )
    closures = MutualClosureWorkflow(
        disputes=disputes,
        closures=closure_store,
        directory=directory,
        processor=processor,
        config=config,
    )
    fraud = build_fraud_service(directory, publisher)
    orchestrator = DisputeOrchestrator(disputes, closures, fraud=fraud, publisher=publisher)
    return DisputeHarness(
        directory=directory,
        processor=processor,
        storage=storage,
        publisher=publisher,
        clock=clock,
        disputes=disputes,
        closures=closures,
        fraud=fraud,
        orchestrator=orchestrator,
        closure_store=closure_store,
    )
