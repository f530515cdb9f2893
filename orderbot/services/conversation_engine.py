from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from orderbot.config import Settings
from orderbot.database import SessionLocal
from orderbot.logging_config import SessionLoggerAdapter, get_logger
from orderbot.services.catalog import HttpCatalogClient, StaticCatalog
from orderbot.services.errors import MalformedAddress, UnknownTenant, VersionConflict
from orderbot.services.geocoding import NominatimGeocoder
from orderbot.services.intent_service import InboundMessage, IntentResolver
from orderbot.services.order_machine import OrderStateMachine, PendingSubmission, Transition
from orderbot.services.outbound import (
    HttpOutboundChannel,
    LoggingOutboundChannel,
    OutboundChannel,
    OutboundMessage,
)
from orderbot.services.phone_identity import canonicalize
from orderbot.services.session_state import ConversationSession, Coordinate, Stage, check_invariants
from orderbot.services.session_store import (
    InMemorySessionStore,
    SessionKey,
    SessionLocks,
    SessionStore,
    SqlSessionStore,
)
from orderbot.services.submission import (
    HttpSubmissionBackend,
    InMemorySubmissionBackend,
    SubmissionBackend,
    SubmissionCoordinator,
    SubmissionResult,
)
from orderbot.services.tenant import InMemoryTenantRegistry, TenantContext, TenantRegistry, load_tenants_file

logger = get_logger("conversation_engine")

MAX_CONFLICT_RETRIES = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HandleResult:
    customer_key: Optional[str] = None
    stage: Optional[Stage] = None
    messages: list[OutboundMessage] = field(default_factory=list)
    dropped: bool = False


class ConversationEngine:
    """Entry point for one inbound message: resolve, step, persist, deliver.

    Messages for the same (tenant, customer) run one at a time under a
    per-session lock. The order submission call runs outside that lock;
    its result is applied only if the session still waits for it.
    """

    def __init__(
        self,
        store: SessionStore,
        tenants: TenantRegistry,
        resolver: IntentResolver,
        machine: OrderStateMachine,
        coordinator: SubmissionCoordinator,
        channel: Optional[OutboundChannel] = None,
        locks: Optional[SessionLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.tenants = tenants
        self.resolver = resolver
        self.machine = machine
        self.coordinator = coordinator
        self.channel = channel
        self.locks = locks or SessionLocks()
        self.clock = clock

    async def handle_inbound_message(
        self,
        tenant_id: str,
        raw_address: str,
        body: str = "",
        reply_id: Optional[str] = None,
        location: Optional[Coordinate] = None,
        profile_name: Optional[str] = None,
    ) -> list[OutboundMessage]:
        result = await self.handle(tenant_id, raw_address, body, reply_id, location, profile_name)
        return result.messages

    async def handle(
        self,
        tenant_id: str,
        raw_address: str,
        body: str = "",
        reply_id: Optional[str] = None,
        location: Optional[Coordinate] = None,
        profile_name: Optional[str] = None,
    ) -> HandleResult:
        try:
            customer_key = canonicalize(raw_address)
        except MalformedAddress:
            logger.warning(
                "Dropped message with malformed address",
                extra={"context": {"tenant_id": tenant_id}},
            )
            return HandleResult(dropped=True)

        log = SessionLoggerAdapter(logger, {"tenant_id": tenant_id, "customer_key": customer_key})
        try:
            tenant = await self.tenants.get(tenant_id)
        except UnknownTenant:
            log.warning("Dropped message for unknown tenant")
            return HandleResult(customer_key=customer_key, dropped=True)

        key: SessionKey = (tenant_id, customer_key)
        message = InboundMessage(body=body or "", reply_id=reply_id, location=location, profile_name=profile_name)

        async with self.locks.hold(key):
            session, transition = await self._step_and_persist(key, tenant, message, log)
            await self._deliver(tenant_id, customer_key, transition.messages)

        result = HandleResult(
            customer_key=customer_key,
            stage=session.stage if session else None,
            messages=list(transition.messages),
        )
        if transition.submission is None:
            return result

        outcome = await self.coordinator.submit(tenant, transition.submission.order)

        async with self.locks.hold(key):
            session, follow_up = await self._apply_submission(key, tenant, transition.submission, outcome, log)
            await self._deliver(tenant_id, customer_key, follow_up)

        if session is not None:
            result.stage = session.stage
        result.messages.extend(follow_up)
        return result

    async def _step_and_persist(
        self, key: SessionKey, tenant: TenantContext, message: InboundMessage, log: SessionLoggerAdapter
    ) -> tuple[Optional[ConversationSession], Transition]:
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            session = await self.store.get_or_create(key)
            expected_version = session.version
            stage_before = session.stage

            intent = await self.resolver.resolve(session, tenant, message)
            transition = await self.machine.step(
                session, tenant, intent, self.clock(), profile_name=message.profile_name
            )
            self._check(session, log)

            try:
                session = await self.store.put_if_version(session, expected_version)
            except VersionConflict as exc:
                log.warning(
                    "Session write conflict, retrying",
                    extra={"context": {"attempt": attempt, "expected": exc.expected, "actual": exc.actual}},
                )
                continue

            log.info(
                "Message processed",
                extra={
                    "context": {
                        "intent": intent.tag.value,
                        "from_stage": stage_before.value,
                        "to_stage": session.stage.value,
                        "version": session.version,
                    }
                },
            )
            return session, transition

        log.error("Session write conflict not resolved, message dropped")
        return None, Transition(from_stage=Stage.IDLE)

    async def _apply_submission(
        self,
        key: SessionKey,
        tenant: TenantContext,
        pending: PendingSubmission,
        outcome: SubmissionResult,
        log: SessionLoggerAdapter,
    ) -> tuple[Optional[ConversationSession], list[OutboundMessage]]:
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            session = await self.store.get(key)
            if session is None or not _still_waiting_for(session, pending):
                log.info(
                    "Submission result discarded for reset session",
                    extra={
                        "context": {
                            "reference": pending.reference,
                            "status": outcome.status.value,
                            "generation": pending.generation,
                            "current_generation": session.generation if session else None,
                        }
                    },
                )
                return session, []

            expected_version = session.version
            transition = self.machine.apply_submission(session, tenant, outcome, self.clock())
            self._check(session, log)
            try:
                session = await self.store.put_if_version(session, expected_version)
            except VersionConflict:
                log.warning("Submission result write conflict, retrying", extra={"context": {"attempt": attempt}})
                continue
            return session, transition.messages

        log.error(
            "Submission result could not be stored",
            extra={"context": {"reference": pending.reference, "status": outcome.status.value}},
        )
        return None, []

    def _check(self, session: ConversationSession, log: SessionLoggerAdapter) -> None:
        violations = check_invariants(session, self.machine.max_item_quantity)
        if violations:
            log.error(
                "Session invariant violated",
                extra={"context": {"stage": session.stage.value, "violations": violations}},
            )

    async def _deliver(self, tenant_id: str, customer_key: str, messages: list[OutboundMessage]) -> None:
        if self.channel is None:
            return
        for outbound in messages:
            await self.channel.send(tenant_id, customer_key, outbound)


def _still_waiting_for(session: ConversationSession, pending: PendingSubmission) -> bool:
    return (
        session.generation == pending.generation
        and session.stage == Stage.SUBMITTING
        and session.submission_reference == pending.reference
    )


def build_engine(settings: Settings, session_factory=None) -> ConversationEngine:
    """Wire the engine from settings: static demo data unless remote services are configured."""
    tenant_data = load_tenants_file(settings.tenants_file)

    if settings.catalog_base_url:
        catalog = HttpCatalogClient(
            settings.catalog_base_url,
            settings.catalog_api_key,
            timeout=settings.catalog_timeout_seconds,
            currency=settings.default_currency,
        )
    else:
        catalog = StaticCatalog(tenant_data, default_currency=settings.default_currency)

    if settings.session_backend == "sql":
        store: SessionStore = SqlSessionStore(session_factory or SessionLocal)
    else:
        store = InMemorySessionStore()

    if settings.submission_base_url:
        backend: SubmissionBackend = HttpSubmissionBackend(
            settings.submission_base_url,
            settings.submission_api_key,
            timeout=settings.submission_timeout_seconds,
        )
    else:
        backend = InMemorySubmissionBackend()

    channel: OutboundChannel
    if settings.outbound_base_url:
        channel = HttpOutboundChannel(settings.outbound_base_url, timeout=settings.outbound_timeout_seconds)
    else:
        channel = LoggingOutboundChannel()

    geocoder = NominatimGeocoder(
        catalog,
        settings.geocoder_base_url,
        settings.geocoder_user_agent,
        timeout=settings.geocode_timeout_seconds,
    )
    machine = OrderStateMachine(
        catalog=catalog,
        branches=catalog,
        geocoder=geocoder,
        max_item_quantity=settings.max_item_quantity,
        picker_page_size=settings.picker_page_size,
        idle_reset_minutes=settings.idle_reset_minutes,
        submission_stale_seconds=settings.submission_stale_seconds,
        external_timeout_seconds=max(settings.catalog_timeout_seconds, settings.geocode_timeout_seconds),
    )
    return ConversationEngine(
        store=store,
        tenants=InMemoryTenantRegistry.from_dict(tenant_data, settings.default_currency),
        resolver=IntentResolver(catalog, catalog_timeout_seconds=settings.catalog_timeout_seconds),
        machine=machine,
        coordinator=SubmissionCoordinator(
            backend,
            timeout_seconds=settings.submission_timeout_seconds,
            max_attempts=settings.submission_max_attempts,
            retry_backoff_seconds=settings.submission_retry_backoff_seconds,
        ),
        channel=channel,
    )
