"""
MutationService - the two entry points the handler layer calls.

- submit(intents, options) -> MutationSummary
- restore_snapshot(snapshot_id) -> MutationSummary

Both always return a summary; validation errors, policy denials and remote
failures come back as structured ``error`` details.
"""

from datetime import timedelta
from typing import Any, Mapping, Sequence

from loguru import logger
from pydantic import ValidationError

from sheetguard.exceptions import IntentValidationError, SnapshotNotFoundError
from sheetguard.remote.base import RemoteDocumentService
from sheetguard.remote.sheets import SheetsApiClient
from sheetguard.safety.compiler import BatchCompiler, CompilerConfig
from sheetguard.safety.diff import DiffEngine
from sheetguard.safety.models import (
    DocumentSummary,
    IntentBase,
    MutationStatus,
    MutationSummary,
    SubmitOptions,
    parse_intents,
)
from sheetguard.safety.policy import PolicyConfig, PolicyEnforcer
from sheetguard.safety.snapshot import SnapshotService
from sheetguard.safety.store import SnapshotStore
from sheetguard.services.cache import CacheManager
from sheetguard.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from sheetguard.services.client import ResilienceConfig, ResilientDocumentService
from sheetguard.services.deduplicator import RequestDeduplicator
from sheetguard.services.errors import ServiceError
from sheetguard.services.rate_limiter import ConcurrencyGate, RateLimit, RateLimiter
from sheetguard.services.retry import RetryConfig, RetryExecutor
from sheetguard.settings import Settings


class MutationService:
    """
    Owns every component of the mutation safety layer.

    Usage:
        service = await MutationService.build(Settings.from_env())
        summary = await service.submit(intents, SubmitOptions(dry_run=True))
        await service.shutdown()
    """

    def __init__(
        self,
        remote: ResilientDocumentService,
        compiler: BatchCompiler,
        snapshots: SnapshotService,
        diff_engine: DiffEngine,
    ):
        self.remote = remote
        self.compiler = compiler
        self.snapshots = snapshots
        self.diff_engine = diff_engine

    @classmethod
    async def build(
        cls,
        settings: Settings | None = None,
        remote: RemoteDocumentService | None = None,
    ) -> "MutationService":
        """Wire all components from settings. ``remote`` defaults to the Sheets API client."""
        settings = settings or Settings.from_env()
        if remote is None:
            remote = SheetsApiClient(
                token=settings.sheets_api_token,
                base_url=settings.sheets_api_base_url,
                timeout=settings.request_timeout,
            )

        resilient = ResilientDocumentService(
            remote,
            cache=CacheManager(
                max_size=settings.cache_max_size,
                default_ttl=timedelta(seconds=settings.cache_ttl_seconds),
                debug=settings.debug,
            ),
            breakers=CircuitBreakerRegistry(
                CircuitBreakerConfig(
                    failure_threshold=settings.circuit_failure_threshold,
                    failure_window=timedelta(seconds=settings.circuit_failure_window),
                    reset_timeout=timedelta(seconds=settings.circuit_reset_timeout),
                )
            ),
            deduplicator=RequestDeduplicator(debug=settings.debug),
            rate_limiter=RateLimiter(
                RateLimit(
                    max_calls=settings.rate_limit_calls,
                    per_seconds=settings.rate_limit_period,
                )
            ),
            retry=RetryExecutor(
                RetryConfig(
                    max_attempts=settings.retry_max_attempts,
                    base_delay=settings.retry_base_delay,
                    max_delay=settings.retry_max_delay,
                    jitter=settings.retry_jitter,
                )
            ),
            gate=ConcurrencyGate(
                max_in_flight=settings.max_concurrent_calls,
                max_queue_depth=settings.max_queue_depth,
            ),
            config=ResilienceConfig(
                cache_ttl=timedelta(seconds=settings.cache_ttl_seconds),
                default_deadline_seconds=settings.default_deadline_seconds,
            ),
        )

        store = SnapshotStore(settings.snapshot_database_url, echo=settings.debug)
        await store.init()
        snapshots = SnapshotService(
            resilient,
            store,
            retention=timedelta(seconds=settings.snapshot_retention_seconds),
        )
        diff_engine = DiffEngine(max_reported_changes=settings.diff_max_reported_changes)
        policy = PolicyEnforcer(
            resilient,
            PolicyConfig(
                max_cells_affected=settings.max_cells_affected,
                max_cells_ceiling=settings.max_cells_ceiling,
            ),
        )
        compiler = BatchCompiler(
            resilient,
            policy,
            snapshots,
            diff_engine,
            CompilerConfig(max_batch_requests=settings.max_batch_requests),
        )

        logger.info(f"MutationService ready (remote: {remote.service_id})")
        return cls(resilient, compiler, snapshots, diff_engine)

    async def submit(
        self,
        intents: Sequence[Mapping[str, Any] | IntentBase],
        options: SubmitOptions | Mapping[str, Any] | None = None,
    ) -> MutationSummary:
        """Validate, evaluate and apply a set of intents."""
        try:
            parsed = parse_intents(intents)
        except IntentValidationError as e:
            logger.info(f"[MutationService] Rejected submission: {e}")
            return MutationSummary.from_error(MutationStatus.DENIED, e.to_detail())

        if options is None or isinstance(options, SubmitOptions):
            opts = options or SubmitOptions()
        else:
            try:
                opts = SubmitOptions.model_validate(options)
            except ValidationError as e:
                error = IntentValidationError.from_pydantic(e)
                logger.info(f"[MutationService] Rejected options: {error}")
                return MutationSummary.from_error(MutationStatus.DENIED, error.to_detail())
        return await self.compiler.execute(parsed, opts)

    async def restore_snapshot(
        self, snapshot_id: str, deadline_seconds: float | None = None
    ) -> MutationSummary:
        """
        Write a snapshot's captured values back to its document.

        The restore goes through the same resilience stack as any other write.
        """
        deadline = self.remote.new_deadline(deadline_seconds)
        try:
            record = await self.snapshots.load(snapshot_id)
            current = await self.snapshots.read_current(
                record.document_id, [r.region for r in record.ranges], deadline
            )
            await self.snapshots.restore(snapshot_id, deadline)
        except SnapshotNotFoundError as e:
            logger.warning(f"[MutationService] {e}")
            return MutationSummary.from_error(MutationStatus.FAILED, e.to_detail())
        except ServiceError as e:
            logger.warning(f"[MutationService] Restore of {snapshot_id} failed: {e}")
            return MutationSummary.from_error(MutationStatus.FAILED, e.to_detail())

        diff = self.diff_engine.diff_many(zip(current, record.ranges))
        document = DocumentSummary(
            document_id=record.document_id,
            status=MutationStatus.APPLIED,
            cells_affected=diff.total_changes,
            diff=diff,
            completed_calls=1,
            total_calls=1,
        )
        return MutationSummary.from_documents([document])

    def get_health_status(self) -> dict[str, Any]:
        return self.remote.get_health_status()

    async def shutdown(self) -> None:
        """Cancel in-flight reads, close the remote client and the snapshot store."""
        await self.remote.close()
        await self.snapshots.close()
        logger.info("MutationService stopped")
