"""Application Layer - Runtime Factory.

Wires the pipeline from settings: event bus, record store, job queue, LLM
client, decision engine, both executors, both agents and the periodic
sweep jobs. Collaborators can be injected for tests and embedding; every
one that is omitted is created from the in-process implementations.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

import structlog

from opsagent.application.action_executor import (
    ActionExecutor,
    ActionExecutorBuilder,
    ExecutorConfig,
)
from opsagent.application.decision_engine import DecisionEngine
from opsagent.application.maintenance_jobs import (
    SEND_REMINDER_JOB,
    ReminderProcessor,
    ReminderScanner,
    StaleTaskCleanup,
    StatsAggregator,
)
from opsagent.application.orchestration_agent import OrchestrationAgent
from opsagent.application.sla_monitor import TASK_EVENT_JOB, SLAMonitor
from opsagent.application.task_action_executor import TaskActionExecutor
from opsagent.application.task_agent import TASK_EVENT_SUBSCRIPTIONS, TaskAgent
from opsagent.core.domain.config_schema import OpsAgentSettings
from opsagent.core.domain.events import TASK_SLA_BREACHED
from opsagent.core.interfaces.event_bus import EventBusProtocol
from opsagent.core.interfaces.job_queue import JobQueueProtocol
from opsagent.core.interfaces.llm import LLMClientProtocol
from opsagent.core.interfaces.notifier import NotifierProtocol
from opsagent.core.interfaces.record_store import RecordStoreProtocol
from opsagent.infrastructure.llm.litellm_client import LiteLLMClient
from opsagent.infrastructure.messaging.event_bus import InMemoryEventBus
from opsagent.infrastructure.notifications.queue_notifier import QueueNotifier
from opsagent.infrastructure.persistence.in_memory_store import InMemoryRecordStore
from opsagent.infrastructure.queue.in_memory_queue import InMemoryJobQueue
from opsagent.infrastructure.scheduler.periodic_scheduler import PeriodicScheduler

logger = structlog.get_logger(__name__)

SLA_CHECK_JOB = "sla-check"
CHECK_REMINDERS_JOB = "check-reminders"
CLEANUP_STALE_JOB = "cleanup-stale"
AGGREGATE_STATS_JOB = "aggregate-stats"


@dataclass
class OpsAgentRuntime:
    """Fully wired pipeline."""

    settings: OpsAgentSettings
    event_bus: EventBusProtocol
    store: RecordStoreProtocol
    job_queue: JobQueueProtocol
    llm_client: LLMClientProtocol
    engine: DecisionEngine
    executor: ActionExecutor
    task_executor: TaskActionExecutor
    orchestrator: OrchestrationAgent
    task_agent: TaskAgent
    sla_monitor: SLAMonitor
    reminder_processor: ReminderProcessor
    scheduler: PeriodicScheduler

    async def start(self) -> None:
        """Subscribe both agents and start the periodic jobs when enabled."""
        self.orchestrator.start()
        self.task_agent.start()
        if self.settings.scheduler.enabled:
            await self.scheduler.start()
        logger.info("runtime.started", scheduler=self.scheduler.is_running)

    async def stop(self) -> None:
        await self.scheduler.stop()
        self.task_agent.stop()
        self.orchestrator.stop()
        logger.info("runtime.stopped")

    async def dispatch_queued_jobs(self) -> list[dict[str, Any]]:
        """Run due ``send-reminder`` and ``task-event`` jobs in process.

        Only available with the in-memory queue; other queues are consumed
        by external workers. A failing job is reported and does not stop
        the remaining ones.
        """
        if not isinstance(self.job_queue, InMemoryJobQueue):
            return []
        reports: list[dict[str, Any]] = []
        for job in self.job_queue.drain({SEND_REMINDER_JOB, TASK_EVENT_JOB}):
            try:
                if job.job_type == SEND_REMINDER_JOB:
                    result: Any = await self.reminder_processor.process(job.payload)
                else:
                    task_result = await self.task_agent.process_task_event(
                        str(job.payload["task_id"]),
                        str(job.payload.get("org_id") or ""),
                        str(job.payload.get("event_type", TASK_EVENT_JOB)),
                        job.payload,
                        event_id=job.job_id,
                    )
                    result = task_result.to_dict()
            except Exception as exc:
                logger.error(
                    "runtime.job_failed",
                    job_id=job.job_id,
                    job_type=job.job_type,
                    error=str(exc),
                )
                reports.append(
                    {"job_id": job.job_id, "job_type": job.job_type, "error": str(exc)}
                )
                continue
            reports.append({"job_id": job.job_id, "job_type": job.job_type, "result": result})
        return reports


def build_runtime(
    settings: OpsAgentSettings | None = None,
    *,
    store: RecordStoreProtocol | None = None,
    event_bus: EventBusProtocol | None = None,
    job_queue: JobQueueProtocol | None = None,
    llm_client: LLMClientProtocol | None = None,
    notifier: NotifierProtocol | None = None,
    org_id: str | None = None,
    dry_run: bool | None = None,
) -> OpsAgentRuntime:
    """Create a runtime; omitted collaborators get in-process defaults."""
    settings = settings or OpsAgentSettings()
    bus = event_bus or InMemoryEventBus(history_size=settings.event_bus.history_size)
    records = store or InMemoryRecordStore()
    queue = job_queue or InMemoryJobQueue()
    llm = llm_client or LiteLLMClient(settings.llm)

    executor_config = ExecutorConfig.from_settings(settings.executor, org_id=org_id)
    if dry_run is not None:
        executor_config = replace(executor_config, dry_run=dry_run)
    executor = ActionExecutorBuilder(bus, executor_config).with_stub_handlers().build()
    task_executor = TaskActionExecutor(records, bus, queue)
    engine = DecisionEngine(llm, settings.decision)
    run_dry = executor_config.dry_run

    orchestrator = OrchestrationAgent(
        engine, executor, bus, records, settings, org_id=org_id, dry_run=run_dry
    )
    # SLA breaches reach the task agent only through the task-event job.
    task_agent = TaskAgent(
        engine,
        task_executor,
        bus,
        records,
        dry_run=run_dry,
        subscriptions=tuple(e for e in TASK_EVENT_SUBSCRIPTIONS if e != TASK_SLA_BREACHED),
    )

    scheduler_settings = settings.scheduler
    sla_monitor = SLAMonitor(records, bus, queue, scheduler_settings.sla)
    reminder_scanner = ReminderScanner(records, queue, scheduler_settings.reminder_batch_size)
    reminder_processor = ReminderProcessor(records, notifier or QueueNotifier(queue))
    stale_cleanup = StaleTaskCleanup(
        records,
        queue,
        stale_after_minutes=scheduler_settings.stale_after_minutes,
        max_retries=scheduler_settings.max_retries,
    )
    stats_aggregator = StatsAggregator(records)

    async def check_sla() -> dict[str, Any]:
        return (await sla_monitor.check_all_pending()).to_dict()

    scheduler = PeriodicScheduler(run_history_limit=scheduler_settings.run_history_limit)
    scheduler.add_job(SLA_CHECK_JOB, scheduler_settings.sla_check_interval, check_sla)
    scheduler.add_job(
        CHECK_REMINDERS_JOB, scheduler_settings.reminder_scan_interval, reminder_scanner.run
    )
    scheduler.add_job(
        CLEANUP_STALE_JOB, scheduler_settings.stale_cleanup_interval, stale_cleanup.run
    )
    scheduler.add_job(AGGREGATE_STATS_JOB, scheduler_settings.stats_interval, stats_aggregator.run)

    logger.info(
        "runtime.built",
        model=settings.llm.model,
        dry_run=run_dry,
        jobs=[job.name for job in scheduler.list_jobs()],
    )
    return OpsAgentRuntime(
        settings=settings,
        event_bus=bus,
        store=records,
        job_queue=queue,
        llm_client=llm,
        engine=engine,
        executor=executor,
        task_executor=task_executor,
        orchestrator=orchestrator,
        task_agent=task_agent,
        sla_monitor=sla_monitor,
        reminder_processor=reminder_processor,
        scheduler=scheduler,
    )
