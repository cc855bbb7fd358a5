import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from hammr.bids import BidReconciler, SessionMaker, extract_candidates
from hammr.core import ChatFeed, ItemStatus, TransportFailure, utcnow
from hammr.db import (
    Auction,
    Item,
    MonitoringJob,
    active_jobs,
    auction_ids_for_item,
    items_being_sold,
)
from hammr.joblog import MONITOR_LOGGER, JobLogger, LogEntry, LogSink, job_logger
from hammr.settings import PollingCfg

log = logging.getLogger(MONITOR_LOGGER)


@dataclass
class MonitorJob:
    auction_id: int
    item_id: int
    current_polling_interval: int = 10_000
    pagination_token: Optional[str] = None
    auction_not_found_count: int = 0
    item_not_found_count: int = 0
    last_processed_time: datetime = field(default_factory=utcnow)
    starting: bool = False  # setup in progress, next cycle not armed yet
    active: bool = False  # the self-rescheduling loop is alive

    @property
    def key(self) -> tuple[int, int]:
        return (self.auction_id, self.item_id)

    @property
    def job_id(self) -> str:
        return f"monitor:{self.auction_id}:{self.item_id}"

    def restore(self, row: MonitoringJob) -> None:
        self.current_polling_interval = row.current_polling_interval
        self.pagination_token = row.pagination_token
        self.auction_not_found_count = row.auction_not_found_count
        self.item_not_found_count = row.item_not_found_count


@dataclass(frozen=True)
class JobStatus:
    auction_id: int
    item_id: int
    last_processed_time: datetime
    current_polling_interval: int
    is_active: bool


class MonitorScheduler:
    """
    Process-wide table of chat polling jobs, one per (auction, item).

    Each job is a chain of one-shot APScheduler jobs: a cycle (fetch +
    reconcile + persist) runs to completion and only then arms the next
    one, so a job never has two fetches in flight. Cursor, interval and
    failure counters are written to `MonitoringJob` after every cycle,
    which is what `initialize()` resumes from after a restart.
    """

    def __init__(
        self,
        sessions: SessionMaker,
        feed: ChatFeed,
        reconciler: BidReconciler,
        polling: PollingCfg = PollingCfg(),
        *,
        sink: Optional[LogSink] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self._sessions = sessions
        self.feed = feed
        self.reconciler = reconciler
        self.polling = polling
        self.sink = sink
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._jobs: dict[tuple[int, int], MonitorJob] = {}
        self._initialized = False

    # ---- lifecycle -----------------------------------------------------

    async def initialize(self) -> int:
        """Re-attach a job to every item left BEING_SOLD. Runs once."""
        if self._initialized:
            log.info("Monitor already initialized")
            return 0
        self._initialized = True
        log.info("Initializing background auction monitor...")
        self._ensure_running()

        try:
            targets = await self._recovery_targets()
        except SQLAlchemyError:
            self._initialized = False
            log.exception("Failed to initialize monitor")
            raise

        log.info("Found %d items being sold", len(targets))
        started = 0
        for auction_id, item_id in targets:
            if await self.start_monitoring(auction_id, item_id):
                started += 1
            else:
                job_logger(auction_id, item_id).error("Failed to resume monitoring")
        log.info("Monitor initialized (%d jobs started)", started)
        return started

    async def rescan(self) -> int:
        """Pick up items put on sale by another process (the CLI)."""
        started = 0
        for auction_id, item_id in await self._recovery_targets():
            if any(i == item_id for _, i in self._jobs):
                continue
            if await self.start_monitoring(auction_id, item_id):
                started += 1
        if started:
            log.info("Rescan started %d new jobs", started)
        return started

    def watch(self, every_seconds: float = 30) -> None:
        self._ensure_running()
        self.scheduler.add_job(
            self.rescan,
            "interval",
            seconds=every_seconds,
            id="monitor:rescan",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    async def stop_all(self) -> int:
        count = len(self._jobs)
        for job in list(self._jobs.values()):
            self._cancel(job)
            job_logger(*job.key).info("Stopped monitoring")
        self._jobs.clear()
        self._initialized = False

        try:
            async with self._sessions() as session:
                for row in await active_jobs(session):
                    row.is_active = False
                    row.updated_at = utcnow()
                    session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            log.warning("Could not mark job records inactive: %s", exc)

        self.feed.invalidate()
        log.info("All background monitoring stopped (%d jobs)", count)
        return count

    async def emergency_cleanup(self) -> list[str]:
        """
        Stop everything, then drop every callback the APScheduler still
        holds, tracked by this table or not (leaked timers included).
        """
        log.warning("EMERGENCY CLEANUP: removing all scheduled callbacks")
        await self.stop_all()
        leftovers = sorted((job.id for job in self.scheduler.get_jobs()), key=_job_order)
        self.scheduler.remove_all_jobs()
        log.warning(
            "Emergency cleanup cleared %d callbacks (highest id: %s)",
            len(leftovers),
            leftovers[-1] if leftovers else "none",
        )
        return leftovers

    async def shutdown(self) -> None:
        await self.stop_all()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    # ---- start / stop --------------------------------------------------

    async def start_monitoring(self, auction_id: int, item_id: int) -> bool:
        key = (auction_id, item_id)
        jlog = job_logger(auction_id, item_id)

        job = self._jobs.get(key)
        if job is not None and (job.active or job.starting):
            jlog.info("Already monitoring - skipping duplicate")
            return True
        fresh = job is None
        if fresh:
            # placeholder goes in before the first await so concurrent starts see it
            job = self._jobs[key] = MonitorJob(
                auction_id, item_id, current_polling_interval=self.polling.initial_interval_ms
            )
        else:
            jlog.warning("Found idle monitor job - reactivating")
        job.starting = True

        try:
            async with self._sessions() as session:
                auction = await session.get(Auction, auction_id)
                item = await session.get(Item, item_id)
                reason = None
                if auction is None or item is None:
                    reason = "Auction or item not found"
                elif item.status != ItemStatus.BEING_SOLD:
                    reason = f"Item is not being sold (status: {item.status.value})"
                elif auction.stream_ref() is None:
                    reason = "Auction has no video or channel configured"
                if reason:
                    jlog.warning(reason)
                    self._drop(job)
                    return False

                row = await session.get(MonitoringJob, key)
                if row is None:
                    row = MonitoringJob(
                        auction_id=auction_id,
                        item_id=item_id,
                        current_polling_interval=job.current_polling_interval,
                    )
                else:
                    if fresh:
                        job.restore(row)
                    row.is_active = True
                    row.updated_at = utcnow()
                session.add(row)
                await session.commit()
        except SQLAlchemyError:
            jlog.exception("Failed to start monitoring")
            self._drop(job)
            return False

        if self._jobs.get(key) is not job:
            # stopped while we were setting up
            return False

        self._cancel(job)
        for other in [k for k in self._jobs if k[1] == item_id and k != key]:
            job_logger(*other).warning(
                "Item %s is monitored under another auction - stopping it", item_id
            )
            await self.stop_monitoring(*other)

        job.starting = False
        job.active = True
        self._ensure_running()
        self._arm(job, 0)
        jlog.info(
            "Started monitoring (interval %sms, cursor %s)",
            job.current_polling_interval,
            "resumed" if job.pagination_token else "new",
        )
        return True

    async def stop_monitoring(self, auction_id: int, item_id: int) -> bool:
        key = (auction_id, item_id)
        jlog = job_logger(auction_id, item_id)
        updated = False
        auction = None
        try:
            async with self._sessions() as session:
                row = await session.get(MonitoringJob, key)
                if row is not None:
                    row.is_active = False
                    row.updated_at = utcnow()
                    session.add(row)
                    await session.commit()
                    updated = True
                    jlog.info("Job record marked inactive")
                auction = await session.get(Auction, auction_id)
        except SQLAlchemyError as exc:
            jlog.warning("Could not mark job record inactive: %s", exc)

        job = self._jobs.pop(key, None)
        if job is None:
            jlog.info("Not monitoring in memory")
        else:
            self._cancel(job)
            job.active = False
            jlog.info("Stopped monitoring (remaining jobs: %d)", len(self._jobs))

        stream = auction.stream_ref() if auction else None
        if stream is not None:
            self.feed.invalidate(stream)
            jlog.debug("Cleared chat cache for %s %s", stream.kind, stream.value)

        if self.sink is not None:
            self.sink.purge(auction_id, item_id)
            log.info("Cleaned up logs for job %s-%s", auction_id, item_id)
        return updated

    async def handle_status_change(
        self, item_id: int, new_status: ItemStatus, auction_id: Optional[int] = None
    ) -> None:
        new_status = ItemStatus(new_status)
        log.info("Item %s status changed to %s", item_id, new_status.value)

        async with self._sessions() as session:
            linked = await auction_ids_for_item(session, item_id)
        in_memory = [a for a, i in self._jobs if i == item_id]
        for aid in dict.fromkeys(linked + in_memory):
            await self.stop_monitoring(aid, item_id)

        if new_status != ItemStatus.BEING_SOLD:
            return

        async with self._sessions() as session:
            stale = (
                await session.exec(
                    select(MonitoringJob).where(
                        MonitoringJob.item_id == item_id,
                        MonitoringJob.is_active == True,  # noqa: E712
                    )
                )
            ).all()
        for row in stale:
            log.warning("Item %s still had an active job row in auction %s", item_id, row.auction_id)
            await self.stop_monitoring(row.auction_id, item_id)

        target = auction_id or (linked[0] if linked else None)
        if target is None:
            log.warning("Item %s is not in any auction - nothing to monitor", item_id)
            return
        await self.start_monitoring(target, item_id)

    # ---- poll cycle ----------------------------------------------------

    async def poll_once(self, auction_id: int, item_id: int) -> None:
        """Run one cycle for a job. Never raises; failures back the job off."""
        job = self._jobs.get((auction_id, item_id))
        jlog = job_logger(auction_id, item_id)
        if job is None:
            jlog.debug("No monitoring job - skipping cycle")
            return
        try:
            await self._cycle(job, jlog)
        except TransportFailure as exc:
            jlog.warning("Feed fetch failed: %s", exc)
            await self._back_off(job, jlog)
        except Exception:
            jlog.exception("Error processing bids")
            await self._back_off(job, jlog)

    async def _tick(self, auction_id: int, item_id: int) -> None:
        job = self._jobs.get((auction_id, item_id))
        if job is None:
            return
        await self.poll_once(auction_id, item_id)
        # stopped (or replaced) while the cycle ran: no continuation
        if self._jobs.get(job.key) is job and job.active:
            self._arm(job, job.current_polling_interval)

    async def _cycle(self, job: MonitorJob, jlog: JobLogger) -> None:
        async with self._sessions() as session:
            auction = await session.get(Auction, job.auction_id)
            item = await session.get(Item, job.item_id)

        if auction is None:
            job.auction_not_found_count += 1
            await self._not_found(job, jlog, "Auction", job.auction_not_found_count)
            return
        job.auction_not_found_count = 0
        if item is None:
            job.item_not_found_count += 1
            await self._not_found(job, jlog, "Item", job.item_not_found_count)
            return
        job.item_not_found_count = 0

        if item.status != ItemStatus.BEING_SOLD:
            jlog.info("Item is no longer being sold (status: %s) - stopping", item.status.value)
            await self.stop_monitoring(*job.key)
            return

        stream = auction.stream_ref()
        if stream is None:
            jlog.info("No video or channel configured - skipping cycle")
            await self._persist(job, jlog)
            return
        chat_id = await self.feed.resolve_chat_session(stream)
        if not chat_id:
            jlog.warning("No active live chat for %s %s", stream.kind, stream.value)
            await self._persist(job, jlog)
            return

        page = await self.feed.fetch_page(chat_id, job.pagination_token)
        if self._jobs.get(job.key) is not job:
            jlog.debug("Job stopped during fetch - discarding page")
            return

        jlog.info("Feed page: %d messages", len(page.messages))
        if page.next_page_token:
            job.pagination_token = page.next_page_token
        interval = max(page.recommended_interval_ms, self.polling.min_interval_ms)
        if interval != job.current_polling_interval:
            jlog.info("Polling interval %sms -> %sms", job.current_polling_interval, interval)
            job.current_polling_interval = interval

        candidates = extract_candidates(page.messages)
        if candidates:
            jlog.info("Processing %d bids from chat", len(candidates))
            result = await self.reconciler.process_incoming_bids(
                job.auction_id, job.item_id, candidates
            )
            if result.created:
                jlog.info("Accepted %d new bids", result.created)
            if result.errors:
                jlog.warning(
                    "%d bids rejected", len(result.errors), extra={"metadata": result.errors}
                )
        else:
            jlog.debug("No bids in this cycle")

        job.last_processed_time = utcnow()
        await self._persist(job, jlog)

    async def _not_found(self, job: MonitorJob, jlog: JobLogger, what: str, count: int) -> None:
        limit = self.polling.max_not_found
        jlog.error("%s not found (attempt %d/%d)", what, count, limit)
        if count >= limit:
            jlog.error("%s not found %d times - stopping job", what, count)
            await self.stop_monitoring(*job.key)
            return
        await self._persist(job, jlog)

    async def _back_off(self, job: MonitorJob, jlog: JobLogger) -> None:
        backoff = self.polling.error_backoff_ms
        if job.current_polling_interval < backoff:
            jlog.info("Extending polling interval to %sms after error", backoff)
            job.current_polling_interval = backoff
        # a restart during an outage must not resume at the short interval
        if self._jobs.get(job.key) is job:
            await self._persist(job, jlog)

    async def _persist(self, job: MonitorJob, jlog: JobLogger) -> None:
        try:
            async with self._sessions() as session:
                row = await session.get(MonitoringJob, job.key)
                if row is None:
                    jlog.warning("Job record is gone - state not saved")
                    return
                row.last_processed_time = job.last_processed_time
                row.current_polling_interval = job.current_polling_interval
                row.pagination_token = job.pagination_token
                row.auction_not_found_count = job.auction_not_found_count
                row.item_not_found_count = job.item_not_found_count
                row.updated_at = utcnow()
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            jlog.warning("Could not update job record: %s", exc)

    # ---- timers --------------------------------------------------------

    def _ensure_running(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            log.info("APScheduler started")

    def _arm(self, job: MonitorJob, delay_ms: int) -> None:
        self.scheduler.add_job(
            self._tick,
            "date",
            run_date=datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms),
            args=[job.auction_id, job.item_id],
            id=job.job_id,
            name=f"monitor {job.auction_id}-{job.item_id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=None,
        )

    def _cancel(self, job: MonitorJob) -> None:
        try:
            self.scheduler.remove_job(job.job_id)
        except JobLookupError:
            pass

    def _drop(self, job: MonitorJob) -> None:
        if self._jobs.get(job.key) is job:
            del self._jobs[job.key]
        job.starting = False

    # ---- status --------------------------------------------------------

    def is_monitoring(self, auction_id: int, item_id: int) -> bool:
        job = self._jobs.get((auction_id, item_id))
        return job is not None and job.active

    @property
    def job_count(self) -> int:
        return len(self._jobs)

    async def get_status(self) -> list[JobStatus]:
        try:
            async with self._sessions() as session:
                rows = await active_jobs(session)
            return [
                JobStatus(
                    r.auction_id,
                    r.item_id,
                    r.last_processed_time,
                    r.current_polling_interval,
                    r.is_active,
                )
                for r in rows
            ]
        except SQLAlchemyError as exc:
            log.warning("Could not read job records, using memory: %s", exc)
            return [
                JobStatus(j.auction_id, j.item_id, j.last_processed_time, j.current_polling_interval, True)
                for j in self._jobs.values()
            ]

    def job_logs(self, auction_id: int, item_id: int, count: Optional[int] = None) -> list[LogEntry]:
        return self.sink.job_entries(auction_id, item_id, count) if self.sink else []

    def global_logs(self, count: Optional[int] = None) -> list[LogEntry]:
        return self.sink.global_entries(count) if self.sink else []

    # ---- recovery ------------------------------------------------------

    async def _recovery_targets(self) -> list[tuple[int, int]]:
        """One (auction, item) per item being sold; prefer the auction whose job row is live."""
        targets = []
        async with self._sessions() as session:
            live = {(r.auction_id, r.item_id) for r in await active_jobs(session)}
            for item in await items_being_sold(session):
                linked = await auction_ids_for_item(session, item.id)
                linked.sort(key=lambda a: (a, item.id) not in live)
                for aid in linked:
                    auction = await session.get(Auction, aid)
                    if auction is not None and auction.stream_ref() is not None:
                        targets.append((aid, item.id))
                        break
        return targets


def _job_order(job_id: str) -> tuple[int, int, int]:
    """Sort key for APScheduler ids: monitor jobs by (auction, item), others first."""
    parts = job_id.split(":")
    if len(parts) == 3 and parts[0] == "monitor" and parts[1].isdigit() and parts[2].isdigit():
        return (1, int(parts[1]), int(parts[2]))
    return (0, 0, 0)
