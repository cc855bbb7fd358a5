import asyncio, logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from hammr.bids import BidReconciler, SessionMaker
from hammr.db import create_tables, make_engine, session_factory
from hammr.fetchers.youtube import YouTubeChatFeed
from hammr.joblog import JobLogHandler, LogSink, attach_sink, detach_sink, select_sink
from hammr.lifecycle import ItemStateMachine
from hammr.scheduler import MonitorScheduler
from hammr.settings import Settings, load_settings

log = logging.getLogger("hammr")


@dataclass
class Runtime:
    settings: Settings
    engine: AsyncEngine
    sessions: SessionMaker
    sink: LogSink
    handler: JobLogHandler
    feed: YouTubeChatFeed
    reconciler: BidReconciler
    monitor: MonitorScheduler
    items: ItemStateMachine

    async def close(self) -> None:
        # job rows are left alone here; only serve() owns the monitor
        detach_sink(self.handler)
        close = getattr(self.sink, "close", None)
        if close is not None:
            close()
        await self.engine.dispose()


async def build_runtime(settings: Optional[Settings] = None, *, listen: bool = True) -> Runtime:
    """Wire the database, feed, reconciler, monitor and state machine together."""
    settings = settings or load_settings()
    engine = make_engine(settings.database.url, settings.database.echo)
    await create_tables(engine)
    sessions = session_factory(engine)

    sink = select_sink(settings.logs)
    handler = attach_sink(sink, logging.getLevelName(settings.logs.level.upper()))

    feed = YouTubeChatFeed(settings.feed)
    reconciler = BidReconciler(sessions)
    monitor = MonitorScheduler(sessions, feed, reconciler, settings.polling, sink=sink)
    items = ItemStateMachine(sessions)
    # every committed status change re-targets the chat monitor
    if listen:
        items.subscribe(monitor.handle_status_change)

    return Runtime(settings, engine, sessions, sink, handler, feed, reconciler, monitor, items)


async def serve(rescan_seconds: float = 30) -> None:
    rt = await build_runtime()
    started = await rt.monitor.initialize()
    rt.monitor.watch(rescan_seconds)
    print(f"hammr monitor started ({started} jobs) – Ctrl+C to quit")
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        pass
    finally:
        log.info("Shutting down monitor")
        await rt.monitor.shutdown()
        await rt.close()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass
