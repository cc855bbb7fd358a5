import asyncio
import logging
from logging.handlers import RotatingFileHandler
from typing import Annotated, Optional
import os
import typer
from hammr.runtime import build_runtime, main as run
from hammr.core import ItemStatus
from hammr.db import Auction, add_auction, add_item, attach_item, discount_used, items_in_auction

if os.getenv("DEBUG_CLI", "0") == "1":
    import debugpy

    debugpy.listen(("0.0.0.0", 5679))
    if os.getenv("DEBUGPY_WAIT", "0") == "1":
        debugpy.wait_for_client()


# ---------------------------------------------------------------------------
# Global logging configuration - set once at import time
# ---------------------------------------------------------------------------
LOG_LEVEL = logging.DEBUG if os.getenv("HAMMR_DEBUG", "0") == "1" else logging.INFO
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s -- %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
file_handler = RotatingFileHandler(
    "./hammr.log", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
)
file_handler.setLevel(LOG_LEVEL)
file_handler.setFormatter(
    logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s -- %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
)

root = logging.getLogger()  # root logger
root.addHandler(file_handler)


app = typer.Typer(help="hammr CLI")


def _with_runtime(fn):
    """Run `fn(rt)` against a fresh runtime that does not drive the monitor."""

    async def runner():
        rt = await build_runtime(listen=False)
        try:
            return await fn(rt)
        finally:
            await rt.close()

    return asyncio.run(runner())


@app.command()
def start():
    """Run the chat monitor."""
    run()


@app.command()
def status():
    """List active monitoring jobs."""

    async def go(rt):
        return await rt.monitor.get_status()

    jobs = _with_runtime(go)
    if not jobs:
        print("no active monitoring jobs")
    for job in jobs:
        print(
            f"{job.auction_id:>5}-{job.item_id:<5} | every {job.current_polling_interval / 1000:g}s"
            f" | last cycle {job.last_processed_time:%H:%M:%S}"
        )


@app.command()
def logs(
    auction: Annotated[Optional[int], typer.Option("--auction", "-a")] = None,
    item: Annotated[Optional[int], typer.Option("--item", "-i")] = None,
    count: Annotated[int, typer.Option("--count", "-n", help="Number of entries.")] = 20,
):
    """Show monitor activity, for one job or globally."""

    async def go(rt):
        if auction is not None and item is not None:
            return rt.monitor.job_logs(auction, item, count)
        return rt.monitor.global_logs(count)

    for entry in reversed(_with_runtime(go)):
        print(f"{entry.timestamp:%H:%M:%S} {entry.level:<7} {entry.message}")


@app.command()
def bid(auction_id: int, item_id: int, name: str, amount: float):
    """Place a manual bid."""

    async def go(rt):
        return await rt.reconciler.create_manual_bid(auction_id, item_id, name, amount)

    result = _with_runtime(go)
    if not result.success:
        print(f"rejected: {result.error}")
        raise typer.Exit(1)
    print(f"accepted: {result.bid.bidder_name} ${result.bid.amount:,.2f}")


@app.command("set-status")
def set_status(
    item_id: int,
    new_status: ItemStatus,
    auction: Annotated[Optional[int], typer.Option("--auction", "-a")] = None,
):
    """Move an item through READY / BEING_SOLD / SOLD / WITHDRAWN."""

    async def go(rt):
        return await rt.items.transition(item_id, new_status, auction)

    try:
        row = _with_runtime(go)
    except (LookupError, ValueError, RuntimeError) as exc:
        print(f"error: {exc}")
        raise typer.Exit(1)
    print(f"item {row.id} is now {row.status.value}")


@app.command("add-auction")
def add_auction_cmd(
    name: str,
    video: Annotated[Optional[str], typer.Option("--video")] = None,
    channel: Annotated[Optional[str], typer.Option("--channel")] = None,
    pool: Annotated[float, typer.Option("--discount-pool")] = 0,
):
    """Create an auction bound to a live video or a channel."""

    async def go(rt):
        async with rt.sessions() as session:
            return await add_auction(
                session, name, video_id=video, channel_id=channel, discount_pool=pool
            )

    try:
        row = _with_runtime(go)
    except ValueError as exc:
        print(f"error: {exc}")
        raise typer.Exit(1)
    print(f"auction {row.id} created")


@app.command("add-item")
def add_item_cmd(
    auction_id: int,
    name: str,
    price: float,
    step: Annotated[float, typer.Option("--step")] = 1,
    discount: Annotated[float, typer.Option("--discount")] = 0,
):
    """Create an item and append it to an auction."""

    async def go(rt):
        async with rt.sessions() as session:
            row = await add_item(session, name, price, price_step=step, discount=discount)
            await attach_item(session, auction_id, row.id)
            return row

    row = _with_runtime(go)
    print(f"item {row.id} added to auction {auction_id}")


@app.command("auction")
def show_auction(auction_id: int):
    """Show an auction's lots in running order."""

    async def go(rt):
        async with rt.sessions() as session:
            auction = await session.get(Auction, auction_id)
            if auction is None:
                return None
            return (
                auction,
                await items_in_auction(session, auction_id),
                await discount_used(session, auction_id),
            )

    found = _with_runtime(go)
    if found is None:
        print(f"auction {auction_id} not found")
        raise typer.Exit(1)
    auction, lots, used = found
    print(f"{auction.name} [{auction.status.value}] discount pool {used:g}/{auction.discount_pool:g}")
    for lot in lots:
        final = f" sold ${lot.final_price:,.2f}" if lot.final_price is not None else ""
        print(
            f"{lot.id:>5} | {lot.name[:30]:30} | {lot.status.value:<10} | ${lot.calculated_price:,.2f}{final}"
        )


@app.command("start-auction")
def start_auction(auction_id: int):
    """Check the live chat and open the auction."""

    async def go(rt):
        return await rt.items.start_auction(auction_id, rt.feed)

    try:
        _with_runtime(go)
    except (LookupError, ValueError, RuntimeError) as exc:
        print(f"error: {exc}")
        raise typer.Exit(1)
    print(f"auction {auction_id} is READY")


@app.command("finish-auction")
def finish_auction(auction_id: int):
    """Close an auction; unsold items leave it."""

    async def go(rt):
        return await rt.items.finish_auction(auction_id)

    try:
        summary = _with_runtime(go)
    except (LookupError, ValueError) as exc:
        print(f"error: {exc}")
        raise typer.Exit(1)
    print(f"sold {summary.sold}, removed {summary.removed}, returned {summary.returned}")


if __name__ == "__main__":
    app()
