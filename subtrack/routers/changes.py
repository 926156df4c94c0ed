"""
Change stream WebSocket, WS /ws/changes?token=...

Pushes row-level changes to the caller's own rows (subscriptions,
categories, access record, preferences) as they are committed, and keeps
the caller's monthly spend current.

Messages (server → client):
    {"type": "CONNECTED", "last_seq": n}
    {"type": "CHANGE", "table", "kind", "key", "row", "old", "seq"}
    {"type": "SPEND", "in_progress": true, "total": null}
    {"type": "SPEND", "in_progress": false, "currency", "total",
     "subscription_count", "unconverted"}
    {"type": "RESYNC"}   the queue overflowed; refetch everything

Clients send {"type": "PING"} and receive {"type": "PONG"}. Frames that
are not JSON are ignored.

Push is best effort: on connect and on RESYNC clients refetch over
REST and apply later CHANGE messages with seq > last_seq. A spend total is
only ever sent for a finished computation; while one is running the
client gets in_progress and no number.

Close codes:
- 4001: Unauthorized (missing/invalid token)
- 1000: Normal closure
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from subtrack.auth.session_auth import AuthenticatedUser, get_current_user_ws
from subtrack.core.async_utils import run_sync
from subtrack.core.log_middleware import stream_context
from subtrack.routers.spend import load_spend_inputs
from subtrack.services import category_service, preferences_service, subscription_service
from subtrack.services.change_feed import ChangeEvent, change_feed
from subtrack.services.currency_service import get_currency_service
from subtrack.services.spend_aggregator import SpendAggregator, SpendSummary, SpendTracker

logger = logging.getLogger(__name__)

ws_router = APIRouter()

# Tables whose changes move the spend total
SPEND_TABLES = frozenset({
    subscription_service.TABLE,
    category_service.TABLE,
    preferences_service.TABLE,
})


def _message(event: ChangeEvent) -> dict:
    return {
        "type": "CHANGE",
        "table": event.table,
        "kind": event.kind.value,
        "key": event.key,
        "row": event.row,
        "old": event.old,
        "seq": event.seq,
    }


def _spend_message(summary: SpendSummary) -> dict:
    return {
        "type": "SPEND",
        "in_progress": False,
        "currency": summary.currency,
        "total": round(summary.total, 2),
        "subscription_count": summary.subscription_count,
        "unconverted": summary.unconverted,
    }


SPEND_PENDING = {"type": "SPEND", "in_progress": True, "total": None}


@ws_router.websocket("/ws/changes")
async def websocket_changes(websocket: WebSocket):
    user = await get_current_user_ws(websocket)
    if user is None:
        await websocket.accept()
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()
    with stream_context(user.user_id, websocket.headers):
        await _serve(websocket, user)


async def _serve(websocket: WebSocket, user: AuthenticatedUser) -> None:
    outbox: asyncio.Queue = asyncio.Queue()
    lines, display = await run_sync(load_spend_inputs, user.user_id)
    tracker = SpendTracker(
        SpendAggregator(get_currency_service()),
        display,
        lines,
        on_update=lambda summary: outbox.put_nowait(_spend_message(summary)),
    )
    subscription = change_feed.subscribe(predicate=lambda event: event.owner_id == user.user_id)
    logger.info("Change stream connected: user=%s", user.user_id)

    async def recompute_spend():
        new_lines, new_display = await run_sync(load_spend_inputs, user.user_id)
        tracker.set_inputs(new_lines, new_display)
        outbox.put_nowait(dict(SPEND_PENDING))

    async def pump():
        while True:
            event = await subscription.get()
            if subscription.overflowed:
                subscription.overflowed = False
                outbox.put_nowait({"type": "RESYNC"})
                await recompute_spend()
                continue
            outbox.put_nowait(_message(event))
            if event.table in SPEND_TABLES:
                await recompute_spend()

    async def sender():
        while True:
            await websocket.send_json(await outbox.get())

    outbox.put_nowait({"type": "CONNECTED", "last_seq": change_feed.last_seq})
    outbox.put_nowait(dict(SPEND_PENDING))
    tracker.schedule_refresh()
    tasks = [asyncio.create_task(pump()), asyncio.create_task(sender())]
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                logger.debug("Ignoring non-JSON frame from user=%s", user.user_id)
                continue
            if isinstance(message, dict) and message.get("type") == "PING":
                outbox.put_nowait({"type": "PONG"})
    except WebSocketDisconnect:
        logger.info("Change stream disconnected: user=%s", user.user_id)
    finally:
        tracker.close()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                pass
        subscription.close()
