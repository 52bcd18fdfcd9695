"""
notifier.py -- Discord webhook notifications for the flip assistant.

Sends embeds for:
  - Each completed flip (quantity, prices, profit, ROI)
  - Reconciliation warnings (a tracked slot emptied without a terminal state)

SETUP:
  1. Discord channel settings -> Integrations -> Webhooks -> New Webhook
  2. Copy the webhook URL into DISCORD_WEBHOOK_URL

RATE LIMIT:
  Notifications are queued and sent by flush(), at most one every
  WEBHOOK_RATE_LIMIT_SEC seconds.  The assistant calls flush() after
  every slot snapshot, so the queue drains at the snapshot cadence.

ZERO DEPENDENCIES:
  Uses urllib.request to POST JSON to the webhook URL.
"""

import json
import logging
import time
import urllib.request
import urllib.error
from collections import deque
from datetime import datetime, timezone

import config
from flip_ledger import Anomaly, Flip

logger = logging.getLogger(__name__)

# Embed colors
COLOR_SALE_COMPLETED = 0x2ECC71  # green
COLOR_LOSS = 0xE74C3C            # red
COLOR_WARNING = 0xF1C40F         # yellow

FOOTER_TEXT = "Flip Assistant"

_queue = deque()
_last_sent_at = None


def _post_webhook(url: str, embed: dict) -> bool:
    """
    POST one embed to a Discord webhook.

    Returns True if Discord accepted it, False otherwise.
    This function NEVER raises -- failures are logged and swallowed.
    """
    data = json.dumps({"embeds": [embed]}).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "ExchangeFlipAssistant/1.0",
    }
    req = urllib.request.Request(url, data=data, headers=headers)

    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            status = getattr(resp, "status", 200)
            if 200 <= status < 300:
                return True
            logger.warning("Webhook returned HTTP %d", status)
            return False
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        logger.warning("Webhook HTTP %d: %s", e.code, body[:200])
        return False
    except Exception as e:
        logger.warning("Webhook failed: %s", e)
        return False


def _field(name: str, value: str, inline: bool = True) -> dict:
    return {"name": name, "value": value, "inline": inline}


def _queue_embed(embed: dict) -> bool:
    url = config.DISCORD_WEBHOOK_URL.strip() if config.DISCORD_WEBHOOK_URL else ""
    if not url:
        logger.debug("Webhook not configured, skipping notification")
        return False
    limit = max(1, int(config.WEBHOOK_QUEUE_LIMIT))
    while len(_queue) >= limit:
        dropped = _queue.popleft()
        logger.warning("Webhook queue full (%d), dropping oldest: %s", limit, dropped[1].get("title", ""))
    _queue.append((url, embed))
    logger.debug("Webhook queued (queue size: %d)", len(_queue))
    return True


def _timestamp(ts=None) -> str:
    when = datetime.fromtimestamp(ts, tz=timezone.utc) if ts else datetime.now(timezone.utc)
    return when.isoformat()


# ---------------------------------------------------------------------------
# Public notification builders
# ---------------------------------------------------------------------------

def notify_flip_completed(flip: Flip) -> bool:
    """Queue a "Flip Completed" embed.  Returns True if queued."""
    if not config.NOTIFY_SALE_COMPLETED:
        return False
    if flip.status != "completed":
        return False

    qty = max(1, flip.quantity_sold)
    profit = int(flip.realized_profit or 0)
    avg_buy = flip.gross_spent // max(1, flip.quantity_bought)
    avg_sell = flip.gross_received // qty
    roi = (profit / flip.gross_spent * 100.0) if flip.gross_spent > 0 else 0.0
    name = flip.item_name or f"Item {flip.item_id}"

    embed = {
        "title": "Flip Completed",
        "color": COLOR_SALE_COMPLETED if profit > 0 else COLOR_LOSS,
        "timestamp": _timestamp(flip.sold_at),
        "fields": [
            _field("Item", name),
            _field("Quantity", f"{flip.quantity_sold:,}"),
            _field("Buy Price", f"{avg_buy:,} gp each"),
            _field("Sell Price", f"{avg_sell:,} gp each"),
            _field("Profit", f"{profit:,} gp"),
            _field("ROI", f"{roi:.2f}%"),
        ],
        "footer": {"text": FOOTER_TEXT},
    }
    return _queue_embed(embed)


def notify_reconciliation(anomaly: Anomaly) -> bool:
    """Queue a warning embed for a reconciliation gap."""
    if not config.NOTIFY_RECONCILIATION:
        return False
    if anomaly.kind != "reconciliation_gap":
        return False

    embed = {
        "title": "Offer Reconciliation",
        "color": COLOR_WARNING,
        "timestamp": _timestamp(),
        "description": anomaly.detail or "Slot emptied without a terminal state",
        "fields": [
            _field("Slot", str(anomaly.slot_index + 1)),
            _field("Item", str(anomaly.item_id)),
            _field("Flip", f"#{anomaly.flip_id}" if anomaly.flip_id is not None else "untracked"),
        ],
        "footer": {"text": FOOTER_TEXT},
    }
    return _queue_embed(embed)


# ---------------------------------------------------------------------------
# Queue processing
# ---------------------------------------------------------------------------

def flush(now=None) -> int:
    """
    Send the next queued webhook if the rate limit allows.

    Returns the number of webhooks sent (0 or 1).  A failed send is dropped,
    not retried, so a dead webhook cannot grow the queue without bound.
    """
    global _last_sent_at

    if not _queue:
        return 0
    ts = float(now) if now is not None else time.time()
    if _last_sent_at is not None and ts - _last_sent_at < config.WEBHOOK_RATE_LIMIT_SEC:
        return 0

    url, embed = _queue.popleft()
    _last_sent_at = ts
    if _post_webhook(url, embed):
        return 1
    return 0


def pending() -> int:
    return len(_queue)


def clear() -> None:
    """Drop queued notifications and the rate-limit clock."""
    global _last_sent_at
    _queue.clear()
    _last_sent_at = None
