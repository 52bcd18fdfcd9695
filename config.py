"""
config.py -- All tunable parameters for the Exchange flip assistant.

Every value here is loaded from environment variables so you can configure
the assistant from the host environment (or a local .env file) without
touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen
"""

import os
import logging

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Exchange rules
# ---------------------------------------------------------------------------

# Number of concurrent order slots the Exchange gives a player.
# Fixed by the game; not read from the environment.
SLOT_COUNT: int = 8

# Fraction of every sale that the Exchange keeps as tax.
# Applied to each fill increment, so partial sells are taxed as they happen.
# 0.02 matches the live Exchange rate.
TAX_RATE: float = _env("TAX_RATE", 0.02, float)

# Most tax the Exchange takes on a single item, however expensive.
# 0 = no cap.
TAX_CAP_PER_ITEM: int = _env("TAX_CAP_PER_ITEM", 5_000_000, int)

# ---------------------------------------------------------------------------
# Guided workflow
# ---------------------------------------------------------------------------

# GP added to buy prices and subtracted from sell prices when auto-filling.
# Raising it fills orders faster at the cost of margin.
# 0 = use the recommended prices exactly.
PRICE_OFFSET: int = _env("PRICE_OFFSET", 0, int)

# ---------------------------------------------------------------------------
# Ledger housekeeping
# ---------------------------------------------------------------------------

# Per-flip journal rows kept in memory before the oldest are trimmed.
# Never goes below 50.
JOURNAL_LOCAL_LIMIT: int = _env("JOURNAL_LOCAL_LIMIT", 500, int)

# Completed/dismissed flips kept in memory.  Older ones are pruned after
# each snapshot.  Long-term history is the persistence layer's job.
HISTORY_LIMIT: int = _env("HISTORY_LIMIT", 200, int)

# ---------------------------------------------------------------------------
# Notifications (Discord webhook)
# ---------------------------------------------------------------------------

# Webhook URL from Discord channel settings -> Integrations -> Webhooks.
# Leave empty to disable notifications entirely.
DISCORD_WEBHOOK_URL: str = _env("DISCORD_WEBHOOK_URL", "")

# Post an embed every time a flip completes.
NOTIFY_SALE_COMPLETED: bool = _env("NOTIFY_SALE_COMPLETED", True, bool)

# Post reconciliation warnings (slots that emptied without a terminal state).
NOTIFY_RECONCILIATION: bool = _env("NOTIFY_RECONCILIATION", False, bool)

# Minimum seconds between two webhook posts.  Discord rate limits aggressively;
# 5 seconds keeps a busy session well under the limit.
WEBHOOK_RATE_LIMIT_SEC: float = _env("WEBHOOK_RATE_LIMIT_SEC", 5.0, float)

# Most notifications waiting to be sent.  When full, the oldest is dropped
# so a dead or slow webhook cannot grow memory without bound.
WEBHOOK_QUEUE_LIMIT: int = _env("WEBHOOK_QUEUE_LIMIT", 50, int)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# Python log level.  DEBUG shows every slot event; INFO is normal operations.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")


# ---------------------------------------------------------------------------
# Startup banner -- printed when the assistant launches
# ---------------------------------------------------------------------------

def print_banner():
    """Print a clear summary of all active settings so you know what's running."""
    lines = [
        "",
        "=" * 60,
        "  EXCHANGE FLIP ASSISTANT",
        "=" * 60,
        f"  Slots:           {SLOT_COUNT}",
        f"  Tax rate:        {TAX_RATE * 100:.2f}%",
        f"  Tax cap/item:    {TAX_CAP_PER_ITEM:,} gp",
        f"  Price offset:    {PRICE_OFFSET} gp",
        f"  Journal limit:   {JOURNAL_LOCAL_LIMIT}",
        f"  History limit:   {HISTORY_LIMIT}",
        f"  Log level:       {LOG_LEVEL}",
        f"  Webhook:         {'configured' if DISCORD_WEBHOOK_URL else 'NOT SET'}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))


if not 0.0 <= TAX_RATE < 1.0:
    logging.getLogger(__name__).warning("TAX_RATE %.4f out of range, using 0.02", TAX_RATE)
    TAX_RATE = 0.02
