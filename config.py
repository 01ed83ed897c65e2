"""Environment variables, reconciliation defaults, paths, and miner constants."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from RECONCILE_ENV_FILE (defaults to ./.env in the working directory)
load_dotenv(os.getenv("RECONCILE_ENV_FILE", ".env"))

# --- Database Connection Vars ---
SQL_SERVER_HOST = os.getenv("SQL_SERVER_HOST", "")
SQL_SERVER_PORT = int(os.getenv("SQL_SERVER_PORT", "1433"))
SQL_SERVER_USER = os.getenv("SQL_SERVER_USER", "")
SQL_SERVER_PASSWORD = os.getenv("SQL_SERVER_PASSWORD", "")

# Curtailment database holds both the source (CurtailmentRecords) and the
# derived (HistoricalBitcoinCalculations) tables. Ops tables live in General.
CURTAILMENT_DB = os.getenv("CURTAILMENT_DB", "Curtailment")
GENERAL_DB = os.getenv("GENERAL_DB", "General")

# --- ODBC Driver ---
ODBC_DRIVER = os.getenv("ODBC_DRIVER", "ODBC Driver 18 for SQL Server")

# Capacity of the database connection budget shared by worker threads.
# Deployment invariant: RECONCILE_CONCURRENCY <= DB_POOL_SIZE. Exceeding it
# only starves workers on connection acquisition; cli_common warns about it.
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))

# ---------------------------------------------------------------------------
# Reconciliation engine defaults
# ---------------------------------------------------------------------------
# Worker threads. Per-gap cost is dominated by the upsert round trip, so this
# is a static value rather than auto-scaled.
RECONCILE_CONCURRENCY = int(os.getenv("RECONCILE_CONCURRENCY", "4"))

# Gaps per WorkItem. A Key's models are never split across WorkItems, so a
# batch may close early to keep a Key together.
RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "10"))

# Per-gap retry budget and exponential backoff (delay = base * 2^attempts,
# capped at max).
RECONCILE_MAX_ATTEMPTS = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "3"))
RECONCILE_BACKOFF_BASE = float(os.getenv("RECONCILE_BACKOFF_BASE", "1.0"))
RECONCILE_BACKOFF_MAX = float(os.getenv("RECONCILE_BACKOFF_MAX", "60.0"))

# Seconds between progress lines from the reporter.
RECONCILE_REPORT_INTERVAL = float(os.getenv("RECONCILE_REPORT_INTERVAL", "10"))

# Required derived models per Key. Fixed and externally configured rather than
# inferred from which models have produced data before.
RECONCILE_MODELS = [
    m.strip().upper()
    for m in os.getenv("RECONCILE_MODELS", "S19J_PRO,S9,M20S").split(",")
    if m.strip()
]

# Settlement periods per day (half-hourly settlement).
MAX_PERIODS_PER_DAY = int(os.getenv("MAX_PERIODS_PER_DAY", "48"))

# --- Checkpoints ---
# "file" = JSON file per run (atomic rename), "sql" = row in ops.ReconcileCheckpoint
CHECKPOINT_BACKEND = os.getenv("CHECKPOINT_BACKEND", "file").lower()
CHECKPOINT_DIR = Path(os.getenv("CHECKPOINT_DIR", "./logs/checkpoints"))
# Minimum seconds between intermediate checkpoint saves. Draining always saves.
# 0 saves after every finished WorkItem.
CHECKPOINT_INTERVAL = float(os.getenv("CHECKPOINT_INTERVAL", "5"))

# Settlement days each dataset reader keeps in memory (least recently used
# days are dropped and re-read on demand).
DAY_CACHE_MAX_DAYS = int(os.getenv("DAY_CACHE_MAX_DAYS", "31"))

# --- Mining parameters ---
# Used when no difficulty has been published for a date yet.
DEFAULT_DIFFICULTY = float(os.getenv("DEFAULT_DIFFICULTY", "113757508810853"))

# Hashrate in TH/s, power draw in watts.
MINER_SPECS = {
    "S19J_PRO": {"hashrate_th": 100.0, "power_w": 3050.0},
    "S9": {"hashrate_th": 13.5, "power_w": 1350.0},
    "M20S": {"hashrate_th": 68.0, "power_w": 3360.0},
}

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_TO_DB = os.getenv("LOG_TO_DB", "false").lower() == "true"
EVENT_LOG_ENABLED = os.getenv("EVENT_LOG_ENABLED", "false").lower() == "true"
