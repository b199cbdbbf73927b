import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./shillmarket.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Platform Fees (basis points, 100 bps = 1%)
PLATFORM_FEE_BPS = int(os.getenv("PLATFORM_FEE_BPS", 300))

# Verification Settings
DEFAULT_RETENTION_WINDOW_SECONDS = int(os.getenv("DEFAULT_RETENTION_WINDOW_SECONDS", 3600))
VERIFY_MAX_ATTEMPTS = int(os.getenv("VERIFY_MAX_ATTEMPTS", 5))
VERIFY_RETRY_BACKOFF_SECONDS = int(os.getenv("VERIFY_RETRY_BACKOFF_SECONDS", 60))

# Scheduler jobstore: "sqlalchemy" persists jobs in DATABASE_URL, "memory" does not
SCHEDULER_JOBSTORE = os.getenv("SCHEDULER_JOBSTORE", "sqlalchemy")

# Twitter/X proof source
TWITTER_BEARER_TOKEN = os.getenv("TWITTER_BEARER_TOKEN", "")
TWITTER_REQUEST_TIMEOUT_SECONDS = int(os.getenv("TWITTER_REQUEST_TIMEOUT_SECONDS", 15))

# Escrow ledger (dry-run when ESCROW_LEDGER_URL is empty)
ESCROW_LEDGER_URL = os.getenv("ESCROW_LEDGER_URL", "")
ESCROW_LEDGER_API_KEY = os.getenv("ESCROW_LEDGER_API_KEY", "")
ESCROW_PROGRAM_ID = os.getenv("ESCROW_PROGRAM_ID", "8GCsBLbmEhNigfHNjTL3SH3r7HUVjKczsu8aDoF5Tx73")
ESCROW_REQUEST_TIMEOUT_SECONDS = int(os.getenv("ESCROW_REQUEST_TIMEOUT_SECONDS", 15))

# Reconciliation, and the age after which a worker may take over a VERIFYING claim
RECONCILE_STALE_CLAIM_SECONDS = int(os.getenv("RECONCILE_STALE_CLAIM_SECONDS", 900))

# Dispatch: a run that has not finished after this long is delivered again
DISPATCH_REDELIVERY_SECONDS = int(os.getenv("DISPATCH_REDELIVERY_SECONDS", 900))
