import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# Ensure directories exist
DATA_DIR.mkdir(exist_ok=True)

# Database
DATABASE_PATH = DATA_DIR / "statusping.db"
DATABASE_URL = os.getenv("DATABASE_URL")  # Set in production for PostgreSQL

# SMTP Configuration (leave unset in development: sends are logged, not delivered)
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_TIMEOUT = float(os.getenv("SMTP_TIMEOUT", "30"))
EMAIL_FROM = os.getenv("EMAIL_FROM", "updates@statuspingme.com")

# Public URL of the front-end, used for timeline/unsubscribe links in emails
APP_URL = os.getenv("APP_URL", "http://localhost:5173")

# Shared secrets for the cron tick endpoint and the admin API
CRON_SECRET = os.getenv("CRON_SECRET", "")
ADMIN_SECRET = os.getenv("ADMIN_SECRET", "")

# Scheduler (all hours are UTC; weekday uses Python numbering, 0=Monday .. 6=Sunday)
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
SCHEDULER_INTERVAL_SECONDS = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "30"))
DAILY_DIGEST_HOUR = int(os.getenv("DAILY_DIGEST_HOUR", "9"))
WEEKLY_DIGEST_DAY = int(os.getenv("WEEKLY_DIGEST_DAY", "6"))
WEEKLY_DIGEST_HOUR = int(os.getenv("WEEKLY_DIGEST_HOUR", "10"))
CLEANUP_HOUR = int(os.getenv("CLEANUP_HOUR", "3"))

# Job queue
JOB_RETENTION_DAYS = int(os.getenv("JOB_RETENTION_DAYS", "7"))
JOB_BATCH_SIZE = int(os.getenv("JOB_BATCH_SIZE", "10"))
MAX_JOB_ATTEMPTS = int(os.getenv("MAX_JOB_ATTEMPTS", "3"))
# A job still "processing" this long after it was due is assumed orphaned by a crash
STALE_JOB_MINUTES = int(os.getenv("STALE_JOB_MINUTES", "60"))

# Outbound email fan-out
EMAIL_CONCURRENCY = int(os.getenv("EMAIL_CONCURRENCY", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
