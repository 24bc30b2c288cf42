"""Shared default constants for mortiscope."""

from datetime import timedelta

# Grace period before the analysis service looks for a case's files, so images
# still uploading from the browser are included.
UPLOAD_GRACE_PERIOD: timedelta = timedelta(minutes=1)

# Days between a confirmed deletion request and permanent account removal.
DELETION_GRACE_PERIOD_DAYS: int = 30

# A deletion trigger that fires more than this long before the stored
# deletion timestamp is treated as scheduling drift and ignored.
EARLY_TRIGGER_TOLERANCE: timedelta = timedelta(hours=1)

# Retries after the first attempt of a workflow run.
DEFAULT_RETRIES: int = 2

# Base delay for exponential run retry backoff.
DEFAULT_RETRY_BASE_SECONDS: int = 10

# Lease on a claimed run. A worker that crashes mid-run releases it when the
# lease runs out and another worker resumes from the first unfinished step.
DEFAULT_CLAIM_LEASE_SECONDS: int = 300

# Analysis service calls can run for a long time on large cases.
DEFAULT_ANALYSIS_TIMEOUT_SECONDS: float = 30 * 60
