"""SQL constants for the PostgreSQL step store."""

from __future__ import annotations

from sqlalchemy import text


SCHEMA_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")

# Serializes claims across workers so two workers cannot each pick a different
# run of the same concurrency key in the same instant.
CLAIM_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")


# ---------- Claim SQL ----------
# Claimable: PENDING/SLEEPING whose next_run_at has passed, or RUNNING whose
# lease expired (worker crashed mid-run). Runs sharing a concurrency key are
# skipped while a sibling holds a live lease, and at most one per key is taken
# per claim (the oldest).

CLAIM_RUNS_SQL = text("""
WITH candidates AS (
  SELECT r.id,
         ROW_NUMBER() OVER (
           PARTITION BY r.workflow_id, COALESCE(r.concurrency_key, r.id)
           ORDER BY r.next_run_at ASC, r.id ASC
         ) AS rn
  FROM mortiscope_runs r
  WHERE (
      (r.status IN ('PENDING', 'SLEEPING') AND r.next_run_at <= :now)
      OR (r.status = 'RUNNING' AND r.claim_expires_at IS NOT NULL AND r.claim_expires_at < :now)
    )
    AND (
      r.concurrency_key IS NULL
      OR NOT EXISTS (
        SELECT 1 FROM mortiscope_runs o
        WHERE o.workflow_id = r.workflow_id
          AND o.concurrency_key = r.concurrency_key
          AND o.id <> r.id
          AND o.status = 'RUNNING'
          AND o.claim_expires_at IS NOT NULL
          AND o.claim_expires_at >= :now
      )
    )
),
next AS (
  SELECT r.id
  FROM mortiscope_runs r
  JOIN candidates c ON c.id = r.id AND c.rn = 1
  ORDER BY r.next_run_at ASC, r.id ASC
  FOR UPDATE OF r SKIP LOCKED
  LIMIT :lim
)
UPDATE mortiscope_runs t
SET status = 'RUNNING',
    claimed_by = :worker_id,
    claim_expires_at = :lease_until,
    updated_at = :now
FROM next
WHERE t.id = next.id
RETURNING t.id, t.workflow_id, t.event_id, t.event_name, t.event_data,
          t.event_ts, t.attempt, t.max_retries, t.concurrency_key;
""")


# ---------- Run finalization ----------
# Every update is fenced on (status = RUNNING, claimed_by = worker) so a worker
# whose lease was taken over cannot overwrite the new owner's progress.

RENEW_LEASE_SQL = text("""
    UPDATE mortiscope_runs
    SET claim_expires_at = :lease_until
    WHERE id = :id AND status = 'RUNNING' AND claimed_by = :worker_id
""")

COMPLETE_RUN_SQL = text("""
    UPDATE mortiscope_runs
    SET status = 'COMPLETED',
        output = CAST(:output AS JSONB),
        error = NULL,
        claimed_by = NULL,
        claim_expires_at = NULL,
        completed_at = :now,
        updated_at = :now
    WHERE id = :id AND status = 'RUNNING' AND claimed_by = :worker_id
""")

SUSPEND_RUN_SQL = text("""
    UPDATE mortiscope_runs
    SET status = 'SLEEPING',
        next_run_at = :wake_at,
        claimed_by = NULL,
        claim_expires_at = NULL,
        updated_at = NOW()
    WHERE id = :id AND status = 'RUNNING' AND claimed_by = :worker_id
""")

RETRY_RUN_SQL = text("""
    UPDATE mortiscope_runs
    SET status = 'PENDING',
        attempt = :attempt,
        next_run_at = :next_run_at,
        error = :error,
        claimed_by = NULL,
        claim_expires_at = NULL,
        updated_at = NOW()
    WHERE id = :id AND status = 'RUNNING' AND claimed_by = :worker_id
""")

FAIL_RUN_SQL = text("""
    UPDATE mortiscope_runs
    SET status = 'FAILED',
        attempt = :attempt,
        error = :error,
        claimed_by = NULL,
        claim_expires_at = NULL,
        failed_at = :now,
        updated_at = :now
    WHERE id = :id AND status = 'RUNNING' AND claimed_by = :worker_id
""")


# ---------- Steps ----------

LOAD_STEPS_SQL = text("""
    SELECT step_name, kind, output, wake_at
    FROM mortiscope_steps
    WHERE run_id = :run_id
""")

INSERT_STEP_SQL = text("""
    INSERT INTO mortiscope_steps (run_id, step_name, kind, output, wake_at, completed_at)
    VALUES (:run_id, :step_name, :kind, CAST(:output AS JSONB), :wake_at, NOW())
    ON CONFLICT (run_id, step_name) DO NOTHING
    RETURNING step_name
""")

GET_STEP_SQL = text("""
    SELECT step_name, kind, output, wake_at
    FROM mortiscope_steps
    WHERE run_id = :run_id AND step_name = :step_name
""")

GET_RUN_SQL = text("""
    SELECT id, workflow_id, event_name, status, attempt, max_retries,
           next_run_at, output, error
    FROM mortiscope_runs
    WHERE id = :id
""")

LIST_STEP_NAMES_SQL = text("""
    SELECT step_name FROM mortiscope_steps
    WHERE run_id = :run_id
    ORDER BY completed_at ASC, step_name ASC
""")
