"""PostgreSQL schema for the relational driver and state store."""

JOB_QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS job_queue (
    id BIGSERIAL PRIMARY KEY,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    queue TEXT NOT NULL DEFAULT 'default',
    priority TEXT NOT NULL DEFAULT 'normal' CHECK (priority IN ('high', 'normal', 'low')),
    status TEXT NOT NULL DEFAULT 'queued'
        CHECK (status IN ('queued', 'running', 'completed', 'failed', 'cancelled')),
    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    max_attempts INTEGER NOT NULL DEFAULT 3 CHECK (max_attempts >= 1),
    available_at TIMESTAMPTZ NOT NULL,
    reserved_at TIMESTAMPTZ,
    worker_id TEXT,
    error_message TEXT,
    batch_id TEXT,
    chain_id TEXT,
    chain_position INTEGER,
    unique_key TEXT,
    rate_limit JSONB,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_queue_claim
    ON job_queue(queue, status, available_at);
CREATE INDEX IF NOT EXISTS idx_job_queue_running
    ON job_queue(reserved_at) WHERE status = 'running';
CREATE INDEX IF NOT EXISTS idx_job_queue_updated ON job_queue(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_job_queue_batch ON job_queue(batch_id) WHERE batch_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_job_queue_chain ON job_queue(chain_id) WHERE chain_id IS NOT NULL;
"""

STATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS job_queue_state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    expires_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_job_queue_state_expires
    ON job_queue_state(expires_at) WHERE expires_at IS NOT NULL;
"""

SCHEMA = JOB_QUEUE_SCHEMA + STATE_SCHEMA
