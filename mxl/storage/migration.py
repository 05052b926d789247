"""
MxL Storage Migration
Creates pipeline tables in PostgreSQL.
"""

import logging

from mxl.storage.db import db_cursor

logger = logging.getLogger(__name__)

PIPELINE_MIGRATION_SQL = """
-- Analytical store: processed telemetry events
CREATE TABLE IF NOT EXISTS telemetry_events (
    event_id UUID PRIMARY KEY,
    session_id VARCHAR(255) NOT NULL,
    user_id VARCHAR(255),
    event_type VARCHAR(20) NOT NULL,
    timestamp BIGINT NOT NULL,
    server_timestamp BIGINT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    device_info JSONB NOT NULL,
    enriched JSONB NOT NULL DEFAULT '{}'::jsonb,
    metrics JSONB NOT NULL DEFAULT '{}'::jsonb,
    content_hash VARCHAR(71),
    archived_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_telemetry_events_session ON telemetry_events(session_id);
CREATE INDEX IF NOT EXISTS idx_telemetry_events_user ON telemetry_events(user_id);
CREATE INDEX IF NOT EXISTS idx_telemetry_events_type_ts ON telemetry_events(event_type, timestamp);
CREATE INDEX IF NOT EXISTS idx_telemetry_events_server_ts ON telemetry_events(server_timestamp);
CREATE INDEX IF NOT EXISTS idx_telemetry_events_content_hash ON telemetry_events(content_hash);

-- Durable log: one logical topic per event type, partitioned by session
CREATE TABLE IF NOT EXISTS telemetry_log (
    id BIGSERIAL PRIMARY KEY,
    topic VARCHAR(64) NOT NULL,
    partition INTEGER NOT NULL,
    message_key VARCHAR(255) NOT NULL,
    value TEXT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_telemetry_log_topic_partition ON telemetry_log(topic, partition, id);

CREATE TABLE IF NOT EXISTS telemetry_log_offsets (
    group_id VARCHAR(128) NOT NULL,
    topic VARCHAR(64) NOT NULL,
    partition INTEGER NOT NULL,
    committed_offset BIGINT NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (group_id, topic, partition)
);

-- Relational store
CREATE TABLE IF NOT EXISTS api_keys (
    id UUID PRIMARY KEY,
    key VARCHAR(128) UNIQUE NOT NULL,
    name VARCHAR(255),
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    last_used_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id VARCHAR(255) PRIMARY KEY,
    user_id VARCHAR(255),
    started_at TIMESTAMPTZ NOT NULL,
    ended_at TIMESTAMPTZ,
    last_activity_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_ended_at ON sessions(ended_at);
"""


def get_migration_sql() -> str:
    """Return the SQL migration script."""
    return PIPELINE_MIGRATION_SQL


def run_migration(database_url: str) -> None:
    """Apply the DDL. Every statement is IF NOT EXISTS, so reruns are no-ops."""
    with db_cursor(database_url) as cur:
        cur.execute(PIPELINE_MIGRATION_SQL)
    logger.info("Pipeline tables ensured")
