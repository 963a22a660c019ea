SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Users: earning record kept inline, one row per user
CREATE TABLE IF NOT EXISTS users (
    user_id              TEXT PRIMARY KEY,
    balance              REAL NOT NULL DEFAULT 0.0,
    is_earning           INTEGER NOT NULL DEFAULT 0,
    session_started_at   REAL,
    last_started_at      REAL,
    earning_rate         REAL NOT NULL DEFAULT 0.000116,
    efficiency_multiplier REAL NOT NULL DEFAULT 1.0,
    total_earned         REAL NOT NULL DEFAULT 0.0,
    today_earned         REAL NOT NULL DEFAULT 0.0,
    best_session         REAL NOT NULL DEFAULT 0.0,
    total_sessions       INTEGER NOT NULL DEFAULT 0,
    last_session_date    TEXT,
    last_session_earnings REAL NOT NULL DEFAULT 0.0,
    sessions_today       INTEGER NOT NULL DEFAULT 0,
    sessions_day         TEXT,
    experience           INTEGER NOT NULL DEFAULT 0,
    level                INTEGER NOT NULL DEFAULT 1,
    daily_streak         INTEGER NOT NULL DEFAULT 0,
    last_daily_claim     TEXT,
    upgrade_speed        INTEGER NOT NULL DEFAULT 0,
    upgrade_efficiency   INTEGER NOT NULL DEFAULT 0,
    upgrade_capacity     INTEGER NOT NULL DEFAULT 0,
    push_token           TEXT,
    last_activity        REAL,
    suspicious_score     INTEGER NOT NULL DEFAULT 0,
    device_fingerprint   TEXT,
    last_device_change_date TEXT,
    device_change_count  INTEGER NOT NULL DEFAULT 0,
    last_ip              TEXT,
    time_manipulation_flag INTEGER NOT NULL DEFAULT 0,
    excessive_earnings_flag INTEGER NOT NULL DEFAULT 0,
    created_at           REAL NOT NULL,
    updated_at           REAL NOT NULL,
    CHECK ((is_earning = 1) = (session_started_at IS NOT NULL))
);

-- Rate limit hits: one row per counted invocation
CREATE TABLE IF NOT EXISTS rate_limit_hits (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    key        TEXT NOT NULL,
    action     TEXT NOT NULL,
    hit_at     REAL NOT NULL
);

-- Activity log: session events, violations, admin actions
CREATE TABLE IF NOT EXISTS activity (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    type        TEXT NOT NULL,
    payload     TEXT NOT NULL DEFAULT '{}',
    created_at  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_earning ON users(is_earning);
CREATE INDEX IF NOT EXISTS idx_rate_limit_key ON rate_limit_hits(key, action, hit_at);
CREATE INDEX IF NOT EXISTS idx_activity_user ON activity(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_activity_type ON activity(type);
"""
