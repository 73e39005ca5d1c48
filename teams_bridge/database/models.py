SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    metadata TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS thread_state (
    account_id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    is_one_to_one BOOLEAN NOT NULL DEFAULT FALSE,
    name TEXT NOT NULL DEFAULT '',
    last_sequence_id TEXT NOT NULL DEFAULT '',
    last_message_ts INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (account_id, thread_id)
);

CREATE TABLE IF NOT EXISTS remote_profile (
    remote_user_id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    last_seen_ts INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS read_receipt_cursor (
    account_id TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    remote_user_id TEXT NOT NULL,
    last_read_ts INTEGER NOT NULL,
    PRIMARY KEY (account_id, thread_id, remote_user_id)
);

CREATE INDEX IF NOT EXISTS idx_thread_state_account ON thread_state(account_id);
"""
