# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Keep machine-specific paths and the executor command in .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "HARVEST_APP_NAME": "App display name (default: invoice-harvester).",
    "HARVEST_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Connectors
    "HARVEST_CONSOLE_ENABLED": "Enable console connector (true/false). When off, only a persisted queue is drained.",
    # Paths (gitignored)
    "HARVEST_DATA_DIR": "Local data directory (default: .local/harvest).",
    "HARVEST_STATE_DB_PATH": "SessionStore SQLite path (default: <data_dir>/session.sqlite3).",
    "HARVEST_SESSION_KEY": "Key of the session record (default: harvest_session_state_v2).",
    # Download store
    "HARVEST_DOWNLOADS_DIR": "Directory the executor downloads into (default: ~/Downloads).",
    "HARVEST_DOWNLOAD_ROOT": "Sub-directory for harvested files (default: faktury).",
    # Executor
    "HARVEST_EXECUTOR_COMMAND": (
        "Command template run per task, e.g. 'fetch-invoice {item_id} {mode} --out {target_dir}'. "
        "Placeholders: item_id, group_id, mode, run_id, target_dir. "
        "The exit code is the report, so the command must finish within HARVEST_ACK_TIMEOUT_SECONDS "
        "unless HARVEST_EXECUTOR_ACK_ON_START is set."
    ),
    "HARVEST_EXECUTOR_ACK_ON_START": (
        "1 = report success once the command is running and let the download poll decide "
        "(for commands that outlive the ack timeout). Default: 0."
    ),
    # Queue tuning
    "HARVEST_MAX_RETRIES": "Attempts per task before it is marked failed (default: 3, minimum 1).",
    "HARVEST_ACK_TIMEOUT_SECONDS": "How long to wait for the executor's report (default: 30).",
    "HARVEST_POLL_TIMEOUT_SECONDS": "How long to poll for the downloaded file (default: 180).",
    "HARVEST_POLL_INTERVAL_SECONDS": "Delay between download history polls (default: 1).",
    "HARVEST_SETTLE_DELAY_SECONDS": "Pause after a finished task (default: 0.25).",
    "HARVEST_RETRY_DELAY_SECONDS": "Base backoff before a requeued task runs again, doubled per attempt (default: 0 = none).",
    "HARVEST_RECENT_WINDOW": "Newest download history entries scanned per poll (default: 80).",
    "HARVEST_FALLBACK_SCAN_LIMIT": "Entries scanned when pattern queries fail (default: 500).",
}
