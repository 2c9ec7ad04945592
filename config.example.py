# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets (SMTP password). Use .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "REENGAGE_APP_NAME": "App display name (default: reengage).",
    "REENGAGE_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Paths (gitignored)
    "REENGAGE_DATA_DIR": "Local data directory, also holds reengage.log (default: .local/reengage).",
    "REENGAGE_DB_PATH": "Activities/progress/job queue SQLite path (default: <data_dir>/reengage.sqlite3).",
    "REENGAGE_HOST_DB_PATH": "Reference course host SQLite path (default: <data_dir>/host.sqlite3).",
    # Scanner
    "REENGAGE_PROCESS_VISIBLE_COURSES_ONLY": "Skip activities in hidden courses (true/false, default: false).",
    "REENGAGE_IGNORE_CATEGORY_VISIBILITY": (
        "With the option above, only check the course itself, not its categories (default: false)."
    ),
    # Notifications
    "REENGAGE_STALE_GRACE_SECONDS": "Emails due longer ago than this are not sent (default: 172800, two days).",
    # Cron / dispatch
    "REENGAGE_CRON_INTERVAL_SECONDS": "Seconds between passes for `reengage run` (default: 60).",
    "REENGAGE_RETRY_DELAY_SECONDS": "Backoff before a failed job is retried (default: 300).",
    "REENGAGE_MAX_ATTEMPTS": "Attempts before a failing job is dropped (default: 5).",
    "REENGAGE_CLAIM_LEASE_SECONDS": "Claims older than this are handed back to the queue (default: 3600).",
    "REENGAGE_DISPATCH_BATCH_LIMIT": "Max jobs dispatched per pass (default: 100).",
    # SMTP (optional; without a host, emails are written to the log)
    "REENGAGE_SMTP_HOST": "SMTP server host.",
    "REENGAGE_SMTP_PORT": "SMTP port (default: 587, or 465 with SSL).",
    "REENGAGE_SMTP_USERNAME": "SMTP login.",
    "REENGAGE_SMTP_PASSWORD": "SMTP password.",
    "REENGAGE_SMTP_FROM": "From address (default: the SMTP username).",
    "REENGAGE_SMTP_USE_SSL": "Use implicit SSL instead of STARTTLS (true/false).",
}
