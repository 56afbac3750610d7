import os
import yaml

DEFAULTS = {
    "replica_uri": None,
    "skip_tables": [],
    "dry_run": True,
    "assume_yes": False,
    "batch_size": 10000,
    "batch_pause": 0.2,
    "statement_timeout": 0,
    "delete_retries": 0,
    "poll_interval": 1.0,
    "progress_interval": 10.0,
    "log_file": "./truncator.log",
    "log_rotate": None,
    "log_console": True,
}


def _env_flag(value: str) -> bool:
    return value.lower() in ('true', '1', 'yes', 'on')


def load_config(path: str) -> dict:
    """
    Load the YAML configuration, fill defaults and apply environment overrides.

    Supported environment variables:
    - DATABASE_CONNECTION_STRING or DB_URI: primary database connection string
    - REPLICA_URI: hot-standby used for row counts
    - DRY_RUN: only count rows (true/false)
    - ASSUME_YES: skip the confirmation prompt (true/false)
    """
    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    for key, value in DEFAULTS.items():
        config.setdefault(key, value)

    db_uri = os.getenv('DATABASE_CONNECTION_STRING') or os.getenv('DB_URI')
    if db_uri:
        config['db_uri'] = db_uri
        print("✓ Using database connection info from environment variables")

    replica_uri = os.getenv('REPLICA_URI')
    if replica_uri:
        config['replica_uri'] = replica_uri
        print("✓ Using replica connection info from environment variables")

    for key in ('dry_run', 'assume_yes'):
        env = os.getenv(key.upper())
        if env is not None:
            config[key] = _env_flag(env)
            print(f"✓ Using environment variable to set {key} = {config[key]}")

    if not config.get('db_uri'):
        raise ValueError("db_uri is not configured (set it in the config file or DB_URI).")
    if not config.get('tables'):
        raise ValueError("No tables configured for deletion.")
    if int(config['batch_size']) <= 0:
        raise ValueError("batch_size must be positive.")

    return config
