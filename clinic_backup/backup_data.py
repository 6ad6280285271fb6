"""
backup_data.py

Purpose:
  One-shot full backup of the configured MongoDB database, run outside the
  web process (cron, manual maintenance).

Behavior:
  - Reads MONGO_URI and MONGO_DB from environment (supports dotenv file via python-dotenv).
  - Dumps every collection to CSV in a temporary folder, zips the folder into
    `<out-dir>/backup-<timestamp>.zip` and removes the folder.
  - Keeps the newest `--keep` archives in `<out-dir>`.

Usage:
  python -m clinic_backup.backup_data
  python -m clinic_backup.backup_data --out-dir ./backups --keep 10
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from clinic_backup.connection import ConnectionManager
from clinic_backup.errors import DatabaseError
from clinic_backup.retention import DEFAULT_KEEP
from clinic_backup.runner import BackupRunner


logger = logging.getLogger("backup_data")


def load_config() -> dict:
    """Load MongoDB configuration from the environment.

    Returns:
        dict: keys: MONGO_URI, MONGO_DB
    """
    # Allow loading of a .env file in the repo root for convenience
    load_dotenv()

    mongo_uri = os.getenv("MONGO_URI")
    mongo_db = os.getenv("MONGO_DB")

    return {"MONGO_URI": mongo_uri, "MONGO_DB": mongo_db}


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="MongoDB full-database backup to a zip of CSV files")
    p.add_argument("--out-dir", default="backups", help="Folder to place backup archives")
    p.add_argument("--temp-dir", default=None, help="Folder for temporary dumps (default: <out-dir>/../temp-backup)")
    p.add_argument("--keep", type=int, default=DEFAULT_KEEP, help="Number of archives to keep")
    p.add_argument("--mongo-uri", default=None, help="Override MONGO_URI environment variable")
    p.add_argument("--mongo-db", default=None, help="Override MONGO_DB environment variable")
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)
    cfg = load_config()

    mongo_uri = args.mongo_uri or cfg.get("MONGO_URI")
    mongo_db = args.mongo_db or cfg.get("MONGO_DB")

    if not mongo_uri or not mongo_db:
        logger.error("MONGO_URI and MONGO_DB must be set (environment or .env). Aborting.")
        raise SystemExit(2)

    out_root = Path(args.out_dir).resolve()
    out_root.mkdir(parents=True, exist_ok=True)

    manager = ConnectionManager(uri=mongo_uri, db_name=mongo_db)
    runner = BackupRunner(
        database_provider=manager.get_database,
        backup_root=out_root,
        temp_root=Path(args.temp_dir).resolve() if args.temp_dir else None,
        retention_count=args.keep,
    )

    try:
        archive_path = runner.run_automatic()
        logger.info("Backup written to %s", archive_path)
    except DatabaseError as e:
        logger.error("Backup failed: %s", e)
        raise SystemExit(1)
    except Exception as e:
        logger.exception("Backup failed: %s", e)
        raise SystemExit(1)
    finally:
        manager.close()


if __name__ == "__main__":
    main()
