#!/usr/bin/env python3
"""Back up the local SQLite record store to a gzipped snapshot."""

from __future__ import annotations

import gzip
import os
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path


def backup_database():
    if os.environ.get('STORE_BACKEND', 'sqlite').lower() != 'sqlite':
        print('skipped=hosted_backend')
        return None

    db_path = Path(os.environ.get('DATABASE_PATH', 'masterclass.db'))
    if not db_path.exists():
        print(f'missing_database={db_path}')
        return None

    backup_dir = Path(os.environ.get('BACKUP_DIR', 'backups'))
    backup_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
    raw_backup = backup_dir / f'masterclass_{ts}.sqlite3'
    gz_backup = Path(str(raw_backup) + '.gz')

    conn = sqlite3.connect(str(db_path))
    out = sqlite3.connect(str(raw_backup))
    with out:
        conn.backup(out)
    out.close()
    conn.close()

    with open(raw_backup, 'rb') as src, gzip.open(gz_backup, 'wb') as dst:
        shutil.copyfileobj(src, dst)
    raw_backup.unlink(missing_ok=True)

    keep = int(os.environ.get('BACKUP_KEEP', '14'))
    snapshots = sorted(backup_dir.glob('masterclass_*.sqlite3.gz'))
    for stale in snapshots[:-keep] if keep > 0 else []:
        stale.unlink(missing_ok=True)

    print(f'backup_created={gz_backup}')
    return gz_backup


if __name__ == '__main__':
    backup_database()
