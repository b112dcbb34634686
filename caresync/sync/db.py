import sqlite3
from pathlib import Path


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_queue (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          id TEXT UNIQUE,
          user_id TEXT,
          device_id TEXT,
          operation_type TEXT,
          table_name TEXT,
          record_id TEXT,
          payload_json TEXT,
          expected_version INTEGER,
          conflict_strategy TEXT,
          priority INTEGER DEFAULT 5,
          status TEXT DEFAULT 'pending',
          retry_count INTEGER DEFAULT 0,
          max_retries INTEGER DEFAULT 3,
          created_at REAL,
          scheduled_for REAL,
          processed_at REAL,
          error_message TEXT,
          conflict_id TEXT,
          checksum TEXT,
          encryption_required INTEGER DEFAULT 0,
          sensitive_data INTEGER DEFAULT 0,
          metadata_json TEXT
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_conflicts (
          conflict_id TEXT PRIMARY KEY,
          user_id TEXT,
          table_name TEXT,
          record_id TEXT,
          conflict_json TEXT,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS conflict_resolutions (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          user_id TEXT,
          conflict_id TEXT,
          table_name TEXT,
          conflict_type TEXT,
          strategy TEXT,
          resolved_by TEXT,
          resolved_at REAL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS local_records (
          table_name TEXT,
          record_id TEXT,
          data_json TEXT,
          snapshot_json TEXT,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          PRIMARY KEY (table_name, record_id)
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, scheduled_for)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(table_name, record_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_checksum ON sync_queue(checksum)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_conflicts_user ON sync_conflicts(user_id)")

    conn.commit()
    conn.close()
