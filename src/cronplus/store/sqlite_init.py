"""SQLite 数据库初始化

PRAGMA 配置 + 四张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# task_definitions 表 DDL（加载时的任务定义快照）
_TASK_DEFINITIONS_DDL = """
CREATE TABLE IF NOT EXISTS task_definitions (
    task_id     TEXT PRIMARY KEY,
    enabled     INTEGER NOT NULL DEFAULT 1,
    definition  TEXT NOT NULL DEFAULT '{}',
    loaded_at   TEXT NOT NULL
);
"""

# runs 表 DDL
_RUNS_DDL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id             TEXT PRIMARY KEY,
    task_id            TEXT NOT NULL,
    source_path        TEXT NOT NULL,
    detected_at        TEXT NOT NULL,
    stable_at          TEXT,
    started_at         TEXT NOT NULL,
    completed_at       TEXT,
    status             TEXT NOT NULL DEFAULT 'pending',
    step_results       TEXT NOT NULL DEFAULT '[]',
    error_message      TEXT,
    failed_step_index  INTEGER,
    skipped            INTEGER NOT NULL DEFAULT 0,
    current_path       TEXT,
    dead_letter_path   TEXT
);
"""

_RUNS_INDEXES = [
    # 同一 (task_id, source_path) 至多一个活跃 run
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_active_path "
        "ON runs(task_id, source_path) WHERE status IN ('pending', 'running');"
    ),
    "CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);",
    "CREATE INDEX IF NOT EXISTS idx_runs_task_started ON runs(task_id, started_at DESC);",
]

# run_events 表 DDL（append-only）
_RUN_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS run_events (
    event_id  TEXT PRIMARY KEY,
    run_id    TEXT NOT NULL,
    run_seq   INTEGER NOT NULL,
    ts        TEXT NOT NULL,
    type      TEXT NOT NULL,
    payload   TEXT NOT NULL DEFAULT '{}',

    FOREIGN KEY (run_id) REFERENCES runs(run_id)
);
"""

_RUN_EVENTS_INDEXES = [
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_run_events_seq ON run_events(run_id, run_seq);",
]

# watcher_state 表 DDL
_WATCHER_STATE_DDL = """
CREATE TABLE IF NOT EXISTS watcher_state (
    task_id       TEXT PRIMARY KEY,
    directory     TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'active',
    last_scan_at  TEXT,
    error         TEXT,
    emitted       TEXT NOT NULL DEFAULT '{}',
    pending       TEXT NOT NULL DEFAULT '{}'
);
"""


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")
    await conn.execute("PRAGMA synchronous = NORMAL;")

    await conn.execute(_TASK_DEFINITIONS_DDL)
    await conn.execute(_RUNS_DDL)
    await conn.execute(_RUN_EVENTS_DDL)
    await conn.execute(_WATCHER_STATE_DDL)

    for idx_sql in _RUNS_INDEXES + _RUN_EVENTS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
