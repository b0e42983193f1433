"""
RouteSage Sync - リポジトリ層（PostgreSQLバックエンド）

責務:
  - 文書テーブルに対する読み書きを「パス」単位で提供する
  - コレクション全体の置き換えを1トランザクションで行う（原子性）
  - LISTEN/NOTIFY による変更購読

設計方針:
  - asyncpg コネクションプールから接続を取得して操作する
  - パスは "collection" / "collection/key" / "collection/key/field..." の3形態
  - DB例外はすべて PersistenceError に変換して呼び出し元へ伝える
"""
import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from database import NOTIFY_CHANNEL
from store import (
    ErrorCallback,
    PersistenceError,
    Snapshot,
    SnapshotCallback,
    SubscriptionError,
    Unsubscribe,
    apply_put,
    get_at,
    prune,
    report_subscription_end,
    split_path,
)

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def _translate_errors(path: str):
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        raise PersistenceError(path, f"{e.__class__.__name__}: {e}") from e


class PostgresBackend:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool
        self._listener: Optional[asyncpg.Connection] = None
        self._listener_lock = asyncio.Lock()
        self._watchers: List["_Watcher"] = []

    # ─────────────────────────────────
    # 読み出し
    # ─────────────────────────────────
    async def get(self, path: str) -> Snapshot:
        parts = split_path(path)
        async with _translate_errors(path):
            async with self._pool.acquire() as conn:
                return await self._get(conn, parts)

    async def _get(self, conn: asyncpg.Connection, parts: List[str]) -> Snapshot:
        if not parts:
            rows = await conn.fetch('SELECT collection, key, data FROM documents')
            tree: Dict[str, Any] = {}
            for row in rows:
                tree.setdefault(row['collection'], {})[row['key']] = row['data']
            return tree or None
        if len(parts) == 1:
            rows = await conn.fetch(
                'SELECT key, data FROM documents WHERE collection = $1',
                parts[0],
            )
            return {row['key']: row['data'] for row in rows} or None
        data = await conn.fetchval(
            'SELECT data FROM documents WHERE collection = $1 AND key = $2',
            parts[0], parts[1],
        )
        return get_at(data, parts[2:])

    # ─────────────────────────────────
    # 書き込み
    # ─────────────────────────────────
    async def set(self, path: str, value: Snapshot) -> None:
        """
        パスの値を丸ごと置き換える。None は削除。
        コレクション単位の置き換えは DELETE + INSERT を単一トランザクションで行う。
        """
        parts = split_path(path)
        async with _translate_errors(path):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await self._put(conn, parts, value)

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        """多階層 update。全フィールドを単一トランザクションで書き込む。"""
        base = split_path(path)
        async with _translate_errors(path):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for rel_path, value in fields.items():
                        await self._put(conn, base + split_path(rel_path), value)

    async def _put(self, conn: asyncpg.Connection, parts: List[str], value: Any):
        value = prune(value)
        if not parts:
            await conn.execute('DELETE FROM documents')
            for collection, records in _as_mapping(value, '/').items():
                await self._replace_collection(conn, collection, records)
            return

        if len(parts) == 1:
            await conn.execute('DELETE FROM documents WHERE collection = $1', parts[0])
            await self._replace_collection(conn, parts[0], value)
            return

        collection, key = parts[0], parts[1]
        if len(parts) > 2:
            # レコード内部のフィールド → 行ロックを取ってから読み書き
            current = await conn.fetchval(
                '''
                SELECT data FROM documents
                WHERE collection = $1 AND key = $2
                FOR UPDATE
                ''',
                collection, key,
            )
            value = apply_put(current, parts[2:], value)

        if value is None:
            await conn.execute(
                'DELETE FROM documents WHERE collection = $1 AND key = $2',
                collection, key,
            )
            return
        await conn.execute(
            '''
            INSERT INTO documents (collection, key, data)
            VALUES ($1, $2, $3)
            ON CONFLICT(collection, key) DO UPDATE SET
                data       = EXCLUDED.data,
                updated_at = NOW()
            ''',
            collection, key, value,
        )

    async def _replace_collection(self, conn: asyncpg.Connection, collection: str, records: Any):
        rows = [
            (collection, key, data)
            for key, data in _as_mapping(records, collection).items()
        ]
        if rows:
            await conn.executemany(
                'INSERT INTO documents (collection, key, data) VALUES ($1, $2, $3)',
                rows,
            )

    # ─────────────────────────────────
    # 変更購読（LISTEN/NOTIFY）
    # ─────────────────────────────────
    def subscribe(
        self, path: str, on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        watcher = _Watcher(self, split_path(path), on_snapshot, on_error)
        self._watchers.append(watcher)
        watcher.start()

        def unsubscribe():
            watcher.stop()
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return unsubscribe

    async def _ensure_listener(self):
        async with self._listener_lock:
            if self._listener is not None:
                return
            async with _translate_errors(NOTIFY_CHANNEL):
                conn = await self._pool.acquire()
                try:
                    await conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
                except BaseException:
                    await self._pool.release(conn)
                    raise
            conn.add_termination_listener(self._on_listener_terminated)
            self._listener = conn
            logger.info(f"LISTEN 開始: {NOTIFY_CHANNEL}")

    def _on_notify(self, conn, pid, channel, payload):
        for watcher in list(self._watchers):
            if not watcher.parts or watcher.parts[0] == payload:
                watcher.poke()

    def _on_listener_terminated(self, conn):
        """LISTEN 接続が切れると以後の通知は届かないため、全購読を失敗させる。"""
        self._listener = None
        logger.error(f"LISTEN 接続が切断: {NOTIFY_CHANNEL}")
        for watcher in list(self._watchers):
            watcher.fail(SubscriptionError(
                '/'.join(watcher.parts), f"LISTEN connection on '{NOTIFY_CHANNEL}' was lost"
            ))

    async def close(self) -> None:
        for watcher in list(self._watchers):
            watcher.stop()
        self._watchers.clear()
        if self._listener is not None:
            self._listener.remove_termination_listener(self._on_listener_terminated)
            await self._listener.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self._pool.release(self._listener)
            self._listener = None


class _Watcher:
    """
    1購読分の再読込ループ。
    通知は Event に畳み込み、読み込み中に届いた通知は次の1回の再読込にまとめる。
    これにより通知の到着順とスナップショットの配送順が逆転しない。
    ループが例外で終わったら on_error に SubscriptionError として伝わる。
    """

    def __init__(
        self, backend: PostgresBackend, parts: List[str],
        on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None,
    ):
        self._backend = backend
        self.parts = parts
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._dirty = asyncio.Event()
        self._failure: Optional[Exception] = None
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self._dirty.set()  # 購読開始時の初回スナップショット
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._task.add_done_callback(
            lambda t: report_subscription_end(t, '/'.join(self.parts), self._on_error)
        )

    def poke(self):
        self._dirty.set()

    def fail(self, exc: Exception):
        self._failure = exc
        self._dirty.set()

    def stop(self):
        if self._task is not None:
            self._task.cancel()

    async def _run(self):
        path = '/'.join(self.parts)
        await self._backend._ensure_listener()
        while True:
            await self._dirty.wait()
            self._dirty.clear()
            if self._failure is not None:
                raise self._failure
            try:
                snapshot = await self._backend.get(path)
            except PersistenceError as e:
                logger.error(f"スナップショット取得失敗 ({path}): {e}")
                continue
            self._on_snapshot(snapshot)


def _as_mapping(value: Any, path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{path}: collections hold maps, got {type(value).__name__}")
    return value
