"""
RouteSage Sync - データベース初期化・テーブル定義（PostgreSQLバックエンド）

責務:
  - 文書テーブル（コレクション × キー × JSONB）の生成
  - 変更通知トリガー（pg_notify）の登録
"""
import asyncpg

NOTIFY_CHANNEL = "collection_changed"


async def init_db(pool: asyncpg.Pool):
    """データベースのテーブルとトリガーを初期化する。"""
    async with pool.acquire() as conn:
        async with conn.transaction():
            # ══════════════════════════════════════
            # 1. 文書テーブル
            #    Firebase の /{collection}/{key} に相当する1レコード = 1行
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS documents (
                    collection  TEXT  NOT NULL,
                    key         TEXT  NOT NULL,
                    data        JSONB NOT NULL,
                    created_at  TIMESTAMPTZ DEFAULT NOW(),
                    updated_at  TIMESTAMPTZ DEFAULT NOW(),
                    PRIMARY KEY (collection, key)
                )
            ''')

            # ══════════════════════════════════════
            # 2. 変更通知
            #    行単位で通知するが、同一トランザクション内の同一ペイロードは
            #    PostgreSQL 側で1件にまとめられる
            # ══════════════════════════════════════
            await conn.execute(f'''
                CREATE OR REPLACE FUNCTION notify_collection_changed()
                RETURNS trigger AS $$
                BEGIN
                    PERFORM pg_notify(
                        '{NOTIFY_CHANNEL}',
                        COALESCE(NEW.collection, OLD.collection)
                    );
                    RETURN NULL;
                END;
                $$ LANGUAGE plpgsql
            ''')
            await conn.execute('''
                DROP TRIGGER IF EXISTS documents_changed ON documents
            ''')
            await conn.execute('''
                CREATE TRIGGER documents_changed
                    AFTER INSERT OR UPDATE OR DELETE ON documents
                    FOR EACH ROW EXECUTE FUNCTION notify_collection_changed()
            ''')
