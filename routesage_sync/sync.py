"""
RouteSage Sync - 路線インデックス同期

責務:
  - vehicles コレクションの変更を購読し、routes コレクションを再計算して丸ごと上書きする
  - 単一スロットの「最新値チャネル」で変更通知を畳み込み、書き込みを直列化する

設計方針:
  - 書き込み中に届いたスナップショットは最新の1件だけを残す（古いものは破棄）
  - 書き込みはリトライしない。失敗はログに残し、次のスナップショットで全体を再計算する
  - 索引が空なら routes は None（absent）で上書きする
  - 停止時はスロットに残った最新値を書き切る。購読が途絶えたら停止してエラーを送出する
"""
import asyncio
import logging
import time
from typing import Any, Dict, Optional

from models import RouteGroup
from route_index import build_persisted_index, to_store_payload
from store import Collection, PersistenceError

logger = logging.getLogger(__name__)


async def synchronize_persisted_index(vehicles: Any, routes: Collection) -> Dict[str, RouteGroup]:
    """
    車両スナップショットからスラッグ索引を再計算し、routes を1回の書き込みで置き換える。

    再計算で例外が出た場合は書き込まずにそのまま送出する。
    書き込み失敗は PersistenceError として送出し、既存の routes には手を付けない。
    """
    index = build_persisted_index(vehicles)
    await routes.replace_all(to_store_payload(index))
    return index


async def rebuild(vehicles: Collection, routes: Collection) -> Dict[str, RouteGroup]:
    """現在の vehicles を1回だけ読み込んで routes を再構築する（購読なし）。"""
    snapshot = await vehicles.get()
    return await synchronize_persisted_index(snapshot, routes)


# ═══════════════════════════════════════
# 同期ワーカー
# ═══════════════════════════════════════

class RouteIndexSynchronizer:
    def __init__(self, vehicles: Collection, routes: Collection):
        self._vehicles = vehicles
        self._routes = routes
        self._latest: Any = None
        self._pending = False
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._shutdown_event = asyncio.Event()
        self.last_error: Optional[Exception] = None
        self._subscription_error: Optional[Exception] = None
        self._stats = {
            "snapshots": 0,
            "writes": 0,
            "superseded": 0,
            "write_errors": 0,
            "compute_errors": 0,
            "subscription_errors": 0,
        }
        self._start_time: float = 0.0

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # ─────────────────────────────────
    # 最新値チャネル（購読コールバックから呼ばれる）
    # ─────────────────────────────────
    def offer(self, snapshot: Any):
        """
        スナップショットをスロットに置く。
        awaitを挟まないため、スロットの読み書きの間にタスク切替は起こらない。
        """
        if self._pending:
            self._stats["superseded"] += 1
        self._latest = snapshot
        self._pending = True
        self._stats["snapshots"] += 1
        self._idle.clear()
        self._wakeup.set()

    def _take(self) -> Any:
        snapshot, self._latest, self._pending = self._latest, None, False
        return snapshot

    # ─────────────────────────────────
    # 書き込みループ
    # ─────────────────────────────────
    async def _writer(self):
        while not self._shutdown_event.is_set():
            await self._wakeup.wait()
            self._wakeup.clear()
            if self._pending:
                await self._write_latest()
        # 停止要請の時点でスロットに残っている最新値は書き切ってから抜ける
        while self._pending:
            await self._write_latest()

    async def _write_latest(self):
        snapshot = self._take()
        try:
            index = await synchronize_persisted_index(snapshot, self._routes)
            self._stats["writes"] += 1
            self.last_error = None
            logger.info(f"routes 更新: {len(index)} 路線")
        except PersistenceError as e:
            self._stats["write_errors"] += 1
            self.last_error = e
            logger.error(f"routes 書き込み失敗（リトライなし）: {e}")
        except Exception as e:
            self._stats["compute_errors"] += 1
            self.last_error = e
            logger.error(f"路線索引の再計算エラー: {e}", exc_info=True)
        finally:
            if not self._pending:
                self._idle.set()

    def _on_subscription_error(self, exc: Exception):
        """購読が途絶えたら同期を止める。run() はこの例外を送出して終わる。"""
        self._stats["subscription_errors"] += 1
        self.last_error = exc
        self._subscription_error = exc
        logger.error(f"vehicles の購読が途絶えたため同期を停止: {exc}")
        self.stop()

    async def run(self):
        """
        購読を開始し、stop() が呼ばれるまで同期を続ける。
        購読が回復不能になった場合は SubscriptionError を送出する。
        """
        self._start_time = time.monotonic()
        logger.info(f"同期開始: {self._vehicles.name} → {self._routes.name}")
        unsubscribe = self._vehicles.subscribe(self.offer, self._on_subscription_error)
        try:
            await self._writer()
        finally:
            unsubscribe()
            self._print_final_report(time.monotonic() - self._start_time)
        if self._subscription_error is not None:
            raise self._subscription_error

    @property
    def failed(self) -> bool:
        """購読が途絶えて停止したか"""
        return self._subscription_error is not None

    async def wait_idle(self):
        """受け取ったスナップショットをすべて処理し終えるまで待つ。"""
        await self._idle.wait()

    def stop(self):
        """グレースフルシャットダウンを要請する。"""
        self._shutdown_event.set()
        self._wakeup.set()

    def _print_final_report(self, total_time: float):
        s = self._stats
        logger.info(
            f"同期終了 [{total_time:.0f}秒] | "
            f"スナップショット={s['snapshots']} | 書き込み={s['writes']} | "
            f"破棄(上書き済み)={s['superseded']} | "
            f"書き込みエラー={s['write_errors']} | 再計算エラー={s['compute_errors']} | "
            f"購読エラー={s['subscription_errors']}"
        )
