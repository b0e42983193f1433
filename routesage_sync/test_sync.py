"""
路線インデックス同期テスト

検証項目:
  1. synchronize_persisted_index の上書き・absent・冪等性
  2. 失敗時に既存の routes を壊さないか（書き込み失敗・再計算失敗）
  3. 購読ワーカーが変更に追従し、最新のスナップショットだけを書き込むか
  4. 停止時の書き切りと、購読が途絶えたときの停止
"""
import asyncio
import sys

from store import Collection, MemoryBackend, PersistenceError, SubscriptionError
from sync import RouteIndexSynchronizer, rebuild, synchronize_persisted_index

passed = 0
failed = 0


def run_test(name, func):
    global passed, failed
    try:
        func()
        passed += 1
        print(f"  ✅ {name}")
    except AssertionError as e:
        failed += 1
        print(f"  ❌ {name}: {e}")
    except Exception as e:
        failed += 1
        print(f"  ❌ {name}: 例外発生 {e.__class__.__name__}: {e}")


def _initial_tree():
    return {
        "vehicles": {
            "bus_a": {"name": "Bus A", "type": "bus", "routes": "Route 1, Route 2"},
            "bus_b": {"name": "Bus B", "type": "bus", "routes": "route 1"},
        },
    }


class GatedBackend(MemoryBackend):
    """routes への書き込みを gate が開くまで止めるバックエンド"""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.gate = asyncio.Event()
        self.gate.set()
        self.route_writes = []

    async def set(self, path, value):
        if path == "routes":
            await self.gate.wait()
            self.route_writes.append(value)
        await super().set(path, value)


class FailingBackend(MemoryBackend):
    """fail_routes が True の間、routes への書き込みを失敗させるバックエンド"""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_routes = True

    async def set(self, path, value):
        if path == "routes" and self.fail_routes:
            raise PersistenceError(path, "HTTP 401 Permission denied")
        await super().set(path, value)


class DroppingBackend(MemoryBackend):
    """drop() で購読の途絶（権限拒否など）を on_error へ知らせるバックエンド"""

    def __init__(self, initial=None):
        super().__init__(initial)
        self._on_error = None

    def subscribe(self, path, on_snapshot, on_error=None):
        self._on_error = on_error
        return super().subscribe(path, on_snapshot, on_error)

    def drop(self):
        self._on_error(SubscriptionError("vehicles", "subscription refused (HTTP 403)"))


# ═══════════════════════════════════════
# 1. synchronize_persisted_index
# ═══════════════════════════════════════
def test_sync_writes_slug_index():
    """スラッグ索引が routes に丸ごと書き込まれる"""
    async def scenario():
        backend = MemoryBackend(_initial_tree())
        routes = Collection(backend, "routes")
        await rebuild(Collection(backend, "vehicles"), routes)
        stored = await routes.get()
        assert set(stored) == {"route_1", "route_2"}
        assert stored["route_1"]["name"] == "Route 1"
        assert len(stored["route_1"]["vehicles"]) == 2
        assert backend.writes[-1][:2] == ("set", "routes")
    asyncio.run(scenario())

def test_sync_empty_clears_routes():
    """車両が無ければ routes は空コンテナではなく absent になる"""
    async def scenario():
        tree = {"routes": {"stale": {"name": "Stale", "vehicles": [{"vehicleName": "X"}]}}}
        backend = MemoryBackend(tree)
        routes = Collection(backend, "routes")
        index = await synchronize_persisted_index(None, routes)
        assert index == {}
        assert backend.writes[-1] == ("set", "routes", None)
        assert await routes.get() is None
        assert await backend.get("") is None
    asyncio.run(scenario())

def test_sync_no_routes_field_clears():
    """routes を持たない車両だけなら absent"""
    async def scenario():
        backend = MemoryBackend({"vehicles": {"v": {"name": "V", "type": "bus"}}})
        await rebuild(Collection(backend, "vehicles"), Collection(backend, "routes"))
        assert backend.writes[-1] == ("set", "routes", None)
    asyncio.run(scenario())

def test_sync_removes_stale_slugs():
    """名前が変わった路線の古いスラッグは残らない"""
    async def scenario():
        backend = MemoryBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        await rebuild(vehicles, routes)
        await vehicles.update_record("bus_a", {"routes": "Route 3"})
        await rebuild(vehicles, routes)
        assert set(await routes.get()) == {"route_1", "route_3"}
        assert [v["vehicleName"] for v in (await routes.get())["route_1"]["vehicles"]] == ["Bus B"]
    asyncio.run(scenario())

def test_sync_replay_safe():
    """変化の無い vehicles で2回実行しても結果は同じ"""
    async def scenario():
        backend = MemoryBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        await rebuild(vehicles, routes)
        first = await routes.get()
        await rebuild(vehicles, routes)
        second = await routes.get()
        assert first == second
        assert backend.writes[-1][2] == backend.writes[-2][2]
    asyncio.run(scenario())


# ═══════════════════════════════════════
# 2. 失敗時の挙動
# ═══════════════════════════════════════
def test_sync_write_failure_propagates():
    """書き込み失敗は PersistenceError として伝わり、既存 routes はそのまま"""
    async def scenario():
        tree = _initial_tree()
        tree["routes"] = {"old": {"name": "Old", "vehicles": [{"vehicleName": "Bus A", "vehicleType": "bus"}]}}
        backend = FailingBackend(tree)
        routes = Collection(backend, "routes")
        try:
            await rebuild(Collection(backend, "vehicles"), routes)
        except PersistenceError as e:
            assert e.path == "routes"
        else:
            raise AssertionError("PersistenceError が送出されない")
        assert set(await routes.get()) == {"old"}
    asyncio.run(scenario())

def test_sync_compute_failure_no_write():
    """再計算で例外が出たら書き込みは行わない"""
    def exploding():
        yield {"name": "Bus A", "type": "bus", "routes": "Route 1"}
        raise RuntimeError("snapshot decode failed")

    async def scenario():
        backend = MemoryBackend({"routes": {"keep": {"name": "Keep", "vehicles": []}}})
        routes = Collection(backend, "routes")
        try:
            await synchronize_persisted_index(exploding(), routes)
        except RuntimeError:
            pass
        else:
            raise AssertionError("RuntimeError が送出されない")
        assert backend.writes == []
    asyncio.run(scenario())


# ═══════════════════════════════════════
# 3. 購読ワーカー (RouteIndexSynchronizer)
# ═══════════════════════════════════════
def test_worker_follows_changes():
    """購読開始時と vehicles 変更のたびに routes が再構築される"""
    async def scenario():
        backend = MemoryBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        synchronizer = RouteIndexSynchronizer(vehicles, routes)
        task = asyncio.create_task(synchronizer.run())

        await asyncio.sleep(0)
        await synchronizer.wait_idle()
        assert set(await routes.get()) == {"route_1", "route_2"}

        await vehicles.set_record("ferry_1", {"name": "Ferry 1", "type": "ferry", "routes": "Pasig River"})
        await synchronizer.wait_idle()
        assert "pasig_river" in await routes.get()

        await vehicles.replace_all(None)
        await synchronizer.wait_idle()
        assert await routes.get() is None

        synchronizer.stop()
        await task
        assert synchronizer.stats["write_errors"] == 0
        assert synchronizer.stats["writes"] == 3
    asyncio.run(scenario())

def test_worker_coalesces_to_latest():
    """書き込み中に届いた複数のスナップショットは最新の1件だけが書かれる"""
    async def scenario():
        backend = GatedBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        synchronizer = RouteIndexSynchronizer(vehicles, routes)

        backend.gate.clear()
        task = asyncio.create_task(synchronizer.run())
        await asyncio.sleep(0)  # 初回の書き込みが gate で止まる

        await vehicles.set_record("c1", {"name": "C1", "type": "bus", "routes": "Mid"})
        await vehicles.set_record("c2", {"name": "C2", "type": "bus", "routes": "Last"})

        backend.gate.set()
        await synchronizer.wait_idle()

        assert len(backend.route_writes) == 2, f"書き込み回数: {len(backend.route_writes)}"
        assert set(backend.route_writes[0]) == {"route_1", "route_2"}
        assert set(backend.route_writes[-1]) == {"route_1", "route_2", "mid", "last"}
        assert set(await routes.get()) == {"route_1", "route_2", "mid", "last"}
        assert synchronizer.stats["superseded"] == 1

        synchronizer.stop()
        await task
    asyncio.run(scenario())

def test_worker_write_failure_no_retry():
    """書き込み失敗はリトライせず記録し、次の変更で回復する"""
    async def scenario():
        backend = FailingBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        synchronizer = RouteIndexSynchronizer(vehicles, routes)
        task = asyncio.create_task(synchronizer.run())

        await asyncio.sleep(0)
        await synchronizer.wait_idle()
        assert synchronizer.stats["write_errors"] == 1
        assert isinstance(synchronizer.last_error, PersistenceError)
        assert await routes.get() is None

        backend.fail_routes = False
        await vehicles.update_record("bus_b", {"routes": "Route 9"})
        await synchronizer.wait_idle()
        assert synchronizer.last_error is None
        assert set(await routes.get()) == {"route_1", "route_2", "route_9"}
        assert synchronizer.stats["write_errors"] == 1

        synchronizer.stop()
        await task
    asyncio.run(scenario())

def test_worker_unsubscribes_on_stop():
    """停止後は vehicles を変更しても routes は書き換わらない"""
    async def scenario():
        backend = MemoryBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        synchronizer = RouteIndexSynchronizer(vehicles, routes)
        task = asyncio.create_task(synchronizer.run())
        await asyncio.sleep(0)
        await synchronizer.wait_idle()

        synchronizer.stop()
        await task
        writes_before = len(backend.writes)
        await vehicles.remove_record("bus_a")
        await asyncio.sleep(0)
        assert len(backend.writes) == writes_before + 1  # vehicles の削除のみ
        assert "route_2" in await routes.get()
    asyncio.run(scenario())

def test_worker_flushes_pending_on_stop():
    """停止要請の時点で未書き込みの最新スナップショットも routes に反映される"""
    async def scenario():
        backend = GatedBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        synchronizer = RouteIndexSynchronizer(vehicles, routes)

        backend.gate.clear()
        task = asyncio.create_task(synchronizer.run())
        await asyncio.sleep(0)  # 初回の書き込みが gate で止まる

        await vehicles.set_record("late", {"name": "Late Bus", "type": "bus", "routes": "Late"})
        synchronizer.stop()
        backend.gate.set()
        await task

        assert len(backend.route_writes) == 2, f"書き込み回数: {len(backend.route_writes)}"
        assert "late" in await routes.get()
        assert synchronizer.stats["writes"] == 2
    asyncio.run(scenario())

def test_worker_stops_when_subscription_lost():
    """購読が途絶えたら run() は SubscriptionError で終わり、last_error に残る"""
    async def scenario():
        backend = DroppingBackend(_initial_tree())
        vehicles = Collection(backend, "vehicles")
        routes = Collection(backend, "routes")
        synchronizer = RouteIndexSynchronizer(vehicles, routes)
        task = asyncio.create_task(synchronizer.run())
        await asyncio.sleep(0)
        await synchronizer.wait_idle()

        backend.drop()
        try:
            await asyncio.wait_for(task, timeout=5)
        except SubscriptionError as e:
            assert e.path == "vehicles"
        else:
            raise AssertionError("SubscriptionError が送出されない")
        assert synchronizer.failed
        assert synchronizer.last_error is not None
        assert synchronizer.stats["subscription_errors"] == 1
        # 途絶える前に書いた routes はそのまま
        assert set(await routes.get()) == {"route_1", "route_2"}
    asyncio.run(scenario())


# ═══════════════════════════════════════
# 実行
# ═══════════════════════════════════════
if __name__ == '__main__':
    sections = [
        ("synchronize_persisted_index", [
            ("スラッグ索引の書き込み", test_sync_writes_slug_index),
            ("車両なし → absent", test_sync_empty_clears_routes),
            ("routes なし → absent", test_sync_no_routes_field_clears),
            ("古いスラッグの除去", test_sync_removes_stale_slugs),
            ("再実行の冪等性", test_sync_replay_safe),
        ]),
        ("失敗時の挙動", [
            ("書き込み失敗の伝播", test_sync_write_failure_propagates),
            ("再計算失敗で書き込みなし", test_sync_compute_failure_no_write),
        ]),
        ("購読ワーカー", [
            ("変更への追従", test_worker_follows_changes),
            ("最新値への畳み込み", test_worker_coalesces_to_latest),
            ("書き込み失敗とリカバリ", test_worker_write_failure_no_retry),
            ("停止後の購読解除", test_worker_unsubscribes_on_stop),
            ("停止時に最新値を書き切る", test_worker_flushes_pending_on_stop),
            ("購読途絶で停止", test_worker_stops_when_subscription_lost),
        ]),
    ]

    for section_name, tests in sections:
        print(f"\n[{section_name}]")
        for test_name, test_func in tests:
            run_test(test_name, test_func)

    print(f"\n{'='*50}")
    print(f"結果: {passed} 件通過, {failed} 件失敗 / 全 {passed+failed} 件")
    if failed > 0:
        print("❌ テスト失敗あり")
        sys.exit(1)
    else:
        print("✅ 全テスト通過")
