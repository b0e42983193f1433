"""
RouteSage Sync - ストア抽象層

責務:
  - 「名前付きコレクション × フラットなマップ」という文書DBの見え方を一元化
  - バックエンド（Firebase / PostgreSQL / メモリ）の差し替え
  - 書き込み失敗を PersistenceError の1種類に集約

設計方針:
  - 値 None の書き込みは「削除（absent）」を意味する（Firebase と同じ）
  - 空の dict は保持しない（書き込み後に枝ごと刈り取る）
  - subscribe は購読開始時と変更のたびにコレクション全体のスナップショットを渡す
  - 購読が回復不能になったら on_error に SubscriptionError を渡す（黙って止まらない）
"""
import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol


Snapshot = Optional[Any]
SnapshotCallback = Callable[[Snapshot], None]
Unsubscribe = Callable[[], None]
ErrorCallback = Callable[[Exception], None]

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """ストアへの書き込み（または読み出し）が失敗した"""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class SubscriptionError(PersistenceError):
    """購読が終了し、以後スナップショットが届かない"""


class StoreBackend(Protocol):
    async def get(self, path: str) -> Snapshot: ...

    async def set(self, path: str, value: Snapshot) -> None: ...

    async def update(self, path: str, fields: Dict[str, Any]) -> None: ...

    def subscribe(
        self, path: str, on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe: ...

    async def close(self) -> None: ...


# ─────────────────────────────────
# パス・ツリー操作
# ─────────────────────────────────

def split_path(path: str) -> List[str]:
    """"vehicles/bus_a/" → ["vehicles", "bus_a"]（ルートは []）"""
    return [part for part in path.split('/') if part]


def join_path(*parts: str) -> str:
    return '/'.join(p.strip('/') for p in parts if p and p.strip('/'))


def prune(value: Any) -> Any:
    """None と空 dict を再帰的に取り除く。全体が空になれば None を返す。"""
    if isinstance(value, dict):
        pruned = {}
        for k, v in value.items():
            v = prune(v)
            if v is not None:
                pruned[k] = v
        return pruned or None
    return value


def get_at(tree: Any, parts: List[str]) -> Any:
    node = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def apply_put(tree: Any, parts: List[str], data: Any) -> Any:
    """tree の parts 位置を data で丸ごと置き換えた新しいツリーを返す。"""
    if not parts:
        return prune(copy.deepcopy(data))
    root = copy.deepcopy(tree) if isinstance(tree, dict) else {}
    node = root
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = copy.deepcopy(data)
    return prune(root)


def apply_patch(tree: Any, parts: List[str], fields: Dict[str, Any]) -> Any:
    """
    parts 位置を基点に、fields の各キー（"a/b" 形式の多階層パス可）を個別に置き換える。
    Firebase の update() / ストリームの patch イベントと同じ意味を持つ。
    """
    for rel_path, value in fields.items():
        tree = apply_put(tree, parts + split_path(rel_path), value)
    return tree


def report_subscription_end(task: asyncio.Task, path: str, on_error: Optional[ErrorCallback]):
    """
    購読タスクの done コールバック。
    キャンセル（unsubscribe / close）以外で終わったら SubscriptionError として on_error に渡す。
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        exc = SubscriptionError(path, "subscription ended")
    elif not isinstance(exc, SubscriptionError):
        exc = SubscriptionError(path, f"{exc.__class__.__name__}: {exc}")
    logger.error(f"購読終了: {exc}")
    if on_error is not None:
        on_error(exc)


# ═══════════════════════════════════════
# コレクション
# ═══════════════════════════════════════

class Collection:
    """
    バックエンド上の1コレクション（例: "vehicles", "routes", "fares", "users"）。

    VehicleStore.subscribe / RouteStore.replace_all の両方の役割をこのクラスが担う。
    """

    def __init__(self, backend: StoreBackend, name: str):
        self._backend = backend
        self.name = name

    def subscribe(
        self, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None
    ) -> Unsubscribe:
        return self._backend.subscribe(self.name, on_snapshot, on_error)

    async def get(self) -> Optional[Dict[str, Any]]:
        value = await self._backend.get(self.name)
        return value if isinstance(value, dict) else None

    async def get_record(self, key: str) -> Optional[Dict[str, Any]]:
        value = await self._backend.get(self._record_path(key))
        return value if isinstance(value, dict) else None

    async def set_record(self, key: str, value: Dict[str, Any]) -> None:
        await self._backend.set(self._record_path(key), value)

    async def update_record(self, key: str, fields: Dict[str, Any]) -> None:
        await self._backend.update(self._record_path(key), fields)

    async def remove_record(self, key: str) -> None:
        await self._backend.set(self._record_path(key), None)

    async def move_record(self, old_key: str, new_key: str, value: Dict[str, Any]) -> None:
        """旧キーの削除と新キーへの書き込みを1回の多階層 update で行う。"""
        self._record_path(old_key)
        self._record_path(new_key)
        await self._backend.update(self.name, {old_key: None, new_key: value})

    def _record_path(self, key: str) -> str:
        """空のキーはコレクション自体を指してしまうため拒否する。"""
        if not key or not key.strip('/'):
            raise ValueError(f"empty record key in collection '{self.name}'")
        return join_path(self.name, key)

    async def replace_all(self, records: Optional[Dict[str, Any]]) -> None:
        """コレクション全体を1回で置き換える。None はコレクションの削除。"""
        await self._backend.set(self.name, records)


# ═══════════════════════════════════════
# メモリバックエンド（ローカル実行・テスト用）
# ═══════════════════════════════════════

class MemoryBackend:
    """プロセス内のツリーを保持し、書き込みのたびに購読者へ同期的に通知する。"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._tree: Any = prune(copy.deepcopy(initial)) if initial else None
        self._subscribers: List[tuple] = []
        self.writes: List[tuple] = []

    async def get(self, path: str) -> Snapshot:
        return copy.deepcopy(get_at(self._tree, split_path(path)))

    async def set(self, path: str, value: Snapshot) -> None:
        self.writes.append(("set", path, copy.deepcopy(value)))
        self._commit(apply_put(self._tree, split_path(path), value))

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        self.writes.append(("update", path, copy.deepcopy(fields)))
        self._commit(apply_patch(self._tree, split_path(path), fields))

    def subscribe(
        self, path: str, on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        entry = (split_path(path), on_snapshot)
        self._subscribers.append(entry)
        on_snapshot(copy.deepcopy(get_at(self._tree, entry[0])))

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def close(self) -> None:
        self._subscribers.clear()

    def _commit(self, new_tree: Any):
        """ツリーを差し替え、値が変わった購読パスにだけ通知する。"""
        old_tree, self._tree = self._tree, new_tree
        for parts, callback in list(self._subscribers):
            after = get_at(new_tree, parts)
            if get_at(old_tree, parts) != after:
                callback(copy.deepcopy(after))
