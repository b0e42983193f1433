"""
RouteSage Sync - Firebase Realtime Database バックエンド

責務:
  - REST API（GET / PUT / PATCH）によるコレクションの読み書き
  - ストリーミング API（Server-Sent Events）による変更購読
  - HTTPエラー・通信エラーを PersistenceError に変換

設計方針:
  - 書き込みはリトライしない（失敗は呼び出し元へそのまま伝える）
  - 購読ストリームは切断時に指数バックオフ + ジッターで再接続する
  - 再接続できない終わり方（権限拒否・サーバー側の打ち切り・上限到達）は on_error へ伝える
  - ストリームの put / patch をローカルのツリーに適用し、常に全体スナップショットを渡す
"""
import asyncio
import json
import logging
import random
from typing import Any, Dict, Optional, Set, Tuple

import aiohttp

import db_config
from store import (
    ErrorCallback,
    PersistenceError,
    Snapshot,
    SnapshotCallback,
    SubscriptionError,
    Unsubscribe,
    apply_patch,
    apply_put,
    report_subscription_end,
    split_path,
)

logger = logging.getLogger(__name__)


# ─────────────────────────────────
# SSE パーサー
# ─────────────────────────────────
class SseParser:
    """
    text/event-stream を1行ずつ受け取り、イベントが完成したら
    (event名, data文字列) を返す。未完成なら None。
    """

    def __init__(self):
        self._event: Optional[str] = None
        self._data: list = []

    def feed(self, line: str) -> Optional[Tuple[str, str]]:
        line = line.rstrip('\r\n')
        if not line:
            if self._event is None and not self._data:
                return None
            event = (self._event or "message", "\n".join(self._data))
            self._event, self._data = None, []
            return event
        if line.startswith(':'):
            return None  # コメント行
        name, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]
        if name == 'event':
            self._event = value
        elif name == 'data':
            self._data.append(value)
        return None


class StreamCancelled(Exception):
    """サーバー側からストリームが打ち切られた（権限不足・認証失効）"""


def apply_stream_event(tree: Any, event: str, data: str) -> Tuple[Any, bool]:
    """
    ストリームイベントをツリーに適用する。
    戻り値: (新しいツリー, スナップショットが変化しうるか)
    """
    if event in ("put", "patch"):
        payload = json.loads(data) if data else {}
        parts = split_path(payload.get("path") or "/")
        if event == "put":
            return apply_put(tree, parts, payload.get("data")), True
        return apply_patch(tree, parts, payload.get("data") or {}), True
    if event == "keep-alive":
        return tree, False
    if event in ("cancel", "auth_revoked"):
        raise StreamCancelled(f"{event}: {data}")
    logger.debug(f"未知のストリームイベントを無視: {event}")
    return tree, False


# ═══════════════════════════════════════
# バックエンド本体
# ═══════════════════════════════════════

class FirebaseBackend:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        database_url: str | None = None,
        auth_token: str | None = None,
    ):
        self._session = session
        self._base_url = (database_url or db_config.FIREBASE_DATABASE_URL).rstrip('/')
        self._auth_token = auth_token if auth_token is not None else db_config.FIREBASE_AUTH_TOKEN
        self._streams: Set[asyncio.Task] = set()

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{'/'.join(split_path(path))}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self._auth_token} if self._auth_token else {}

    # ─────────────────────────────────
    # REST（リトライなし）
    # ─────────────────────────────────
    async def _request(self, method: str, path: str, body: Any = None, with_body: bool = False) -> Any:
        timeout = aiohttp.ClientTimeout(total=db_config.REQUEST_TIMEOUT)
        kwargs: Dict[str, Any] = {"params": self._params(), "timeout": timeout}
        if with_body:
            kwargs["data"] = json.dumps(body)
            kwargs["headers"] = {"Content-Type": "application/json"}
        try:
            async with self._session.request(method, self._url(path), **kwargs) as resp:
                text = await resp.text()
                if resp.status >= 300:
                    raise PersistenceError(path, f"HTTP {resp.status} {text[:200]}")
                try:
                    return json.loads(text) if text else None
                except ValueError as e:
                    raise PersistenceError(path, f"invalid JSON response: {text[:200]!r}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PersistenceError(path, f"{e.__class__.__name__}: {e}") from e

    async def get(self, path: str) -> Snapshot:
        return await self._request("GET", path)

    async def set(self, path: str, value: Snapshot) -> None:
        """PUT で丸ごと置き換える。None を書くとそのパスは削除される。"""
        await self._request("PUT", path, value, with_body=True)

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        """PATCH（多階層 update）。サーバー側で1回の原子的な書き込みになる。"""
        await self._request("PATCH", path, fields, with_body=True)

    # ─────────────────────────────────
    # ストリーミング購読
    # ─────────────────────────────────
    def subscribe(
        self, path: str, on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(self._stream(path, on_snapshot))
        self._streams.add(task)
        task.add_done_callback(self._streams.discard)
        task.add_done_callback(lambda t: report_subscription_end(t, path, on_error))

        def unsubscribe():
            task.cancel()

        return unsubscribe

    async def _stream(self, path: str, on_snapshot: SnapshotCallback):
        """
        ストリームを開いてイベントを処理する。
        - 切断・5xx: 指数バックオフ + ジッターで再接続
        - 401/403 や cancel / auth_revoked、再接続の上限到達: SubscriptionError で終了
        - 一度でもイベントを受信できたら試行回数をリセット
        """
        headers = {"Accept": "text/event-stream"}
        attempt = 0
        while attempt < db_config.STREAM_MAX_ATTEMPTS:
            tree: Any = None
            parser = SseParser()
            try:
                async with self._session.get(
                    self._url(path), params=self._params(), headers=headers
                ) as resp:
                    if resp.status in (401, 403):
                        raise SubscriptionError(path, f"subscription refused (HTTP {resp.status})")
                    if resp.status >= 300:
                        raise aiohttp.ClientResponseError(
                            resp.request_info, resp.history,
                            status=resp.status, message=resp.reason or "",
                        )
                    logger.info(f"購読開始: {path}")
                    async for raw in resp.content:
                        event = parser.feed(raw.decode('utf-8'))
                        if event is None:
                            continue
                        tree, changed = apply_stream_event(tree, *event)
                        attempt = 0
                        if changed:
                            on_snapshot(tree)
                logger.warning(f"ストリーム切断: {path}")
            except StreamCancelled as e:
                raise SubscriptionError(path, f"stream cancelled by server ({e})") from e
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning(
                    f"ストリーム通信エラー: {path} ({e.__class__.__name__}) "
                    f"リトライ {attempt+1}/{db_config.STREAM_MAX_ATTEMPTS}"
                )
            delay = (
                db_config.STREAM_RETRY_BASE_DELAY * (2 ** attempt)
                + random.uniform(0, db_config.STREAM_RETRY_JITTER)
            )
            attempt += 1
            await asyncio.sleep(delay)

        raise SubscriptionError(
            path, f"gave up after {db_config.STREAM_MAX_ATTEMPTS} reconnect attempts"
        )

    async def close(self) -> None:
        for task in list(self._streams):
            task.cancel()
        if self._streams:
            await asyncio.gather(*self._streams, return_exceptions=True)
