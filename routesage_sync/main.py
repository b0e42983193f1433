"""
RouteSage Sync - メインエントリポイント

責務:
  - ストアバックエンド（Firebase / PostgreSQL / メモリ）の生成と後始末
  - 路線インデックス同期ワーカーの常駐実行とグレースフルシャットダウン
  - 車両・運賃・利用者ロールの管理コマンド

サブコマンド:
  sync     vehicles を購読し続け、変更のたびに routes を再構築する
  rebuild  routes を1回だけ再構築する
  routes   路線ごとの車両一覧を表示する（検索可）
  vehicle  車両の list / add / edit / delete
  fare     運賃の list / add / edit / delete
  role     利用者ロールの show / set
"""
import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys

import db_config
from accounts import AccountDirectory
from database import init_db
from firebase_store import FirebaseBackend
from fleet import FleetAdmin, format_type_for_db, format_type_for_display
from repository import PostgresBackend
from route_index import build_display_index, filter_routes
from store import Collection, MemoryBackend, PersistenceError
from sync import RouteIndexSynchronizer, rebuild

# ─────────────────────────────────
# ロガー
# ─────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("routesage_sync")


# ─────────────────────────────────
# バックエンド生成
# ─────────────────────────────────
@contextlib.asynccontextmanager
async def open_backend(kind: str, seed: str | None = None):
    """指定種別のバックエンドを開き、終了時に接続を解放する。"""
    if kind == "memory":
        initial = None
        if seed:
            with open(seed, encoding='utf-8') as f:
                initial = json.load(f)
        backend = MemoryBackend(initial)
        try:
            yield backend
        finally:
            await backend.close()

    elif kind == "postgres":
        pool = await db_config.create_pool()
        await init_db(pool)
        backend = PostgresBackend(pool)
        try:
            yield backend
        finally:
            await backend.close()
            await pool.close()

    elif kind == "firebase":
        async with db_config.create_session() as session:
            backend = FirebaseBackend(session)
            try:
                yield backend
            finally:
                await backend.close()

    else:
        raise ValueError(f"unknown store backend: {kind}")


# ═══════════════════════════════════════
# サブコマンド
# ═══════════════════════════════════════

async def cmd_sync(backend, args):
    synchronizer = RouteIndexSynchronizer(
        Collection(backend, "vehicles"), Collection(backend, "routes"),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_shutdown, synchronizer)
        except NotImplementedError:
            pass

    await synchronizer.run()


def _handle_shutdown(synchronizer: RouteIndexSynchronizer):
    """シグナルハンドラ: グレースフルシャットダウンを要請する。"""
    logger.warning("停止シグナル受信。実行中の書き込みを完了して終了します...")
    synchronizer.stop()


async def cmd_rebuild(backend, args):
    index = await rebuild(Collection(backend, "vehicles"), Collection(backend, "routes"))
    logger.info(f"routes 再構築完了: {len(index)} 路線")


async def cmd_routes(backend, args):
    snapshot = await Collection(backend, "vehicles").get()
    rows = build_display_index(snapshot)
    filtered = filter_routes(rows, args.search)
    if not filtered:
        print("No routes found" if not rows else "No matching routes found")
        return
    for route, refs in filtered:
        vehicles = ", ".join(f"{r.vehicle_name} ({r.vehicle_type})" for r in refs)
        print(f"{route}: {vehicles}")


async def cmd_vehicle(backend, args):
    admin = FleetAdmin(backend)
    if args.action == "list":
        groups = await admin.vehicles_by_type()
        for vtype, records in groups.items():
            print(f"[{format_type_for_display(vtype)}] {len(records)} vehicle{'s' if len(records) != 1 else ''}")
            for record in records:
                print(f"  {record.name}: {record.routes or ''}")
        return

    await _require_admin(backend, args)
    if args.action == "add":
        types = await admin.transport_types()
        if types and format_type_for_db(args.type) not in types:
            logger.warning(f"運賃未登録の種別です: {args.type} (登録済み: {', '.join(types)})")
        key = await admin.add_vehicle(args.name, args.type, args.routes)
        print(key)
    elif args.action == "edit":
        key = await admin.edit_vehicle(args.key, args.name, args.type, args.routes)
        print(key)
    elif args.action == "delete":
        await admin.delete_vehicle(args.key)


async def cmd_fare(backend, args):
    admin = FleetAdmin(backend)
    if args.action == "list":
        for key, fare in (await admin.list_fares()).items():
            print(f"{key}: {fare.transport} min={fare.new_min_fare} after4km={fare.after_4km}")
        return

    await _require_admin(backend, args)
    if args.action == "add":
        print(await admin.add_fare(args.transport, args.min_fare, args.after_4km))
    elif args.action == "edit":
        print(await admin.edit_fare(args.key, args.transport, args.min_fare, args.after_4km))
    elif args.action == "delete":
        await admin.delete_fare(args.key)


async def cmd_role(backend, args):
    directory = AccountDirectory(backend)
    if args.action == "show":
        print(await directory.resolve_role(args.uid))
        return
    await _require_admin(backend, args)
    await directory.update_account(args.uid, role=args.role)


async def _require_admin(backend, args):
    """--as-uid 指定時のみ、操作者が管理者かどうかを確認する。"""
    if args.as_uid:
        await AccountDirectory(backend).require_admin(args.as_uid)


COMMANDS = {
    "sync": cmd_sync,
    "rebuild": cmd_rebuild,
    "routes": cmd_routes,
    "vehicle": cmd_vehicle,
    "fare": cmd_fare,
    "role": cmd_role,
}


async def run(args) -> int:
    async with open_backend(args.backend, args.seed) as backend:
        try:
            await COMMANDS[args.command](backend, args)
        except PersistenceError as e:
            logger.error(f"ストア操作に失敗しました: {e}")
            return 1
        except (ValueError, KeyError, PermissionError) as e:
            logger.error(f"{e.__class__.__name__}: {e}")
            return 2
    return 0


# ─────────────────────────────────
# CLI
# ─────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="RouteSage 路線インデックス同期・車両管理")
    parser.add_argument(
        "--backend",
        default=db_config.STORE_BACKEND,
        choices=["firebase", "postgres", "memory"],
        help=f"ストアバックエンド (デフォルト: {db_config.STORE_BACKEND})",
    )
    parser.add_argument(
        "--seed",
        default=None,
        help="memory バックエンドの初期データ (JSONファイル)",
    )
    parser.add_argument(
        "--as-uid",
        default=None,
        help="操作者の uid (指定時は管理者ロールを確認する)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync", help="vehicles を購読して routes を同期し続ける")
    sub.add_parser("rebuild", help="routes を1回だけ再構築する")

    routes = sub.add_parser("routes", help="路線ごとの車両一覧")
    routes.add_argument("--search", default="", help="路線名・車両名・種別で絞り込み")

    vehicle = sub.add_parser("vehicle", help="車両管理")
    vehicle_actions = vehicle.add_subparsers(dest="action", required=True)
    vehicle_actions.add_parser("list")
    v_add = vehicle_actions.add_parser("add")
    v_add.add_argument("name")
    v_add.add_argument("type")
    v_add.add_argument("routes", nargs="?", default="")
    v_edit = vehicle_actions.add_parser("edit")
    v_edit.add_argument("key")
    v_edit.add_argument("name")
    v_edit.add_argument("type")
    v_edit.add_argument("routes", nargs="?", default="")
    v_delete = vehicle_actions.add_parser("delete")
    v_delete.add_argument("key")

    fare = sub.add_parser("fare", help="運賃管理")
    fare_actions = fare.add_subparsers(dest="action", required=True)
    fare_actions.add_parser("list")
    f_add = fare_actions.add_parser("add")
    f_add.add_argument("transport")
    f_add.add_argument("min_fare")
    f_add.add_argument("after_4km")
    f_edit = fare_actions.add_parser("edit")
    f_edit.add_argument("key")
    f_edit.add_argument("transport")
    f_edit.add_argument("min_fare")
    f_edit.add_argument("after_4km")
    f_delete = fare_actions.add_parser("delete")
    f_delete.add_argument("key")

    role = sub.add_parser("role", help="利用者ロール")
    role_actions = role.add_subparsers(dest="action", required=True)
    r_show = role_actions.add_parser("show")
    r_show.add_argument("uid")
    r_set = role_actions.add_parser("set")
    r_set.add_argument("uid")
    r_set.add_argument("role", choices=["admin", "user"])

    return parser


def cli():
    args = build_parser().parse_args()

    try:
        import uvloop
        uvloop.install()
        logger.info("uvloop 有効化")
    except ImportError:
        pass

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    cli()
