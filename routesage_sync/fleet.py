"""
RouteSage Sync - 車両・運賃の管理操作

責務:
  - 車両の追加 / 編集 / 削除（名前の重複チェック、名前由来のキー付け）
  - 運賃（交通種別）の追加 / 編集 / 削除
  - 交通種別の表記変換と、種別ごとの車両グルーピング

設計方針:
  - 名前の重複は大文字小文字を区別せずに判定する
  - 名前変更はキーも変わるため、旧キー削除 + 新キー書き込みを1回の update で行う
  - routes コレクションには触れない（同期ワーカーが唯一の書き手）
"""
import logging
import re
from typing import Dict, List, Optional

from models import Fare, VehicleRecord
from route_index import normalize_to_slug
from store import Collection, StoreBackend

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')


class DuplicateNameError(ValueError):
    """同名（大文字小文字無視）のレコードが既に存在する"""


class UnknownRecordError(KeyError):
    """指定キーのレコードが存在しない"""


def format_type_for_db(vtype: str) -> str:
    """"Mini Bus" → "mini_bus" """
    return _WHITESPACE.sub('_', vtype.lower())


def format_type_for_display(vtype: str) -> str:
    """"mini_bus" → "Mini Bus" """
    return ' '.join(word[:1].upper() + word[1:] for word in vtype.split('_'))


class FleetAdmin:
    def __init__(self, backend: StoreBackend):
        self.vehicles = Collection(backend, "vehicles")
        self.fares = Collection(backend, "fares")

    # ─────────────────────────────────
    # 車両
    # ─────────────────────────────────
    async def list_vehicles(self) -> Dict[str, VehicleRecord]:
        snapshot = await self.vehicles.get() or {}
        records = {}
        for key, data in snapshot.items():
            record = VehicleRecord.from_snapshot(data)
            if record is not None:
                records[key] = record
        return records

    async def add_vehicle(self, name: str, vtype: str, routes: str = "") -> str:
        """車両を追加し、付与したキーを返す。"""
        record = _vehicle_from_form(name, vtype, routes)
        existing = await self.list_vehicles()
        key = _record_key(record.name)
        _ensure_unique_vehicle(existing, record.name, key, exclude_key=None)

        await self.vehicles.set_record(key, record.to_dict())
        logger.info(f"車両追加: {key} ({record.name}, {record.type})")
        return key

    async def edit_vehicle(self, key: str, name: str, vtype: str, routes: str = "") -> str:
        """
        車両を更新し、更新後のキーを返す。
        名前が変わらなければ同じキーを部分更新、変わればキーごと付け替える。
        """
        existing = await self.list_vehicles()
        current = existing.get(key)
        if current is None:
            raise UnknownRecordError(key)
        record = _vehicle_from_form(name, vtype, routes)

        if record.name == current.name:
            await self.vehicles.update_record(key, record.to_dict())
            logger.info(f"車両更新: {key}")
            return key

        new_key = _record_key(record.name)
        _ensure_unique_vehicle(existing, record.name, new_key, exclude_key=key)
        if new_key == key:
            await self.vehicles.set_record(key, record.to_dict())
        else:
            await self.vehicles.move_record(key, new_key, record.to_dict())
        logger.info(f"車両更新: {key} → {new_key}")
        return new_key

    async def delete_vehicle(self, key: str):
        if await self.vehicles.get_record(key) is None:
            raise UnknownRecordError(key)
        await self.vehicles.remove_record(key)
        logger.info(f"車両削除: {key}")

    async def vehicles_by_type(self) -> Dict[str, List[VehicleRecord]]:
        """種別ごとに車両をまとめる。種別が空のものは "other" に入れる。"""
        groups: Dict[str, List[VehicleRecord]] = {}
        for record in (await self.list_vehicles()).values():
            groups.setdefault(record.type or "other", []).append(record)
        return groups

    async def search_vehicles(self, term: str) -> Dict[str, VehicleRecord]:
        needle = (term or "").lower()
        return {
            key: record for key, record in (await self.list_vehicles()).items()
            if needle in record.name.lower()
            or needle in record.type.lower()
            or needle in (record.routes or "").lower()
        }

    # ─────────────────────────────────
    # 運賃
    # ─────────────────────────────────
    async def list_fares(self) -> Dict[str, Fare]:
        snapshot = await self.fares.get() or {}
        fares = {}
        for key, data in snapshot.items():
            try:
                fares[key] = Fare.from_dict(data)
            except (ValueError, AttributeError):
                logger.warning(f"不正な運賃レコードをスキップ: {key}")
        return fares

    async def transport_types(self) -> List[str]:
        """車両に指定できる種別の一覧（登録済み運賃の交通種別）"""
        return [format_type_for_db(f.transport) for f in (await self.list_fares()).values()]

    async def add_fare(self, transport: str, new_min_fare: str, after_4km: str) -> str:
        fare = Fare(transport, new_min_fare, after_4km)
        existing = await self.list_fares()
        if any(f.transport.lower() == fare.transport.lower() for f in existing.values()):
            raise DuplicateNameError(
                f"a fare for transport type '{fare.transport}' already exists"
            )
        key = _record_key(fare.transport)
        await self.fares.set_record(key, fare.to_dict())
        logger.info(f"運賃追加: {key}")
        return key

    async def edit_fare(self, key: str, transport: str, new_min_fare: str, after_4km: str) -> str:
        existing = await self.list_fares()
        current = existing.get(key)
        if current is None:
            raise UnknownRecordError(key)
        fare = Fare(transport, new_min_fare, after_4km)

        if fare.transport == current.transport:
            await self.fares.update_record(key, fare.to_dict())
            return key

        if any(
            f.transport.lower() == fare.transport.lower() and k != key
            for k, f in existing.items()
        ):
            raise DuplicateNameError(
                f"a fare for transport type '{fare.transport}' already exists"
            )
        new_key = _record_key(fare.transport)
        if new_key == key:
            await self.fares.set_record(key, fare.to_dict())
        else:
            await self.fares.move_record(key, new_key, fare.to_dict())
        logger.info(f"運賃更新: {key} → {new_key}")
        return new_key

    async def delete_fare(self, key: str):
        if await self.fares.get_record(key) is None:
            raise UnknownRecordError(key)
        await self.fares.remove_record(key)
        logger.info(f"運賃削除: {key}")


def _record_key(name: str) -> str:
    """名前からキーを作る。英数字を含まない名前はキーにできない。"""
    key = normalize_to_slug(name)
    if not key:
        raise ValueError(f"'{name}' has no letters or digits to build a record key from")
    return key


def _vehicle_from_form(name: str, vtype: str, routes: Optional[str]) -> VehicleRecord:
    name = (name or "").strip()
    if not name:
        raise ValueError("vehicle name must not be empty")
    if not vtype or not vtype.strip():
        raise ValueError(f"vehicle type must not be empty for {name}")
    return VehicleRecord(
        name=name,
        type=format_type_for_db(vtype.strip()),
        routes=(routes or "").strip() or None,
    )


def _ensure_unique_vehicle(
    existing: Dict[str, VehicleRecord], name: str, key: str, exclude_key: Optional[str]
):
    for other_key, other in existing.items():
        if other_key == exclude_key:
            continue
        if other.name.lower() == name.lower() or other_key == key:
            raise DuplicateNameError(
                f"a vehicle named '{name}' already exists (key '{other_key}')"
            )
