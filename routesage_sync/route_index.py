"""
RouteSage Sync - 路線インデックス変換層

責務:
  - 車両スナップショットから「路線 → 車両」の索引を導出する純粋関数のみ
  - ストアへの読み書きは一切行わない（疎結合）

キー関数:
  - 永続化用: normalize_to_slug (例: "Route 1" → "route_1")
  - 表示用  : 前後空白を除いた路線名そのもの（大文字小文字・空白を区別）
"""
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from models import RouteGroup, VehicleRecord, VehicleRef

_NON_ALNUM = re.compile(r'[^a-z0-9]')
_UNDERSCORE_RUN = re.compile(r'_+')

KeyFunc = Callable[[str], str]


def normalize_to_slug(text: str) -> str:
    """
    文字列をDBキーとして使えるスラッグに正規化する。

    小文字化 → [a-z0-9] 以外を "_" に置換 → "_" の連続を1つに → 先頭末尾の "_" を除去。
    冪等であり、記号だけの入力は空文字になる（空文字も有効なキーとして扱う）。
    """
    slug = _NON_ALNUM.sub('_', text.lower())
    slug = _UNDERSCORE_RUN.sub('_', slug)
    return slug.strip('_')


def display_key(route_name: str) -> str:
    """表示用キー（trim済みの路線名をそのまま使う）"""
    return route_name


def decode_vehicles(snapshot: Any) -> List[VehicleRecord]:
    """
    vehicles コレクションのスナップショット（dict / 任意のイテラブル / None）を
    VehicleRecord のリストに変換する。デコードできない要素は黙って捨てる。
    """
    if snapshot is None or isinstance(snapshot, (str, bytes)):
        return []
    if isinstance(snapshot, dict):
        items = snapshot.values()
    else:
        try:
            items = iter(snapshot)
        except TypeError:
            return []
    records = []
    for item in items:
        if isinstance(item, VehicleRecord):
            if item.name:
                records.append(item)
            continue
        record = VehicleRecord.from_snapshot(item)
        if record is not None:
            records.append(record)
    return records


# ═══════════════════════════════════════
# 索引の構築
# ═══════════════════════════════════════

def build_route_index(
    vehicles: Any, key_func: KeyFunc = normalize_to_slug
) -> Dict[str, RouteGroup]:
    """
    車両の列から「キー → RouteGroup」の索引を構築する。

    - routes をカンマで分割・trim し、空要素は捨てる
    - 同じグループ内では vehicle_name が重複しない（先に登録された名前が優先）
    - グループの name は、そのキーに最初に対応した路線名の表記を保持する
    - 不正な入力は例外にせず「何も寄与しない」として扱う
    """
    index: Dict[str, RouteGroup] = {}
    for vehicle in decode_vehicles(vehicles):
        for route_name in vehicle.route_names():
            key = key_func(route_name)
            group = index.get(key)
            if group is None:
                group = RouteGroup(name=route_name)
                index[key] = group
            group.add_vehicle(VehicleRef(vehicle.name, vehicle.type))
    return index


def build_persisted_index(vehicles: Any) -> Dict[str, RouteGroup]:
    """スラッグをキーにした永続化用の索引"""
    return build_route_index(vehicles, normalize_to_slug)


def build_display_index(vehicles: Any) -> List[Tuple[str, List[VehicleRef]]]:
    """
    画面表示用の索引。路線名ごとに、車両を vehicle_name の辞書順に並べて返す。
    路線の並びは出現順（意味は持たない）。
    """
    index = build_route_index(vehicles, display_key)
    return [
        (route, sorted(group.vehicles, key=lambda v: v.vehicle_name))
        for route, group in index.items()
    ]


def filter_routes(
    rows: List[Tuple[str, List[VehicleRef]]], term: str
) -> List[Tuple[str, List[VehicleRef]]]:
    """
    路線名・車両名・車両種別のいずれかに検索語（大文字小文字無視）を含む行だけを残す。
    空の検索語は全件を返す。
    """
    needle = (term or "").lower()
    if not needle:
        return list(rows)
    return [
        (route, refs) for route, refs in rows
        if needle in route.lower()
        or any(
            needle in ref.vehicle_name.lower() or needle in ref.vehicle_type.lower()
            for ref in refs
        )
    ]


# ═══════════════════════════════════════
# ストア形式との相互変換
# ═══════════════════════════════════════

def to_store_payload(index: Dict[str, RouteGroup]) -> Optional[Dict[str, Any]]:
    """
    索引をストアへ書き込む形に変換する。
    空の索引は空コンテナではなく None（= コレクションごと削除）になる。
    """
    if not index:
        return None
    return {key: group.to_dict() for key, group in index.items()}


def from_store_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, RouteGroup]:
    """ストアから読んだ routes コレクションを索引に戻す。"""
    if not payload:
        return {}
    return {
        key: RouteGroup.from_dict(value)
        for key, value in payload.items()
        if isinstance(value, dict)
    }
