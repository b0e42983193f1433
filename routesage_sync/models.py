"""
RouteSage Sync - データモデル定義

各Entityの責務:
  - VehicleRecord: 車両レコード（スナップショットから寛容にデコード）
  - VehicleRef: 路線グループ内の車両参照（名前 + 種別）
  - RouteGroup: 1路線に属する車両の集合（導出データ）
  - Fare: 交通種別ごとの運賃
  - UserAccount: 管理コンソールの利用者（role付き）
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class VehicleRecord:
    """車両レコード（name / type / routes）"""
    name: str
    type: str = ""
    routes: Optional[str] = None   # カンマ区切りの路線名 (例: "Route 1, Route 2")

    @classmethod
    def from_snapshot(cls, data: Any) -> Optional["VehicleRecord"]:
        """
        スナップショット内の1要素をデコードする。
        不正な形（dict以外・フィールド欠落）でも例外は投げず、
        name が無いものは None を返して「何も寄与しない」扱いにする。
        """
        if not isinstance(data, dict):
            return None
        name = data.get("name")
        if not isinstance(name, str) or not name:
            return None
        vtype = data.get("type")
        routes = data.get("routes")
        return cls(
            name=name,
            type=vtype if isinstance(vtype, str) else "",
            routes=routes if isinstance(routes, str) and routes.strip() else None,
        )

    def route_names(self) -> List[str]:
        """routes をカンマで分割し、前後の空白を除去した路線名リストを返す。空要素は捨てる。"""
        if not self.routes:
            return []
        pieces = (piece.strip() for piece in self.routes.split(","))
        return [piece for piece in pieces if piece]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "routes": self.routes or ""}


@dataclass
class VehicleRef:
    """路線グループに登録される車両参照"""
    vehicle_name: str
    vehicle_type: str

    def to_dict(self) -> Dict[str, str]:
        return {"vehicleName": self.vehicle_name, "vehicleType": self.vehicle_type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VehicleRef":
        return cls(
            vehicle_name=data.get("vehicleName") or "",
            vehicle_type=data.get("vehicleType") or "",
        )


@dataclass
class RouteGroup:
    """1路線 × 複数車両（vehicle_name で一意）"""
    name: str                      # 最初に出現した路線名の表記をそのまま保持
    vehicles: List[VehicleRef] = field(default_factory=list)

    def has_vehicle(self, vehicle_name: str) -> bool:
        return any(v.vehicle_name == vehicle_name for v in self.vehicles)

    def add_vehicle(self, ref: VehicleRef) -> bool:
        """同名の車両が未登録なら追加して True を返す。重複判定は名前のみ。"""
        if self.has_vehicle(ref.vehicle_name):
            return False
        self.vehicles.append(ref)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "vehicles": [v.to_dict() for v in self.vehicles]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteGroup":
        return cls(
            name=data.get("name") or "",
            vehicles=[VehicleRef.from_dict(v) for v in data.get("vehicles") or []],
        )


@dataclass
class Fare:
    """交通種別ごとの運賃（最低運賃 + 4km以降の加算額）"""
    transport: str
    new_min_fare: str = ""
    after_4km: str = ""

    def __post_init__(self):
        if not self.transport or not self.transport.strip():
            raise ValueError("transport must not be empty")
        self.transport = self.transport.strip()
        self.new_min_fare = str(self.new_min_fare or "").strip()
        self.after_4km = str(self.after_4km or "").strip()

    def to_dict(self) -> Dict[str, str]:
        return {
            "transport": self.transport,
            "newMinFare": self.new_min_fare,
            "after4km": self.after_4km,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fare":
        return cls(
            transport=data.get("transport") or "",
            new_min_fare=data.get("newMinFare") or "",
            after_4km=data.get("after4km") or "",
        )


ROLE_ADMIN = "admin"
ROLE_USER = "user"


@dataclass
class UserAccount:
    """利用者レコード（users/{uid}）"""
    uid: str
    email: str = ""
    display_name: str = ""
    role: str = ROLE_USER
    created_at: Optional[str] = None
    created_by: Optional[str] = None

    def __post_init__(self):
        if not self.uid or not self.uid.strip():
            raise ValueError("uid must not be empty")
        if self.role not in (ROLE_ADMIN, ROLE_USER):
            raise ValueError(f"unknown role: {self.role}")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "displayName": self.display_name,
            "role": self.role,
            "createdAt": self.created_at,
            "createdBy": self.created_by,
        }

    @classmethod
    def from_dict(cls, uid: str, data: Dict[str, Any]) -> "UserAccount":
        role = data.get("role")
        return cls(
            uid=uid,
            email=data.get("email") or "",
            display_name=data.get("displayName") or "",
            role=role if role in (ROLE_ADMIN, ROLE_USER) else ROLE_USER,
            created_at=data.get("createdAt"),
            created_by=data.get("createdBy"),
        )
