"""
RouteSage Sync - 利用者レコードとロール判定

責務:
  - users/{uid} の読み書き
  - ロール（admin / user）の解決と管理者チェック

認証そのもの（ID トークンの発行・検証）は外部の認証基盤に任せる。
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from models import ROLE_ADMIN, ROLE_USER, UserAccount
from store import Collection, StoreBackend

logger = logging.getLogger(__name__)


class AccountDirectory:
    def __init__(self, backend: StoreBackend):
        self.users = Collection(backend, "users")

    async def get_account(self, uid: str) -> Optional[UserAccount]:
        data = await self.users.get_record(uid)
        if data is None:
            return None
        return UserAccount.from_dict(uid, data)

    async def resolve_role(self, uid: str) -> str:
        """レコードが無い・role が不正な場合は一般利用者として扱う。"""
        account = await self.get_account(uid)
        return account.role if account else ROLE_USER

    async def require_admin(self, uid: str):
        if await self.resolve_role(uid) != ROLE_ADMIN:
            raise PermissionError(f"user {uid} is not an admin")

    async def ensure_account(self, uid: str, email: str = "", display_name: str = "") -> UserAccount:
        """
        初回ログイン時の利用者レコード作成。
        既存レコードがあればそのまま返し、無ければ role=user で作成する。
        """
        account = await self.get_account(uid)
        if account is not None:
            return account
        account = UserAccount(
            uid=uid,
            email=email,
            display_name=display_name,
            role=ROLE_USER,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        await self.users.set_record(uid, account.to_dict())
        logger.info(f"利用者レコード作成: {uid}")
        return account

    async def update_account(self, uid: str, display_name: Optional[str] = None, role: Optional[str] = None):
        if await self.users.get_record(uid) is None:
            raise KeyError(uid)
        fields = {}
        if display_name is not None:
            fields["displayName"] = display_name
        if role is not None:
            if role not in (ROLE_ADMIN, ROLE_USER):
                raise ValueError(f"unknown role: {role}")
            fields["role"] = role
        if fields:
            await self.users.update_record(uid, fields)
            logger.info(f"利用者更新: {uid} {sorted(fields)}")

    async def delete_account(self, uid: str):
        await self.users.remove_record(uid)
        logger.info(f"利用者削除: {uid}")

    async def list_accounts(self, role: Optional[str] = None, search: str = "") -> List[UserAccount]:
        """role で絞り込み、メール・表示名の部分一致（大文字小文字無視）で検索する。"""
        snapshot = await self.users.get() or {}
        needle = search.lower()
        accounts = []
        for uid, data in snapshot.items():
            if not isinstance(data, dict):
                continue
            account = UserAccount.from_dict(uid, data)
            if role and account.role != role:
                continue
            if needle and needle not in account.email.lower() and needle not in account.display_name.lower():
                continue
            accounts.append(account)
        return accounts
