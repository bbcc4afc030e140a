from __future__ import annotations

import base64
import contextlib
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from bankcore.logging import get_logger
from bankcore.storage.errors import ConstraintViolation, StoreUnavailable
from bankcore.storage.models import (
    PROFILE_FIELDS,
    Transaction,
    UserAccount,
    UserMFAConfig,
)


class MemoryStore:
    """In-process document store for accounts, credentials and the ledger.

    Every read and write goes through one re-entrant lock, so uniqueness
    checks, conditional updates and balance mutations are atomic with
    respect to each other. When ``fs_root`` is given the whole state is
    snapshotted to ``<fs_root>/state/bank_store.json`` after each write and
    reloaded on start, and again whenever another process has replaced the
    file. A write whose snapshot fails is rolled back to the last snapshot,
    so memory never holds changes the file does not.

    Writers in different processes are not serialized against each other; the
    snapshot is meant for one server plus occasional operator tooling.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.mfa_secrets: Dict[str, UserMFAConfig] = {}
        self.transactions: Dict[str, List[Transaction]] = {}
        # RLock so helpers can re-enter from inside a locked section
        self._data_lock = threading.RLock()
        # (inode, mtime_ns, size) of the snapshot this process last read or wrote
        self._snapshot_stamp: Optional[tuple[int, int, int]] = None
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.fs_root is not None:
            self._load_state()

    @contextlib.contextmanager
    def _locked(self):
        """Hold the data lock with in-memory state caught up to the snapshot.

        Another process (the approval CLI) may rewrite the snapshot; its
        changes are picked up here before any read or write.
        """
        with self._data_lock:
            self._sync_from_disk()
            yield

    def _snapshot_stat(self) -> Optional[tuple[int, int, int]]:
        try:
            st = self._state_path().stat()
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def _sync_from_disk(self) -> None:
        if self.fs_root is None:
            return
        stamp = self._snapshot_stat()
        if stamp is not None and stamp != self._snapshot_stamp:
            self.logger.info("store_state_changed_on_disk")
            self._load_state()

    def _reset_state(self) -> None:
        self.users = {}
        self.credentials = {}
        self.mfa_secrets = {}
        self.transactions = {}

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "bank_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material and self.fs_root is not None:
            key_path = self.fs_root / ".mfa_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise StoreUnavailable("Unable to persist MFA encryption key") from exc
        if not material:
            # Secrets only need to outlive the process when state is persisted
            material = secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(material))

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _copy_user(user: UserAccount) -> UserAccount:
        return replace(
            user,
            account_numbers=dict(user.account_numbers),
            balances=dict(user.balances),
        )

    # -- accounts -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        account_numbers: Dict[str, str],
        balances: Optional[Dict[str, float]] = None,
        approved: bool = True,
        profile: Optional[Dict[str, Optional[str]]] = None,
        password: Optional[tuple[str, str]] = None,
    ) -> UserAccount:
        email = email.strip().lower()
        with self._locked():
            if any(u.username == username for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            numbers = list(account_numbers.values())
            if len(set(numbers)) != len(numbers) or any(
                self.account_number_exists(number) for number in numbers
            ):
                raise ConstraintViolation(
                    "account number already exists", {"field": "account_number"}
                )
            profile_values = {
                key: value
                for key, value in (profile or {}).items()
                if key in PROFILE_FIELDS
            }
            user = UserAccount(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                account_numbers=dict(account_numbers),
                balances=dict(balances or {key: 0.0 for key in account_numbers}),
                approved=approved,
                **profile_values,
            )
            self.users[user.id] = user
            self.transactions[user.id] = []
            if password:
                self.credentials[user.id] = password
            self._persist_state()
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._locked():
            user = self.users.get(user_id)
            return self._copy_user(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        with self._locked():
            user = next((u for u in self.users.values() if u.username == username), None)
            return self._copy_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        email = email.strip().lower()
        with self._locked():
            user = next((u for u in self.users.values() if u.email == email), None)
            return self._copy_user(user) if user else None

    def list_users(self, limit: int = 100) -> List[UserAccount]:
        with self._locked():
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [self._copy_user(u) for u in results[:limit]]

    def account_number_exists(self, number: str) -> bool:
        with self._locked():
            return any(
                number in user.account_numbers.values() for user in self.users.values()
            )

    def set_user_approved(self, user_id: str, approved: bool) -> Optional[UserAccount]:
        with self._locked():
            user = self.users.get(user_id)
            if not user:
                return None
            user.approved = approved
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return self._copy_user(user)

    def touch_last_login(
        self, user_id: str, when: Optional[datetime] = None
    ) -> Optional[UserAccount]:
        with self._locked():
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login = when or datetime.utcnow()
            self._persist_state()
            return self._copy_user(user)

    # -- credentials --------------------------------------------------------

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._locked():
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._locked():
            return self.credentials.get(user_id)

    # -- reset tokens -------------------------------------------------------

    def set_reset_token(self, user_id: str, token: str, expires_at: datetime) -> None:
        with self._locked():
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for reset", {"user_id": user_id})
            user.reset_token = token
            user.reset_expires_at = expires_at
            user.updated_at = datetime.utcnow()
            self._persist_state()

    def _match_reset_token(self, token: str, now: datetime) -> Optional[UserAccount]:
        if not token:
            return None
        for user in self.users.values():
            if user.reset_token and secrets.compare_digest(user.reset_token, token):
                if user.reset_expires_at is None or user.reset_expires_at <= now:
                    return None
                return user
        return None

    def get_user_by_live_reset_token(
        self, token: str, now: datetime
    ) -> Optional[UserAccount]:
        with self._locked():
            user = self._match_reset_token(token, now)
            return self._copy_user(user) if user else None

    def redeem_reset_token(
        self,
        token: str,
        now: datetime,
        password_hash: str,
        password_algo: str,
    ) -> Optional[UserAccount]:
        """Swap the password for the holder of an unexpired reset token.

        Matching, the credential write and clearing of the token happen in one
        critical section. Returns None when no live token matches.
        """
        with self._locked():
            user = self._match_reset_token(token, now)
            if not user:
                return None
            self.credentials[user.id] = (password_hash, password_algo)
            user.reset_token = None
            user.reset_expires_at = None
            user.session_epoch += 1
            user.updated_at = now
            self._persist_state()
            return self._copy_user(user)

    # -- mfa ----------------------------------------------------------------

    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.warning("mfa_secret_decrypt_failed")
            raise StoreUnavailable("MFA secret cannot be decrypted") from exc

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        with self._locked():
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            record = UserMFAConfig(
                user_id=user_id,
                secret=self._encrypt_mfa_secret(secret),
                enabled=enabled,
            )
            self.mfa_secrets[user_id] = record
            self._persist_state()
            return replace(record, secret=secret)

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._locked():
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return None
            return replace(cfg, secret=self._decrypt_mfa_secret(cfg.secret))

    def enable_user_mfa(self, user_id: str, expected_secret: str) -> bool:
        """Mark MFA enabled only if the stored secret is still ``expected_secret``."""
        with self._locked():
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return False
            if not secrets.compare_digest(
                self._decrypt_mfa_secret(cfg.secret), expected_secret
            ):
                return False
            if not cfg.enabled:
                cfg.enabled = True
                self._persist_state()
            return True

    def consume_mfa_step(self, user_id: str, step: int) -> bool:
        """Record ``step`` as used; False if it is not newer than the last one."""
        with self._locked():
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return False
            if cfg.last_step is not None and step <= cfg.last_step:
                return False
            cfg.last_step = step
            self._persist_state()
            return True

    # -- ledger -------------------------------------------------------------

    def apply_balance_delta(
        self,
        user_id: str,
        amount: float,
        account_type: str,
        description: Optional[str] = None,
    ) -> Optional[tuple[float, Transaction]]:
        with self._locked():
            user = self.users.get(user_id)
            if not user:
                return None
            if account_type not in user.balances:
                raise ConstraintViolation(
                    "unknown account type", {"field": "account_type"}
                )
            new_balance = user.balances[account_type] + amount
            txn = Transaction(
                user_id=user_id,
                amount=amount,
                account_type=account_type,
                balance_after=new_balance,
                description=description,
            )
            user.balances[account_type] = new_balance
            user.updated_at = txn.created_at
            self.transactions.setdefault(user_id, []).append(txn)
            self._persist_state()
            return new_balance, replace(txn)

    def list_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[Transaction]:
        with self._locked():
            newest_first = list(reversed(self.transactions.get(user_id, [])))
            if limit is not None:
                newest_first = newest_first[:limit]
            return [replace(txn) for txn in newest_first]

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "mfa_secrets": [
                self._serialize_mfa_config(cfg) for cfg in self.mfa_secrets.values()
            ],
            "transactions": [
                self._serialize_transaction(txn)
                for txns in self.transactions.values()
                for txn in txns
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            self._rollback()
            raise StoreUnavailable(f"failed to persist store state: {exc}") from exc
        self._snapshot_stamp = self._snapshot_stat()

    def _rollback(self) -> None:
        """Drop the unpersisted mutation by going back to the last snapshot."""
        try:
            loaded = self._load_state()
        except StoreUnavailable:
            self.logger.error("store_rollback_failed")
            return
        if not loaded and self._snapshot_stamp is None:
            # Nothing was ever persisted
            self._reset_state()
        self.logger.warning("store_mutation_rolled_back")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
            stamp = self._snapshot_stat()
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"failed to load store state: {exc}") from exc
        self._snapshot_stamp = stamp
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.mfa_secrets = {
            cfg["user_id"]: self._deserialize_mfa_config(cfg)
            for cfg in data.get("mfa_secrets", [])
        }
        self.transactions = {user_id: [] for user_id in self.users}
        for txn_data in data.get("transactions", []):
            txn = self._deserialize_transaction(txn_data)
            self.transactions.setdefault(txn.user_id, []).append(txn)
        self.logger.info("store_state_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: UserAccount) -> dict:
        data = {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "account_numbers": user.account_numbers,
            "approved": user.approved,
            "reset_token": user.reset_token,
            "reset_expires_at": self._serialize_datetime(user.reset_expires_at),
            "balances": user.balances,
            "last_login": self._serialize_datetime(user.last_login),
            "session_epoch": user.session_epoch,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }
        data.update({key: getattr(user, key) for key in PROFILE_FIELDS})
        return data

    def _deserialize_user(self, data: dict) -> UserAccount:
        return UserAccount(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            account_numbers=dict(data.get("account_numbers") or {}),
            approved=data.get("approved", True),
            reset_token=data.get("reset_token"),
            reset_expires_at=self._deserialize_datetime(data.get("reset_expires_at")),
            balances={k: float(v) for k, v in (data.get("balances") or {}).items()},
            last_login=self._deserialize_datetime(data.get("last_login")),
            session_epoch=int(data.get("session_epoch", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
            **{key: data.get(key) for key in PROFILE_FIELDS},
        )

    def _serialize_mfa_config(self, cfg: UserMFAConfig) -> dict:
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "enabled": cfg.enabled,
            "last_step": cfg.last_step,
            "created_at": self._serialize_datetime(cfg.created_at),
        }

    def _deserialize_mfa_config(self, data: dict) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=data.get("enabled", False),
            last_step=data.get("last_step"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_transaction(self, txn: Transaction) -> dict:
        return {
            "id": txn.id,
            "user_id": txn.user_id,
            "amount": txn.amount,
            "account_type": txn.account_type,
            "balance_after": txn.balance_after,
            "description": txn.description,
            "created_at": self._serialize_datetime(txn.created_at),
        }

    def _deserialize_transaction(self, data: dict) -> Transaction:
        return Transaction(
            id=data["id"],
            user_id=data["user_id"],
            amount=float(data["amount"]),
            account_type=data["account_type"],
            balance_after=float(data["balance_after"]),
            description=data.get("description"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
