from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

from accountkit.logging import get_logger
from accountkit.storage.errors import ConstraintViolation
from accountkit.storage.models import Account, Session, utcnow


class MemoryStore:
    """In-memory account and session store with a JSON snapshot on disk.

    Every read and write happens under a single ``RLock`` so uniqueness checks
    and inserts are atomic with respect to each other. The snapshot is written
    before each mutation takes effect and reloaded on construction; a failed
    write leaves the in-memory state unchanged.
    """

    def __init__(self, fs_root: str = "/tmp/accountkit") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "account_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def ping(self) -> bool:
        with self._data_lock:
            return True

    # -- accounts ---------------------------------------------------------

    def _conflicting_field(self, account: Account) -> Optional[str]:
        for existing in self.accounts.values():
            if existing.id == account.id:
                continue
            if existing.username == account.username:
                return "username"
            if existing.email == account.email:
                return "email"
        return None

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            conflict = self._conflicting_field(account)
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            accounts = dict(self.accounts)
            accounts[account.id] = account
            self._commit(accounts=accounts)
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.username == username), None
            )

    def find_account(
        self, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Account]:
        """Return an account matching the username OR the email."""
        with self._data_lock:
            for account in self.accounts.values():
                if username is not None and account.username == username:
                    return account
                if email is not None and account.email == email:
                    return account
            return None

    def replace_account(self, account: Account) -> Account:
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None:
                raise ConstraintViolation("account does not exist", {"id": account.id})
            conflict = self._conflicting_field(account)
            if conflict:
                raise ConstraintViolation(f"{conflict} already exists", {"field": conflict})
            updated = replace(account, updated_at=utcnow())
            accounts = dict(self.accounts)
            accounts[account.id] = updated
            sessions = self.sessions
            if current.username != updated.username:
                # Sessions are keyed by username; follow the rename
                sessions = {
                    sid: replace(sess, username=updated.username)
                    if sess.username == current.username
                    else sess
                    for sid, sess in self.sessions.items()
                }
            self._commit(accounts=accounts, sessions=sessions)
            return updated

    def delete_account(self, username: str) -> bool:
        """Delete the account and every session it owns."""
        with self._data_lock:
            account = self.get_account_by_username(username)
            if account is None:
                return False
            accounts = {aid: a for aid, a in self.accounts.items() if aid != account.id}
            self._commit(accounts=accounts, sessions=self._without_user_sessions(username))
            self.logger.info("account_deleted", account_id=account.id)
            return True

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if any(s.refresh_token == session.refresh_token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            sessions = dict(self.sessions)
            sessions[session.id] = session
            self._commit(sessions=sessions)
            return session

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )

    def get_session_by_jti(self, jti: str) -> Optional[Session]:
        with self._data_lock:
            return next((s for s in self.sessions.values() if s.jti == jti), None)

    def list_user_sessions(self, username: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.username == username]

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            if session_id not in self.sessions:
                return False
            sessions = {sid: s for sid, s in self.sessions.items() if sid != session_id}
            self._commit(sessions=sessions)
            return True

    def _without_user_sessions(self, username: str) -> Dict[str, Session]:
        return {sid: s for sid, s in self.sessions.items() if s.username != username}

    def delete_user_sessions(self, username: str) -> int:
        with self._data_lock:
            sessions = self._without_user_sessions(username)
            removed = len(self.sessions) - len(sessions)
            if removed:
                self._commit(sessions=sessions)
            return removed

    # -- persistence ------------------------------------------------------

    def _commit(
        self,
        *,
        accounts: Optional[Dict[str, Account]] = None,
        sessions: Optional[Dict[str, Session]] = None,
    ) -> None:
        """Persist the candidate state, then make it current."""
        accounts = self.accounts if accounts is None else accounts
        sessions = self.sessions if sessions is None else sessions
        self._persist_state(accounts, sessions)
        self.accounts = accounts
        self.sessions = sessions

    def _persist_state(
        self,
        accounts: Optional[Dict[str, Account]] = None,
        sessions: Optional[Dict[str, Session]] = None,
    ) -> None:
        accounts = self.accounts if accounts is None else accounts
        sessions = self.sessions if sessions is None else sessions
        state = {
            "accounts": [self._serialize_account(a) for a in accounts.values()],
            "sessions": [self._serialize_session(s) for s in sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except rather than exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "name": account.name,
            "username": account.username,
            "email": account.email,
            "password_hash": account.password_hash,
            "date_of_birth": account.date_of_birth.isoformat() if account.date_of_birth else None,
            "email_verified": account.email_verified,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at)
            if account.updated_at
            else None,
        }

    def _deserialize_account(self, data: dict) -> Account:
        dob = data.get("date_of_birth")
        updated = data.get("updated_at")
        return Account(
            id=data["id"],
            name=data["name"],
            username=data["username"],
            email=data["email"],
            password_hash=data.get("password_hash", ""),
            date_of_birth=date.fromisoformat(dob) if dob else None,
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(updated) if updated else None,
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "username": session.username,
            "refresh_token": session.refresh_token,
            "jti": session.jti,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            username=data["username"],
            refresh_token=data["refresh_token"],
            jti=data["jti"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
