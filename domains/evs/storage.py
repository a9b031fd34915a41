"""Encrypted persistent store for credentials, reminders and daily usage.

The whole store is one JSON document, encrypted with AES-256-GCM under a key
derived (scrypt) from an operator secret, written as

    base64(iv):base64(auth_tag):base64(ciphertext)

Every mutation re-encrypts and rewrites the whole file through a temp file
and ``os.replace``, so the file on disk is always a complete snapshot.
"""

import base64
import json
import os
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from logger import logger
from .config import MIN_SECRET_LENGTH, STORAGE_FILENAME, STORAGE_SALT
from .errors import StorageError
from .types import SpendSummary

KEY_LENGTH = 32
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16


@dataclass
class UserCreds:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"UserCreds(username={self.username!r}, password='***')"


@dataclass
class UserReminder:
    chat_id: int
    enabled: bool = True


class DecryptFailurePolicy(Enum):
    """What ``load()`` does when the existing file can't be decrypted."""
    QUARANTINE = "quarantine"  # move the file aside, start empty, keep saving
    READONLY = "readonly"      # leave the file alone, start empty, refuse to save


def derive_key(secret: str) -> bytes:
    """scrypt(secret, fixed salt) -> 32-byte key (N=2^14, r=8, p=1)."""
    kdf = Scrypt(salt=STORAGE_SALT, length=KEY_LENGTH, n=2 ** 14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def encrypt_payload(plaintext: str, key: bytes) -> str:
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
    return ":".join(base64.b64encode(part).decode("ascii") for part in (iv, auth_tag, ciphertext))


def decrypt_payload(payload: str, key: bytes) -> str:
    """Reverse ``encrypt_payload``.

    Raises:
        StorageError: Malformed payload, wrong key or tampered data
    """
    parts = payload.strip().split(":")
    if len(parts) != 3:
        raise StorageError("Invalid encrypted payload format")
    try:
        iv, auth_tag, ciphertext = (base64.b64decode(part, validate=True) for part in parts)
        plaintext = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
    except InvalidTag as e:
        raise StorageError("Decryption failed (wrong key or corrupted file)") from e
    except ValueError as e:
        raise StorageError(f"Invalid encrypted payload: {e}") from e
    return plaintext.decode("utf-8")


def _date_key(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


class EncryptedStorage:
    """Credentials, reminder settings and daily spend, keyed by Discord user id."""

    def __init__(
        self,
        encryption_key: str,
        data_dir: Path | str = ".",
        filename: str = STORAGE_FILENAME,
        on_decrypt_failure: DecryptFailurePolicy | str = DecryptFailurePolicy.QUARANTINE,
    ):
        """
        Args:
            encryption_key: Operator secret, at least MIN_SECRET_LENGTH characters
            data_dir: Directory holding the store file
            filename: Store file name
            on_decrypt_failure: Policy when the existing file can't be decrypted

        Raises:
            ValueError: Secret too short or unknown policy
        """
        if not encryption_key or len(encryption_key) < MIN_SECRET_LENGTH:
            raise ValueError(f"EVS_ENCRYPTION_KEY must be at least {MIN_SECRET_LENGTH} characters")
        self._key = derive_key(encryption_key)
        self.file_path = Path(data_dir) / filename
        self.on_decrypt_failure = DecryptFailurePolicy(on_decrypt_failure)

        self._creds: dict[int, UserCreds] = {}
        self._reminders: dict[int, UserReminder] = {}
        self._daily_usage: dict[int, dict[str, float]] = {}
        self._can_save = True

    @property
    def can_save(self) -> bool:
        return self._can_save

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Read the store file. A missing file means an empty store."""
        if not self.file_path.exists():
            logger.info(f"[storage] no existing data file at {self.file_path}, starting fresh")
            return

        try:
            payload = self.file_path.read_text(encoding="utf-8")
            data = json.loads(decrypt_payload(payload, self._key))
            self._apply(data)
        except (OSError, StorageError, ValueError, TypeError, KeyError) as e:
            self._handle_load_failure(e)
            return

        logger.info(
            f"[storage] loaded {len(self._creds)} credentials, {len(self._reminders)} reminders, "
            f"usage for {len(self._daily_usage)} users"
        )

    def _apply(self, data: dict) -> None:
        if not isinstance(data, dict):
            raise ValueError("store payload is not an object")
        creds = {int(uid): UserCreds(**c) for uid, c in data.get("creds", {}).items()}
        reminders = {
            int(uid): UserReminder(chat_id=int(r["chatId"]), enabled=bool(r["enabled"]))
            for uid, r in data.get("reminders", {}).items()
        }
        usage = {
            int(uid): {day: float(amount) for day, amount in days.items()}
            for uid, days in data.get("dailyUsage", {}).items()
        }
        self._creds, self._reminders, self._daily_usage = creds, reminders, usage

    def _handle_load_failure(self, error: Exception) -> None:
        self._creds, self._reminders, self._daily_usage = {}, {}, {}
        logger.critical(f"[storage] failed to load {self.file_path}: {error}")
        logger.critical("[storage] stored credentials could not be read; all users must log in again")

        if self.on_decrypt_failure is DecryptFailurePolicy.READONLY:
            self._can_save = False
            logger.critical(
                "[storage] refusing to overwrite the existing file. "
                "Fix EVS_ENCRYPTION_KEY or delete the file manually."
            )
            return

        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        quarantine = self.file_path.with_name(f"{self.file_path.name}.corrupt-{stamp}")
        try:
            os.replace(self.file_path, quarantine)
        except OSError as e:
            self._can_save = False
            logger.critical(f"[storage] could not move unreadable file aside ({e}); saving disabled")
            return
        logger.critical(f"[storage] unreadable file moved to {quarantine}, starting empty")

    def to_payload(self) -> dict:
        """Plain JSON-serializable snapshot of the store."""
        return {
            "creds": {str(uid): asdict(c) for uid, c in self._creds.items()},
            "reminders": {
                str(uid): {"chatId": r.chat_id, "enabled": r.enabled}
                for uid, r in self._reminders.items()
            },
            "dailyUsage": {str(uid): dict(days) for uid, days in self._daily_usage.items()},
        }

    def _snapshot(self) -> tuple:
        return (
            dict(self._creds),
            dict(self._reminders),
            {uid: dict(days) for uid, days in self._daily_usage.items()},
        )

    def _commit(self, snapshot: tuple) -> None:
        """Save, restoring the in-memory state to ``snapshot`` if the save fails."""
        try:
            self._save()
        except StorageError:
            self._creds, self._reminders, self._daily_usage = snapshot
            raise

    def _save(self) -> None:
        if not self._can_save:
            logger.error("[storage] save blocked: existing file could not be decrypted")
            raise StorageError(
                "Cannot save: existing store file could not be decrypted. "
                "Delete it manually or fix EVS_ENCRYPTION_KEY"
            )

        encrypted = encrypt_payload(json.dumps(self.to_payload()), self._key)
        tmp_path = self.file_path.with_name(self.file_path.name + ".tmp")
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(encrypted, encoding="utf-8")
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            logger.error(f"[storage] write to {self.file_path} failed: {e}")
            raise StorageError(f"Could not write store file: {e}") from e

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_creds(self, user_id: int) -> Optional[UserCreds]:
        return self._creds.get(user_id)

    def set_creds(self, user_id: int, creds: UserCreds) -> None:
        snapshot = self._snapshot()
        self._creds[user_id] = creds
        self._commit(snapshot)

    def delete_creds(self, user_id: int) -> None:
        snapshot = self._snapshot()
        if self._creds.pop(user_id, None) is not None:
            self._commit(snapshot)

    def get_all_creds(self) -> dict[int, UserCreds]:
        return dict(self._creds)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def get_reminder(self, user_id: int) -> Optional[UserReminder]:
        return self._reminders.get(user_id)

    def set_reminder(self, user_id: int, reminder: UserReminder) -> None:
        snapshot = self._snapshot()
        self._reminders[user_id] = reminder
        self._commit(snapshot)

    def get_all_reminders(self) -> dict[int, UserReminder]:
        return dict(self._reminders)

    # ------------------------------------------------------------------
    # Daily usage
    # ------------------------------------------------------------------

    def get_daily_usage(self, user_id: int) -> dict[str, float]:
        """Stored spend per ISO date, oldest first."""
        days = self._daily_usage.get(user_id, {})
        return {day: days[day] for day in sorted(days)}

    def set_daily_usage_bulk(self, user_id: int, entries: dict[str, float]) -> None:
        """Merge per-day amounts into the user's record (later values win)."""
        if not entries:
            return
        snapshot = self._snapshot()
        record = self._daily_usage.setdefault(user_id, {})
        for day, amount in entries.items():
            if _date_key(day) is None:
                logger.warning(f"[storage] ignoring usage entry with bad date {day!r} for user {user_id}")
                continue
            record[day] = float(amount)
        self._commit(snapshot)

    def get_total_spent(self, user_id: int, days: int, today: Optional[date] = None) -> SpendSummary:
        """Spend over the last ``days`` calendar dates, today inclusive.

        Dates with no record are skipped entirely: they count toward neither
        the total nor ``days_tracked``. Average over ``days_tracked``.
        """
        today = today or date.today()
        record = self._daily_usage.get(user_id, {})
        total = 0.0
        tracked = 0
        for offset in range(max(0, days)):
            day = (today - timedelta(days=offset)).isoformat()
            if day in record:
                total += record[day]
                tracked += 1
        return SpendSummary(total=total, days_tracked=tracked, days_requested=days)

    def prune_old_usage(self, user_id: int, keep_days: int, today: Optional[date] = None) -> int:
        """Delete entries outside the last ``keep_days`` dates (today inclusive).

        The kept window matches ``get_total_spent(user_id, keep_days)``.

        Returns:
            Number of entries removed
        """
        record = self._daily_usage.get(user_id)
        if not record:
            return 0
        today = today or date.today()
        oldest_kept = today - timedelta(days=max(0, keep_days - 1))

        stale = []
        for day in record:
            parsed = _date_key(day)
            if parsed is None or parsed < oldest_kept:
                stale.append(day)
        if not stale:
            return 0

        snapshot = self._snapshot()
        for day in stale:
            del record[day]
        self._commit(snapshot)
        logger.info(f"[storage] pruned {len(stale)} usage entries for user {user_id}")
        return len(stale)
