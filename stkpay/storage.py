import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, ValidationError as SchemaError

from .errors import DuplicateKeyError, StorageError
from .models import ReferralAccount, ReferralCredit, Transaction

logger = logging.getLogger(__name__)


class TransactionStore(Protocol):
    def get(self, transaction_id: str) -> Optional[Transaction]: ...

    def put(self, transaction: Transaction) -> None: ...

    def compare_and_set(self, expected: Transaction, updated: Transaction) -> bool: ...

    def list(self) -> list[Transaction]: ...


class ReferralLedger(Protocol):
    def get(self, code: str) -> Optional[ReferralAccount]: ...

    def create(self, account: ReferralAccount) -> ReferralAccount: ...

    def append_credit(self, code: str, credit: ReferralCredit) -> Optional[ReferralAccount]: ...

    def list(self) -> list[ReferralAccount]: ...


def _swap_if_current(records: dict, expected: Transaction, updated: Transaction) -> bool:
    current = records.get(expected.id)
    if current is None or current.version != expected.version:
        return False
    records[expected.id] = updated
    return True


def _credit(records: dict, code: str, credit: ReferralCredit) -> Optional[ReferralAccount]:
    account = records.get(code) or ReferralAccount(code=code)
    if account.has_credit_for(credit.transaction_id):
        return None
    account = account.with_credit(credit)
    records[code] = account
    return account


class InMemoryTransactionStore:
    def __init__(self):
        self._records: dict[str, Transaction] = {}
        self._lock = threading.Lock()

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._records.get(transaction_id)

    def put(self, transaction: Transaction) -> None:
        with self._lock:
            if transaction.id in self._records:
                raise DuplicateKeyError(f"Transaction {transaction.id} already exists")
            self._records[transaction.id] = transaction

    def compare_and_set(self, expected: Transaction, updated: Transaction) -> bool:
        with self._lock:
            return _swap_if_current(self._records, expected, updated)

    def list(self) -> list[Transaction]:
        with self._lock:
            return list(self._records.values())


class InMemoryReferralLedger:
    def __init__(self):
        self._accounts: dict[str, ReferralAccount] = {}
        self._lock = threading.Lock()

    def get(self, code: str) -> Optional[ReferralAccount]:
        with self._lock:
            return self._accounts.get(code)

    def create(self, account: ReferralAccount) -> ReferralAccount:
        with self._lock:
            return self._accounts.setdefault(account.code, account)

    def append_credit(self, code: str, credit: ReferralCredit) -> Optional[ReferralAccount]:
        with self._lock:
            return _credit(self._accounts, code, credit)

    def list(self) -> list[ReferralAccount]:
        with self._lock:
            return list(self._accounts.values())


class JsonDocument:
    """A JSON object on disk, keyed by record id.

    Writes go through a temp file and ``os.replace`` so a crash never leaves a
    half-written document. The lock serializes access within one process only.
    """

    def __init__(self, path: Path, model: type[BaseModel]):
        self.path = Path(path)
        self.model = model
        self.lock = threading.RLock()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write({})
        except OSError as e:
            raise StorageError(f"Cannot initialise {self.path}: {e}") from e

    def load(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise StorageError(f"Cannot read {self.path}: top level is not an object")
        try:
            return {key: self.model.model_validate(value) for key, value in raw.items()}
        except SchemaError as e:
            raise StorageError(f"Corrupt record in {self.path}: {e}") from e

    def save(self, records: dict) -> None:
        self._write({key: record.model_dump(mode="json") for key, record in records.items()})

    def _write(self, raw: dict) -> None:
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(raw, fh, indent=2)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot write {self.path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)


class JsonFileTransactionStore:
    def __init__(self, path: Path):
        self._doc = JsonDocument(path, Transaction)

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with self._doc.lock:
            return self._doc.load().get(transaction_id)

    def put(self, transaction: Transaction) -> None:
        with self._doc.lock:
            records = self._doc.load()
            if transaction.id in records:
                raise DuplicateKeyError(f"Transaction {transaction.id} already exists")
            records[transaction.id] = transaction
            self._doc.save(records)

    def compare_and_set(self, expected: Transaction, updated: Transaction) -> bool:
        with self._doc.lock:
            records = self._doc.load()
            if not _swap_if_current(records, expected, updated):
                return False
            self._doc.save(records)
            return True

    def list(self) -> list[Transaction]:
        with self._doc.lock:
            return list(self._doc.load().values())


class JsonFileReferralLedger:
    def __init__(self, path: Path):
        self._doc = JsonDocument(path, ReferralAccount)

    def get(self, code: str) -> Optional[ReferralAccount]:
        with self._doc.lock:
            return self._doc.load().get(code)

    def create(self, account: ReferralAccount) -> ReferralAccount:
        with self._doc.lock:
            records = self._doc.load()
            if account.code in records:
                return records[account.code]
            records[account.code] = account
            self._doc.save(records)
            return account

    def append_credit(self, code: str, credit: ReferralCredit) -> Optional[ReferralAccount]:
        with self._doc.lock:
            records = self._doc.load()
            account = _credit(records, code, credit)
            if account is not None:
                self._doc.save(records)
            return account

    def list(self) -> list[ReferralAccount]:
        with self._doc.lock:
            return list(self._doc.load().values())


def build_stores(backend: str, data_dir: str) -> tuple:
    if backend == "json":
        root = Path(data_dir)
        logger.info(f"Using JSON file storage under {root}")
        return (
            JsonFileTransactionStore(root / "transactions.json"),
            JsonFileReferralLedger(root / "referrals.json"),
        )
    return InMemoryTransactionStore(), InMemoryReferralLedger()
