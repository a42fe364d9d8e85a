import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from .exceptions import (
    DuplicateReference,
    HoldNotFound,
    InsufficientFunds,
    StoreClosed,
    ValidationError,
    WithdrawalInProgress,
    AttemptNotFound,
)
from .logger import payments_logger as logger
from .models import (
    AttemptState,
    CREDIT_KINDS,
    DEBIT_KINDS,
    EntryKind,
    LedgerEntry,
    OPEN_STATES,
    WithdrawalAttempt,
    to_amount,
)

ZERO = Decimal("0.00")

DIRECT_KINDS = frozenset({EntryKind.CREDIT_FEE, EntryKind.DEBIT_USAGE})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BalanceSnapshot:
    tenant_id: str
    committed: Decimal
    held: Decimal
    total_entries: int
    last_entry_at: Optional[datetime]
    version: int

    @property
    def available(self) -> Decimal:
        return self.committed - self.held


class _TenantBook:
    def __init__(self):
        self.lock = threading.RLock()
        self.entry_ids: list[UUID] = []
        self.running_total = ZERO
        self.open_holds: dict[str, Decimal] = {}
        self.version = 0


class LedgerStore:
    """
    Append-only ledger and withdrawal attempt store for all tenants.

    Every balance-affecting write for a tenant runs under that tenant's lock,
    so the funds check in ``place_hold`` and the HOLD insert are one unit.
    The running total is updated inside the same unit as the entry insert.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.entries: dict[UUID, LedgerEntry] = {}
        self.attempts: dict[UUID, WithdrawalAttempt] = {}
        self.reference_index: dict[tuple[str, str, EntryKind], UUID] = {}
        self.attempt_keys: dict[tuple[str, str], UUID] = {}
        self.gateway_index: dict[str, UUID] = {}
        self._books: dict[str, _TenantBook] = {}
        self._registry_lock = threading.Lock()
        self._listeners: list[Callable[[str], None]] = []
        self._is_open = False

    # -- lifecycle -----------------------------------------------------

    def open(self) -> "LedgerStore":
        self._is_open = True
        logger.info("Ledger store opened")
        return self

    def close(self) -> None:
        if self._is_open:
            self._is_open = False
            logger.info("Ledger store closed")

    @property
    def is_open(self) -> bool:
        return self._is_open

    def __enter__(self) -> "LedgerStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if not self._is_open:
            raise StoreClosed("Ledger store is not open")

    # -- locking -------------------------------------------------------

    def _book(self, tenant_id: str) -> _TenantBook:
        book = self._books.get(tenant_id)
        if book is None:
            with self._registry_lock:
                book = self._books.setdefault(tenant_id, _TenantBook())
        return book

    @contextmanager
    def tenant_lock(self, tenant_id: str):
        book = self._book(tenant_id)
        with book.lock:
            yield book

    def subscribe(self, callback: Callable[[str], None]) -> None:
        self._listeners.append(callback)

    def _notify(self, tenant_id: str) -> None:
        for callback in self._listeners:
            callback(tenant_id)

    # -- ledger entries ------------------------------------------------

    def _insert(self, book: _TenantBook, tenant_id: str, kind: EntryKind, amount: Decimal,
                reference_id: str, description: str = "", metadata: Optional[dict] = None,
                entry_id: Optional[UUID] = None) -> LedgerEntry:
        key = (tenant_id, reference_id, kind)
        if key in self.reference_index:
            raise DuplicateReference(tenant_id, reference_id, kind.value, self.reference_index[key])

        entry = LedgerEntry(
            id=entry_id or uuid4(),
            tenant_id=tenant_id,
            kind=kind,
            amount=amount,
            reference_id=reference_id,
            description=description,
            created_at=self.clock(),
            metadata=metadata or {},
        )
        self.entries[entry.id] = entry
        self.reference_index[key] = entry.id
        book.entry_ids.append(entry.id)
        if kind in CREDIT_KINDS:
            book.running_total += entry.amount
        elif kind in DEBIT_KINDS:
            book.running_total -= entry.amount
        book.version += 1
        return entry

    def append_entry(self, entry: LedgerEntry) -> UUID:
        self._ensure_open()
        if entry.kind not in DIRECT_KINDS:
            raise ValidationError(f"{entry.kind.value} entries are written through hold operations only")
        if entry.amount <= ZERO:
            raise ValidationError("Entry amount must be positive")

        with self.tenant_lock(entry.tenant_id) as book:
            if entry.kind == EntryKind.DEBIT_USAGE:
                key = (entry.tenant_id, entry.reference_id, entry.kind)
                if key in self.reference_index:
                    raise DuplicateReference(entry.tenant_id, entry.reference_id, entry.kind.value,
                                             self.reference_index[key])
                available = book.running_total - sum(book.open_holds.values(), ZERO)
                if entry.amount > available:
                    raise InsufficientFunds(entry.amount, available)
            stored = self._insert(
                book, entry.tenant_id, entry.kind, entry.amount, entry.reference_id,
                entry.description, dict(entry.metadata), entry.id,
            )

        logger.info(f"Ledger {stored.kind.value} {stored.amount} for tenant {stored.tenant_id} ref={stored.reference_id}")
        self._notify(stored.tenant_id)
        return stored.id

    def sum_balance(self, tenant_id: str) -> Decimal:
        with self.tenant_lock(tenant_id) as book:
            return book.running_total

    def recompute_balance(self, tenant_id: str) -> Decimal:
        """Sum committed entries from scratch; used to audit the running total."""
        with self.tenant_lock(tenant_id) as book:
            total = ZERO
            for entry_id in book.entry_ids:
                entry = self.entries[entry_id]
                if entry.kind in CREDIT_KINDS:
                    total += entry.amount
                elif entry.kind in DEBIT_KINDS:
                    total -= entry.amount
            return total

    def active_holds(self, tenant_id: str) -> Decimal:
        with self.tenant_lock(tenant_id) as book:
            return sum(book.open_holds.values(), ZERO)

    def snapshot(self, tenant_id: str) -> BalanceSnapshot:
        with self.tenant_lock(tenant_id) as book:
            last_at = self.entries[book.entry_ids[-1]].created_at if book.entry_ids else None
            return BalanceSnapshot(
                tenant_id=tenant_id,
                committed=book.running_total,
                held=sum(book.open_holds.values(), ZERO),
                total_entries=len(book.entry_ids),
                last_entry_at=last_at,
                version=book.version,
            )

    def version(self, tenant_id: str) -> int:
        return self._book(tenant_id).version

    def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        return self.entries.get(entry_id)

    def find_entry(self, tenant_id: str, reference_id: str, kind: EntryKind) -> Optional[LedgerEntry]:
        entry_id = self.reference_index.get((tenant_id, reference_id, kind))
        return self.entries.get(entry_id) if entry_id else None

    def list_entries(self, tenant_id: str, kinds: Optional[Iterable[EntryKind]] = None) -> list[LedgerEntry]:
        wanted = set(kinds) if kinds else None
        with self.tenant_lock(tenant_id) as book:
            entries = [self.entries[i] for i in book.entry_ids]
        if wanted:
            entries = [e for e in entries if e.kind in wanted]
        return entries

    # -- holds ---------------------------------------------------------

    def place_hold(self, tenant_id: str, amount: Decimal, reference_id: str) -> UUID:
        self._ensure_open()
        amount = to_amount(amount)
        if amount <= ZERO:
            raise ValidationError("Hold amount must be positive")

        with self.tenant_lock(tenant_id) as book:
            available = book.running_total - sum(book.open_holds.values(), ZERO)
            if available < amount:
                logger.warning(f"Hold refused for tenant {tenant_id}: requested {amount}, available {available}")
                raise InsufficientFunds(amount, available)
            entry = self._insert(book, tenant_id, EntryKind.HOLD, amount, reference_id,
                                 description="Withdrawal hold")
            book.open_holds[reference_id] = amount

        logger.info(f"Hold placed: tenant={tenant_id} ref={reference_id} amount={amount}")
        self._notify(tenant_id)
        return entry.id

    def _take_open_hold(self, book: _TenantBook, tenant_id: str, reference_id: str) -> Decimal:
        if reference_id in book.open_holds:
            return book.open_holds[reference_id]
        for closing in (EntryKind.HOLD_RELEASE, EntryKind.HOLD_COMMIT):
            existing = self.reference_index.get((tenant_id, reference_id, closing))
            if existing:
                raise DuplicateReference(tenant_id, reference_id, closing.value, existing)
        raise HoldNotFound(f"No hold {reference_id} for tenant {tenant_id}")

    def release_hold(self, tenant_id: str, reference_id: str, reason: str = "") -> UUID:
        self._ensure_open()
        with self.tenant_lock(tenant_id) as book:
            amount = self._take_open_hold(book, tenant_id, reference_id)
            entry = self._insert(book, tenant_id, EntryKind.HOLD_RELEASE, amount, reference_id,
                                 description=reason or "Withdrawal hold released")
            del book.open_holds[reference_id]

        logger.info(f"Hold released: tenant={tenant_id} ref={reference_id} amount={amount}")
        self._notify(tenant_id)
        return entry.id

    def commit_hold(self, tenant_id: str, reference_id: str, metadata: Optional[dict] = None) -> UUID:
        """Close the hold and book the DEBIT_WITHDRAWAL in one unit. Returns the debit id."""
        self._ensure_open()
        with self.tenant_lock(tenant_id) as book:
            amount = self._take_open_hold(book, tenant_id, reference_id)
            self._insert(book, tenant_id, EntryKind.HOLD_COMMIT, amount, reference_id,
                         description="Withdrawal hold committed")
            debit = self._insert(book, tenant_id, EntryKind.DEBIT_WITHDRAWAL, amount, reference_id,
                                 description="Funds withdrawal", metadata=metadata)
            del book.open_holds[reference_id]

        logger.info(f"Hold committed: tenant={tenant_id} ref={reference_id} amount={amount}")
        self._notify(tenant_id)
        return debit.id

    def is_hold_open(self, tenant_id: str, reference_id: str) -> bool:
        with self.tenant_lock(tenant_id) as book:
            return reference_id in book.open_holds

    # -- withdrawal attempts -------------------------------------------

    def insert_attempt(self, attempt: WithdrawalAttempt) -> WithdrawalAttempt:
        self._ensure_open()
        with self.tenant_lock(attempt.tenant_id):
            key = (attempt.tenant_id, attempt.idempotency_key)
            if key in self.attempt_keys:
                raise DuplicateReference(attempt.tenant_id, attempt.idempotency_key, "WITHDRAWAL",
                                         self.attempt_keys[key])
            for other in self.attempts.values():
                if other.tenant_id == attempt.tenant_id and other.state in OPEN_STATES:
                    raise WithdrawalInProgress(
                        f"Withdrawal {other.id} is still {other.state.value} for tenant {attempt.tenant_id}"
                    )
            stored = attempt.model_copy(deep=True)
            self.attempts[stored.id] = stored
            self.attempt_keys[key] = stored.id
        return stored.model_copy(deep=True)

    def get_attempt(self, attempt_id: UUID) -> WithdrawalAttempt:
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(f"Withdrawal attempt {attempt_id} not found")
        return attempt.model_copy(deep=True)

    def find_attempt_by_key(self, tenant_id: str, idempotency_key: str) -> Optional[WithdrawalAttempt]:
        attempt_id = self.attempt_keys.get((tenant_id, idempotency_key))
        return self.get_attempt(attempt_id) if attempt_id else None

    def find_attempt_by_gateway_reference(self, gateway_reference: str) -> Optional[WithdrawalAttempt]:
        attempt_id = self.gateway_index.get(gateway_reference)
        return self.get_attempt(attempt_id) if attempt_id else None

    def compare_and_swap(self, attempt_id: UUID, expected, match: Optional[dict] = None,
                         **changes) -> Optional[WithdrawalAttempt]:
        """
        Apply ``changes`` only if the attempt is still in ``expected`` (a state
        or a collection of states) and every field in ``match`` still has the
        given value. Returns the updated attempt, or None when the attempt has
        moved on.
        """
        current = self.attempts.get(attempt_id)
        if current is None:
            raise AttemptNotFound(f"Withdrawal attempt {attempt_id} not found")
        allowed = {expected} if isinstance(expected, AttemptState) else set(expected)

        with self.tenant_lock(current.tenant_id):
            current = self.attempts[attempt_id]
            if current.state not in allowed:
                return None
            if match and any(getattr(current, k) != v for k, v in match.items()):
                return None
            changes["updated_at"] = self.clock()
            updated = current.model_copy(update=changes, deep=True)
            self.attempts[attempt_id] = updated
            if updated.gateway_reference:
                self.gateway_index[updated.gateway_reference] = attempt_id
        return updated.model_copy(deep=True)

    def list_attempts(self, tenant_id: Optional[str] = None,
                      states: Optional[Iterable[AttemptState]] = None) -> list[WithdrawalAttempt]:
        wanted = set(states) if states else None
        attempts = [
            a.model_copy(deep=True) for a in list(self.attempts.values())
            if (tenant_id is None or a.tenant_id == tenant_id)
            and (wanted is None or a.state in wanted)
        ]
        attempts.sort(key=lambda a: a.created_at)
        return attempts

    def open_attempt(self, tenant_id: str) -> Optional[WithdrawalAttempt]:
        for attempt in self.list_attempts(tenant_id, OPEN_STATES):
            return attempt
        return None
