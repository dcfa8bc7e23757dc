"""Validator that receives transactions, orders them and settles them in batches."""

from __future__ import annotations

import json
import logging
import math
import queue
import socket
import threading
import time
import urllib.request
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from transactioner.accountsdb import (
    AccountsDb,
    NegativeBalanceError,
    NoSuchAccountError,
    load_snapshot,
)
from transactioner.models import MalformedTransactionError, Transaction, parse_transaction
from transactioner.txheap import ScoredTransaction, TransactionHeap

log = logging.getLogger(__name__)

DEFAULT_PORT = 2001
DEFAULT_ENDPOINT = "http://localhost:2002/"
MAX_MESSAGE_SIZE = 1024
MAX_BATCH_SIZE = 100
INCOMING_QUEUE_SIZE = 256
BATCHES_PER_SECOND = 100
SNAPSHOT_INTERVAL = 1.0
_RECEIVE_POLL = 0.2
_PROCESS_POLL = 0.1


class InstructionError(ValueError):
    """Raised when a transaction's instructions cannot be executed."""


class RateLimiter:
    """Spaces calls to :meth:`take` evenly at ``rate`` per second."""

    def __init__(
        self,
        rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.interval = 1.0 / rate
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = threading.Lock()

    def take(self) -> float:
        """Block until the next slot is free and return its time."""
        with self._lock:
            now = self._clock()
            if self._last is not None:
                due = self._last + self.interval
                if now < due:
                    self._sleep(due - now)
                    now = due
            self._last = now
            return now


def _plain_json(value: Any) -> Any:
    """Write whole floats as integers, matching the wire format of balances."""
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {key: _plain_json(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain_json(item) for item in value]
    return value


class Validator:
    """Receives transactions over UDP, batches commutative ones and settles them."""

    def __init__(
        self,
        db: AccountsDb,
        sock: socket.socket,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        limiter: RateLimiter | None = None,
        snapshot_dir: str | Path = ".",
    ) -> None:
        self.db = db
        self.sock = sock
        self.endpoint = endpoint
        self.limiter = limiter if limiter is not None else RateLimiter(BATCHES_PER_SECOND)
        self.snapshot_dir = Path(snapshot_dir)
        self.incoming: queue.Queue[ScoredTransaction] = queue.Queue(INCOMING_QUEUE_SIZE)
        self.heap = TransactionHeap()
        self.batch_idx = 0
        self._stop = threading.Event()
        self._lock = threading.RLock()

    @property
    def port(self) -> int:
        return self.sock.getsockname()[1]

    def close(self) -> None:
        """Stop the running loops and close the UDP socket."""
        self._stop.set()
        self.sock.close()

    def push_transaction(self, tx: ScoredTransaction) -> None:
        self.heap.push(tx)

    def next_transaction(self) -> ScoredTransaction:
        """Remove and return the queued transaction with the highest priority."""
        return self.heap.pop()

    def handle_message(self, message: bytes) -> ScoredTransaction:
        """Decode one message, score it and queue it for ordering."""
        tx = ScoredTransaction.from_transaction(parse_transaction(message))
        self.incoming.put(tx)
        return tx

    def receive_transactions(self) -> None:
        """Read transactions from the socket until the validator is closed."""
        self.sock.settimeout(_RECEIVE_POLL)
        while not self._stop.is_set():
            try:
                message = self.sock.recv(MAX_MESSAGE_SIZE)
            except TimeoutError:
                continue
            except OSError:
                if self._stop.is_set():
                    break
                log.warning("error while receiving a message")
                continue
            try:
                self.handle_message(message)
            except MalformedTransactionError:
                log.warning("malformed transaction")

    def _reference(self, change: Mapping[str, Any]) -> tuple[float, str]:
        """Resolve a change that refers to another account's balance."""
        if "account" not in change:
            raise InstructionError("no such account")
        account = change["account"]
        if not isinstance(account, str):
            raise InstructionError("referenced account must be a string")
        target_balance = self.db.balance(account)
        if "sign" not in change:
            raise InstructionError("sign not found")
        sign = change["sign"]
        if sign not in ("plus", "minus"):
            raise InstructionError("unknown sign")
        return target_balance, sign

    def commit_batch(self, batch: list[ScoredTransaction]) -> None:
        """Apply the fees and instructions of a batch to the validator's database."""
        with self._lock:
            accounts = self.db.accounts
            for item in batch:
                tx = item.transaction
                payer_balance = accounts.get(tx.fee.payer, 0.0) - tx.fee.amount
                self.db.earn(tx.fee.amount)
                accounts[tx.fee.payer] = payer_balance

                for instruction in tx.instructions:
                    change = instruction.change
                    balance = accounts.get(instruction.account, 0.0)
                    if instruction.is_change_float():
                        accounts[instruction.account] = balance + change
                    elif isinstance(change, Mapping):
                        target_balance, sign = self._reference(change)
                        if sign == "plus":
                            accounts[instruction.account] = balance + target_balance
                        else:
                            accounts[instruction.account] = balance - target_balance
                    else:
                        raise InstructionError("unexpected JSON format")
            self.batch_idx += 1

    def send_batch(self, batch: list[ScoredTransaction]) -> None:
        """POST the batch as JSON to the endpoint; the outcome is ignored."""
        body = json.dumps(
            [_plain_json(item.transaction.to_dict()) for item in batch],
            separators=(",", ":"),
        ).encode("utf-8")
        request = urllib.request.Request(self.endpoint, data=body, method="POST")
        self.limiter.take()
        try:
            with urllib.request.urlopen(request, timeout=10) as response:
                response.read()
        except OSError:
            pass

    def is_commutative(self, tx: Transaction, db: AccountsDb) -> bool:
        """Tell whether ``tx`` can join the batch whose state is ``db``.

        On success the balance decreases of ``tx`` are applied to ``db``,
        never to the validator's own database. Raises when the transaction
        cannot be executed at all; its fee may still be charged then.
        """
        changes: dict[str, float] = {tx.fee.payer: -tx.fee.amount}
        total = 0.0

        for instruction in tx.instructions:
            change = instruction.change
            account = instruction.account
            if instruction.is_change_float():
                total += change
                # Only balance decreases can break commutativity.
                if change > 0:
                    continue
                changes[account] = changes.get(account, 0.0) + change
            elif isinstance(change, Mapping):
                target_balance, sign = self._reference(change)
                if sign == "plus":
                    total += target_balance
                    continue
                if account in changes:
                    changes[account] -= target_balance
                else:
                    changes[account] = target_balance
            else:
                raise InstructionError("unexpected JSON format")

        if total != 0:
            raise InstructionError("instruction sum is non-zero")

        applicable: dict[str, float] = {}
        for account, change in changes.items():
            if account not in db.accounts:
                if change < 0:
                    raise NegativeBalanceError()
                continue
            if db.accounts[account] + change < 0:
                return False
            applicable[account] = change

        for account, change in applicable.items():
            db.accounts[account] += change
        return True

    def build_batch(self) -> list[ScoredTransaction]:
        """Take up to a full batch of commutative transactions off the heap.

        Transactions whose payer cannot pay the fee, or that fail to execute,
        are dropped. Those that would break commutativity go back on the heap
        for a later batch.
        """
        with self._lock:
            db = self.db.copy()

        batch: list[ScoredTransaction] = []
        deferred: list[ScoredTransaction] = []
        while len(batch) < MAX_BATCH_SIZE and len(self.heap) > 0:
            item = self.next_transaction()
            tx = item.transaction

            balance = db.accounts.get(tx.fee.payer)
            if balance is None or balance - tx.fee.amount < 0:
                continue

            try:
                commutative = self.is_commutative(tx, db)
            except (InstructionError, NegativeBalanceError, NoSuchAccountError):
                # The transaction fails, but its fee can still be paid.
                db.earn(tx.fee.amount)
                continue

            if not commutative:
                deferred.append(item)
                continue
            batch.append(item)

        for item in deferred:
            self.push_transaction(item)
        return batch

    def _process_once(self) -> None:
        if len(self.heap) == 0:
            try:
                self.push_transaction(self.incoming.get(timeout=_PROCESS_POLL))
            except queue.Empty:
                pass
            return

        while True:
            try:
                self.push_transaction(self.incoming.get_nowait())
            except queue.Empty:
                break

        batch = self.build_batch()
        if batch:
            self.commit_batch(batch)
            self.send_batch(batch)

    def process_transactions(self) -> None:
        """Order incoming transactions and settle them until closed."""
        while not self._stop.is_set():
            self._process_once()

    def write_snapshot(self, directory: str | Path = ".") -> Path:
        """Write the current balances to a timestamped JSON file and return its path."""
        with self._lock:
            data = json.dumps(_plain_json(dict(self.db.accounts)), sort_keys=True, separators=(",", ":"))
            path = Path(directory) / f"accounts-{int(time.time())}-{self.batch_idx}.json"
        path.write_text(data, encoding="utf-8")
        return path

    def _snapshot_loop(self) -> None:
        while not self._stop.is_set():
            self.write_snapshot(self.snapshot_dir)
            self._stop.wait(SNAPSHOT_INTERVAL)

    def run(self) -> None:
        """Receive, process and snapshot until the validator is closed."""
        print(f"Waiting for transactions at localhost:{self.port}...")
        threads = [
            threading.Thread(target=self.receive_transactions, name="receive", daemon=True),
            threading.Thread(target=self.process_transactions, name="process", daemon=True),
            threading.Thread(target=self._snapshot_loop, name="snapshot", daemon=True),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()


def new_from_snapshot(
    snapshot: str | Path,
    port: int = DEFAULT_PORT,
    endpoint: str = DEFAULT_ENDPOINT,
) -> Validator:
    """Create a validator whose balances come from ``snapshot``, listening on ``port``."""
    db = load_snapshot(snapshot)
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(("", port))
    except OSError:
        sock.close()
        raise
    return Validator(db, sock, endpoint=endpoint)