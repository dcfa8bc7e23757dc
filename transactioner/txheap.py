"""Scoring of transactions and a max-priority queue to order them."""

from __future__ import annotations

import heapq
import itertools
import math
from dataclasses import dataclass, field

from transactioner.models import Transaction


def calc_score(transaction: Transaction) -> int:
    """Score a transaction for queueing.

    Ten times the fee, minus five per instruction, halved and rounded up.
    """
    score = transaction.fee.amount * 10
    score += len(transaction.instructions) * -5
    return math.ceil(score / 2)


@dataclass
class ScoredTransaction:
    """A transaction together with its queue priority."""

    transaction: Transaction
    prio: int = 0

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> ScoredTransaction:
        return cls(transaction, calc_score(transaction))


@dataclass
class TransactionHeap:
    """Queue that hands out the transaction with the highest priority first.

    Transactions of equal priority come out in the order they went in.
    """

    _entries: list[tuple[int, int, ScoredTransaction]] = field(default_factory=list)
    _counter: itertools.count = field(default_factory=itertools.count)

    def push(self, item: ScoredTransaction) -> None:
        heapq.heappush(self._entries, (-item.prio, next(self._counter), item))

    def pop(self) -> ScoredTransaction:
        """Remove and return the highest-priority transaction."""
        if not self._entries:
            raise IndexError("pop from an empty transaction heap")
        return heapq.heappop(self._entries)[2]

    def __len__(self) -> int:
        return len(self._entries)