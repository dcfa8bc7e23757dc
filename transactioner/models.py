"""Transactions, fees and instructions as they travel over the wire."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


class MalformedTransactionError(ValueError):
    """Raised when a transaction message cannot be decoded."""


def _floats(value: Any) -> Any:
    """Turn every JSON integer into a float."""
    if isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, dict):
        return {key: _floats(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_floats(item) for item in value]
    return value


def _get(obj: Mapping[str, Any], key: str, kind: type | tuple[type, ...], empty: Any) -> Any:
    value = obj.get(key)
    if value is None:
        return empty
    if isinstance(value, bool) or not isinstance(value, kind):
        raise MalformedTransactionError(f"{key} has the wrong type")
    return value


@dataclass
class Instruction:
    """A balance change: a number, or an object naming another account and a sign."""

    account: str = ""
    change: Any = None

    def is_change_float(self) -> bool:
        return isinstance(self.change, float)

    def to_dict(self) -> dict[str, Any]:
        return {"account": self.account, "change": self.change}


@dataclass
class Fee:
    payer: str = ""
    amount: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"payer": self.payer, "amount": self.amount}


@dataclass
class Transaction:
    fee: Fee = field(default_factory=Fee)
    instructions: list[Instruction] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fee": self.fee.to_dict(),
            "instructions": [instruction.to_dict() for instruction in self.instructions],
        }


def parse_transaction(data: str | bytes | bytearray | Mapping[str, Any] | None) -> Transaction:
    """Decode a transaction from JSON text or a decoded object; missing fields are empty."""
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedTransactionError(f"malformed transaction: {exc}") from exc

    obj = _get({"transaction": data}, "transaction", Mapping, {})
    fee_obj = _get(obj, "fee", Mapping, {})
    fee = Fee(
        payer=_get(fee_obj, "payer", str, ""),
        amount=float(_get(fee_obj, "amount", (int, float), 0.0)),
    )
    instructions = []
    for raw in _get(obj, "instructions", list, []):
        item = _get({"instruction": raw}, "instruction", Mapping, {})
        instructions.append(
            Instruction(account=_get(item, "account", str, ""), change=_floats(item.get("change")))
        )
    return Transaction(fee=fee, instructions=instructions)