# transactioner

A small validator that receives transactions over UDP, orders them by
priority, groups those that can safely run together into batches, applies
the batches to an in-memory account database and forwards each batch by
HTTP POST.

## How it works

1. **Accounts.** Balances are loaded from a JSON snapshot: an object that
   maps account names to non-negative numbers.

   ```json
   {
     "alice": 1000,
     "bob": 2000,
     "carol": 4
   }
   ```

   A negative or non-numeric balance makes the snapshot invalid
   (`InvalidSnapshotError`); a `null` balance counts as 0. A `validator`
   account is created with a balance of 0 if the snapshot does not have
   one; fees paid by transactions are credited to it.

2. **Receiving.** Transactions arrive as JSON datagrams on UDP port 2001
   (at most 1024 bytes are read per datagram). Each carries a fee and a
   list of instructions:

   ```json
   {
     "fee": {"payer": "alice", "amount": 2},
     "instructions": [
       {"account": "alice", "change": -10},
       {"account": "bob", "change": 10}
     ]
   }
   ```

   A `change` is either a number or an object such as
   `{"account": "carol", "sign": "plus"}`, which adds (`"plus"`) or
   subtracts (`"minus"`) the current balance of the named account.
   Malformed messages are logged as warnings and dropped.

3. **Ordering.** Every transaction gets a score,
   `ceil((fee * 10 - 5 * number_of_instructions) / 2)`, and waits in a
   priority heap; the highest score is taken first, and equal scores come
   out in arrival order.

4. **Batching.** Up to 100 transactions go into one batch, checked against
   a scratch copy of the balances:
   - a transaction whose payer is unknown or cannot cover the fee is dropped;
   - a transaction that cannot be executed (instructions that do not sum to
     zero, a change that would start a new account below zero, a reference
     to an unknown account, a bad sign or change format) is dropped;
   - a transaction that could push an existing balance below zero is put
     back on the heap for a later batch;
   - everything else joins the batch.

5. **Committing and sending.** A finished batch is applied to the account
   database (fees move from payers to `validator`, then the instructions
   are applied) and sent as a JSON array by HTTP POST to
   `http://localhost:2002/`, at most 100 batches per second. The response,
   and any connection error, is ignored.

6. **Snapshots.** Once a second the current balances are written to
   `accounts-<unix time>-<batch index>.json` in the working directory.

## Running

Put an `accounts.json` snapshot in the working directory and start:

```sh
transactioner
```

It prints `Waiting for transactions at localhost:2001...` and runs until
interrupted. Options:

- `--snapshot PATH`: the accounts snapshot to load (default `./accounts.json`)
- `--port PORT`: the UDP port to listen on (default `2001`)
- `--endpoint URL`: where batches are posted (default `http://localhost:2002/`)

If the snapshot cannot be read or is invalid, or the port cannot be bound,
it prints the error and exits with status 1.

## Using it as a library

The account database can be used on its own:

```python
from transactioner.accountsdb import load_snapshot, NegativeBalanceError

db = load_snapshot("accounts.json")
print(db.balance("alice"))    # raises NoSuchAccountError for unknown accounts

db.update_by("alice", -100)   # raises NegativeBalanceError if it would go below zero
db.update_by("dave", 50)      # unknown accounts are created (never below zero)
db.earn(2)                    # credit the validator account

scratch = db.copy()           # changes to the copy leave db untouched
```

Other parts:

- `transactioner.models`: `Transaction`, `Fee`, `Instruction` (each with
  `to_dict()`) and `parse_transaction`, which accepts JSON text, bytes or a
  decoded mapping and raises `MalformedTransactionError` on bad input.
- `transactioner.txheap`: `calc_score`, `ScoredTransaction` and the
  highest-score-first `TransactionHeap`.
- `transactioner.validator`: `Validator`, created with
  `new_from_snapshot(snapshot, port, endpoint)`. Besides `run()` and
  `close()` it exposes the individual steps: `handle_message`,
  `build_batch`, `is_commutative`, `commit_batch`, `send_batch` and
  `write_snapshot(directory)`. Also `RateLimiter` and `InstructionError`.

## Limits

- Balances live only in memory; the periodic snapshot files are the only
  thing written to disk, and nothing reads them back on restart unless you
  pass one with `--snapshot`.
- Nothing here receives the posted batches; run your own HTTP server at the
  endpoint if you need them.
- Fees of transactions that fail to execute are not charged to the
  database; such transactions are simply dropped.

## Tests

```sh
pip install -e ".[test]"
pytest
```