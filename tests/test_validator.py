import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from transactioner.accountsdb import InvalidSnapshotError, NegativeBalanceError, NoSuchAccountError
from transactioner.models import Fee, Instruction, MalformedTransactionError, Transaction
from transactioner.txheap import ScoredTransaction, calc_score
from transactioner.validator import InstructionError, RateLimiter, new_from_snapshot

ACCOUNTS = {"alice": 1000, "bob": 2000, "carol": 4}


@pytest.fixture
def snapshot(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps(ACCOUNTS))
    return path


@pytest.fixture
def vali(snapshot):
    validator = new_from_snapshot(snapshot, port=0, endpoint="http://127.0.0.1:9/")
    yield validator
    validator.close()


def make_tx(payer, fee, *instructions):
    return Transaction(
        fee=Fee(payer=payer, amount=float(fee)),
        instructions=[Instruction(account=a, change=c) for a, c in instructions],
    )


def scored(payer, fee, *instructions):
    return ScoredTransaction.from_transaction(make_tx(payer, fee, *instructions))


def test_snapshot_with_negative_balance_is_rejected(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"alice": -1}))
    with pytest.raises(InvalidSnapshotError):
        new_from_snapshot(path, port=0)


def test_next_transaction_returns_highest_priority(vali):
    low = scored("alice", 1)
    high = scored("bob", 50)
    vali.push_transaction(low)
    vali.push_transaction(high)
    assert vali.next_transaction() is high
    assert vali.next_transaction() is low


def test_handle_message_queues_scored_transaction(vali):
    message = json.dumps(
        {"fee": {"payer": "alice", "amount": 3}, "instructions": [{"account": "bob", "change": 5}]}
    ).encode()
    tx = vali.handle_message(message)
    assert tx.transaction.fee.payer == "alice"
    assert tx.prio == calc_score(tx.transaction)
    assert vali.incoming.get_nowait() is tx


def test_handle_message_rejects_malformed(vali):
    with pytest.raises(MalformedTransactionError):
        vali.handle_message(b"{not json")


def test_simple_transfer_is_commutative(vali):
    db = vali.db.copy()
    tx = make_tx("alice", 1, ("alice", -100.0), ("bob", 100.0))
    assert vali.is_commutative(tx, db) is True
    assert db.balance("alice") == 1000 - 1 - 100
    assert db.balance("bob") == 2000
    assert vali.db.balance("alice") == 1000


def test_non_zero_sum_raises_and_leaves_copy(vali):
    db = vali.db.copy()
    tx = make_tx("alice", 1, ("alice", -5.0))
    with pytest.raises(InstructionError, match="non-zero"):
        vali.is_commutative(tx, db)
    assert db.accounts == vali.db.accounts


def test_overdraft_is_not_commutative(vali):
    db = vali.db.copy()
    tx = make_tx("carol", 1, ("carol", -10.0), ("bob", 10.0))
    assert vali.is_commutative(tx, db) is False
    assert db.accounts == vali.db.accounts


def test_new_account_cannot_start_negative(vali):
    db = vali.db.copy()
    tx = make_tx("alice", 1, ("dave", -5.0), ("alice", 5.0))
    with pytest.raises(NegativeBalanceError):
        vali.is_commutative(tx, db)


def test_reference_change_commits(vali):
    tx = make_tx("alice", 0, ("bob", {"account": "carol", "sign": "plus"}), ("carol", -4.0))
    db = vali.db.copy()
    assert vali.is_commutative(tx, db) is True
    vali.commit_batch([ScoredTransaction.from_transaction(tx)])
    assert vali.db.balance("bob") == 2000 + 4
    assert vali.db.balance("carol") == 0


@pytest.mark.parametrize(
    "change, error",
    [
        ({"account": "carol", "sign": "times"}, InstructionError),
        ({"sign": "plus"}, InstructionError),
        ({"account": "carol"}, InstructionError),
        ({"account": "nobody", "sign": "plus"}, NoSuchAccountError),
        ("ten", InstructionError),
    ],
)
def test_malformed_changes_raise(vali, change, error):
    tx = make_tx("alice", 1, ("bob", change))
    with pytest.raises(error):
        vali.is_commutative(tx, vali.db.copy())


def test_commit_batch_moves_fee_and_balances(vali):
    batch = [scored("alice", 2, ("alice", -100.0), ("bob", 100.0))]
    vali.commit_batch(batch)
    assert vali.db.balance("alice") == 1000 - 2 - 100
    assert vali.db.balance("bob") == 2000 + 100
    assert vali.db.balance("validator") == 2
    assert vali.batch_idx == 1


def test_build_batch_filters_and_defers(vali):
    good = scored("alice", 1, ("alice", -10.0), ("bob", 10.0))
    unpayable = scored("carol", 10)
    deferred = scored("carol", 1, ("carol", -10.0), ("bob", 10.0))
    failing = scored("bob", 1, ("bob", -5.0))
    for item in (good, unpayable, deferred, failing):
        vali.push_transaction(item)

    batch = vali.build_batch()
    assert batch == [good]
    assert len(vali.heap) == 1
    assert vali.next_transaction() is deferred
    assert vali.db.balance("alice") == 1000


def test_build_batch_is_capped(vali):
    for _ in range(150):
        vali.push_transaction(scored("alice", 0))
    batch = vali.build_batch()
    assert len(batch) == 100
    assert len(vali.heap) == 50


def test_send_batch_posts_json():
    received = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers["Content-Length"])
            received.append((self.path, self.rfile.read(length)))
            self.send_response(200)
            self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        from transactioner.accountsdb import AccountsDb
        from transactioner.validator import Validator

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        vali = Validator(
            AccountsDb({"alice": 10.0}),
            sock,
            endpoint=f"http://127.0.0.1:{server.server_address[1]}/",
        )
        tx = scored("alice", 1, ("alice", -1.0), ("bob", 1.0))
        vali.send_batch([tx])
        vali.close()
    finally:
        server.shutdown()
        server.server_close()

    assert len(received) == 1
    path, body = received[0]
    assert path == "/"
    assert json.loads(body) == [tx.transaction.to_dict()]


def test_write_snapshot(vali, tmp_path):
    vali.batch_idx = 7
    path = vali.write_snapshot(tmp_path)
    assert path.name.startswith("accounts-")
    assert path.name.endswith("-7.json")
    assert json.loads(path.read_text()) == vali.db.accounts


def test_receive_transactions_over_udp(vali):
    thread = threading.Thread(target=vali.receive_transactions, daemon=True)
    thread.start()
    message = json.dumps({"fee": {"payer": "bob", "amount": 2}, "instructions": []}).encode()
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
        sender.sendto(message, ("127.0.0.1", vali.port))
    tx = vali.incoming.get(timeout=5)
    vali.close()
    thread.join(5)
    assert tx.transaction.fee.payer == "bob"
    assert not thread.is_alive()


def test_rate_limiter_spaces_calls():
    now = [0.0]
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(100, clock=lambda: now[0], sleep=sleep)
    first = limiter.take()
    second = limiter.take()
    assert sleeps == [pytest.approx(0.01)]
    assert second - first == pytest.approx(0.01)


def test_rate_limiter_rejects_bad_rate():
    with pytest.raises(ValueError):
        RateLimiter(0)


def test_run_writes_snapshots_until_closed(vali, tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    thread = threading.Thread(target=vali.run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 5
    while not list(tmp_path.glob("accounts-*.json")) and time.monotonic() < deadline:
        time.sleep(0.05)
    vali.close()
    thread.join(5)
    files = list(tmp_path.glob("accounts-*.json"))
    assert files
    assert json.loads(files[0].read_text()) == vali.db.accounts
    assert not thread.is_alive()
    assert "Waiting for transactions" in capsys.readouterr().out