"""Command that starts a validator from an accounts snapshot."""

from __future__ import annotations

import argparse
import sys

from transactioner.accountsdb import InvalidSnapshotError
from transactioner.validator import DEFAULT_ENDPOINT, DEFAULT_PORT, new_from_snapshot


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="transactioner")
    parser.add_argument("--snapshot", default="./accounts.json")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--endpoint", default=DEFAULT_ENDPOINT)
    args = parser.parse_args(argv)

    try:
        vali = new_from_snapshot(args.snapshot, port=args.port, endpoint=args.endpoint)
    except (OSError, InvalidSnapshotError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        vali.run()
    except KeyboardInterrupt:
        pass
    finally:
        vali.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())