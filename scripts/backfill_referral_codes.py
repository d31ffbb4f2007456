from __future__ import annotations

import argparse

import orjson

from teed_api.db import SessionLocal
from teed_api.referral_codes import backfill_referral_codes


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Assign referral codes to profiles that do not have one yet."
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=5000,
        help="Max profiles to process (default: 5000).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count profiles missing a code but do not modify the DB.",
    )
    args = parser.parse_args()

    with SessionLocal() as session:
        out = backfill_referral_codes(
            session, limit=int(args.limit), dry_run=bool(args.dry_run)
        )
    print(orjson.dumps(out, option=orjson.OPT_INDENT_2).decode("utf-8"))


if __name__ == "__main__":
    main()
