#!/usr/bin/env python3
"""List, rename, annotate or delete registered identities."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from facetrack.io_utils import setup_logging
from facetrack.recognition.identity_store import ParquetIdentityStore


LOGGER = logging.getLogger("scripts.identities")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the registered identity store")
    parser.add_argument(
        "--identity-store",
        type=Path,
        default=Path("data/identities.parquet"),
        help="Parquet file holding registered identities",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="Print registered identities")
    list_cmd.add_argument("--user-scope", type=str, default=None)

    rename_cmd = sub.add_parser("rename", help="Change an identity's display name")
    rename_cmd.add_argument("identity_id")
    rename_cmd.add_argument("name")

    note_cmd = sub.add_parser("note", help="Replace an identity's note")
    note_cmd.add_argument("identity_id")
    note_cmd.add_argument("note")

    delete_cmd = sub.add_parser("delete", help="Remove an identity")
    delete_cmd.add_argument("identity_id")
    return parser.parse_args(argv)


def format_identity_rows(identities) -> List[str]:
    rows = []
    for identity in sorted(identities, key=lambda item: item.display_name.lower()):
        note = f" - {identity.note}" if identity.note else ""
        rows.append(
            f"{identity.id}  {identity.display_name}{note}  [scope={identity.user_scope} dim={identity.embedding.size}]"
        )
    return rows


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()
    store = ParquetIdentityStore(args.identity_store)

    if args.command == "list":
        identities = store.load_known_identities(args.user_scope)
        for row in format_identity_rows(identities):
            print(row)
        LOGGER.info("%d identities in %s", len(identities), args.identity_store)
        return 0

    try:
        if args.command == "rename":
            store.update_identity(args.identity_id, name=args.name)
        elif args.command == "note":
            store.update_identity(args.identity_id, note=args.note)
        elif args.command == "delete":
            store.delete_identity(args.identity_id)
    except KeyError:
        LOGGER.error("No identity with id %s in %s", args.identity_id, args.identity_store)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
