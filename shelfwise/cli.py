"""
Shelfwise CLI — store bootstrap and maintenance commands.

Commands:
- shelfwise init          — Create the database tables
- shelfwise add-user      — Seed a principal
- shelfwise check-tree    — Audit (and optionally repair) a tenant's folder tree
- shelfwise sweep-grants  — Delete expired grants now
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Optional

from shelfwise.engine.errors import ShelfwiseError

logger = logging.getLogger("shelfwise.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="shelfwise",
        description="Shelfwise — multi-tenant inventory store",
    )
    parser.add_argument("--config", help="Path to shelfwise.yaml (default: auto-discover)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # shelfwise init
    subparsers.add_parser("init", help="Create database tables")

    # shelfwise add-user
    user_parser = subparsers.add_parser("add-user", help="Create a user")
    user_parser.add_argument("email", help="Email address (unique)")
    user_parser.add_argument("--name", default="", help="Display name")

    # shelfwise check-tree
    tree_parser = subparsers.add_parser("check-tree", help="Verify a tenant's folder paths")
    tree_parser.add_argument("tenant_id", help="Owner id whose tree is checked")
    tree_parser.add_argument(
        "--repair", action="store_true", help="Rewrite drifted paths and levels"
    )

    # shelfwise sweep-grants
    subparsers.add_parser("sweep-grants", help="Delete expired grants")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "init": cmd_init,
        "add-user": cmd_add_user,
        "check-tree": cmd_check_tree,
        "sweep-grants": cmd_sweep_grants,
    }
    try:
        return commands[args.command](args)
    except ShelfwiseError as e:
        print(f"[ERROR] {e.message}")
        return 1


def _bootstrap(args: argparse.Namespace, create_tables: bool = False):
    """Load config, configure logging, initialise the store."""
    from shelfwise.db.session import init_db_from_config
    from shelfwise.engine.config import load_config
    from shelfwise.engine.logging import configure_logging

    config = load_config(args.config)
    configure_logging(config.logging.level)
    factory = init_db_from_config(config, create_tables=create_tables)
    return config, factory


def cmd_init(args: argparse.Namespace) -> int:
    config, _ = _bootstrap(args, create_tables=True)
    print(f"[OK] Tables ready ({config.environment})")
    return 0


def cmd_add_user(args: argparse.Namespace) -> int:
    from shelfwise.db.models import User
    from shelfwise.db.session import session_scope

    _, factory = _bootstrap(args)
    with session_scope(factory, operation="add_user") as session:
        user = User(email=args.email.strip().lower(), name=args.name)
        session.add(user)
        session.flush()
    print(f"[OK] Created user {user.email}: {user.id}")
    return 0


def cmd_check_tree(args: argparse.Namespace) -> int:
    from shelfwise.hierarchy.service import FolderService

    config, factory = _bootstrap(args)
    service = FolderService(factory, config=config)

    audit = service.verify_tree(args.tenant_id)
    if audit.ok:
        print(f"[OK] Folder tree of {args.tenant_id} is consistent")
        return 0

    print(json.dumps(audit.to_dict(), indent=2, default=str))
    if not args.repair:
        print(f"[WARN] {len(audit.problems)} problem(s); rerun with --repair to fix paths")
        return 1

    repaired = service.repair_tree(args.tenant_id)
    print(f"[OK] Repaired {repaired} folder(s)")
    return 0


def cmd_sweep_grants(args: argparse.Namespace) -> int:
    from shelfwise.tasks import run_grant_sweep

    _, factory = _bootstrap(args)
    removed = run_grant_sweep(factory)
    print(f"[OK] Removed {removed} expired grant(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
