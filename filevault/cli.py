"""
FileVault CLI: bootstrap and operator commands.

Commands:
- filevault init      Create the database schema and storage directories
- filevault upload    Upload a file (or a new version of an existing document)
- filevault mkdir     Create a container
- filevault ls        List a container (or the root)
- filevault versions  Show an entity's version history
- filevault trash     List the trash, restore, purge or empty it
- filevault verify    Check ledger invariants and blob presence (admin)
- filevault logs      Read the audit trail or apply log retention

Every command except ``init`` and ``logs`` runs as ``--user`` with ``--role``.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Optional

logger = logging.getLogger("filevault.cli")


def _add_identity_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default="filevault.yaml", help="Path to filevault.yaml")
    parser.add_argument("--user", required=True, help="Identity to act as")
    parser.add_argument(
        "--role", default="user", choices=["user", "admin", "superadmin"],
        help="Role of the acting identity (default: user)",
    )


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="filevault",
        description="FileVault: versioned multi-tenant document store",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # filevault init
    init_parser = subparsers.add_parser("init", help="Create schema and storage directories")
    init_parser.add_argument(
        "--config", default="filevault.yaml", help="Path to filevault.yaml (default: filevault.yaml)"
    )

    # filevault upload
    upload_parser = subparsers.add_parser("upload", help="Upload a file")
    _add_identity_args(upload_parser)
    upload_parser.add_argument("path", help="Local file to upload")
    upload_parser.add_argument("--parent", help="Destination container id (default: root)")
    upload_parser.add_argument("--name", help="Name to store under (default: file name)")
    upload_parser.add_argument("--content-type", help="MIME type (default: guessed from name)")
    upload_parser.add_argument("--replace", metavar="ENTITY_ID", help="Upload as a new version of this document")
    upload_parser.add_argument("--description", "-m", help="Version description (with --replace)")

    # filevault mkdir
    mkdir_parser = subparsers.add_parser("mkdir", help="Create a container")
    _add_identity_args(mkdir_parser)
    mkdir_parser.add_argument("name", help="Container name")
    mkdir_parser.add_argument("--parent", help="Parent container id (default: root)")

    # filevault ls
    ls_parser = subparsers.add_parser("ls", help="List a container")
    _add_identity_args(ls_parser)
    ls_parser.add_argument("container_id", nargs="?", help="Container id (default: root)")
    ls_parser.add_argument("--shared", action="store_true", help="List entities shared with you")

    # filevault versions
    versions_parser = subparsers.add_parser("versions", help="Show version history")
    _add_identity_args(versions_parser)
    versions_parser.add_argument("entity_id", help="Entity id")

    # filevault trash
    trash_parser = subparsers.add_parser("trash", help="Inspect and manage the trash")
    _add_identity_args(trash_parser)
    trash_group = trash_parser.add_mutually_exclusive_group()
    trash_group.add_argument("--delete", metavar="ENTITY_ID", help="Move an entity to the trash")
    trash_group.add_argument("--restore", metavar="ENTITY_ID", help="Restore an entity from the trash")
    trash_group.add_argument("--purge", metavar="ENTITY_ID", help="Permanently delete a trashed entity")
    trash_group.add_argument("--empty", action="store_true", help="Purge every trash entry you own")

    # filevault verify
    verify_parser = subparsers.add_parser("verify", help="Check store integrity (admin)")
    _add_identity_args(verify_parser)

    # filevault logs
    logs_parser = subparsers.add_parser("logs", help="Read or clean up the audit trail")
    logs_parser.add_argument("--config", default="filevault.yaml", help="Path to filevault.yaml")
    logs_parser.add_argument(
        "--type", dest="object_type", default="documents",
        choices=["containers", "documents", "system"], help="Audit stream (default: documents)",
    )
    logs_parser.add_argument("--security", action="store_true", help="Read security events instead of lifecycle events")
    logs_parser.add_argument("--entity", help="Only entries for this entity id")
    logs_parser.add_argument("--actor", help="Only entries by this user id")
    logs_parser.add_argument("--days", type=int, default=7, help="How many days back to read (default: 7)")
    logs_parser.add_argument("--limit", type=int, default=50, help="Newest N entries (default: 50)")
    logs_parser.add_argument("--cleanup", action="store_true", help="Apply the configured retention policy")

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "upload":
        return cmd_upload(args)
    elif args.command == "mkdir":
        return cmd_mkdir(args)
    elif args.command == "ls":
        return cmd_ls(args)
    elif args.command == "versions":
        return cmd_versions(args)
    elif args.command == "trash":
        return cmd_trash(args)
    elif args.command == "verify":
        return cmd_verify(args)
    elif args.command == "logs":
        return cmd_logs(args)
    else:
        parser.print_help()
        return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_config(path: str):
    from filevault.engine.config import load_platform_config

    config = load_platform_config(path)
    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return config


def _open_service(args: argparse.Namespace):
    """Load config and build (service, ctx) for an identity-bearing command."""
    from filevault.documents.service import LifecycleService
    from filevault.engine.context import RequestContext
    from filevault.engine.logging import get_audit_sink, init_logging

    config = _load_config(args.config)
    init_logging(
        log_dir=config.logging.directory,
        flush_interval_ms=config.logging.async_queue.flush_interval_ms,
        flush_batch_size=config.logging.async_queue.flush_batch_size,
        max_queue_size=config.logging.async_queue.max_queue_size,
    )
    service = LifecycleService.from_config(config, audit_sink=get_audit_sink())
    ctx = RequestContext(user_id=args.user, role=args.role)
    return service, ctx


def _run(args: argparse.Namespace, action) -> int:
    """Run ``action(service, ctx)``, mapping FileVault errors to exit code 1."""
    from filevault.db.session import close_all_sessions
    from filevault.engine.errors import FileVaultError
    from filevault.engine.logging import shutdown_logging

    try:
        service, ctx = _open_service(args)
        return action(service, ctx)
    except FileVaultError as e:
        print(f"[ERROR] {e.error_type}: {e.message}")
        return 1
    finally:
        shutdown_logging()
        close_all_sessions()


def _format_entity(entity) -> str:
    marker = "d" if entity.is_container else "-"
    size = "" if entity.is_container else f"{entity.size_bytes:>10}"
    return f"{marker} {entity.id}  v{entity.current_version:<3} {size:>10}  {entity.name}"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_init(args: argparse.Namespace) -> int:
    """
    Bootstrap a FileVault installation:
    1. Load filevault.yaml (defaults when absent)
    2. Create storage and audit log directories
    3. Create all tables
    """
    from filevault.db.base import engine_registry
    from filevault.db.session import ENGINE_NAME, close_all_sessions, init_db
    from filevault.engine.errors import ConfigError
    from filevault.engine.logging import FileLogger

    print("=" * 60)
    print("  FileVault Initialization")
    print("=" * 60)

    try:
        config = _load_config(args.config)
        print(f"[OK] Loaded config ({config.name}, {config.environment})")
    except ConfigError as e:
        print(f"[ERROR] Failed to load config: {e.message}")
        return 1

    try:
        Path(config.storage.root).mkdir(parents=True, exist_ok=True)
        FileLogger(log_dir=config.logging.directory)
        print(f"[OK] Blob storage at {config.storage.root}")
        print(f"[OK] Audit logs at {config.logging.directory}")
    except OSError as e:
        print(f"[ERROR] Could not create directories: {e}")
        return 1

    url = config.database.url
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

    from sqlalchemy.exc import SQLAlchemyError

    try:
        init_db(url, create_tables=True, echo=config.database.echo)
        if not engine_registry.health_check(ENGINE_NAME):
            print("[ERROR] Database is not reachable")
            return 1
        print("[OK] Database tables created")
    except SQLAlchemyError as e:
        print(f"[ERROR] Failed to create tables: {e}")
        return 1
    finally:
        close_all_sessions()

    print()
    print("  FileVault initialized. Try: filevault upload --user alice <file>")
    print("=" * 60)
    return 0


def cmd_upload(args: argparse.Namespace) -> int:
    source = Path(args.path)
    if not source.is_file():
        print(f"[ERROR] File not found: {source}")
        return 1

    def action(service, ctx) -> int:
        with open(source, "rb") as f:
            if args.replace:
                entity, version = service.update_content(
                    ctx, args.replace, f,
                    description=args.description,
                    content_type=args.content_type,
                )
            else:
                entity, version = service.upload(
                    ctx, args.name or source.name, f,
                    parent_id=args.parent,
                    content_type=args.content_type,
                )
        print(f"[OK] {entity.name} ({entity.id}) v{version.version_number}, {entity.size_bytes} bytes")
        return 0

    return _run(args, action)


def cmd_mkdir(args: argparse.Namespace) -> int:
    def action(service, ctx) -> int:
        entity, _ = service.create_container(ctx, args.name, parent_id=args.parent)
        print(f"[OK] Created container {entity.name} ({entity.id})")
        return 0

    return _run(args, action)


def cmd_ls(args: argparse.Namespace) -> int:
    def action(service, ctx) -> int:
        if args.shared:
            entities = service.list_shared_with_me(ctx)
        else:
            if args.container_id:
                path = service.breadcrumbs(ctx, args.container_id)
                print("/" + "/".join(crumb.name for crumb in path))
            entities = service.list_children(ctx, args.container_id)
        for entity in entities:
            print(_format_entity(entity))
        if not entities:
            print("(empty)")
        return 0

    return _run(args, action)


def cmd_versions(args: argparse.Namespace) -> int:
    def action(service, ctx) -> int:
        for version in service.list_versions(ctx, args.entity_id):
            current = "*" if version.is_current else " "
            stamp = version.created_at.strftime("%Y-%m-%d %H:%M") if version.created_at else ""
            print(f"{current} v{version.version_number:<3} {stamp}  {version.author_id:<16} {version.description}")
        return 0

    return _run(args, action)


def cmd_trash(args: argparse.Namespace) -> int:
    def action(service, ctx) -> int:
        if args.delete:
            entity = service.soft_delete(ctx, args.delete)
            print(f"[OK] Moved {entity.name} to trash")
        elif args.restore:
            entity = service.restore(ctx, args.restore)
            print(f"[OK] Restored {entity.name}")
        elif args.purge:
            entity = service.purge(ctx, args.purge)
            print(f"[OK] Permanently deleted {entity.name}")
        elif args.empty:
            purged = service.empty_trash(ctx)
            print(f"[OK] Purged {len(purged)} trash entries")
        else:
            entries = service.list_trash(ctx)
            for entity in entries:
                deleted = entity.deleted_at.strftime("%Y-%m-%d %H:%M") if entity.deleted_at else ""
                print(f"{_format_entity(entity)}  (deleted {deleted} by {entity.deleted_by})")
            if not entries:
                print("Trash is empty")
        return 0

    return _run(args, action)


def cmd_verify(args: argparse.Namespace) -> int:
    def action(service, ctx) -> int:
        report = service.verify(ctx)
        if not report:
            print("[OK] All entities consistent")
            return 0
        for entity_id, problems in report.items():
            for problem in problems:
                print(f"[ERROR] {entity_id}: {problem}")
        print(f"\n{len(report)} entities with problems.")
        return 1

    return _run(args, action)


def cmd_logs(args: argparse.Namespace) -> int:
    from filevault.engine.errors import ConfigError
    from filevault.engine.logging import FileLogger, LogRetentionManager

    try:
        config = _load_config(args.config)
    except ConfigError as e:
        print(f"[ERROR] Failed to load config: {e.message}")
        return 1

    if args.cleanup:
        result = LogRetentionManager.from_config(config.logging).cleanup()
        print(f"[OK] Audit log cleanup: {result['deleted']} deleted, {result['compressed']} compressed")
        return 0

    filters = {}
    if args.entity:
        filters["entity_id"] = args.entity
    if args.actor:
        filters["user_id"] = args.actor
    today = date.today()
    entries = FileLogger(log_dir=config.logging.directory).query(
        args.object_type,
        "security" if args.security else "execution",
        start_date=today - timedelta(days=args.days),
        end_date=today,
        filters=filters,
        limit=args.limit,
    )
    for entry in entries:
        stamp = str(entry.get("timestamp", ""))[:19].replace("T", " ")
        actor = str(entry.get("user_id", ""))
        print(f"{stamp}  {entry.get('event', ''):<22} {actor:<16} {entry.get('entity_id', '')}")
    if not entries:
        print("(no entries)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
