#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Optional

from mailrelay.runtime.config import load_runtime_config, validate_config_file
from mailrelay.runtime.wiring import build_cipher, build_runtime
from mailrelay.vault.oauth_refresh import RefreshError
from mailrelay.vault.token_cipher import DecryptionError


def _resolve_repo_path(repo_root: Path, value: str) -> Path:
    p = Path(value)
    if p.is_absolute() or p.exists():
        return p
    return repo_root / p


def _resolve_pg_dsn(args: argparse.Namespace, *, dsn_env: Optional[str]) -> Optional[str]:
    if args.pg_dsn:
        return str(args.pg_dsn)
    for name in (dsn_env, "MAILRELAY_PG_DSN"):
        if name and os.environ.get(name):
            return os.environ[name]
    return None


def cmd_config_validate(args: argparse.Namespace) -> int:
    repo_root = Path(__file__).resolve().parent
    cfg_path = _resolve_repo_path(repo_root, args.config)
    try:
        validate_config_file(path=cfg_path)
    except Exception as e:
        print(f"CONFIG_VALIDATE_FAILED: {e}")
        return 60
    print("CONFIG_VALIDATE_OK")
    return 0


def cmd_store_migrate(args: argparse.Namespace) -> int:
    repo_root = Path(__file__).resolve().parent
    cfg_path = _resolve_repo_path(repo_root, args.config)
    try:
        config = load_runtime_config(path=cfg_path)
    except Exception as e:
        print(f"STORE_MIGRATE_FAILED: invalid config: {e}")
        return 10

    pg_dsn = _resolve_pg_dsn(args, dsn_env=config.mailrelay.store.postgres_dsn_env)
    if pg_dsn is None:
        print("STORE_MIGRATE_FAILED: missing --pg-dsn (or MAILRELAY_PG_DSN env var)")
        return 10

    try:
        from mailrelay.store.migrate import apply_postgres_migrations

        applied = apply_postgres_migrations(dsn=pg_dsn)
    except Exception as e:
        print(f"STORE_MIGRATE_FAILED: {e}")
        if "psycopg is required" in str(e).lower():
            return 40
        return 60

    print(f"STORE_MIGRATE_OK: applied={len(applied)}")
    return 0


def cmd_token_encrypt(args: argparse.Namespace) -> int:
    repo_root = Path(__file__).resolve().parent
    cfg_path = _resolve_repo_path(repo_root, args.config)
    try:
        config = load_runtime_config(path=cfg_path)
        cipher = build_cipher(vault=config.mailrelay.vault)
    except Exception as e:
        print(f"TOKEN_ENCRYPT_FAILED: {e}")
        return 60

    value = args.value if args.value is not None else sys.stdin.readline().rstrip("\r\n")
    if not value:
        print("TOKEN_ENCRYPT_FAILED: empty token")
        return 10
    print(cipher.encrypt(value))
    return 0


def cmd_poll_run(args: argparse.Namespace) -> int:
    repo_root = Path(__file__).resolve().parent
    cfg_path = _resolve_repo_path(repo_root, args.config)
    try:
        config = load_runtime_config(path=cfg_path)
        runtime = build_runtime(config=config, with_verifier=False)
    except Exception as e:
        print(f"POLL_RUN_FAILED: {e}")
        return 60

    connections = [
        c
        for c in runtime.store.find_connections(mailbox_address=args.mailbox)
        if c.user_id == args.user_id and (args.provider is None or c.provider == args.provider)
    ]
    if not connections:
        print("POLL_RUN_FAILED: connection not found")
        return 20
    if len(connections) > 1:
        providers = ", ".join(sorted(c.provider for c in connections))
        print(f"POLL_RUN_FAILED: --provider required ({providers})")
        return 21

    try:
        outcome = runtime.runner.run_once(connection=connections[0])
    except (RefreshError, DecryptionError) as e:
        print(f"POLL_RUN_FAILED: {type(e).__name__}: {e}")
        return 30

    print(json.dumps(outcome.to_dict(), ensure_ascii=False, sort_keys=True))
    print("POLL_RUN_OK")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="mailrelayctl")
    sub = parser.add_subparsers(dest="command", required=True)

    config = sub.add_parser("config")
    config_sub = config.add_subparsers(dest="config_command", required=True)

    cfg_validate = config_sub.add_parser("validate")
    cfg_validate.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative).")
    cfg_validate.set_defaults(func=cmd_config_validate)

    store = sub.add_parser("store")
    store_sub = store.add_subparsers(dest="store_command", required=True)

    store_migrate = store_sub.add_parser("migrate")
    store_migrate.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative).")
    store_migrate.add_argument(
        "--pg-dsn",
        default=None,
        help="Postgres DSN (defaults to the configured postgres_dsn_env, then MAILRELAY_PG_DSN).",
    )
    store_migrate.set_defaults(func=cmd_store_migrate)

    token = sub.add_parser("token")
    token_sub = token.add_subparsers(dest="token_command", required=True)

    token_encrypt = token_sub.add_parser("encrypt")
    token_encrypt.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative).")
    token_encrypt.add_argument("--value", default=None, help="Plaintext token (read from stdin when omitted).")
    token_encrypt.set_defaults(func=cmd_token_encrypt)

    poll = sub.add_parser("poll")
    poll_sub = poll.add_subparsers(dest="poll_command", required=True)

    poll_run = poll_sub.add_parser("run")
    poll_run.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative).")
    poll_run.add_argument("--user-id", required=True)
    poll_run.add_argument("--mailbox", required=True)
    poll_run.add_argument("--provider", default=None)
    poll_run.set_defaults(func=cmd_poll_run)

    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
