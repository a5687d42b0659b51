"""
DBacked agent command line

Usage:
  dbacked backup --config /etc/dbacked/config.json
  dbacked agent --config /etc/dbacked/config.json --cron "0 2 * * *"
  dbacked check --config /etc/dbacked/config.json
  dbacked generate-key --out dbacked_private_key.pem
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .config import BackupJobConfig, get_settings
from .controller import BackupScheduler, run_backup_process
from .crypto import create_backup_key, generate_key_pair
from .dumper import check_dump_program
from .exceptions import DBackedError
from .logging_setup import configure_logging
from .s3 import S3Storage

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/dbacked/config.json"


def load_job_config(path: str) -> BackupJobConfig:
    """Read a job configuration JSON file"""
    try:
        content = Path(path).read_text(encoding="utf-8")
        return BackupJobConfig.model_validate_json(content).check()
    except FileNotFoundError as e:
        raise DBackedError(f"Config file not found: {path}", code="ENOENT") from e
    except ValidationError as e:
        raise DBackedError(f"Invalid config file {path}:\n{e}", code="EINVALIDCONFIG") from e


def cmd_backup(args) -> int:
    config = load_job_config(args.config)
    result = run_backup_process(config)
    return 0 if result.succeeded else 1


def cmd_agent(args) -> int:
    config = load_job_config(args.config)
    scheduler = BackupScheduler(config, cron_expression=args.cron)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Agent stopped")
    return 0


def cmd_check(args) -> int:
    config = load_job_config(args.config)
    check_dump_program(config.db_type, config.dump_programs_directory or get_settings().DUMP_PROGRAMS_DIRECTORY)
    create_backup_key(config.public_key)
    if not config.is_premium:
        S3Storage.from_config(config).get_bucket_info()
    print("Configuration OK")
    return 0


def cmd_generate_key(args) -> int:
    passphrase = getpass.getpass("Private key password: ")
    if passphrase != getpass.getpass("Private key password confirm: "):
        print("Password and confirm do not match", file=sys.stderr)
        return 1

    print("Generating key pair, this can take some time...")
    key_pair = generate_key_pair(passphrase)
    out = Path(args.out).resolve()
    out.write_text(key_pair.private_key_pem, encoding="utf-8")
    out.chmod(0o600)
    print(f"Saved private key to: {out}")
    print(key_pair.public_key_pem)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dbacked", description="Encrypted database backups to S3")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Run one backup now")
    backup.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    backup.set_defaults(func=cmd_backup)

    agent = subparsers.add_parser("agent", help="Run backups on a cron schedule")
    agent.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    agent.add_argument("--cron", default=None, help="UTC cron expression")
    agent.set_defaults(func=cmd_agent)

    check = subparsers.add_parser("check", help="Verify the configuration")
    check.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    check.set_defaults(func=cmd_check)

    generate_key = subparsers.add_parser("generate-key", help="Generate the backup key pair")
    generate_key.add_argument("--out", default="dbacked_private_key.pem")
    generate_key.set_defaults(func=cmd_generate_key)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        return args.func(args)
    except DBackedError as e:
        logger.error(e.message)
        return 1
