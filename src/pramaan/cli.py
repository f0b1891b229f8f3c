import argparse
import json
import sys
import time
from typing import List, Optional

import structlog

from .config import DATABASE_URL, ProtocolConfig, configure_logging, get_config_summary
from .core import PramaanCore
from .exceptions import PramaanError
from .group import DEFAULT_GROUP
from .security_log import StructlogSecuritySink
from .storage import Database
from .utils import format_duration
from .zk_statement import describe_proof_system

# Initialize structured logger
logger = structlog.get_logger(__name__)


class PramaanCLI:
    """Operational command-line interface for the Pramaan core."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="pramaan",
            description="Pramaan - biometric commitment and attendance-proof verification",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--database-url",
            default=DATABASE_URL,
            help="SQLAlchemy database URL. Default: PRAMAAN_DATABASE_URL.",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        subparsers.add_parser("init-db", help="Create database tables and indexes.")
        subparsers.add_parser(
            "sweep", help="Expire pending attendance records whose challenge has lapsed."
        )
        subparsers.add_parser("params", help="Print the proof system and group parameters.")
        subparsers.add_parser("config", help="Print the active configuration.")

        return parser

    def _execute_init_db(self, args: argparse.Namespace) -> int:
        database = Database(args.database_url)
        try:
            database.create_all()
        finally:
            database.dispose()
        print(f"Database ready: {args.database_url}")
        return 0

    def _execute_sweep(self, args: argparse.Namespace) -> int:
        start_time = time.perf_counter()
        config = ProtocolConfig.from_env(database_url=args.database_url, max_workers=1)

        with PramaanCore(config, security_sink=StructlogSecuritySink()) as core:
            expired = core.expire_stale_records()

        elapsed = format_duration(time.perf_counter() - start_time)
        print(f"Expired {expired} pending record(s) in {elapsed}")
        return 0

    def _execute_params(self, args: argparse.Namespace) -> int:
        print(json.dumps(describe_proof_system(DEFAULT_GROUP), indent=2))
        return 0

    def _execute_config(self, args: argparse.Namespace) -> int:
        print(json.dumps(get_config_summary(), indent=2, default=str))
        return 0

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        commands = {
            "init-db": self._execute_init_db,
            "sweep": self._execute_sweep,
            "params": self._execute_params,
            "config": self._execute_config,
        }

        try:
            args = self.parser.parse_args(args_list)
            handler = commands.get(args.command)
            if handler is None:
                self.parser.print_help()
                return 1
            return handler(args)

        except PramaanError as e:
            logger.error("Command failed", command=args_list, error=str(e))
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130


def main() -> int:
    """Main entry point for the CLI."""
    configure_logging()
    cli = PramaanCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
