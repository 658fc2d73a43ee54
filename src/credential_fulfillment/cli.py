"""
Command-line interface for credential engine operations.

Provides key generation, configuration checks, schema creation and
read-only audit/stock inspection for operators.
"""

import argparse
import json
import sys
import uuid

from credential_fulfillment.core.models import Actor
from credential_fulfillment.database.connection import init_db
from credential_fulfillment.main import bootstrap, load_environment
from credential_fulfillment.security.encryption import CredentialEncryptor
from credential_fulfillment.utils.config import validate_configuration
from credential_fulfillment.utils.exceptions import CredentialEngineError
from credential_fulfillment.utils.logger import get_logger, setup_logging


cli_logger = get_logger(__name__)


class CredentialEngineCLI:
    """Command-line interface for operator tasks."""
    
    def __init__(self):
        self._app = None
    
    @property
    def app(self):
        """Application (lazy loading, exits on bad configuration)."""
        if self._app is None:
            self._app = bootstrap()
        return self._app
    
    def cmd_generate_key(self, args) -> int:
        print(CredentialEncryptor.generate_key())
        return 0
    
    def cmd_config(self, args) -> int:
        """Handle configuration commands."""
        cli_logger.info("Validating configuration...")
        result = validate_configuration()
        
        if result["valid"]:
            print("Configuration is valid")
            print(json.dumps(result["summary"], indent=2))
            return 0
        
        problems = result.get("issues") or [result.get("error")]
        print(f"Configuration validation failed: {'; '.join(problems)}")
        return 1
    
    def cmd_init_db(self, args) -> int:
        init_db(self.app.engine)
        print("Database tables created")
        return 0
    
    def cmd_audit(self, args) -> int:
        operator = Actor.system()
        if args.actor:
            entries = self.app.service.actor_activity(args.subject_id, operator, limit=args.limit)
        else:
            entries = self.app.service.audit_history(args.subject_id, operator)
        
        print(json.dumps(entries, indent=2))
        return 0
    
    def cmd_verify_stock(self, args) -> int:
        report = self.app.service.verify_product_stock(args.product_id)
        print(json.dumps(report, indent=2))
        return 0 if report["conserved"] else 2


def _uuid_arg(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a valid UUID: {value}")


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="credential-fulfillment",
        description="Credential fulfillment engine - operator commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  credential-fulfillment generate-key              # Print a new ENCRYPTION_KEY
  credential-fulfillment config validate           # Validate configuration
  credential-fulfillment init-db                   # Create database tables
  credential-fulfillment audit <subject-id>        # Show an entity's audit trail
  credential-fulfillment verify-stock <product-id> # Check stock against credentials
        """
    )
    
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    
    subparsers.add_parser("generate-key", help="Generate a new encryption key")
    
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument("config_action", choices=["validate"], help="Configuration action to perform")
    
    subparsers.add_parser("init-db", help="Create database tables")
    
    audit_parser = subparsers.add_parser("audit", help="Show audit entries")
    audit_parser.add_argument("subject_id", type=_uuid_arg, help="Batch or stock request id (or actor id with --actor)")
    audit_parser.add_argument("--actor", action="store_true", help="Treat the id as an actor and list their activity")
    audit_parser.add_argument("--limit", type=int, default=100, help="Maximum entries with --actor (default: 100)")
    
    verify_parser = subparsers.add_parser("verify-stock", help="Compare product stock with sellable units")
    verify_parser.add_argument("product_id", type=_uuid_arg, help="Product id")
    
    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    
    load_environment()
    setup_logging()
    
    if not args.command:
        parser.print_help()
        return 1
    
    cli = CredentialEngineCLI()
    handlers = {
        "generate-key": cli.cmd_generate_key,
        "config": cli.cmd_config,
        "init-db": cli.cmd_init_db,
        "audit": cli.cmd_audit,
        "verify-stock": cli.cmd_verify_stock,
    }
    
    try:
        return handlers[args.command](args)
    except CredentialEngineError as e:
        cli_logger.error(f"CLI operation failed: {e}")
        print(f"Operation failed: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 130


def cli_entry_point():
    """Entry point for console script."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry_point()
