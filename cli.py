#!/usr/bin/env python3

import argparse
import asyncio
import dataclasses
import json
import os
import sys
import logging

from app_config import load_config, AppConfig
from errors import BridgeError
from jwt_auth import create_bridge_token, generate_bridge_secret, SECRET_PREFIX
from secret_store import SecretStore
from session_context import SessionContext

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def _config(args) -> AppConfig:
    config = load_config(args.config)
    if args.data_dir:
        config = dataclasses.replace(config, data_dir=args.data_dir)
    return config


def _data_dir(args) -> str:
    return args.data_dir or os.getenv("BRIDGE_DATA_DIR", "./data")


def bridge_keygen_command(args):
    """Handle bridge keygen command"""
    secret = generate_bridge_secret()
    print("\nGenerated bridge token signing secret:")
    print("=" * 50)
    print(secret)
    print("=" * 50)
    print("\nAdd to your environment:")
    print(f"export BRIDGE_SECRET='{secret}'")
    return 0


def bridge_token_create_command(args):
    """Handle bridge token create command"""
    bridge_secret = os.getenv("BRIDGE_SECRET")

    if not bridge_secret:
        print("Error: BRIDGE_SECRET environment variable is required to create bridge tokens.")
        print("Run: python cli.py bridge keygen")
        return 1

    if not bridge_secret.startswith(SECRET_PREFIX):
        print(f"Error: BRIDGE_SECRET must start with '{SECRET_PREFIX}' prefix.")
        print("Run: python cli.py bridge keygen")
        return 1

    token = create_bridge_token(bridge_secret, args.expires, args.name)
    print(f"\nBridge token (expires in {args.expires} hours):")
    print("=" * 50)
    print(token)
    print("=" * 50)
    print("\nUse with bridge calls:")
    print(f"Authorization: Bearer {token}")
    return 0


def whoami_command(args):
    """Show the stored credential's user"""
    credential = SecretStore(_data_dir(args)).load_credential()
    if credential is None:
        print("Nobody is signed in")
        return 1

    name = credential.user.get("displayName") or credential.user.get("email") or "unknown"
    print(f"User: {name}")
    print(f"User ID: {credential.user_id}")
    print(f"Provider: {credential.provider_id or 'unknown'}")
    print(f"Signed in: {credential.created}")
    return 0


def signout_command(args):
    """Forget the stored credential"""
    store = SecretStore(_data_dir(args))
    if store.load_credential() is None:
        print("Nobody is signed in")
        return 0
    store.delete_credential()
    print("Stored credential removed, the next start will ask for sign-in")
    return 0


def secrets_cleanup_command(args):
    """Remove the secret store and its key, e.g. before uninstall"""
    SecretStore(_data_dir(args)).cleanup()
    print("Secret store and encryption key removed")
    return 0


async def _open_session(config: AppConfig) -> SessionContext:
    context = SessionContext.from_config(config)
    credential = context.secrets.load_credential()
    if credential is None:
        raise BridgeError("Nobody is signed in, start the app and sign in first")

    context.tokens.set_refresh_token(credential.refresh_token)
    token = await context.tokens.get_valid_token()
    context.open_scopes(token.user_id or credential.user_id, credential.user)
    return context


async def _storage_folders(config: AppConfig, domain: str, prefix: str):
    context = await _open_session(config)
    try:
        return await context.files_for(domain).folders(prefix)
    finally:
        await context.tokens.close()


async def _storage_list(config: AppConfig, domain: str, folder: str):
    context = await _open_session(config)
    try:
        return await context.files_for(domain).list(folder)
    finally:
        await context.tokens.close()


async def _docs_read(config: AppConfig, domain: str, path: str):
    context = await _open_session(config)
    try:
        return await context.documents_for(domain).read(path)
    finally:
        await context.tokens.close()


def storage_folders_command(args):
    """Handle storage folders command"""
    try:
        folders = asyncio.run(_storage_folders(_config(args), args.domain, args.prefix))
    except BridgeError as e:
        print(f"Error: {e}")
        return 1

    if not folders:
        print("No folders")
        return 0
    for folder in folders:
        print(folder)
    return 0


def storage_list_command(args):
    """Handle storage list command"""
    try:
        records = asyncio.run(_storage_list(_config(args), args.domain, args.folder))
    except BridgeError as e:
        print(f"Error: {e}")
        return 1

    if not records:
        print(f"No files in '{args.folder}'")
        return 0

    print(f"Found {len(records)} files:")
    for record in records:
        print(f"  {record.path}  {record.size} bytes  {record.content_type}  {record.updated}")
    return 0


def docs_read_command(args):
    """Handle docs read command"""
    try:
        document = asyncio.run(_docs_read(_config(args), args.domain, args.path))
    except BridgeError as e:
        print(f"Error: {e}")
        return 1

    if document is None:
        print(f"Document not found: {args.path}")
        return 1
    print(json.dumps(document, indent=2, default=str))
    return 0


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Firebase desk bridge CLI - manage credentials and inspect stored data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Bridge authentication (JWT tokens for the UI shell)
  python cli.py bridge keygen
  python cli.py bridge token create --name "ui-shell"

  # Session management
  python cli.py whoami
  python cli.py signout
  python cli.py secrets cleanup

  # Inspect stored data of the signed-in user
  python cli.py storage folders
  python cli.py storage list docs --domain app
  python cli.py docs read aboutme/profile

Domains:
  file (or user), app, public
        """,
    )

    # Global arguments
    parser.add_argument(
        "--config",
        default=os.getenv("BRIDGE_CONFIG"),
        help="TOML configuration file (default: from BRIDGE_CONFIG env var or ./bridge.toml)",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory of the local secret store (default: from BRIDGE_DATA_DIR env var or ./data)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Bridge command group
    bridge_parser = subparsers.add_parser("bridge", help="Bridge token management")
    bridge_subparsers = bridge_parser.add_subparsers(dest="bridge_action", help="Bridge actions")

    bridge_keygen_parser = bridge_subparsers.add_parser("keygen", help="Generate bridge signing secret")
    bridge_keygen_parser.set_defaults(func=bridge_keygen_command)

    bridge_token_parser = bridge_subparsers.add_parser("token", help="Bridge token management")
    bridge_token_subparsers = bridge_token_parser.add_subparsers(
        dest="bridge_token_action", help="Token actions"
    )

    bridge_create_parser = bridge_token_subparsers.add_parser("create", help="Create bridge token")
    bridge_create_parser.add_argument(
        "--expires", type=float, default=24, help="Expiration in hours (default: 24)"
    )
    bridge_create_parser.add_argument("--name", help="Token name for identification")
    bridge_create_parser.set_defaults(func=bridge_token_create_command)

    # Session commands
    whoami_parser = subparsers.add_parser("whoami", help="Show the signed-in user")
    whoami_parser.set_defaults(func=whoami_command)

    signout_parser = subparsers.add_parser("signout", help="Remove the stored credential")
    signout_parser.set_defaults(func=signout_command)

    secrets_parser = subparsers.add_parser("secrets", help="Local secret store management")
    secrets_subparsers = secrets_parser.add_subparsers(dest="secrets_action", help="Secret store actions")
    secrets_cleanup_parser = secrets_subparsers.add_parser("cleanup", help="Remove secrets and encryption key")
    secrets_cleanup_parser.set_defaults(func=secrets_cleanup_command)

    # Storage command group
    storage_parser = subparsers.add_parser("storage", help="Tracked file storage")
    storage_subparsers = storage_parser.add_subparsers(dest="storage_action", help="Storage actions")

    storage_folders_parser = storage_subparsers.add_parser("folders", help="List folders")
    storage_folders_parser.add_argument("--prefix", default="", help="Only folders starting with prefix")
    storage_folders_parser.add_argument("--domain", default="file", help="file, app or public (default: file)")
    storage_folders_parser.set_defaults(func=storage_folders_command)

    storage_list_parser = storage_subparsers.add_parser("list", help="List files in a folder")
    storage_list_parser.add_argument("folder", nargs="?", default="", help="Folder path (default: top level)")
    storage_list_parser.add_argument("--domain", default="file", help="file, app or public (default: file)")
    storage_list_parser.set_defaults(func=storage_list_command)

    # Docs command group
    docs_parser = subparsers.add_parser("docs", help="Documents")
    docs_subparsers = docs_parser.add_subparsers(dest="docs_action", help="Document actions")

    docs_read_parser = docs_subparsers.add_parser("read", help="Print a document")
    docs_read_parser.add_argument("path", help="Document path, e.g. aboutme/profile")
    docs_read_parser.add_argument("--domain", default="file", help="file, app or public (default: file)")
    docs_read_parser.set_defaults(func=docs_read_command)

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.command:
        parser.print_help()
        return 1

    # A command group without a subcommand
    if not hasattr(args, "func"):
        group_parsers = {
            "bridge": bridge_parser,
            "secrets": secrets_parser,
            "storage": storage_parser,
            "docs": docs_parser,
        }
        if args.command == "bridge" and getattr(args, "bridge_action", None) == "token":
            bridge_token_parser.print_help()
        else:
            group_parsers.get(args.command, parser).print_help()
        return 1

    # Execute command
    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 130  # Standard exit code for SIGINT
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
