#!/usr/bin/env python3
"""
OTP CLI - A simple command-line TOTP/HOTP manager
Usage:
    otp add <name> [--secret <secret>] [--digits N] [--interval S] [--hotp]
    otp generate <name> [--clip] [--verbose]
    otp list [--verbose]
    otp remove <name>
    otp rename <name> <new-name>
    otp dump [<name>]
    otp backup [--output <file>]
    otp restore [<file>] [--format native|aegis]
"""

import argparse
import os
import sys
from getpass import getpass

# Optional: for clipboard support
try:
    import pyperclip
    CLIPBOARD_AVAILABLE = True
except ImportError:
    CLIPBOARD_AVAILABLE = False

import otp_aegis
from otp_backup import BACKUP_FORMAT_AEGIS, BACKUP_FORMAT_NATIVE, backup_all, resolve_format, restore
from otp_errors import OTPError
from otp_keys import DEFAULT_DIGITS, DEFAULT_INTERVAL, KeyStore, KeyType
from otp_store import (
    MetadataStore,
    SecretStore,
    debug_log,
    get_cached_password,
    get_storage_paths,
    setup_logging,
)

__version__ = "0.3.0"


# ==================== Passwords ====================

def read_new_password(prompt: str) -> str:
    password = getpass(prompt)
    confirm = getpass("Confirm password: ")
    if password != confirm:
        print("Error: Passwords don't match")
        sys.exit(1)
    return password


def master_password(prompt: str, confirm: bool) -> str:
    """Master password from OTP_PASSWORD, the cache, or the terminal"""
    password = os.environ.get("OTP_PASSWORD")
    if password is not None:
        return password
    if confirm:
        print("Setting up encryption for OTP storage...")
        return read_new_password(prompt)
    password = get_cached_password()
    if password is None:
        password = getpass(prompt)
    return password


def backup_password(confirm: bool, prompt: str = "Backup password: ") -> str:
    """Backup or vault password from OTP_BACKUP_PASSWORD, or the terminal"""
    password = os.environ.get("OTP_BACKUP_PASSWORD")
    if password is not None:
        return password
    if confirm:
        return read_new_password(prompt)
    return getpass(prompt)


def open_keys(args) -> KeyStore:
    metadata_path, secrets_path = get_storage_paths(args.db)
    debug_log(f"Using database: {metadata_path}")
    return KeyStore(MetadataStore(metadata_path), SecretStore(secrets_path, master_password))


# ==================== Commands ====================

def cmd_add(args):
    """Add a new OTP secret"""
    keys = open_keys(args)

    if keys.exists(args.name):
        confirm = input(f"Key '{args.name}' already exists. Overwrite? [y/N]: ")
        if confirm.lower() != 'y':
            print("Cancelled")
            return

    secret = args.secret
    if secret is None:
        secret = getpass(f"2fa secret for {args.name}: ")

    key_type = KeyType.HOTP if args.hotp else KeyType.TOTP
    keys.add(args.name, secret, args.digits, args.interval, key_type)
    print(f"✓ Added '{args.name}'")


def cmd_generate(args):
    """Generate a token for a stored key"""
    keys = open_keys(args)
    token = keys.generate(args.name)

    if args.clip:
        if not CLIPBOARD_AVAILABLE:
            print("Error: pyperclip required for clipboard support")
            print("Install with: pip install pyperclip")
            sys.exit(1)
        pyperclip.copy(token.value)
        print("✓ Copied to clipboard")
    elif args.verbose and token.expires_in is not None:
        print(f"{token.value} ( {token.expires_in} seconds left )")
    else:
        print(token.value)


def cmd_list(args):
    """List all stored keys"""
    keys = open_keys(args)
    names = keys.names()

    if not names:
        print("No OTP keys stored")
        print("Add one with: otp add <name>")
        return

    for name in names:
        key = keys.get(name)
        print(key.verbose_string() if args.verbose else key)


def cmd_remove(args):
    """Remove an OTP key and its secret"""
    keys = open_keys(args)
    if not keys.exists(args.name):
        print(f"Error: Key '{args.name}' not found")
        sys.exit(1)

    if not args.force:
        confirm = input(f"Remove '{args.name}'? [y/N]: ")
        if confirm.lower() != 'y':
            print("Cancelled")
            return

    keys.remove(args.name)
    print(f"✓ Removed '{args.name}'")


def cmd_rename(args):
    """Rename an OTP key"""
    keys = open_keys(args)
    keys.rename(args.name, args.new_name)
    print(f"✓ Renamed '{args.name}' to '{args.new_name}'")


def cmd_dump(args):
    """Print key parameters as JSON (secrets are not included)"""
    keys = open_keys(args)
    print(keys.dump(args.name))


def cmd_backup(args):
    """Write an encrypted backup of every key"""
    keys = open_keys(args)
    blob = backup_all(keys, backup_password(confirm=True))
    if args.output:
        with open(args.output, "w") as f:
            f.write(blob + "\n")
        os.chmod(args.output, 0o600)
        print(f"✓ Backed up {len(keys.names())} keys to {args.output}")
    else:
        print(blob)


def read_input(path: str | None) -> bytes:
    if path and path != "-":
        with open(path, "rb") as f:
            return f.read()
    return sys.stdin.buffer.read()


def cmd_restore(args):
    """Restore keys from a native backup or an Aegis vault export"""
    fmt = resolve_format(args.format)
    data = read_input(args.file)
    keys = open_keys(args)

    if fmt == BACKUP_FORMAT_NATIVE:
        restored = restore(keys, data, backup_password(confirm=False), fmt)
        print(f"✓ Restored {len(restored)} keys")
        return

    password = None
    if otp_aegis.parse_vault(data).is_encrypted:
        password = backup_password(confirm=False, prompt="Vault password: ")
    report = restore(keys, data, password, fmt)

    for name in report.imported:
        print(f"✓ Imported '{name}'")
    for skipped in report.skipped:
        print(f"✗ Skipped '{skipped.name}': {skipped.reason}")
    print(f"\n✓ Imported {len(report.imported)} entries, skipped {len(report.skipped)}")


# ==================== Main ====================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="otp",
        description="OTP CLI - A simple command-line TOTP/HOTP manager",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--db", help="Path to the keys database")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Add command
    add_parser = subparsers.add_parser("add", help="Add a new OTP key")
    add_parser.add_argument("name", help="Name of the key")
    add_parser.add_argument("--secret", "-s", help="Base32 encoded secret key (prompted if omitted)")
    add_parser.add_argument("--digits", "-d", type=int, help=f"Number of digits (default: {DEFAULT_DIGITS})")
    add_parser.add_argument("--interval", "-p", type=int, help=f"Interval in seconds (default: {DEFAULT_INTERVAL})")
    add_parser.add_argument("--hotp", action="store_true", help="Counter based key instead of time based")

    # Generate command
    generate_parser = subparsers.add_parser("generate", aliases=["get"], help="Generate a token")
    generate_parser.add_argument("name", help="Name of the key")
    generate_parser.add_argument("--clip", "-c", action="store_true", help="Copy token to the clipboard")
    generate_parser.add_argument("--verbose", "-v", action="store_true", help="Show time remaining")

    # List command
    list_parser = subparsers.add_parser("list", help="List all stored keys")
    list_parser.add_argument("--verbose", "-v", action="store_true", help="Show digits and interval")

    # Remove command
    remove_parser = subparsers.add_parser("remove", help="Remove an OTP key")
    remove_parser.add_argument("name", help="Name of the key to remove")
    remove_parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation")

    # Rename command
    rename_parser = subparsers.add_parser("rename", help="Rename an OTP key")
    rename_parser.add_argument("name", help="Current name")
    rename_parser.add_argument("new_name", help="New name")

    # Dump command
    dump_parser = subparsers.add_parser("dump", help="Print key parameters as JSON")
    dump_parser.add_argument("name", nargs="?", help="Only dump this key")

    # Backup command
    backup_parser = subparsers.add_parser("backup", help="Create an encrypted backup of all keys")
    backup_parser.add_argument("--output", "-o", help="Write the backup to a file instead of stdout")

    # Restore command
    restore_parser = subparsers.add_parser("restore", help="Restore keys from a backup")
    restore_parser.add_argument("file", nargs="?", help="Backup file (default: stdin)")
    restore_parser.add_argument(
        "--format", "-F", default=BACKUP_FORMAT_NATIVE,
        help=f"Backup format: {BACKUP_FORMAT_NATIVE} or {BACKUP_FORMAT_AEGIS} (default: {BACKUP_FORMAT_NATIVE})"
    )

    return parser


def main(argv: list[str] | None = None):
    setup_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    debug_log(f"Command: {args.command}")

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    commands = {
        "add": cmd_add,
        "generate": cmd_generate,
        "get": cmd_generate,
        "list": cmd_list,
        "remove": cmd_remove,
        "rename": cmd_rename,
        "dump": cmd_dump,
        "backup": cmd_backup,
        "restore": cmd_restore,
    }

    try:
        commands[args.command](args)
    except (OTPError, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
