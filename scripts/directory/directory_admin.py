#!/usr/bin/env python3
"""
Directory administration from the command line.

Thin wrapper over DirectoryFacade for the operations help desk staff run
most often. Backend and credentials come from the AD_* environment
variables (or a .env file); see DirectoryConfig for the full list.

Usage:
    directory-admin check
    directory-admin search-users jdoe --status enabled --take 20
    directory-admin details jdoe
    directory-admin unlock jdoe
    directory-admin reset-password jdoe --force-change --unlock
    directory-admin add-member Helpdesk jdoe
"""

import argparse
import functools
import getpass
import json
import logging
import os
import sys

from directory_access import DirectoryError, DirectoryFacade
from directory_access.engines.resolution import looks_like_dn


def handle_keyboard_interrupt(exit_message="Interrupted by user"):
    """Decorator to handle KeyboardInterrupt and exit gracefully."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except KeyboardInterrupt:
                logging.info(f"\n{exit_message}")
                sys.exit(0)
        return wrapper
    return decorator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Active Directory administration.')
    parser.add_argument('--log', nargs='?', const='directory_admin.log',
                        help='Also log to a file (defaults to directory_admin.log in the current directory)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('check', help='Test the connection and show the active configuration')

    search = commands.add_parser('search-users', help='Search user accounts')
    search.add_argument('text', nargs='?', help='Free text matched against name, login and mail')
    search.add_argument('--scope', help='Container DN to search in')
    search.add_argument('--subtree', action='store_true', help='Include sub-containers of --scope')
    search.add_argument('--status', default='any', choices=['any', 'enabled', 'disabled', 'locked'])
    search.add_argument('--sort', default='displayName',
                        choices=['displayName', 'samAccountName', 'email', 'lastLogonAt'])
    search.add_argument('--desc', action='store_true', help='Sort descending')
    search.add_argument('--take', type=int, help='Page size')
    search.add_argument('--skip', type=int, default=0, help='Records to skip')

    details = commands.add_parser('details', help='Show one user (login, UPN or DN) or any object by DN')
    details.add_argument('identity')

    members = commands.add_parser('members', help='List group members')
    members.add_argument('group')
    members.add_argument('--take', type=int)
    members.add_argument('--skip', type=int, default=0)

    ous = commands.add_parser('ous', help='List organizational units')
    ous.add_argument('parent', nargs='?', help='Parent DN (defaults to the search base)')
    ous.add_argument('--recursive', action='store_true')

    for name, help_text in (('enable', 'Enable an account'), ('disable', 'Disable an account'),
                            ('unlock', 'Unlock an account')):
        command = commands.add_parser(name, help=help_text)
        command.add_argument('identity')

    reset = commands.add_parser('reset-password', help='Reset a password (prompted, never echoed)')
    reset.add_argument('identity')
    reset.add_argument('--force-change', action='store_true', help='Require a change at next logon')
    reset.add_argument('--unlock', action='store_true', help='Unlock the account if it is locked')

    for name in ('add-member', 'remove-member'):
        command = commands.add_parser(name, help=f"{name.split('-')[0].title()} a group member")
        command.add_argument('group')
        command.add_argument('member')

    move = commands.add_parser('move', help='Move an object (DN) or user (login) to a container')
    move.add_argument('identity')
    move.add_argument('target', help='Target container DN')

    return parser


def configure_logging(log_path=None, verbose=False):
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_path:
        log_dir = os.path.dirname(log_path)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def run_command(directory: DirectoryFacade, args) -> dict:
    if args.command == 'check':
        return {
            'available': directory.is_directory_available(),
            'backend': directory.get_current_backend(),
            'config': directory.get_config_info(),
        }
    if args.command == 'search-users':
        return directory.search_users(
            free_text=args.text, scope_dn=args.scope, status=args.status, take=args.take,
            skip=args.skip, sort_by=args.sort, descending=args.desc, include_descendants=args.subtree,
        )
    if args.command == 'details':
        if looks_like_dn(args.identity):
            return directory.get_object_details(args.identity)
        return directory.get_user_details(args.identity)
    if args.command == 'members':
        return directory.get_group_members(args.group, take=args.take, skip=args.skip)
    if args.command == 'ous':
        return directory.list_organizational_units(args.parent, recursive=args.recursive)
    if args.command in ('enable', 'disable'):
        return directory.set_account_enabled(args.identity, args.command == 'enable')
    if args.command == 'unlock':
        return directory.unlock_account(args.identity)
    if args.command == 'reset-password':
        password = getpass.getpass('New password: ')
        if password != getpass.getpass('Confirm password: '):
            raise SystemExit('Passwords do not match')
        return directory.reset_password(args.identity, password, args.force_change, args.unlock)
    if args.command == 'add-member':
        return directory.add_member(args.group, args.member)
    if args.command == 'remove-member':
        return directory.remove_member(args.group, args.member)
    if args.command == 'move':
        if looks_like_dn(args.identity):
            return directory.move_object(args.identity, args.target)
        return directory.move_user_by_login(args.identity, args.target)
    raise ValueError(f"Unknown command: {args.command}")


@handle_keyboard_interrupt("Interrupted by user")
def main(argv=None):
    """Main function for the directory administration script."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log, args.verbose)

    try:
        with DirectoryFacade() as directory:
            result = run_command(directory, args)
    except (DirectoryError, ValueError) as e:
        logging.error(f"{args.command} failed: {e}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))
    if isinstance(result, dict) and result.get('success') is False:
        sys.exit(1)


if __name__ == "__main__":
    main()
