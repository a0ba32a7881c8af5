"""
Command line for managing Cloud Code Assist accounts without the desktop UI.

    python -m codeassist_auth.main login
    python -m codeassist_auth.main accounts
    python -m codeassist_auth.main token [ACCOUNT_ID]
    python -m codeassist_auth.main logout ACCOUNT_ID
    python -m codeassist_auth.main logout-all
"""
import argparse
import asyncio
import json
import logging
import sys
import webbrowser

from codeassist_auth.keys import EncryptionKeyError
from codeassist_auth.session import SessionManager
from codeassist_auth.token_store import AccountCredentialStore


def _open_browser(url: str) -> bool:
    print("Opening your browser to sign in. If it does not open, visit:")
    print(url)
    return webbrowser.open(url)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codeassist-auth", description="Manage Cloud Code Assist accounts.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("login", help="Sign in a new account in the browser")
    sub.add_parser("accounts", help="List signed-in accounts")
    token = sub.add_parser("token", help="Print a valid access token as JSON")
    token.add_argument("account_id", nargs="?", help="Account to use (default: first usable account)")
    logout = sub.add_parser("logout", help="Remove one account")
    logout.add_argument("account_id")
    sub.add_parser("logout-all", help="Remove every account")
    return parser


async def run(args: argparse.Namespace, manager: SessionManager) -> int:
    try:
        if args.command == "login":
            result = await manager.login()
            if not result.success:
                print(f"Login failed: {result.error}", file=sys.stderr)
                return 1
            print(json.dumps(result.account.to_dict(), indent=2))
            return 0

        if args.command == "accounts":
            print(json.dumps([a.to_dict() for a in manager.list_accounts()], indent=2))
            return 0

        if args.command == "token":
            if args.account_id:
                token = await manager.get_valid_access_token(args.account_id)
            else:
                token = await manager.get_any_valid_access_token()
            if token is None:
                print("No usable account; run 'login' first.", file=sys.stderr)
                return 1
            print(json.dumps({"accountId": token.account_id, "token": token.token, "projectId": token.project_id}))
            return 0

        if args.command == "logout":
            if not await manager.logout(args.account_id):
                print(f"No account {args.account_id}", file=sys.stderr)
                return 1
            return 0

        if args.command == "logout-all":
            print(f"Logged out {await manager.logout_all()} account(s)")
            return 0
    finally:
        await manager.shutdown()
    return 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s")
    try:
        store = AccountCredentialStore.open()
    except EncryptionKeyError as e:
        print(f"{e}. Restore the key file or move it aside to start over.", file=sys.stderr)
        return 1
    manager = SessionManager(store, open_browser=_open_browser)
    return asyncio.run(run(args, manager))


if __name__ == "__main__":
    sys.exit(main())
