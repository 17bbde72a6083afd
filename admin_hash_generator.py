#!/usr/bin/env python3
"""Print the ADMIN_USERNAME / ADMIN_PASSWORD_HASH lines for the .env file."""
import argparse
import getpass
import re
import sys

import bcrypt

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.@-]{3,100}$")
MIN_PASSWORD, MAX_PASSWORD = 8, 128


def hash_password(password: str, rounds: int = 12) -> str:
    if not MIN_PASSWORD <= len(password) <= MAX_PASSWORD:
        raise ValueError(f"password must be {MIN_PASSWORD}-{MAX_PASSWORD} characters")
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def env_lines(username: str, password_hash: str) -> str:
    if not USERNAME_PATTERN.match(username):
        raise ValueError("username must be 3-100 characters of [A-Za-z0-9_.@-]")
    return f"ADMIN_USERNAME={username}\nADMIN_PASSWORD_HASH={password_hash}"


def main(argv=None):
    ap = argparse.ArgumentParser(description="Generate the admin credential lines for .env")
    ap.add_argument("username", help="admin login name")
    ap.add_argument("-r", "--rounds", type=int, default=12, help="bcrypt cost (default: 12)")
    args = ap.parse_args(argv)

    pw1 = getpass.getpass("New admin password: ")
    pw2 = getpass.getpass("Confirm: ")
    if pw1 != pw2:
        print("Error: passwords do not match.", file=sys.stderr)
        return 1
    try:
        print(env_lines(args.username, hash_password(pw1, args.rounds)))
    except ValueError as exc:
        print(f"Error: {exc}.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
