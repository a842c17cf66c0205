import argparse
import getpass
import logging
import sys
from pathlib import Path

import anyio

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identity_service.config import load_settings
from identity_service.database import RecordStore
from identity_service.directory import DirectoryGateway
from identity_service.errors import IdentityError
from identity_service.hashing import CredentialHasher
from identity_service.registration import IdentityRegistrar


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision a user in the database and the directory")
    parser.add_argument("username", help="Login name, also used as the directory uid")
    parser.add_argument("email", help="Unique email address stored in the directory")
    parser.add_argument("--first-name", required=True, help="Given name")
    parser.add_argument("--last-name", required=True, help="Surname")
    parser.add_argument(
        "--display-name",
        default=None,
        help="Name shown to other users (defaults to first and last name)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (defaults to IDENTITY_CONFIG)",
    )
    return parser.parse_args()


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < 6:
            print("Password must be at least 6 characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    args = parse_args()
    password = prompt_for_password()

    settings = load_settings(Path(args.config).expanduser() if args.config else None)
    store = RecordStore(settings.database)
    store.initialize()
    registrar = IdentityRegistrar(
        store,
        DirectoryGateway(settings.directory),
        CredentialHasher(settings.hashing),
    )

    display_name = args.display_name or f"{args.first_name} {args.last_name}".strip()

    async def register():
        return await registrar.register(
            first_name=args.first_name,
            last_name=args.last_name,
            display_name=display_name,
            username=args.username,
            email=args.email,
            password=password,
        )

    try:
        user = anyio.run(register)
    except IdentityError as exc:
        for message in exc.messages():
            print(f"Error: {message}", file=sys.stderr)
        return 1

    print(f"Created user #{user.user_id}: {user.identifier} <{args.email.strip().lower()}>")
    print(f"Linked to directory group {settings.directory.default_group_cn}.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
