"""CLI tool for admin operations.

Usage:
    python -m lp_hedger.cli create-user
    python -m lp_hedger.cli add-credential <username>
    python -m lp_hedger.cli add-wallet <username> <address> [network]
    python -m lp_hedger.cli rebalance [hedge_id]
    python -m lp_hedger.cli reset-breaker <user_id>
"""

import asyncio
import getpass
import sys

from eth_account import Account
from pydantic import ValidationError
from sqlmodel import Session, select

from lp_hedger.database import engine, create_db_and_tables
from lp_hedger.models.credential import Credential
from lp_hedger.models.user import User
from lp_hedger.models.wallet import Wallet
from lp_hedger.schemas.credential import CredentialCreate, WalletCreate
from lp_hedger.services.encryption import encrypt
from lp_hedger.utils.logging import setup_logging


def _get_user(session: Session, username: str) -> User:
    user = session.exec(select(User).where(User.username == username)).first()
    if not user:
        print(f"User '{username}' not found.")
        sys.exit(1)
    return user


def create_user():
    """Create a user. New users start in paper-trading mode on testnet."""
    create_db_and_tables()

    username = input("Username: ").strip()
    if not username:
        print("Username cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        existing = session.exec(select(User).where(User.username == username)).first()
        if existing:
            print(f"User '{username}' already exists.")
            sys.exit(1)

        user = User(username=username)
        session.add(user)
        session.commit()
        session.refresh(user)
        print(f"\nUser '{username}' created with id {user.id} (paper trading, testnet).")


def add_credential(username: str):
    """Store an encrypted Hyperliquid API wallet key; it becomes the active one."""
    create_db_and_tables()

    private_key = getpass.getpass("Private key: ")
    address = input("Main account address (blank = key's own address): ").strip() or None
    try:
        data = CredentialCreate(private_key=private_key, account_address=address)
    except ValidationError as e:
        print(f"Invalid credential: {e}")
        sys.exit(1)

    account_address = data.account_address or Account.from_key(data.private_key).address

    with Session(engine) as session:
        user = _get_user(session, username)
        for cred in session.exec(select(Credential).where(Credential.user_id == user.id)).all():
            cred.is_active = False
            session.add(cred)

        session.add(Credential(
            user_id=user.id,
            name=data.name,
            account_address=account_address,
            private_key_encrypted=encrypt(data.private_key),
        ))
        session.commit()

    print(f"Credential for {account_address} stored for '{username}'.")


def add_wallet(username: str, address: str, network: str = "arbitrum"):
    create_db_and_tables()

    try:
        data = WalletCreate(address=address, network=network)
    except ValidationError as e:
        print(f"Invalid wallet: {e}")
        sys.exit(1)

    with Session(engine) as session:
        user = _get_user(session, username)
        session.add(Wallet(user_id=user.id, address=data.address, network=data.network))
        session.commit()

    print(f"Wallet {data.address} ({data.network}) added for '{username}'.")


def rebalance(hedge_id: int | None = None):
    from lp_hedger.engine.hedge_sync import run_hedge_sync

    create_db_and_tables()
    results = asyncio.run(run_hedge_sync(hedge_id))
    for result in results:
        print(result.to_dict())


def reset_breaker(user_id: int):
    from lp_hedger.services.circuit_breaker import CircuitBreaker

    asyncio.run(CircuitBreaker.for_user(user_id).reset())
    print(f"Circuit breaker reset for user {user_id}.")


def main():
    setup_logging()
    if len(sys.argv) < 2:
        print("Usage: python -m lp_hedger.cli <command>")
        print("Commands: create-user, add-credential, add-wallet, rebalance, reset-breaker")
        sys.exit(1)

    command, args = sys.argv[1], sys.argv[2:]
    if command == "create-user":
        create_user()
    elif command == "add-credential" and len(args) == 1:
        add_credential(args[0])
    elif command == "add-wallet" and len(args) in (2, 3):
        add_wallet(*args)
    elif command == "rebalance" and len(args) <= 1:
        rebalance(int(args[0]) if args else None)
    elif command == "reset-breaker" and len(args) == 1:
        reset_breaker(int(args[0]))
    else:
        print(f"Unknown command or wrong arguments: {' '.join(sys.argv[1:])}")
        sys.exit(1)


if __name__ == "__main__":
    main()
