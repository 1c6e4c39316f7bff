"""CLI script to create a super-admin account in the backend DB.
Usage: python scripts/create_admin.py USERNAME PASSWORD [--email EMAIL]
"""
import sys
import argparse
import pathlib
from typing import Optional
# Ensure `backend/` is on sys.path so `elearn` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from elearn.database import engine, create_db_and_tables
from elearn import services
from elearn.errors import ServiceError


def main(username: str, password: str, email: Optional[str] = None) -> int:
    """Create the admin and print the result; return a process exit code."""
    create_db_and_tables()
    with Session(engine) as session:
        try:
            admin = services.AuthService(session).create_admin(username, password, email=email)
        except ServiceError as e:
            print(f'Could not create admin: {e}')
            return 1
        print(f'Created admin {admin.username} (id {admin.id})')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('username')
    parser.add_argument('password')
    parser.add_argument('--email', help='Contact email for the admin')
    args = parser.parse_args()
    sys.exit(main(args.username, args.password, email=args.email))
