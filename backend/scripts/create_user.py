"""CLI script to create a dashboard user (for example the first admin).
Usage: python scripts/create_user.py EMAIL PASSWORD [--role admin] [--full-name NAME]
"""
import sys
import argparse
import pathlib
from typing import Optional
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from commission_tracker.database import create_db_and_tables, engine
from commission_tracker import services


def main(email: str, password: str, role: str = 'viewer', full_name: Optional[str] = None,
         username: Optional[str] = None) -> int:
    create_db_and_tables()
    with Session(engine) as session:
        services.RoleService(session).ensure_system_roles()
        try:
            user = services.UserService(session).create(
                username=username or email.split('@')[0],
                full_name=full_name or email.split('@')[0],
                email=email,
                password=password,
                role=role,
            )
        except services.ServiceError as e:
            print(f'Error: {e.message}')
            return 1
        print(f'Created user {user.email} with role {user.role}')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('email')
    parser.add_argument('password')
    parser.add_argument('--role', default='viewer', help='Role name (admin, viewer, dataentry or a custom role)')
    parser.add_argument('--full-name')
    parser.add_argument('--username')
    args = parser.parse_args()
    sys.exit(main(args.email, args.password, role=args.role, full_name=args.full_name, username=args.username))
