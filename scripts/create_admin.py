"""One-time bootstrap script to create an Admin user and print a bearer token.

Usage:
  python scripts/create_admin.py --username admin --email admin@example.com --full-name "Site Admin"
Or provide via env: ADMIN_USERNAME, ADMIN_EMAIL

Passwords and login belong to the external auth service; the token printed
here is for local development against the collection API.
"""
import os
import argparse

from collection_core.app.db import SessionLocal, create_db_and_tables
from collection_core.app import models
from collection_core.app.security import create_access_token, ROLE_PERMISSIONS


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('--username')
    parser.add_argument('--email')
    parser.add_argument('--full-name', default='Admin')
    parser.add_argument('--role', default='Admin', choices=sorted(ROLE_PERMISSIONS))
    args = parser.parse_args()

    username = args.username or os.getenv('ADMIN_USERNAME')
    email = args.email or os.getenv('ADMIN_EMAIL')
    if not username:
        username = input('Username: ').strip()
    if not email:
        email = input('Email: ').strip()

    create_db_and_tables()
    db = SessionLocal()
    try:
        user = db.query(models.User).filter(models.User.username == username).first()
        if user:
            print('User already exists:', username)
        else:
            user = models.User(full_name=args.full_name, email=email, username=username, role=args.role)
            db.add(user)
            db.commit()
            print(f'Created {args.role} user:', username)
        print('Bearer token:', create_access_token({"sub": user.username, "role": user.role}))
    finally:
        db.close()


if __name__ == '__main__':
    main()
