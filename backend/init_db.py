#!/usr/bin/env python3
"""
Database initialization script for the mail client backend

Usage: python init_db.py [admin_email admin_username admin_password]
"""

import os
import sys

# Add the current directory and the project root to the Python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from config.settings import settings
from app.exceptions import MailClientError
from app.models.database import SessionLocal, create_tables
from app.models.user import User
from app.services.auth_service import register_user

def init_database(admin_email=None, admin_username=None, admin_password=None):
    """Create all tables and, when credentials are given, the first (admin) account"""
    print(f"Initializing database at {settings.DATABASE_URL.rsplit('@', 1)[-1]}...")
    create_tables()
    print("✅ Database tables created successfully")

    if not admin_email:
        print("✅ Database initialization complete!")
        return

    db = SessionLocal()
    try:
        existing_user = db.query(User).filter(User.email == admin_email.lower()).first()
        if existing_user:
            print(f"✅ User already exists: {existing_user.email}")
        else:
            user = register_user(db, email=admin_email, username=admin_username, password=admin_password)
            print(f"✅ User created: {user.email} (admin: {user.is_admin})")
    except MailClientError as e:
        db.rollback()
        print(f"❌ Error creating user: {e.message}")
        raise
    finally:
        db.close()

    print("✅ Database initialization complete!")

if __name__ == "__main__":
    if len(sys.argv) not in (1, 4):
        print(__doc__)
        sys.exit(2)
    init_database(*sys.argv[1:])
