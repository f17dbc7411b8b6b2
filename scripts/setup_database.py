#!/usr/bin/env python3
# scripts/setup_database.py
"""
Complete database setup script
- Verifies database connection
- Creates all chat tables
- Seeds tenant chat settings, a default Mon-Fri 08:00-18:00 schedule and an attendant
"""
import argparse
import sys
from datetime import time
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from supportchat.core.config import DATABASE_URL, DEFAULT_TENANT_ID
from supportchat.core.config_loader import get_or_create_tenant_settings
from supportchat.db.session import engine, get_db_session, init_db, test_db_connection
from supportchat.services.business_hours import list_business_hours, upsert_business_hours
from supportchat.services.chat_service import ChatService

EXPECTED_TABLES = [
    'chat_visitors',
    'chat_rooms',
    'chat_messages',
    'attendant_profiles',
    'chat_room_reads',
    'chat_business_hours',
    'chat_auto_rules',
    'chat_settings',
]


def setup(tenant_id: str, attendant_user: str, attendant_name: str) -> int:
    print("=" * 70)
    print("🚀 SUPPORT CHAT DATABASE SETUP")
    print("=" * 70)

    # Step 1: Test connection
    print("\n1️⃣  Testing database connection...")
    print(f"   Database: {DATABASE_URL.split('@')[1] if '@' in DATABASE_URL else DATABASE_URL}")

    if not test_db_connection():
        print("   ❌ Database connection failed!")
        print("   Please check:")
        print("   - PostgreSQL is running")
        print("   - Database exists")
        print("   - .env configuration is correct")
        return 1
    print("   ✅ Database connected successfully")

    # Step 2: Create tables
    print("\n2️⃣  Creating tables...")
    try:
        init_db()
    except Exception as e:
        print(f"   ❌ Failed: {e}")
        return 1
    print("   ✅ Tables created")

    # Step 3: Seed tenant
    print(f"\n3️⃣  Seeding tenant '{tenant_id}'...")
    try:
        with get_db_session() as db:
            get_or_create_tenant_settings(db, tenant_id)
            if not list_business_hours(db, tenant_id):
                for day in range(5):
                    upsert_business_hours(db, tenant_id, day, time(8, 0), time(18, 0))
                print("   ✅ Business hours Mon-Fri 08:00-18:00")
            else:
                print("   ⚠️  Business hours already configured, left unchanged")

            attendant = ChatService().get_or_create_attendant(db, tenant_id, attendant_user, attendant_name)
            print(f"   ✅ Attendant '{attendant.display_name}' (id={attendant.id})")
    except Exception as e:
        print(f"   ❌ Error: {e}")
        return 1

    # Step 4: Verify tables
    print("\n4️⃣  Verifying database tables...")
    tables = inspect(engine).get_table_names()
    missing = [t for t in EXPECTED_TABLES if t not in tables]
    if missing:
        print(f"   ⚠️  Missing tables: {', '.join(missing)}")
    else:
        print(f"   ✅ All {len(EXPECTED_TABLES)} tables created")
        for table in EXPECTED_TABLES:
            print(f"      ✓ {table}")

    print("\n" + "=" * 70)
    print("✅ DATABASE SETUP COMPLETE!")
    print("=" * 70)
    print("\n🚀 Start Application:")
    print("   python -m uvicorn supportchat.main:app --reload --host 0.0.0.0 --port 8100")
    print("   Visit: http://localhost:8100/docs")
    print("\n" + "=" * 70)
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create chat tables and seed a tenant")
    parser.add_argument("--tenant", default=DEFAULT_TENANT_ID)
    parser.add_argument("--attendant-user", default="admin")
    parser.add_argument("--attendant-name", default="Admin")
    args = parser.parse_args()
    sys.exit(setup(args.tenant, args.attendant_user, args.attendant_name))
