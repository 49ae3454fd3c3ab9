#!/usr/bin/env python3
"""
Development script to create a user (if needed) and print an access token
Usage: python scripts/issue_token.py <email> [name] [donor|recipient|both] [blood_type]
"""
import sys
import os
import asyncio
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from lifestream.core.security import create_access_token
from lifestream.database import async_session_factory, init_db
from lifestream.models.user import User, UserRole


async def issue_token(email: str, name: str, role: str, blood_type: str | None):
    """Ensure the user exists and print a bearer token for it."""
    await init_db()

    async with async_session_factory() as db:
        try:
            result = await db.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()
            if user is None:
                user = User(email=email, name=name, role=UserRole(role), blood_type=blood_type, is_active=True)
                db.add(user)
                await db.commit()
                print(f"✅ Created user {email} (id {user.id})")
            else:
                print(f"✅ User {email} already exists (id {user.id})")
        except Exception as e:
            print(f"❌ Error preparing user: {e}")
            await db.rollback()
            return

    print(f"🔑 Token: {create_access_token(user.id)}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    args = sys.argv[1:] + [None] * 4
    email = args[0]
    name = args[1] or email.split("@")[0]
    role = args[2] or UserRole.DONOR.value
    asyncio.run(issue_token(email, name, role, args[3]))
