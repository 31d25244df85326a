from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.user import User


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    """Load the session user, creating a placeholder row on first contact."""
    user = await db.get(User, user_id)
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user
