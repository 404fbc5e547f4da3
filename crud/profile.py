"""
ProfileRepository for database operations on the Profile model
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from database_models import Profile
from models.subscription import ProfileState


class ProfileRepository:
    """
    Repository class for Profile database operations.
    Encapsulates all database logic for the Profile model.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_by_user_id(self, user_id: str, for_update: bool = False) -> Optional[Profile]:
        """
        Retrieve a profile by its primary key.

        Args:
            user_id: Stable identity supplied by the identity provider
            for_update: Lock the row until the surrounding transaction ends

        Returns:
            Profile object if found, None otherwise
        """
        stmt = select(Profile).where(Profile.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_subscription_id(self, subscription_id: str, for_update: bool = False) -> Optional[Profile]:
        """
        Retrieve a profile by the provider's subscription id (secondary key).

        Args:
            subscription_id: Provider subscription identifier
            for_update: Lock the row until the surrounding transaction ends

        Returns:
            Profile object if found, None otherwise
        """
        stmt = select(Profile).where(Profile.stripe_subscription_id == subscription_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_profile(self, user_id: str, email: str) -> Profile:
        """
        Create a profile with no subscription.

        Args:
            user_id: Stable identity supplied by the identity provider
            email: Contact address

        Returns:
            Created Profile object (flushed, not committed)
        """
        profile = Profile(
            user_id=user_id,
            email=email or "",
            subscription_tier=None,
            stripe_subscription_id=None,
            subscription_active=False,
        )
        self.db.add(profile)
        await self.db.flush()
        return profile

    async def write_state(self, profile: Profile, state: ProfileState) -> Profile:
        """
        Copy a computed state onto a loaded profile and flush it.

        The flush is guarded by the version counter, so a row changed by another
        transaction since it was loaded raises ``StaleDataError``.
        """
        profile.email = state.email
        profile.subscription_tier = state.subscription_tier.to_stored()
        profile.stripe_subscription_id = state.external_subscription_id
        profile.subscription_active = state.subscription_active
        await self.db.flush()
        return profile
