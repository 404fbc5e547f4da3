from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from database import Base


class Profile(Base):
    """
    Subscription profile, one row per end user.

    ``subscription_tier`` is NULL when the user has no plan. ``version`` is the
    optimistic-concurrency counter; every UPDATE is guarded by it.
    """
    __tablename__ = "profiles"

    user_id = Column(String(255), primary_key=True)
    email = Column(String(320), nullable=False, default="")
    subscription_tier = Column(String(16), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    subscription_active = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"<Profile user_id={self.user_id!r} tier={self.subscription_tier!r} "
            f"subscription={self.stripe_subscription_id!r} active={self.subscription_active}>"
        )
