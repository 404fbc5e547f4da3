"""
Reconciliation Engine - the single place where profile subscription state changes.

``transition`` is a pure function from the current profile state and one billing
change (a provider event or a locally confirmed command) to the next state.
Every change sets absolute target values rather than deltas, so applying the
same change twice yields the same state as applying it once.

``ReconciliationEngine`` wraps it in an atomic read-modify-write per profile.
Provider events carry no sequence numbers; when a late ``CheckoutCompleted``
arrives after ``SubscriptionCanceled`` for the same subscription, the last
arrival wins.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from crud.profile import ProfileRepository
from models.billing_events import (
    BillingChange,
    BillingEvent,
    CancellationScheduled,
    CheckoutCompleted,
    InvoicePaymentFailed,
    LocalCommand,
    PlanChanged,
    SubscriptionCanceled,
    Unhandled,
)
from models.subscription import ProfileState, SubscriptionTier
from services.errors import (
    ConcurrentUpdateError,
    InvariantViolation,
    ProfileNotFound,
    ReconciliationError,
)

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"
    UNHANDLED = "unhandled"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    event_id: Optional[str] = None
    profile: Optional[ProfileState] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.FAILED


def transition(state: ProfileState, change: BillingChange) -> ProfileState:
    if isinstance(change, (CheckoutCompleted, PlanChanged)):
        return replace(
            state,
            subscription_tier=change.tier,
            external_subscription_id=change.external_subscription_id,
            subscription_active=True,
        )
    if isinstance(change, CancellationScheduled):
        # Only the subscription that was cancelled; a newer one stays active
        if change.external_subscription_id != state.external_subscription_id:
            return state
        return replace(state, subscription_active=False)
    if isinstance(change, InvoicePaymentFailed):
        # Tier and subscription id stay so a later success can recover
        return replace(state, subscription_active=False)
    if isinstance(change, SubscriptionCanceled):
        return replace(
            state,
            subscription_tier=SubscriptionTier.NONE,
            external_subscription_id=None,
            subscription_active=False,
        )
    if isinstance(change, Unhandled):
        return state
    raise TypeError(f"Unknown billing change: {change!r}")


def check_invariant(state: ProfileState) -> None:
    """An active subscription must name both its tier and its provider id."""
    if state.subscription_active and (
        state.subscription_tier is SubscriptionTier.NONE or not state.external_subscription_id
    ):
        raise InvariantViolation(
            f"Profile {state.user_id} would be active with tier={state.subscription_tier.value!r} "
            f"subscription={state.external_subscription_id!r}"
        )


class ReconciliationEngine:
    """
    Applies billing changes to stored profiles.

    Each apply runs in its own short transaction: the row is read with
    ``SELECT ... FOR UPDATE`` and written back under the ORM version counter.
    A concurrent writer makes the flush fail with ``StaleDataError`` (or
    ``IntegrityError`` for a racing insert); the whole read-modify-write is
    then retried from a fresh read.
    """

    def __init__(self, session_factory: async_sessionmaker, max_attempts: int = 3):
        """
        Initialize the engine.

        Args:
            session_factory: Factory producing AsyncSession objects
            max_attempts: Read-modify-write attempts before ConcurrentUpdateError
        """
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts)

    async def handle_event(self, event: BillingEvent) -> ReconcileResult:
        """
        Apply one provider event.

        Never raises for processing failures: the webhook must be acknowledged
        regardless, so failures come back as ``Outcome.FAILED`` after being logged.
        """
        if isinstance(event, Unhandled):
            logger.info(f"Unhandled billing event {event.event_type} ({event.event_id}); acknowledged")
            return ReconcileResult(Outcome.UNHANDLED, event.event_id, detail=event.event_type)

        try:
            if isinstance(event, CheckoutCompleted):
                applied = await self._apply(event, user_id=event.user_id, create_email=event.email or "")
            elif isinstance(event, (InvoicePaymentFailed, SubscriptionCanceled)):
                applied = await self._apply(event, subscription_id=event.external_subscription_id)
            else:
                raise TypeError(f"Unknown billing event: {event!r}")
        except (ReconciliationError, SQLAlchemyError) as exc:
            logger.error(f"Failed to reconcile {type(event).__name__} {event.event_id}: {exc}", exc_info=True)
            return ReconcileResult(Outcome.FAILED, event.event_id, detail=str(exc))

        if applied is None:
            logger.info(
                f"No profile for subscription {event.external_subscription_id}; "
                f"{type(event).__name__} {event.event_id} dropped"
            )
            return ReconcileResult(Outcome.IGNORED, event.event_id)

        state, changed = applied
        outcome = Outcome.APPLIED if changed else Outcome.NOOP
        logger.info(
            f"{type(event).__name__} {event.event_id} -> {outcome.value} for user {state.user_id} "
            f"(tier={state.subscription_tier.value}, active={state.subscription_active})"
        )
        return ReconcileResult(outcome, event.event_id, profile=state)

    async def apply_command(self, user_id: str, command: LocalCommand) -> ProfileState:
        """
        Apply a command the gateway has already confirmed.

        Raises:
            ProfileNotFound: no profile for ``user_id``
            InvariantViolation: the command would break the profile invariant
            ConcurrentUpdateError: retries exhausted
        """
        applied = await self._apply(command, user_id=user_id)
        if applied is None:
            raise ProfileNotFound(f"No profile for user {user_id}")
        state, changed = applied
        logger.info(
            f"{type(command).__name__} for user {user_id} -> {'applied' if changed else 'noop'} "
            f"(tier={state.subscription_tier.value}, active={state.subscription_active})"
        )
        return state

    async def ensure_profile(self, user_id: str, email: str) -> Tuple[ProfileState, bool]:
        """
        Create an empty profile unless one already exists.

        Returns:
            Tuple of (profile state, created flag)
        """
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                repo = ProfileRepository(session)
                record = await repo.get_by_user_id(user_id)
                if record is not None:
                    return ProfileState.from_record(record), False
                try:
                    record = await repo.create_profile(user_id, email)
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.warning(f"Profile for user {user_id} created concurrently (attempt {attempt})")
                    continue
                logger.info(f"Created profile for user {user_id}")
                return ProfileState.from_record(record), True
        raise ConcurrentUpdateError(f"Could not create profile for user {user_id}")

    async def _apply(
        self,
        change: BillingChange,
        *,
        user_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        create_email: Optional[str] = None,
    ) -> Optional[Tuple[ProfileState, bool]]:
        """
        Atomically apply ``change`` to the profile found by user id or subscription id.

        When ``create_email`` is given and no profile exists for ``user_id``, one is
        created in the same transaction.

        Returns:
            None when no profile matches, else (new state, whether anything was written)
        """
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                try:
                    return await self._apply_once(session, change, user_id, subscription_id, create_email)
                except (StaleDataError, IntegrityError) as exc:
                    await session.rollback()
                    logger.warning(
                        f"Concurrent update while applying {type(change).__name__} "
                        f"(attempt {attempt}/{self.max_attempts}): {exc}"
                    )
        raise ConcurrentUpdateError(
            f"Gave up applying {type(change).__name__} after {self.max_attempts} attempts"
        )

    async def _apply_once(
        self,
        session: AsyncSession,
        change: BillingChange,
        user_id: Optional[str],
        subscription_id: Optional[str],
        create_email: Optional[str],
    ) -> Optional[Tuple[ProfileState, bool]]:
        repo = ProfileRepository(session)
        if user_id is not None:
            record = await repo.get_by_user_id(user_id, for_update=True)
        else:
            record = await repo.get_by_subscription_id(subscription_id, for_update=True)

        created = False
        if record is None:
            if user_id is None or create_email is None:
                return None
            record = await repo.create_profile(user_id, create_email)
            created = True

        current = ProfileState.from_record(record)
        after = transition(current, change)
        check_invariant(after)

        if after == current and not created:
            await session.rollback()
            return current, False

        await repo.write_state(record, after)
        await session.commit()
        return after, True
