"""Typed persistence helpers over the SQLAlchemy models.

Every store takes a session factory (``AsyncSessionLocal`` by default) so tests
can point it at an isolated SQLite database.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from models.database import (
    AsyncSessionLocal,
    LinkedAccount,
    NotificationLog,
    NotificationPreference,
    OAuthState,
    Opportunity as OpportunityRow,
    User,
    UserTrade,
    UserUsage,
)
from models.opportunity import (
    ALLOWED_STATUS_TRANSITIONS,
    ExpectedValueUnit,
    Opportunity,
    OpportunityCategory,
    OpportunityFilter,
    OpportunityStatus,
)
from services.platforms.types import PlatformCredentials, PlatformTrade
from utils.logger import get_logger
from utils.secrets import decrypt_secret, encrypt_secret
from utils.utcnow import to_naive_utc, utcnow

logger = get_logger("stores")


def _insert_for(session):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


# ==================== OPPORTUNITIES ====================


class OpportunityNotFound(LookupError):
    pass


class InvalidStatusTransition(ValueError):
    def __init__(self, current: OpportunityStatus, requested: OpportunityStatus):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change status from '{current.value}' to '{requested.value}'")


def _opportunity_from_row(row: OpportunityRow) -> Opportunity:
    return Opportunity(
        id=row.id,
        category=OpportunityCategory(row.category),
        subcategory=row.subcategory,
        title=row.title,
        description=row.description,
        confidence_score=row.confidence_score or 0,
        expected_value=row.expected_value or 0.0,
        expected_value_unit=ExpectedValueUnit(row.expected_value_unit or "currency"),
        data=dict(row.data or {}),
        expires_at=row.expires_at,
        status=OpportunityStatus(row.status),
        user_id=row.user_id,
        created_at=row.created_at,
    )


class OpportunityStore:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    async def insert_many(self, opportunities: list[Opportunity]) -> int:
        if not opportunities:
            return 0
        async with self._session_factory() as session:
            session.add_all(
                OpportunityRow(
                    id=opp.id,
                    category=opp.category.value,
                    subcategory=opp.subcategory,
                    title=opp.title,
                    description=opp.description,
                    confidence_score=opp.confidence_score,
                    expected_value=opp.expected_value,
                    expected_value_unit=opp.expected_value_unit.value,
                    data=opp.data,
                    expires_at=to_naive_utc(opp.expires_at) if opp.expires_at else None,
                    status=opp.status.value,
                    user_id=opp.user_id,
                    created_at=to_naive_utc(opp.created_at),
                )
                for opp in opportunities
            )
            await session.commit()
        return len(opportunities)

    async def list_opportunities(self, filters: OpportunityFilter) -> list[Opportunity]:
        """Global rows plus the user's own, newest first."""
        now = utcnow()
        query = select(OpportunityRow)
        if filters.user_id:
            query = query.where(or_(OpportunityRow.user_id.is_(None), OpportunityRow.user_id == filters.user_id))
        else:
            query = query.where(OpportunityRow.user_id.is_(None))
        if filters.category:
            query = query.where(OpportunityRow.category == filters.category.value)

        if filters.status == OpportunityStatus.EXPIRED:
            query = query.where(
                and_(OpportunityRow.status == "open", OpportunityRow.expires_at < now)
            )
        elif filters.status == OpportunityStatus.OPEN:
            query = query.where(
                and_(
                    OpportunityRow.status == "open",
                    or_(OpportunityRow.expires_at.is_(None), OpportunityRow.expires_at >= now),
                )
            )
        elif filters.status is not None:
            query = query.where(OpportunityRow.status == filters.status.value)

        query = query.order_by(OpportunityRow.created_at.desc()).offset(filters.offset).limit(filters.limit)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_opportunity_from_row(row) for row in rows]

    async def get(self, opportunity_id: str) -> Optional[Opportunity]:
        async with self._session_factory() as session:
            row = await session.get(OpportunityRow, opportunity_id)
        return _opportunity_from_row(row) if row is not None else None

    async def update_status(self, opportunity_id: str, status: OpportunityStatus) -> Opportunity:
        async with self._session_factory() as session:
            row = await session.get(OpportunityRow, opportunity_id)
            if row is None:
                raise OpportunityNotFound(opportunity_id)
            current = _opportunity_from_row(row).effective_status()
            if status not in ALLOWED_STATUS_TRANSITIONS.get(current, set()):
                raise InvalidStatusTransition(current, status)
            row.status = status.value
            row.updated_at = utcnow()
            await session.commit()
            return _opportunity_from_row(row)


# ==================== USAGE QUOTAS ====================


@dataclass
class QuotaDecision:
    allowed: bool
    used: int
    limit: Optional[int]


class UsageStore:
    """Per-user, per-UTC-day scan counter with an atomic check-and-increment."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def today() -> str:
        return utcnow().strftime("%Y-%m-%d")

    async def get_usage(self, user_id: str, day: Optional[str] = None) -> int:
        async with self._session_factory() as session:
            row = await session.get(UserUsage, {"user_id": user_id, "date": day or self.today()})
        return row.scans_used if row is not None else 0

    async def try_consume(self, user_id: str, limit: int, day: Optional[str] = None) -> QuotaDecision:
        """Increment today's counter only while it is below ``limit``.

        The conditional upsert runs as one statement, so concurrent requests
        from the same user can never push usage past the limit.
        """
        day = day or self.today()
        if limit <= 0:
            return QuotaDecision(allowed=False, used=await self.get_usage(user_id, day), limit=limit)

        async with self._session_factory() as session:
            insert = _insert_for(session)
            stmt = insert(UserUsage).values(user_id=user_id, date=day, scans_used=1, updated_at=utcnow())
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserUsage.user_id, UserUsage.date],
                set_={"scans_used": UserUsage.scans_used + 1, "updated_at": utcnow()},
                where=UserUsage.scans_used < limit,
            ).returning(UserUsage.scans_used)
            used = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

        if used is None:
            return QuotaDecision(allowed=False, used=await self.get_usage(user_id, day), limit=limit)
        return QuotaDecision(allowed=True, used=used, limit=limit)


# ==================== LINKED ACCOUNTS ====================


class LinkedAccountStore:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def credentials(account: LinkedAccount) -> PlatformCredentials:
        return PlatformCredentials(
            access_token=decrypt_secret(account.access_token),
            refresh_token=decrypt_secret(account.refresh_token),
            expires_at=account.expires_at,
            api_key=decrypt_secret(account.api_key),
            api_secret=decrypt_secret(account.api_secret),
        )

    @staticmethod
    def to_public_dict(account: LinkedAccount) -> dict:
        return {
            "id": account.id,
            "platform": account.platform,
            "platform_user_id": account.platform_user_id,
            "is_active": bool(account.is_active),
            "last_sync_at": account.last_sync_at.isoformat() if account.last_sync_at else None,
            "sync_error": account.sync_error,
            "created_at": account.created_at.isoformat() if account.created_at else None,
        }

    async def get(self, user_id: str, platform: str) -> Optional[LinkedAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LinkedAccount).where(LinkedAccount.user_id == user_id, LinkedAccount.platform == platform)
            )
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[LinkedAccount]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LinkedAccount).where(LinkedAccount.user_id == user_id).order_by(LinkedAccount.created_at)
            )
            return list(result.scalars().all())

    async def list_active(self) -> list[LinkedAccount]:
        async with self._session_factory() as session:
            result = await session.execute(select(LinkedAccount).where(LinkedAccount.is_active.is_(True)))
            return list(result.scalars().all())

    async def upsert(
        self,
        user_id: str,
        platform: str,
        credentials: PlatformCredentials,
        platform_user_id: Optional[str] = None,
    ) -> LinkedAccount:
        """Create or replace the (user, platform) link; secrets are encrypted at rest."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(LinkedAccount).where(LinkedAccount.user_id == user_id, LinkedAccount.platform == platform)
            )
            account = result.scalar_one_or_none()
            if account is None:
                account = LinkedAccount(id=str(uuid.uuid4()), user_id=user_id, platform=platform)
                session.add(account)
            account.platform_user_id = platform_user_id
            account.access_token = encrypt_secret(credentials.access_token)
            account.refresh_token = encrypt_secret(credentials.refresh_token)
            account.expires_at = to_naive_utc(credentials.expires_at) if credentials.expires_at else None
            account.api_key = encrypt_secret(credentials.api_key)
            account.api_secret = encrypt_secret(credentials.api_secret)
            account.is_active = True
            account.sync_error = None
            account.updated_at = utcnow()
            await session.commit()
            return account

    async def update_tokens(
        self, account_id: str, access_token: str, refresh_token: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(LinkedAccount)
                .where(LinkedAccount.id == account_id)
                .values(
                    access_token=encrypt_secret(access_token),
                    refresh_token=encrypt_secret(refresh_token),
                    expires_at=to_naive_utc(expires_at) if expires_at else None,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def record_sync(self, account_id: str, error: Optional[str] = None, deactivate: bool = False) -> None:
        """Stamp a sync attempt; success clears the previous error."""
        values = {"last_sync_at": utcnow(), "sync_error": error, "updated_at": utcnow()}
        if deactivate:
            values["is_active"] = False
        async with self._session_factory() as session:
            await session.execute(update(LinkedAccount).where(LinkedAccount.id == account_id).values(**values))
            await session.commit()

    async def delete(self, user_id: str, platform: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(LinkedAccount).where(LinkedAccount.user_id == user_id, LinkedAccount.platform == platform)
            )
            await session.commit()
        return (result.rowcount or 0) > 0

    async def create_oauth_state(self, user_id: str, platform: str, ttl_minutes: int) -> str:
        state = uuid.uuid4().hex
        now = utcnow()
        async with self._session_factory() as session:
            session.add(
                OAuthState(
                    state=state,
                    user_id=user_id,
                    platform=platform,
                    created_at=now,
                    expires_at=now + timedelta(minutes=ttl_minutes),
                )
            )
            await session.commit()
        return state

    async def consume_oauth_state(self, state: str, platform: str) -> Optional[str]:
        """Delete the pending state and return its user id; None if unknown, expired or for another platform."""
        async with self._session_factory() as session:
            row = await session.get(OAuthState, state)
            if row is None:
                return None
            await session.delete(row)
            await session.commit()
        if row.platform != platform or row.expires_at < utcnow():
            return None
        return row.user_id


# ==================== TRADES ====================


class TradeStore:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def external_id(platform: str, trade: PlatformTrade) -> str:
        return f"{platform}-{trade.id}"

    async def import_trades(self, user_id: str, platform: str, trades: list[PlatformTrade]) -> int:
        """Insert settled trades not yet imported; returns the number of new rows."""
        if not trades:
            return 0
        external_ids = [self.external_id(platform, t) for t in trades]
        async with self._session_factory() as session:
            existing = set(
                (
                    await session.execute(
                        select(UserTrade.external_id).where(
                            UserTrade.user_id == user_id, UserTrade.external_id.in_(external_ids)
                        )
                    )
                ).scalars()
            )
            imported = 0
            for trade, external_id in zip(trades, external_ids):
                if external_id in existing:
                    continue
                existing.add(external_id)
                entry = trade.quantity * trade.price
                session.add(
                    UserTrade(
                        id=str(uuid.uuid4()),
                        user_id=user_id,
                        external_id=external_id,
                        category="arbitrage" if platform == "betfair" else platform,
                        title=trade.symbol,
                        entry_amount=entry,
                        exit_amount=entry - trade.fee,
                        pnl=-trade.fee,
                        status="closed",
                        notes=f"Imported from {platform} ({trade.side})",
                        opened_at=to_naive_utc(trade.executed_at),
                        closed_at=to_naive_utc(trade.executed_at),
                    )
                )
                imported += 1
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent sync imported the same trades first.
                await session.rollback()
                logger.warning("Trade import raced with another sync", user_id=user_id, platform=platform)
                return 0
        return imported


# ==================== NOTIFICATIONS ====================


DEFAULT_PREFERENCES = {
    "email_alerts_enabled": True,
    "whatsapp_alerts_enabled": False,
    "alert_frequency": "realtime",
    "whatsapp_number": None,
    "min_confidence_threshold": None,
    "categories": None,
}


class NotificationPreferenceStore:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    async def realtime_subscribers(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationPreference.user_id).where(
                    NotificationPreference.email_alerts_enabled.is_(True),
                    NotificationPreference.alert_frequency == "realtime",
                )
            )
            return list(result.scalars().all())

    async def get_preferences(self, user_id: str) -> dict:
        async with self._session_factory() as session:
            row = await session.get(NotificationPreference, user_id)
        if row is None:
            return {"user_id": user_id, **DEFAULT_PREFERENCES}
        return {
            "user_id": row.user_id,
            "email_alerts_enabled": bool(row.email_alerts_enabled),
            "whatsapp_alerts_enabled": bool(row.whatsapp_alerts_enabled),
            "alert_frequency": row.alert_frequency,
            "whatsapp_number": row.whatsapp_number,
            "min_confidence_threshold": row.min_confidence_threshold,
            "categories": list(row.categories or []),
        }

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def log_notification(
        self,
        user_id: str,
        type_: str,
        channel: str,
        opportunity_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(
                NotificationLog(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    type=type_,
                    channel=channel,
                    opportunity_id=opportunity_id,
                    message_id=message_id,
                    sent_at=utcnow(),
                )
            )
            await session.commit()
