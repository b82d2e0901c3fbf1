"""Linking external platform accounts and syncing them into the portfolio."""

from datetime import timedelta
from typing import Optional

from config import settings
from models.database import LinkedAccount
from services.platforms import (
    AuthenticationError,
    Platform,
    PLATFORM_CONFIG,
    PlatformCredentials,
    PlatformError,
    SyncResult,
    UnsupportedOperation,
    create_platform_client,
    exchange_code_for_token,
    get_authorization_url,
    parse_platform,
    refresh_access_token,
)
from services.stores import LinkedAccountStore, TradeStore
from utils.logger import platform_logger as logger
from utils.utcnow import utcnow

TOKEN_EXPIRED_MESSAGE = "Token expired - reconnection required"
TOKEN_REFRESH_FAILED_MESSAGE = "Token refresh failed"


def _expiry_from(expires_in: Optional[int]):
    return utcnow() + timedelta(seconds=expires_in) if expires_in else None


class PlatformSyncService:
    def __init__(
        self,
        accounts: Optional[LinkedAccountStore] = None,
        trades: Optional[TradeStore] = None,
        client_factory=create_platform_client,
        token_refresher=refresh_access_token,
        code_exchanger=exchange_code_for_token,
    ):
        self.accounts = accounts or LinkedAccountStore()
        self.trades = trades or TradeStore()
        self.client_factory = client_factory
        self.token_refresher = token_refresher
        self.code_exchanger = code_exchanger

    # ==================== CONNECT ====================

    async def _validate(self, platform: Platform, credentials: PlatformCredentials) -> bool:
        client = self.client_factory(platform, credentials)
        try:
            return await client.validate_credentials()
        finally:
            await client.close()

    async def connect_api_key(self, user_id: str, platform: str, api_key: str, api_secret: str) -> LinkedAccount:
        """Validate an API key pair against the platform, then store it.

        Raises:
            AuthenticationError: the platform rejected the credentials.
        """
        resolved = parse_platform(platform)
        if resolved == Platform.BETFAIR:
            raise PlatformError("Betfair accounts are linked through OAuth", resolved.value)
        credentials = PlatformCredentials(api_key=api_key, api_secret=api_secret)
        if not await self._validate(resolved, credentials):
            raise AuthenticationError(f"Invalid {resolved.value} API credentials", resolved.value)
        account = await self.accounts.upsert(user_id, resolved.value, credentials)
        logger.info("Platform account linked", platform=resolved.value, user_id=user_id)
        return account

    async def begin_oauth(self, user_id: str, platform: str = Platform.BETFAIR.value) -> str:
        resolved = parse_platform(platform)
        state = await self.accounts.create_oauth_state(user_id, resolved.value, settings.OAUTH_STATE_TTL_MINUTES)
        return get_authorization_url(state)

    async def complete_oauth(self, code: str, state: str, platform: str = Platform.BETFAIR.value) -> LinkedAccount:
        """Finish the authorization-code round trip started by ``begin_oauth``."""
        resolved = parse_platform(platform)
        user_id = await self.accounts.consume_oauth_state(state, resolved.value)
        if user_id is None:
            raise AuthenticationError("Invalid or expired state", resolved.value)

        try:
            tokens = await self.code_exchanger(code)
        except PlatformError as exc:
            logger.warning("OAuth code exchange failed", platform=resolved.value, error=str(exc))
            raise AuthenticationError("Failed to get access token", resolved.value) from exc
        credentials = PlatformCredentials(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=_expiry_from(tokens.expires_in),
        )
        if not await self._validate(resolved, credentials):
            raise AuthenticationError(f"Invalid {PLATFORM_CONFIG[resolved.value]['name']} credentials", resolved.value)
        account = await self.accounts.upsert(user_id, resolved.value, credentials)
        logger.info("Platform account linked via OAuth", platform=resolved.value, user_id=user_id)
        return account

    async def disconnect(self, user_id: str, platform: str) -> bool:
        removed = await self.accounts.delete(user_id, parse_platform(platform).value)
        if removed:
            logger.info("Platform account disconnected", platform=platform, user_id=user_id)
        return removed

    # ==================== SYNC ====================

    async def _refresh_tokens(self, account: LinkedAccount, credentials: PlatformCredentials) -> PlatformCredentials:
        """Rotate Betfair tokens and persist them; deactivates the link when rotation is impossible."""
        if not credentials.refresh_token:
            await self.accounts.record_sync(account.id, TOKEN_EXPIRED_MESSAGE, deactivate=True)
            raise AuthenticationError(TOKEN_EXPIRED_MESSAGE, account.platform)
        try:
            tokens = await self.token_refresher(credentials.refresh_token)
        except PlatformError as exc:
            logger.warning("Token refresh failed", platform=account.platform, user_id=account.user_id, error=str(exc))
            await self.accounts.record_sync(account.id, TOKEN_REFRESH_FAILED_MESSAGE, deactivate=True)
            raise AuthenticationError(TOKEN_REFRESH_FAILED_MESSAGE, account.platform) from exc

        expires_at = _expiry_from(tokens.expires_in)
        await self.accounts.update_tokens(account.id, tokens.access_token, tokens.refresh_token, expires_at)
        return credentials.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_at": expires_at,
            }
        )

    async def _fetch(self, account: LinkedAccount, credentials: PlatformCredentials) -> SyncResult:
        client = self.client_factory(account.platform, credentials)
        try:
            balance = await client.get_balance()
            try:
                positions = await client.get_positions()
            except UnsupportedOperation as exc:
                logger.info("Positions not supported", platform=account.platform, reason=str(exc))
                positions = []
            since = utcnow() - timedelta(days=settings.SYNC_LOOKBACK_DAYS)
            trades = await client.get_trade_history(since=since)
        finally:
            await client.close()
        return SyncResult(
            success=True, platform=account.platform, balance=balance, positions=positions, trades=trades
        )

    async def sync_account(self, account: LinkedAccount) -> SyncResult:
        """Sync one linked account. Failures land in the result and on the account row."""
        is_oauth = account.platform == Platform.BETFAIR.value
        try:
            credentials = self.accounts.credentials(account)
            if is_oauth and credentials.expires_at and credentials.expires_at < utcnow():
                credentials = await self._refresh_tokens(account, credentials)
            try:
                result = await self._fetch(account, credentials)
            except AuthenticationError:
                # An expired session is the caller's cue to rotate tokens once.
                if not (is_oauth and credentials.refresh_token):
                    raise
                credentials = await self._refresh_tokens(account, credentials)
                result = await self._fetch(account, credentials)

            result.trades_imported = await self.trades.import_trades(account.user_id, account.platform, result.trades)
            await self.accounts.record_sync(account.id, None)
            logger.info(
                "Platform sync complete",
                platform=account.platform,
                user_id=account.user_id,
                positions=len(result.positions),
                trades=len(result.trades),
                imported=result.trades_imported,
            )
            return result
        except PlatformError as exc:
            if str(exc) not in (TOKEN_EXPIRED_MESSAGE, TOKEN_REFRESH_FAILED_MESSAGE):
                await self.accounts.record_sync(account.id, str(exc))
            logger.warning(
                "Platform sync failed",
                platform=account.platform,
                user_id=account.user_id,
                error_kind=exc.kind,
                error=str(exc),
            )
            return SyncResult(success=False, platform=account.platform, error=str(exc), error_kind=exc.kind)
        except Exception as exc:
            # Malformed payloads and storage errors still stamp the account.
            logger.error(
                "Unexpected sync failure",
                platform=account.platform,
                user_id=account.user_id,
                error=str(exc),
                exc_info=True,
            )
            error = str(exc) or type(exc).__name__
            try:
                await self.accounts.record_sync(account.id, error)
            except Exception as record_exc:
                logger.error("Failed to record sync failure", account_id=account.id, error=str(record_exc))
            return SyncResult(success=False, platform=account.platform, error=error, error_kind="internal")

    async def sync_user_platform(self, user_id: str, platform: str) -> Optional[SyncResult]:
        account = await self.accounts.get(user_id, parse_platform(platform).value)
        if account is None or not account.is_active:
            return None
        return await self.sync_account(account)

    async def sync_all(self) -> dict:
        accounts = await self.accounts.list_active()
        synced = 0
        errors: list[str] = []
        for account in accounts:
            result = await self.sync_account(account)
            if result.success:
                synced += 1
            else:
                errors.append(f"{account.platform}:{account.user_id}: {result.error}")

        summary = {"success": True, "synced": synced, "failed": len(errors), "total": len(accounts)}
        if errors:
            summary["errors"] = errors
        return summary
