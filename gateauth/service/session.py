from __future__ import annotations

from dataclasses import replace
from typing import FrozenSet, Optional

from gateauth.logging import auth_flow, get_logger
from gateauth.service import authorization
from gateauth.service.authorization import GateResult, ScreenId
from gateauth.service.errors import (
    OTP_SESSION_RESET_MESSAGE,
    PREPARE_LOGIN_FAILED_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    GateAuthError,
    OtpSessionResetError,
    PreconditionError,
    is_token_version_mismatch,
)
from gateauth.service.identity import IdentityService
from gateauth.service.otp import OtpLoginController, OtpStep
from gateauth.service.refresh import RefreshCoordinator
from gateauth.service.singleflight import SingleFlight
from gateauth.storage.models import SessionPhase, SessionRecord, SessionUser, VerifyResult
from gateauth.storage.token_store import SessionStore

logger = get_logger(__name__)


class SessionManager:
    """Owns the session record and sequences identity, OTP and refresh.

    Every transition builds a new ``SessionRecord``, swaps it in memory and
    then awaits the store write, so readers only ever see whole records.
    All invalidations go through ``logout``.
    """

    def __init__(
        self,
        store: SessionStore,
        identity: IdentityService,
        otp: OtpLoginController,
        refresher: RefreshCoordinator,
    ) -> None:
        self.store = store
        self.identity = identity
        self.otp = otp
        self.refresher = refresher
        self._record = SessionRecord()
        self._identity_flight: SingleFlight[None] = SingleFlight()
        self._session_expired = False
        self.is_restored = False
        self.is_guest_ready = False
        self.auth_error: Optional[str] = None
        self.otp_step = OtpStep.PHONE_ENTRY
        self.otp_phone: Optional[str] = None

    # -- read side -----------------------------------------------------

    @property
    def record(self) -> SessionRecord:
        return self._record

    @property
    def phase(self) -> SessionPhase:
        return self._record.phase

    @property
    def is_authenticated(self) -> bool:
        return bool(self._record.access_token and self._record.user)

    @property
    def user(self) -> Optional[SessionUser]:
        return self._record.user

    @property
    def selected_hub_id(self) -> Optional[str]:
        return self._record.selected_hub_id

    @property
    def guest_token(self) -> Optional[str]:
        return self._record.guest_token or None

    @property
    def access_token(self) -> Optional[str]:
        return self._record.access_token or None

    @property
    def session_expired(self) -> bool:
        return self._session_expired

    @property
    def gate(self) -> Optional[GateResult]:
        """Gate decision for the signed-in user; ``None`` while signed out."""
        user = self._record.user
        if not self.is_authenticated or user is None:
            return None
        return authorization.evaluate(user.roles, user.hub_ids)

    @property
    def allowed_screens(self) -> FrozenSet[ScreenId]:
        return authorization.allowed_screens(self.gate)

    def clear_session_expired(self) -> None:
        self._session_expired = False

    # -- persistence ---------------------------------------------------

    async def _persist(self, record: SessionRecord) -> None:
        self._record = record
        await self.store.save(record)

    # -- lifecycle -----------------------------------------------------

    async def restore(self) -> SessionPhase:
        """Load the stored record and bring the session to a usable phase.

        A stored refresh token is trusted as-is: expiry is only discovered
        by a 401 later. Otherwise the guest token is revalidated, or a new
        one fetched.
        """
        with auth_flow("restore"):
            self._record = await self.store.load()
            self.is_restored = True
            self.auth_error = None
            if self._record.refresh_token:
                self.is_guest_ready = True
            else:
                await self.ensure_guest_token()
            logger.info("session_restored", phase=self.phase.value)
        return self.phase

    async def ensure_guest_token(self) -> SessionPhase:
        """Fetch or revalidate the guest token; concurrent callers share one call.

        When signed in, the identity call only revalidates the token triple
        and the returned guest token is not stored. Failures are recorded in
        ``auth_error``; a token-version mismatch ends the session.
        """
        await self._identity_flight.run(self._sync_identity)
        return self.phase

    async def _sync_identity(self) -> None:
        self.auth_error = None
        record = self._record
        has_auth = record.phase is SessionPhase.AUTHENTICATED
        try:
            if has_auth:
                result = await self.identity.fetch_identity(
                    guest_token="",
                    access_token=record.access_token,
                    refresh_token=record.refresh_token,
                    token_version=record.token_version,
                    last_login_user_id=record.user.id if record.user else "",
                )
            else:
                result = await self.identity.fetch_identity(
                    guest_token=record.guest_token,
                    access_token="",
                    refresh_token="",
                    token_version=record.token_version,
                )
        except GateAuthError as exc:
            if is_token_version_mismatch(exc):
                logger.warning("identity_token_version_mismatch")
                await self.invalidate("token_version_mismatch")
            else:
                logger.warning(
                    "identity_sync_failed", error_code=exc.error_code, error=exc.message
                )
                self.auth_error = PREPARE_LOGIN_FAILED_MESSAGE
            self.is_guest_ready = True
            return

        current = self._record
        identity_id = result.identity_id or current.identity_id
        if has_auth or current.phase is SessionPhase.AUTHENTICATED:
            await self._persist(replace(current, identity_id=identity_id))
        else:
            await self._persist(current.with_guest(result.guest_token, identity_id))
        self.is_guest_ready = True

    async def send_otp(self, phone: str) -> None:
        guest_token = self._record.guest_token
        if not guest_token:
            raise PreconditionError("send_otp called without a guest token")
        try:
            await self.otp.send_otp(phone, guest_token)
        except PreconditionError:
            raise
        except Exception as exc:
            await self._reset_after_otp_failure("send_otp", exc)
            raise OtpSessionResetError(str(exc) or type(exc).__name__) from exc
        self.otp_step = OtpStep.OTP_SENT
        self.otp_phone = phone

    async def verify_otp(self, phone: str, otp: str) -> VerifyResult:
        """Verify the code and sign in.

        Any failure, including a wrong code, discards the guest session and
        raises ``OtpSessionResetError``; the caller fetches a new guest token
        with ``ensure_guest_token`` before showing the login screen again.
        """
        guest_token = self._record.guest_token
        if not guest_token:
            raise PreconditionError("verify_otp called without a guest token")
        with auth_flow("otp_login"):
            try:
                result = await self.otp.verify_otp(phone, otp, guest_token)
                await self.complete_login(result)
            except PreconditionError:
                raise
            except Exception as exc:
                await self._reset_after_otp_failure("verify_otp", exc)
                raise OtpSessionResetError(str(exc) or type(exc).__name__) from exc
        self.otp_step = OtpStep.VERIFIED
        return result

    async def _reset_after_otp_failure(self, step: str, exc: BaseException) -> None:
        logger.warning(
            "otp_flow_failed",
            step=step,
            error_type=type(exc).__name__,
            error_code=getattr(exc, "error_code", None),
        )
        await self.logout(reason=f"{step}_failed")
        self.auth_error = OTP_SESSION_RESET_MESSAGE

    async def complete_login(self, result: VerifyResult) -> None:
        if not (result.access_token and result.refresh_token):
            raise PreconditionError("complete_login requires both tokens")
        current = self._record
        record = SessionRecord(
            guest_token="",
            identity_id=result.identity_id or current.identity_id,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_version=current.token_version + 1,
            user=result.user,
        )
        self._session_expired = False
        self.auth_error = None
        await self._persist(record)
        logger.info(
            "login_completed",
            user_id=result.user.id,
            token_version=record.token_version,
            selected_hub_id=record.selected_hub_id,
        )

    async def logout(self, reason: str = "user") -> None:
        """Clear every credential but keep the identity id. Safe to repeat."""
        current = self._record
        cleared = current.cleared()
        self.is_guest_ready = False
        self.otp_step = OtpStep.PHONE_ENTRY
        self.otp_phone = None
        if current == cleared:
            logger.debug("logout_noop", reason=reason)
            return
        await self._persist(cleared)
        logger.info("session_cleared", reason=reason)

    async def invalidate(self, reason: str) -> None:
        """Logout because the backend declared the session dead.

        The session-expired flag is only raised when there was something to
        expire; a signed-out record is just cleared again.
        """
        if self._record.has_credentials:
            self._session_expired = True
            self.auth_error = SESSION_EXPIRED_MESSAGE
        await self.logout(reason=reason)

    async def refresh_access_token(self, failed_token: Optional[str] = None) -> Optional[str]:
        """Return an access token to retry with, or ``None`` if the session ended.

        If the current access token already differs from ``failed_token``
        another caller refreshed first and that token is returned without a
        network call. Network and server failures propagate and leave the
        session untouched.
        """
        record = self._record
        if failed_token and record.access_token and record.access_token != failed_token:
            logger.debug("refresh_skipped_token_already_rotated")
            return record.access_token
        refresh_token = record.refresh_token
        if not refresh_token:
            await self.invalidate("refresh_token_missing")
            return None

        pair = await self.refresher.refresh(refresh_token)
        current = self._record
        if pair is None:
            if current.refresh_token == refresh_token or not current.has_credentials:
                await self.invalidate("refresh_rejected")
                return None
            return current.access_token or None

        if current.refresh_token == refresh_token:
            await self._persist(current.with_tokens(pair.access_token, pair.refresh_token))
            return pair.access_token
        if current.access_token == pair.access_token:
            # Applied by another waiter of the same refresh
            return pair.access_token
        logger.info("refresh_result_discarded")
        if current.access_token:
            return current.access_token
        await self.invalidate("refresh_superseded")
        return None


__all__ = ["SessionManager"]
