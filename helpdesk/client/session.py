from __future__ import annotations

import asyncio
import dataclasses
import json
import time
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from helpdesk.client.errors import (
    AuthorizationRejected,
    NetworkError,
    RenewalFailed,
    SessionError,
    SessionExpired,
)
from helpdesk.client.events import (
    InactivityWarning,
    LoggedOut,
    LoginRequired,
    LogoutReason,
    SessionEvents,
    SessionRenewed,
)
from helpdesk.client.identity import Credentials, Identity, IdentityStore, SessionGrant
from helpdesk.client.scheduler import ScheduledTask
from helpdesk.client.storage import ClientStorage, MemoryStorage, StorageChange
from helpdesk.config import Settings, get_settings
from helpdesk.logging import get_logger

logger = get_logger(__name__)

# True inside the task that performs a renewal, so calls it makes never renew again
_renewal_chain: ContextVar[bool] = ContextVar("helpdesk_renewal_chain", default=False)


def _consume_outcome(task: asyncio.Future) -> None:
    # Every waiter may have been cancelled; keep asyncio from reporting the error
    if not task.cancelled():
        task.exception()


@dataclass
class Session:
    identity_id: str
    role: str
    access_token: str
    refresh_token: Optional[str]
    identity: Identity
    expires_at: Optional[datetime] = None
    last_activity_at: float = 0.0
    renewal_in_flight: Optional[asyncio.Future] = None


class SessionManager:
    """Owns the client session and wraps outbound HTTP calls.

    Every request goes through :meth:`request`, which attaches the bearer
    credential and, on a 401, performs at most one renewal followed by one
    retry. Concurrent renewals collapse into a single shared task stored on
    the session, so only one refresh call ever reaches the identity store
    at a time.
    """

    def __init__(
        self,
        identity_store: IdentityStore,
        *,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        storage: Optional[ClientStorage] = None,
        events: Optional[SessionEvents] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.identity_store = identity_store
        self.storage = storage or MemoryStorage()
        self.events = events or SessionEvents()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout_seconds,
        )
        self._clock = clock
        self._session: Optional[Session] = None
        self._renewal_task: Optional[ScheduledTask] = None
        self._inactivity_task: Optional[ScheduledTask] = None
        self._inactivity_warned = False
        self._unsubscribe_storage: Optional[Callable[[], None]] = None
        self._started = False
        self._keys = {
            "access": self.settings.storage_key("access_token"),
            "refresh": self.settings.storage_key("refresh_token"),
            "user": self.settings.storage_key("user"),
        }

    # accessors
    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity if self._session else None

    @property
    def session(self) -> Optional[Session]:
        """A copy of the current session; mutating it has no effect."""
        if self._session is None:
            return None
        return dataclasses.replace(self._session, renewal_in_flight=None)

    def auth_headers(self) -> Dict[str, str]:
        if self._session is None:
            return {}
        return {"Authorization": f"Bearer {self._session.access_token}"}

    # lifecycle
    async def start(self) -> None:
        if self._started:
            return
        self._unsubscribe_storage = self.storage.subscribe(self._on_storage_change)
        await self.storage.start()
        self._started = True

    async def close(self) -> None:
        self._cancel_timers()
        if self._unsubscribe_storage is not None:
            self._unsubscribe_storage()
            self._unsubscribe_storage = None
        if self._started:
            await self.storage.stop()
            self._started = False
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SessionManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def login(self, credentials: Credentials) -> Session:
        await self.start()
        try:
            grant = await asyncio.wait_for(
                self.identity_store.authenticate(credentials),
                timeout=self.settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("session_login_timeout", email=credentials.email)
            raise NetworkError("login timed out") from exc
        if self._session is not None:
            self._end_session(LogoutReason.USER_INITIATED, clear_storage=False, publish=False)
        session = self._session_from_grant(grant)
        self._session = session
        self._persist(session)
        self._start_timers()
        logger.info(
            "session_started",
            identity_id=session.identity_id,
            role=session.role,
            expires_at=session.expires_at.isoformat() if session.expires_at else None,
        )
        return self.session

    async def restore(self) -> Optional[Identity]:
        """Resume a session left in storage, verifying it with the identity store."""
        await self.start()
        access_token = self.storage.get(self._keys["access"])
        identity = self._stored_identity()
        if not access_token or identity is None:
            if access_token:
                self.storage.remove_many(self._keys.values())
            logger.info("session_restore_empty")
            self.events.publish(LoginRequired())
            return None
        self._session = Session(
            identity_id=identity.id,
            role=identity.role,
            access_token=access_token,
            refresh_token=self.storage.get(self._keys["refresh"]),
            identity=identity,
            last_activity_at=self._clock(),
        )
        self._start_timers()
        logger.info("session_restored", identity_id=identity.id)
        try:
            return await self.verify()
        except SessionExpired:
            return None

    async def logout(self) -> None:
        await self._logout(LogoutReason.USER_INITIATED)

    def record_activity(self) -> None:
        if self._session is None:
            return
        self._session.last_activity_at = self._clock()
        self._inactivity_warned = False

    # verification and renewal
    async def verify(self) -> Identity:
        session = self._session
        if session is None:
            raise SessionExpired("no active session")
        sent_token = session.access_token
        try:
            identity = await self._verify_token(sent_token)
        except AuthorizationRejected:
            current = self._session
            if current is not None and current.access_token == sent_token:
                try:
                    await self.renew()
                except RenewalFailed as exc:
                    raise SessionExpired("session could not be renewed") from exc
            session = self._session
            if session is None:
                raise SessionExpired("session ended during verification")
            try:
                identity = await self._verify_token(session.access_token)
            except AuthorizationRejected as exc:
                logger.warning("session_verify_rejected", identity_id=session.identity_id)
                if self._session is session:
                    self._end_session(LogoutReason.RENEWAL_FAILED)
                raise SessionExpired("renewed credential rejected") from exc
        if self._session is session:
            session.identity = identity
            session.role = identity.role
            self.storage.set_many({self._keys["user"]: json.dumps(identity.to_payload())})
        return identity

    async def renew(self) -> Session:
        if _renewal_chain.get():
            raise RenewalFailed("renewal requested from inside a renewal")
        session = self._session
        if session is None:
            raise RenewalFailed("no active session")
        pending = session.renewal_in_flight
        if pending is None:
            # No await between the check above and this assignment
            pending = asyncio.get_running_loop().create_task(self._renew_session(session))
            session.renewal_in_flight = pending
            pending.add_done_callback(_consume_outcome)
            logger.debug("session_renewal_started", identity_id=session.identity_id)
        else:
            logger.debug("session_renewal_joined", identity_id=session.identity_id)
        return await asyncio.shield(pending)

    async def _renew_session(self, session: Session) -> Session:
        _renewal_chain.set(True)
        try:
            if not session.refresh_token:
                logger.warning("session_renewal_no_refresh_token", identity_id=session.identity_id)
                if self._session is session:
                    self._end_session(LogoutReason.RENEWAL_FAILED)
                raise RenewalFailed("no refresh token available")
            try:
                grant = await asyncio.wait_for(
                    self.identity_store.refresh(session.refresh_token),
                    timeout=self.settings.renewal_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                logger.warning("session_renewal_timeout", identity_id=session.identity_id)
                raise NetworkError("renewal timed out") from exc
            except NetworkError:
                logger.warning("session_renewal_network_error", identity_id=session.identity_id)
                raise
            except SessionError as exc:
                logger.warning(
                    "session_renewal_rejected",
                    identity_id=session.identity_id,
                    error=exc.message,
                )
                if self._session is session:
                    self._end_session(LogoutReason.RENEWAL_FAILED)
                raise RenewalFailed("refresh credential rejected") from exc
            if self._session is not session:
                # Logged out while the refresh call was pending
                logger.info("session_renewal_discarded", identity_id=session.identity_id)
                raise RenewalFailed("session ended during renewal")
            self._apply_grant(session, grant)
            self._persist(session)
            logger.info(
                "session_renewed",
                identity_id=session.identity_id,
                expires_at=session.expires_at.isoformat() if session.expires_at else None,
            )
            self.events.publish(SessionRenewed(session.identity_id))
            return self.session
        finally:
            session.renewal_in_flight = None

    # transport wrapper
    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request with the session credential; renew and retry once on 401."""
        session = self._session
        sent_token = session.access_token if session else None
        response = await self._send(method, url, sent_token, kwargs)
        if response.status_code != 401 or sent_token is None or not self._may_renew(url):
            return response

        current = self._session
        if current is None:
            return response
        if current.access_token == sent_token:
            await self.renew()
        else:
            logger.debug("session_token_already_rotated", url=str(url))

        current = self._session
        if current is None:
            return response
        retry = await self._send(method, url, current.access_token, kwargs)
        if retry.status_code == 401:
            logger.warning("request_unauthorized_after_renewal", method=method, url=str(url))
        return retry

    def _may_renew(self, url: str) -> bool:
        if _renewal_chain.get():
            return False
        path = httpx.URL(str(url)).path.rstrip("/")
        for auth_path in (self.settings.login_path, self.settings.refresh_path):
            if path.endswith(auth_path.rstrip("/")):
                return False
        return True

    async def _send(
        self,
        method: str,
        url: str,
        token: Optional[str],
        options: Dict[str, Any],
    ) -> httpx.Response:
        kwargs = dict(options)
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("request_timeout", method=method, url=str(url))
            raise NetworkError(f"timeout calling {url}") from exc
        except httpx.TransportError as exc:
            logger.warning("request_transport_error", method=method, url=str(url), error=str(exc))
            raise NetworkError(f"transport error calling {url}") from exc

    async def _verify_token(self, token: str) -> Identity:
        try:
            return await asyncio.wait_for(
                self.identity_store.verify(token),
                timeout=self.settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise NetworkError("verification timed out") from exc

    # session state
    def _session_from_grant(self, grant: SessionGrant) -> Session:
        return Session(
            identity_id=grant.identity.id,
            role=grant.identity.role,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            identity=grant.identity,
            expires_at=grant.expires_at,
            last_activity_at=self._clock(),
        )

    def _apply_grant(self, session: Session, grant: SessionGrant) -> None:
        session.access_token = grant.access_token
        if grant.refresh_token:
            session.refresh_token = grant.refresh_token
        session.expires_at = grant.expires_at
        session.identity = grant.identity
        session.role = grant.identity.role

    def _persist(self, session: Session) -> None:
        values = {
            self._keys["access"]: session.access_token,
            self._keys["user"]: json.dumps(session.identity.to_payload()),
        }
        if session.refresh_token:
            values[self._keys["refresh"]] = session.refresh_token
        self.storage.set_many(values)
        if not session.refresh_token:
            self.storage.remove_many([self._keys["refresh"]])

    def _stored_identity(self) -> Optional[Identity]:
        raw = self.storage.get(self._keys["user"])
        if not raw:
            return None
        try:
            return Identity.from_payload(json.loads(raw))
        except (ValueError, SessionError) as exc:
            logger.warning("session_stored_identity_invalid", error=str(exc))
            return None

    def _end_session(
        self,
        reason: LogoutReason,
        *,
        clear_storage: bool = True,
        publish: bool = True,
    ) -> Optional[Session]:
        session = self._session
        self._session = None
        self._inactivity_warned = False
        self._cancel_timers()
        if clear_storage:
            self.storage.remove_many(self._keys.values())
        if session is not None:
            logger.info(
                "session_ended", identity_id=session.identity_id, reason=reason.value
            )
            if publish:
                self._publish_logout(reason, session.identity_id)
        return session

    def _publish_logout(self, reason: LogoutReason, identity_id: Optional[str]) -> None:
        self.events.publish(LoggedOut(reason=reason, identity_id=identity_id))
        self.events.publish(LoginRequired(reason=reason))

    async def _logout(self, reason: LogoutReason) -> None:
        session = self._end_session(reason, publish=False)
        if session is not None and session.refresh_token:
            try:
                await asyncio.wait_for(
                    self.identity_store.revoke(session.refresh_token),
                    timeout=self.settings.request_timeout_seconds,
                )
            except (SessionError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "session_revoke_failed",
                    identity_id=session.identity_id,
                    error=str(exc) or type(exc).__name__,
                )
        if session is not None:
            self._publish_logout(reason, session.identity_id)

    def _on_storage_change(self, change: StorageChange) -> None:
        session = self._session
        if session is None or change.new_value == change.old_value:
            return
        if change.key not in self._keys.values():
            return
        if change.key == self._keys["access"] and change.new_value is None:
            logger.info("session_remote_logout", identity_id=session.identity_id)
            self._end_session(LogoutReason.REMOTE_LOGOUT, clear_storage=False)
            return
        if change.new_value is None:
            return
        # Listeners run after the whole write lands, so the stored identity
        # is the principal the stored tokens belong to.
        identity = self._stored_identity()
        if identity is None or identity.id != session.identity_id:
            logger.info(
                "session_remote_identity_changed",
                identity_id=session.identity_id,
                stored_identity_id=identity.id if identity else None,
            )
            self._end_session(LogoutReason.REMOTE_LOGOUT, clear_storage=False)
            return
        if change.key == self._keys["access"]:
            # Another context renewed; share its rotated credential
            session.access_token = change.new_value
        elif change.key == self._keys["refresh"]:
            session.refresh_token = change.new_value
        else:
            session.identity = identity
            session.role = identity.role

    # scheduled tasks
    def _start_timers(self) -> None:
        self._cancel_timers()
        self._renewal_task = ScheduledTask(
            "session-renewal", self._proactive_renew, self._renewal_delay
        ).start()
        self._inactivity_task = ScheduledTask(
            "session-inactivity",
            self._check_inactivity,
            self.settings.inactivity_check_interval_seconds,
        ).start()

    def _cancel_timers(self) -> None:
        for task in (self._renewal_task, self._inactivity_task):
            if task is not None:
                task.cancel()
        self._renewal_task = None
        self._inactivity_task = None

    def _renewal_delay(self) -> float:
        interval = self.settings.renewal_interval_seconds
        session = self._session
        if session is None or session.expires_at is None:
            return interval
        remaining = (session.expires_at - datetime.now(timezone.utc)).total_seconds()
        until_margin = remaining - self.settings.renewal_margin_seconds
        return max(min(interval, until_margin), min(interval, 5.0))

    async def _proactive_renew(self) -> None:
        if self._session is None:
            return
        try:
            await self.renew()
        except RenewalFailed:
            logger.info("session_proactive_renewal_failed")
        except NetworkError as exc:
            logger.warning("session_proactive_renewal_deferred", error=exc.message)

    async def _check_inactivity(self) -> None:
        session = self._session
        if session is None:
            return
        idle = self._clock() - session.last_activity_at
        remaining = self.settings.inactivity_timeout_seconds - idle
        if remaining <= 0:
            logger.info(
                "session_inactivity_timeout",
                identity_id=session.identity_id,
                idle_seconds=round(idle, 1),
            )
            await self._logout(LogoutReason.INACTIVITY)
        elif remaining <= self.settings.inactivity_warning_seconds and not self._inactivity_warned:
            self._inactivity_warned = True
            self.events.publish(InactivityWarning(remaining_seconds=remaining))
