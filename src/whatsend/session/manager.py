"""
Session Manager

Owns every tenant's protocol session. Each tenant gets one owner task that
processes its events one at a time through the state machine and runs the
resulting effects; tenants never wait on each other.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from whatsend.credentials.store import CredentialStore
from whatsend.persistence.models import ConnectionState
from whatsend.providers.base import SessionEvent, SessionHandle, WhatsAppCapability
from whatsend.session.registry import SessionRegistry
from whatsend.session.state_machine import (
    CancelReconnect,
    CloseSession,
    ConnectRequested,
    DisconnectRequested,
    OpenFailed,
    OpenSession,
    PersistCredentials,
    ProjectStatus,
    ReconnectDue,
    ScheduleReconnect,
    WipeCredentials,
    handle_event,
)
from whatsend.session.status import StatusProjector

logger = logging.getLogger(__name__)

# Queued behind pending events; the owner task exits when it reaches it
_STOP = object()


class SessionNotReadyError(Exception):
    """The tenant has no connected session to send with."""

    def __init__(self, tenant_id: str, state: ConnectionState, message: str | None = None):
        super().__init__(message or f"Session of {tenant_id} is {state}, not connected")
        self.tenant_id = tenant_id
        self.state = state


@dataclass
class _TenantOwner:
    tenant_id: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    handle: SessionHandle | None = None
    generation: int = 0
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    changed: asyncio.Condition = field(default_factory=asyncio.Condition)
    task: asyncio.Task | None = None
    reconnect_task: asyncio.Task | None = None


class SessionManager:
    """
    Per-tenant session lifecycle.

    Args:
        capability: Protocol client used to open sessions
        credentials: Durable credential storage
        projector: Status projection written on every transition
        registry: Live handle registry (a private one by default)
        reconnect_delay: Seconds before reopening after a transient close
        ready_timeout: Default wait of ensure_connected()
        shutdown_timeout: How long shutdown() lets owners finish pending events
    """

    def __init__(
        self,
        capability: WhatsAppCapability,
        credentials: CredentialStore,
        projector: StatusProjector,
        registry: SessionRegistry | None = None,
        reconnect_delay: float = 3.0,
        ready_timeout: float = 15.0,
        shutdown_timeout: float = 10.0,
    ):
        self.capability = capability
        self.credentials = credentials
        self.projector = projector
        self.registry = registry if registry is not None else SessionRegistry()
        self.reconnect_delay = reconnect_delay
        self.ready_timeout = ready_timeout
        self.shutdown_timeout = shutdown_timeout
        self._owners: dict[str, _TenantOwner] = {}
        self._closed = False

    # =========================================================================
    # Public API
    # =========================================================================

    def get_state(self, tenant_id: str) -> ConnectionState:
        owner = self._owners.get(tenant_id)
        return owner.state if owner else ConnectionState.DISCONNECTED

    def get_handle(self, tenant_id: str) -> SessionHandle | None:
        return self.registry.get(tenant_id)

    async def request_connect(self, tenant_id: str) -> ConnectionState:
        """Start connecting unless a session is already live or in flight."""
        return await self._submit(tenant_id, ConnectRequested())

    async def request_disconnect(self, tenant_id: str, wipe_credentials: bool = True) -> ConnectionState:
        """Tear the session down; with wipe_credentials the device is unlinked too."""
        return await self._submit(tenant_id, DisconnectRequested(wipe_credentials=wipe_credentials))

    async def wait_for_state(
        self,
        tenant_id: str,
        states: Iterable[ConnectionState],
        timeout: float,
    ) -> ConnectionState:
        """
        Wait until the tenant's state is one of ``states``.

        Raises:
            asyncio.TimeoutError: Not reached within timeout
        """
        wanted = frozenset(states)
        owner = self._owner(tenant_id)
        async with owner.changed:
            await asyncio.wait_for(owner.changed.wait_for(lambda: owner.state in wanted), timeout)
        return owner.state

    async def ensure_connected(self, tenant_id: str, timeout: float | None = None) -> SessionHandle:
        """
        Return a connected handle, connecting first if needed.

        Raises:
            SessionNotReadyError: The tenant needs pairing, failed, or did not
                connect within timeout
        """
        timeout = self.ready_timeout if timeout is None else timeout
        state = self.get_state(tenant_id)
        handle = self.registry.get(tenant_id)

        if state == ConnectionState.CONNECTED and handle is not None:
            return handle

        if state == ConnectionState.AWAITING_PAIRING:
            raise SessionNotReadyError(tenant_id, state, f"Session of {tenant_id} is waiting for pairing")

        if state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            await self.request_connect(tenant_id)

        try:
            state = await self.wait_for_state(
                tenant_id,
                (
                    ConnectionState.CONNECTED,
                    ConnectionState.AWAITING_PAIRING,
                    ConnectionState.ERROR,
                    ConnectionState.DISCONNECTED,
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            raise SessionNotReadyError(
                tenant_id,
                self.get_state(tenant_id),
                f"Session of {tenant_id} did not connect within {timeout}s",
            )

        handle = self.registry.get(tenant_id)
        if state != ConnectionState.CONNECTED or handle is None:
            raise SessionNotReadyError(tenant_id, state)
        return handle

    async def shutdown(self) -> None:
        """
        Close every live session locally.

        Credentials and the persisted status stay as they are, so startup
        reconciliation can resume the sessions. Owners first drain their
        queues, so a session that is being opened is stored and closed below;
        owners still busy after shutdown_timeout are cancelled.
        """
        self._closed = True
        owners = list(self._owners.values())

        for owner in owners:
            if owner.reconnect_task and not owner.reconnect_task.done():
                owner.reconnect_task.cancel()
            if owner.task and not owner.task.done():
                owner.queue.put_nowait((_STOP, None, None))

        tasks = [owner.task for owner in owners if owner.task]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
            for task in pending:
                logger.warning(f"Cancelling busy session owner {task.get_name()}")
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        for owner in owners:
            handle = owner.handle
            owner.handle = None
            self.registry.remove(owner.tenant_id)
            if handle:
                try:
                    await handle.close()
                except Exception as e:
                    logger.warning(
                        f"Failed to close session on shutdown: {e}",
                        extra={"tenant_id": owner.tenant_id},
                    )

        self._owners.clear()
        logger.info(f"Session manager stopped ({len(owners)} tenants)")

    # =========================================================================
    # Owner task
    # =========================================================================

    def _owner(self, tenant_id: str) -> _TenantOwner:
        owner = self._owners.get(tenant_id)
        if owner is None:
            owner = _TenantOwner(tenant_id=tenant_id)
            owner.task = asyncio.create_task(self._run_owner(owner), name=f"session-{tenant_id}")
            self._owners[tenant_id] = owner
        return owner

    async def _submit(self, tenant_id: str, event: Any) -> ConnectionState:
        if self._closed:
            raise RuntimeError("Session manager is shut down")

        owner = self._owner(tenant_id)
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        owner.queue.put_nowait((event, None, done))
        return await done

    def _listener_for(self, owner: _TenantOwner, generation: int):
        def listener(event: SessionEvent) -> None:
            owner.queue.put_nowait((event, generation, None))

        return listener

    async def _run_owner(self, owner: _TenantOwner) -> None:
        while True:
            event, generation, done = await owner.queue.get()
            if event is _STOP:
                return
            try:
                if generation is not None and generation != owner.generation:
                    logger.debug(
                        f"Dropping {type(event).__name__} from superseded session",
                        extra={"tenant_id": owner.tenant_id},
                    )
                else:
                    await self._process(owner, event)
            except Exception as e:
                logger.error(
                    f"Failed to process {type(event).__name__}: {e}",
                    extra={"tenant_id": owner.tenant_id},
                    exc_info=True,
                )
            finally:
                if done is not None and not done.done():
                    done.set_result(owner.state)

    async def _process(self, owner: _TenantOwner, event: Any) -> None:
        transition = handle_event(owner.state, event, reconnect_delay=self.reconnect_delay)
        previous = owner.state
        owner.state = transition.state

        if previous != transition.state:
            logger.debug(
                f"{previous.value} -> {transition.state.value} on {type(event).__name__}",
                extra={"tenant_id": owner.tenant_id},
            )

        for effect in transition.effects:
            await self._apply(owner, effect)

        async with owner.changed:
            owner.changed.notify_all()

    async def _apply(self, owner: _TenantOwner, effect: Any) -> None:
        tenant_id = owner.tenant_id

        if isinstance(effect, OpenSession):
            await self._open(owner)

        elif isinstance(effect, CloseSession):
            await self._close(owner, logout=effect.logout)

        elif isinstance(effect, PersistCredentials):
            try:
                self.credentials.save(tenant_id, effect.credentials)
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to persist credentials: {e}",
                    extra={"tenant_id": tenant_id},
                    exc_info=True,
                )

        elif isinstance(effect, WipeCredentials):
            try:
                self.credentials.clear(tenant_id)
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to clear credentials: {e}",
                    extra={"tenant_id": tenant_id},
                    exc_info=True,
                )

        elif isinstance(effect, ProjectStatus):
            self.projector.project(
                tenant_id,
                effect.state,
                pairing_code=effect.pairing_code,
                error=effect.error,
                phone_number=effect.phone_number,
            )

        elif isinstance(effect, ScheduleReconnect):
            self._cancel_reconnect(owner)
            owner.reconnect_task = asyncio.create_task(
                self._reconnect_later(owner, effect.delay),
                name=f"reconnect-{tenant_id}",
            )

        elif isinstance(effect, CancelReconnect):
            self._cancel_reconnect(owner)

    async def _open(self, owner: _TenantOwner) -> None:
        if owner.handle is not None:
            await self._close(owner, logout=False)

        owner.generation += 1
        credentials = self.credentials.load(owner.tenant_id)
        listener = self._listener_for(owner, owner.generation)

        try:
            handle = await self.capability.open(owner.tenant_id, credentials, listener)
        except Exception as e:
            logger.warning(
                f"Failed to open session: {e}",
                extra={"tenant_id": owner.tenant_id},
                exc_info=True,
            )
            await self._process(owner, OpenFailed(error=str(e) or type(e).__name__))
            return

        owner.handle = handle
        self.registry.set(owner.tenant_id, handle)

    async def _close(self, owner: _TenantOwner, logout: bool) -> None:
        handle = owner.handle
        owner.handle = None
        owner.generation += 1
        self.registry.remove(owner.tenant_id)

        if handle is None:
            return

        if logout:
            try:
                await handle.logout()
            except Exception as e:
                logger.warning(f"Remote logout failed: {e}", extra={"tenant_id": owner.tenant_id})

        try:
            await handle.close()
        except Exception as e:
            logger.warning(f"Failed to close session: {e}", extra={"tenant_id": owner.tenant_id})

    async def _reconnect_later(self, owner: _TenantOwner, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info(f"Reconnecting after {delay}s", extra={"tenant_id": owner.tenant_id})
        owner.queue.put_nowait((ReconnectDue(), None, None))

    def _cancel_reconnect(self, owner: _TenantOwner) -> None:
        task = owner.reconnect_task
        owner.reconnect_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
