"""
Sandbox recovery — reconnect to a session's desktop or provision a new one.

The provisioning service sits behind the Provisioner interface. Sandboxes
expire on the provider side, so every connection path ends in either a
usable stream URL or a recovery attempt that rebinds the session to a
fresh sandbox.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

from ..core import notifications
from ..core.errors import SandboxConnectError, SandboxError, SandboxNotFoundError
from ..core.models import ChatSession
from ..core.notifications import NotificationBus
from .errors import is_not_found_error, is_timeout_error

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3
STREAM_URL_ATTEMPTS = 5
STREAM_BACKOFF_CAP = 3.0

Sleep = Callable[[float], Awaitable[Any]]


class Provisioner:
    """Interface to the sandbox provisioning service."""

    async def connect(self, sandbox_id: str) -> Any:
        raise NotImplementedError

    async def create(self, **options: Any) -> Any:
        raise NotImplementedError

    async def get_stream_url(self, handle: Any) -> str:
        raise NotImplementedError

    def sandbox_id(self, handle: Any) -> str:
        return handle.sandbox_id


@dataclass(frozen=True)
class DesktopConnection:
    stream_url: str
    sandbox_id: str


async def get_desktop(
    provisioner: Provisioner,
    sandbox_id: Optional[str] = None,
    *,
    create_attempts: int = CREATE_ATTEMPTS,
    sleep: Sleep = asyncio.sleep,
    **create_options: Any,
) -> Any:
    """Connect to an existing sandbox, or create one when no id is given.

    Connecting never falls back to creating; the caller decides whether a
    missing sandbox should be replaced. Creation retries connect timeouts
    only, waiting 1s, 2s, ... between attempts.
    """
    if sandbox_id:
        try:
            return await provisioner.connect(sandbox_id)
        except Exception as e:
            if is_not_found_error(e):
                raise SandboxNotFoundError(
                    f"Sandbox {sandbox_id} not found or expired. Creating new sandbox."
                ) from e
            raise SandboxConnectError(f"Failed to connect to sandbox {sandbox_id}: {e}") from e

    attempts = max(1, create_attempts)
    for attempt in range(attempts):
        try:
            return await provisioner.create(**create_options)
        except Exception as e:
            if is_timeout_error(e) and attempt < attempts - 1:
                delay = 1.0 * (attempt + 1)
                logger.warning(
                    f"Connection timeout, retrying in {delay:.0f}s (attempt {attempt + 1}/{attempts})"
                )
                await sleep(delay)
                continue
            raise


async def get_desktop_url(
    provisioner: Provisioner,
    sandbox_id: Optional[str] = None,
    *,
    create_attempts: int = CREATE_ATTEMPTS,
    url_attempts: int = STREAM_URL_ATTEMPTS,
    sleep: Sleep = asyncio.sleep,
    **create_options: Any,
) -> DesktopConnection:
    """Resolve a stream URL, waiting for the stream server to come up."""
    try:
        desktop = await get_desktop(
            provisioner,
            sandbox_id,
            create_attempts=create_attempts,
            sleep=sleep,
            **create_options,
        )
    except SandboxError:
        raise
    except Exception as e:
        raise SandboxError(f"Failed to get desktop: {e}") from e

    attempts = max(1, url_attempts)
    last_error: Optional[Exception] = None
    for attempt in range(attempts):
        try:
            url = await provisioner.get_stream_url(desktop)
            return DesktopConnection(stream_url=url, sandbox_id=provisioner.sandbox_id(desktop))
        except Exception as e:
            last_error = e
            if attempt == attempts - 1:
                break
            if "not running" in str(e):
                # Stream still starting after a resume: 0.2s, 0.4s, 0.8s ... capped.
                delay = min(0.2 * (2 ** attempt), STREAM_BACKOFF_CAP)
                logger.debug(f"Stream not ready yet, retrying in {delay:.1f}s")
            else:
                delay = 0.2 * (attempt + 1)
            await sleep(delay)

    raise SandboxError(f"Failed to get desktop: {last_error}") from last_error


async def recover_desktop(
    error: Any,
    session: Optional[ChatSession],
    update_session: Callable[[ChatSession], None],
    notifier: NotificationBus,
    provisioner: Provisioner,
    **options: Any,
) -> Optional[DesktopConnection]:
    """Replace a failed sandbox and rebind the session to it.

    Returns the new connection, or None when provisioning fails too.
    """
    expired = is_not_found_error(error) and session is not None and bool(session.sandbox_id)
    if expired:
        # Replacing an expired sandbox is routine; sandbox-recovered is the only notice.
        logger.info(f"Sandbox {session.sandbox_id} expired; provisioning a replacement")
    else:
        logger.error(f"Desktop error: {error}")
        notifier.emit(
            notifications.SANDBOX_ERROR,
            f"Failed to connect to sandbox: {error or 'Please try again later.'}",
            sandbox_id=session.sandbox_id if session else None,
            error=str(error),
        )

    try:
        connection = await get_desktop_url(provisioner, None, **options)
    except SandboxError as e:
        logger.error(f"Failed to create new sandbox: {e}")
        notifier.emit(notifications.SANDBOX_ERROR, f"Failed to create new sandbox: {e}", error=str(e))
        return None

    if session is not None:
        update_session(replace(session, sandbox_id=connection.sandbox_id))
    if expired:
        message = "The previous sandbox expired, so your session was connected to a new one."
    else:
        message = "Your session has been connected to a new sandbox."
    notifier.emit(
        notifications.SANDBOX_RECOVERED,
        message,
        sandbox_id=connection.sandbox_id,
    )
    return connection


async def ensure_desktop(
    provisioner: Provisioner,
    session: ChatSession,
    update_session: Callable[[ChatSession], None],
    notifier: NotificationBus,
    **options: Any,
) -> Optional[DesktopConnection]:
    """Connect the session to its sandbox, recovering when it is gone."""
    try:
        connection = await get_desktop_url(provisioner, session.sandbox_id, **options)
    except SandboxError as e:
        logger.warning(f"Failed to initialize desktop for session {session.id}: {e}")
        return await recover_desktop(e, session, update_session, notifier, provisioner, **options)

    if session.sandbox_id != connection.sandbox_id:
        update_session(replace(session, sandbox_id=connection.sandbox_id))
    return connection
