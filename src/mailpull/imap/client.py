# =============================================================================
# IMAP Client
# =============================================================================
# Provides an async IMAP session wrapper around aioimaplib.
#
# Key responsibilities:
#   - Connection management (SSL or plain + STARTTLS, LOGIN, LOGOUT)
#   - Selecting the single watched mailbox and reporting its UID state
#   - Raw message retrieval by UID (search, fetch, mark seen)
#   - IDLE support for push notifications
#
# Design notes:
#   - One IMAPClient is one session; it is never reconnected in place.
#     The worker throws it away and builds a new one after any failure.
#   - Every network call can raise IMAPConnectionError; the caller decides
#     whether to retry.
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable

from aioimaplib import aioimaplib

logger = logging.getLogger(__name__)

# aioimaplib protocol states in which commands can still be sent
_USABLE_STATES = ("AUTH", "SELECTED")

_EXISTS_PATTERN = re.compile(r"^\*?\s*(\d+)\s+EXISTS", re.IGNORECASE)
_FETCH_UID_PATTERN = re.compile(r"FETCH\s+\(.*?UID\s+(\d+)", re.IGNORECASE)


def _quote_mailbox_name(name: str) -> str:
    """Quote a mailbox name if it contains spaces or special characters."""
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _line_to_str(line: bytes | bytearray | str) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def _uid_set(uids: list[int]) -> str:
    return ",".join(str(u) for u in uids)


def _client_usable(client: aioimaplib.IMAP4) -> bool:
    protocol = client.protocol
    if protocol is None or protocol.state not in _USABLE_STATES:
        return False
    transport = getattr(protocol, "transport", None)
    return transport is not None and not transport.is_closing()


def _close_transport(client: aioimaplib.IMAP4) -> None:
    protocol = client.protocol
    transport = getattr(protocol, "transport", None) if protocol else None
    if transport is not None and not transport.is_closing():
        transport.close()


@dataclass
class ConnectionParams:
    """
    Everything needed to open a session.

    Attributes:
        host: IMAP server hostname.
        port: IMAP server port.
        secure: TLS from the first byte. When False the session is upgraded
                with STARTTLS if the server advertises it.
        username: Login name.
        password: Plaintext password (already decrypted).
        timeout: Timeout for individual commands (seconds).
    """
    host: str
    port: int
    secure: bool
    username: str
    password: str
    timeout: float = 30.0

    def __repr__(self) -> str:
        # Never log the password
        return (
            f"ConnectionParams(host={self.host!r}, port={self.port}, "
            f"secure={self.secure}, username={self.username!r})"
        )


@dataclass
class MailboxHandle:
    """
    A selected mailbox.

    Valid for the lifetime of the session that selected it; it is not
    re-acquired per sync.
    """
    name: str
    uid_validity: int | None = None
    uid_next: int | None = None
    exists: int = 0


class IMAPClient:
    """
    Async IMAP session for mailpull.

    Usage:
        >>> client = IMAPClient(params)
        >>> await client.connect()
        >>> mailbox = await client.select_mailbox("INBOX")
        >>> uids = await client.search_uids("UNSEEN")
        >>> await client.disconnect()

    Attributes:
        params: Connection parameters for this session.
        on_new_mail: Called with the EXISTS line when the server pushes
                     new mail during IDLE.
    """

    def __init__(self, params: ConnectionParams) -> None:
        self.params = params
        self.on_new_mail: Callable[[str], None] | None = None
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None
        self._idle_future: asyncio.Future | None = None
        self._mailbox: MailboxHandle | None = None

    @property
    def mailbox(self) -> MailboxHandle | None:
        """The currently selected mailbox, if any."""
        return self._mailbox

    @property
    def is_idling(self) -> bool:
        return self._idle_future is not None

    @property
    def is_usable(self) -> bool:
        """Check that the session is logged in and the socket is still open."""
        return self._client is not None and _client_usable(self._client)

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish and authenticate the session.

        Raises:
            IMAPConnectionError: If unable to reach or talk to the server.
            IMAPAuthenticationError: If LOGIN is rejected.
        """
        host, port = self.params.host, self.params.port
        logger.info(f"Connecting to {host}:{port}")

        try:
            if self.params.secure:
                # Direct SSL connection (usually port 993)
                self._client = aioimaplib.IMAP4_SSL(
                    host=host, port=port, timeout=self.params.timeout
                )
            else:
                # Plain connection, upgraded with STARTTLS when offered (usually port 143)
                self._client = aioimaplib.IMAP4(
                    host=host, port=port, timeout=self.params.timeout
                )

            await self._client.wait_hello_from_server()

            if not self.params.secure and self._client.has_capability("STARTTLS"):
                logger.debug("Upgrading to TLS via STARTTLS")
                await self._client.starttls()

            await self._authenticate()

        except asyncio.TimeoutError as e:
            await self._force_close()
            raise IMAPConnectionError(f"Connection timed out to {host}:{port}") from e
        except OSError as e:
            await self._force_close()
            raise IMAPConnectionError(f"Failed to connect to {host}:{port}: {e}") from e
        except IMAPError:
            await self._force_close()
            raise

        logger.info(f"Successfully connected to {host}")

    async def _authenticate(self) -> None:
        """
        Log in with the session's credentials.

        Raises:
            IMAPAuthenticationError: If the server rejects the login.
        """
        logger.debug(f"Authenticating as {self.params.username}")

        response = await self._client.login(self.params.username, self.params.password)

        if response.result != "OK":
            detail = " ".join(_line_to_str(line) for line in response.lines)
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.params.username}: {detail}"
            )

        logger.debug("Authentication successful")

    async def disconnect(self) -> None:
        """
        Leave IDLE, send LOGOUT and drop the connection.

        Safe to call repeatedly, concurrently and on a half-open session.
        """
        client, self._client = self._client, None
        if client is None:
            return

        # No new commands can start on this session from here on
        idle_future, self._idle_future = self._idle_future, None
        self._mailbox = None

        try:
            if idle_future is not None and not idle_future.done():
                client.idle_done()
                await asyncio.wait_for(idle_future, timeout=self.params.timeout)
            if _client_usable(client):
                logger.debug("Sending LOGOUT")
                await asyncio.wait_for(client.logout(), timeout=self.params.timeout)
        except Exception as e:
            logger.warning(f"Error during logout: {e}")
        finally:
            _close_transport(client)

    async def _force_close(self) -> None:
        client, self._client = self._client, None
        self._idle_future = None
        self._mailbox = None
        if client is not None:
            _close_transport(client)

    def _require_client(self) -> aioimaplib.IMAP4:
        if not self.is_usable:
            raise IMAPConnectionError("IMAP session is not connected")
        return self._client

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def select_mailbox(self, name: str) -> MailboxHandle:
        """
        SELECT a mailbox and report its UID state.

        Raises:
            IMAPError: If the server refuses the selection.
        """
        client = self._require_client()
        logger.debug(f"Selecting mailbox: {name}")

        try:
            response = await client.select(_quote_mailbox_name(name))
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError(f"SELECT {name} timed out") from e

        if response.result != "OK":
            raise IMAPError(f"Failed to select mailbox '{name}': {response.lines}")

        self._mailbox = self._parse_select_response(name, response.lines)
        logger.debug(f"Selected {self._mailbox}")
        return self._mailbox

    def _parse_select_response(self, name: str, lines: list) -> MailboxHandle:
        """Parse SELECT response lines into a MailboxHandle."""
        handle = MailboxHandle(name=name)

        for raw in lines:
            line = _line_to_str(raw)

            match = re.search(r"(\d+)\s+EXISTS", line, re.IGNORECASE)
            if match:
                handle.exists = int(match.group(1))

            match = re.search(r"UIDVALIDITY\s+(\d+)", line, re.IGNORECASE)
            if match:
                handle.uid_validity = int(match.group(1))

            match = re.search(r"UIDNEXT\s+(\d+)", line, re.IGNORECASE)
            if match:
                handle.uid_next = int(match.group(1))

        return handle

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def search_uids(self, criteria: str) -> list[int]:
        """
        UID SEARCH the selected mailbox.

        Args:
            criteria: IMAP search criteria, e.g. "UNSEEN" or "UID 10:*".

        Returns:
            Matching UIDs in ascending order.
        """
        client = self._require_client()

        try:
            response = await client.uid_search(criteria)
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError(f"UID SEARCH {criteria} timed out") from e

        if response.result != "OK":
            raise IMAPError(f"UID SEARCH {criteria} failed: {response.lines}")

        # The last line is the tagged completion text
        data_lines = response.lines[:-1] if len(response.lines) > 1 else response.lines
        uids = set()
        for raw in data_lines:
            for token in _line_to_str(raw).split():
                if token.isdigit():
                    uids.add(int(token))
        return sorted(uids)

    async def fetch_raw(self, uids: list[int]) -> list[tuple[int, bytes]]:
        """
        Fetch full RFC 822 sources without setting \\Seen.

        Returns:
            (uid, raw source) pairs for every message the server returned.
        """
        if not uids:
            return []
        client = self._require_client()

        try:
            response = await client.uid("fetch", _uid_set(uids), "(UID BODY.PEEK[])")
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError("UID FETCH timed out") from e

        if response.result != "OK":
            raise IMAPError(f"UID FETCH failed: {response.lines}")

        # aioimaplib yields: b'N FETCH (UID x BODY[] {size}', bytearray(literal), b')'
        messages: list[tuple[int, bytes]] = []
        pending_uid: int | None = None
        for line in response.lines:
            if isinstance(line, bytearray):
                if pending_uid is not None:
                    messages.append((pending_uid, bytes(line)))
                    pending_uid = None
                continue
            match = _FETCH_UID_PATTERN.search(_line_to_str(line))
            if match:
                pending_uid = int(match.group(1))

        return messages

    async def mark_seen(self, uids: list[int]) -> None:
        """Add the \\Seen flag to messages."""
        if not uids:
            return
        client = self._require_client()

        try:
            response = await client.uid("store", _uid_set(uids), "+FLAGS.SILENT (\\Seen)")
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError("UID STORE timed out") from e

        if response.result != "OK":
            raise IMAPError(f"Failed to set \\Seen: {response.lines}")

    # =========================================================================
    # IDLE Support
    # =========================================================================

    def supports_idle(self) -> bool:
        """Check if server supports IDLE command."""
        if not self._client:
            return False
        return self._client.has_capability("IDLE")

    async def idle_start(self, timeout: float = 29 * 60) -> None:
        """
        Enter IDLE mode on the selected mailbox.

        Use idle_wait() to wait for changes, then idle_done() to leave.
        """
        client = self._require_client()
        if not self.supports_idle():
            raise IMAPError("Server does not support IDLE")

        logger.debug("Entering IDLE mode")
        self._idle_future = await client.idle_start(timeout=timeout)

    async def idle_wait(self, timeout: float = 29 * 60) -> list[str]:
        """
        Wait for IDLE notifications from the server.

        Returns when the server announces new mail (EXISTS), when IDLE is
        ended from our side, or when the timeout expires.

        Args:
            timeout: Maximum seconds to wait. A timeout is not an error.

        Returns:
            Notification lines, or an empty list on timeout.

        Raises:
            IMAPConnectionError: If the connection dies while waiting.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            client = self._require_client()
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("IDLE timeout - refreshing")
                return []

            try:
                msg = await client.wait_server_push(timeout=remaining)
            except asyncio.TimeoutError:
                logger.debug("IDLE timeout - refreshing")
                return []
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise IMAPConnectionError(f"IDLE wait failed: {e}") from e

            if msg == aioimaplib.STOP_WAIT_SERVER_PUSH:
                return []

            notifications = [_line_to_str(line) for line in (msg or [])]
            logger.debug(f"IDLE notifications: {notifications}")

            new_mail = [n for n in notifications if _EXISTS_PATTERN.match(n.strip())]
            if new_mail:
                if self.on_new_mail is not None:
                    self.on_new_mail(new_mail[-1])
                return notifications
            # EXPUNGE / FETCH flag changes don't need a sync; keep waiting

    async def idle_done(self) -> None:
        """
        Exit IDLE mode.

        Must be called after idle_wait() returns to properly close IDLE.
        """
        idle_future, self._idle_future = self._idle_future, None
        if self._client is None or idle_future is None:
            return

        if idle_future.done():
            # Server already ended IDLE (its own timeout)
            return

        try:
            self._client.idle_done()
            await asyncio.wait_for(idle_future, timeout=self.params.timeout)
        except asyncio.TimeoutError as e:
            raise IMAPConnectionError("Server did not acknowledge DONE") from e


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when the connection to the IMAP server fails or drops."""
    pass


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails."""
    pass
