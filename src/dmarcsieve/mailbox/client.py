"""IMAP mailbox wrapper used by the intake stage."""

from __future__ import annotations

import email
import email.policy
import imaplib
import logging
from dataclasses import dataclass, field

from dmarcsieve.config import ImapConfig
from dmarcsieve.errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    filename: str
    content: bytes


@dataclass
class ParsedEmail:
    uid: str
    subject: str = "No Subject"
    sender: str = "Unknown"
    attachments: list[Attachment] = field(default_factory=list)


class ImapMailbox:
    """Wraps an IMAP4-over-TLS connection with the operations intake needs.

    Messages are addressed by UID so flags stay valid across the batch.
    """

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        port: int = 993,
        mailbox: str = "INBOX",
        timeout: float | None = 60.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.mailbox = mailbox
        self.timeout = timeout
        self._conn: imaplib.IMAP4_SSL | None = None

    @classmethod
    def from_config(cls, config: ImapConfig) -> ImapMailbox:
        if not config.is_complete():
            raise ConfigurationError(
                "IMAP configuration missing. Set imap.host, imap.user and imap.password "
                "(or IMAP_HOST, IMAP_USER, IMAP_PASSWORD)."
            )
        return cls(
            host=config.host,
            user=config.user,
            password=config.password,
            port=config.port,
            mailbox=config.mailbox,
            timeout=config.timeout_seconds or None,
        )

    def __enter__(self) -> ImapMailbox:
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def conn(self) -> imaplib.IMAP4_SSL:
        if self._conn is None:
            raise TransportError("IMAP connection is not open")
        return self._conn

    def connect(self) -> None:
        logger.info("Connecting to IMAP server: %s:%s", self.host, self.port)
        try:
            self._conn = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
            self._conn.login(self.user, self.password)
        except (OSError, imaplib.IMAP4.error) as e:
            self._conn = None
            raise TransportError(f"IMAP connection to {self.host}:{self.port} failed: {e}") from e
        logger.info("IMAP connection ready")

    def select_inbox(self) -> int:
        """Open the configured mailbox read-write; returns its message count."""
        try:
            typ, data = self.conn.select(self.mailbox, readonly=False)
        except (OSError, imaplib.IMAP4.error) as e:
            raise TransportError(f"Error opening {self.mailbox}: {e}") from e
        if typ != "OK":
            raise TransportError(f"Error opening {self.mailbox}: {data!r}")
        total = int(data[0]) if data and data[0] else 0
        logger.info("%s opened. Total messages: %d", self.mailbox, total)
        return total

    def search_unseen(self) -> list[str]:
        """Return UIDs of all unseen messages."""
        try:
            typ, data = self.conn.uid("SEARCH", None, "UNSEEN")
        except (OSError, imaplib.IMAP4.error) as e:
            raise TransportError(f"Error searching emails: {e}") from e
        if typ != "OK":
            raise TransportError(f"Error searching emails: {data!r}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    def fetch_message(self, uid: str) -> bytes:
        """Fetch the full RFC 822 source of one message.

        Uses BODY.PEEK[] so the message keeps its unseen state; messages that
        are not consumed stay eligible for the next run.
        """
        try:
            typ, data = self.conn.uid("FETCH", uid, "(BODY.PEEK[])")
        except (OSError, imaplib.IMAP4.error) as e:
            raise TransportError(f"Error fetching message {uid}: {e}") from e
        if typ != "OK":
            raise TransportError(f"Error fetching message {uid}: {data!r}")
        for item in data:
            if isinstance(item, tuple) and len(item) == 2:
                return item[1]
        raise TransportError(f"Message {uid} returned no body")

    def flag_deleted(self, uid: str) -> None:
        try:
            typ, data = self.conn.uid("STORE", uid, "+FLAGS", "(\\Deleted)")
        except (OSError, imaplib.IMAP4.error) as e:
            raise TransportError(f"Error marking message {uid} for deletion: {e}") from e
        if typ != "OK":
            raise TransportError(f"Error marking message {uid} for deletion: {data!r}")
        logger.info("Marked email %s for deletion", uid)

    def expunge(self) -> None:
        try:
            typ, data = self.conn.expunge()
        except (OSError, imaplib.IMAP4.error) as e:
            raise TransportError(f"Error expunging: {e}") from e
        if typ != "OK":
            raise TransportError(f"Error expunging: {data!r}")

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            if self._conn.state == "SELECTED":
                self._conn.close()
            self._conn.logout()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.warning("Error closing IMAP connection: %s", e)
        finally:
            self._conn = None
            logger.info("IMAP connection ended")


def parse_email(uid: str, raw: bytes) -> ParsedEmail:
    """Parse a raw RFC 822 message into subject, sender and attachments.

    Any non-multipart part carrying a filename counts as an attachment,
    including a single-part message whose whole body is the report file.
    """
    msg = email.message_from_bytes(raw, policy=email.policy.default)

    attachments: list[Attachment] = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename()
        if not filename:
            continue
        content = part.get_payload(decode=True) or b""
        attachments.append(Attachment(filename=filename, content=content))

    return ParsedEmail(
        uid=uid,
        subject=str(msg.get("subject") or "No Subject"),
        sender=str(msg.get("from") or "Unknown"),
        attachments=attachments,
    )
