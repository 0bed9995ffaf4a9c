"""Message intake: unseen mailbox messages to stored DMARC reports."""

from __future__ import annotations

import gzip
import io
import logging
import sqlite3
import zipfile
import zlib
from dataclasses import dataclass
from typing import Protocol

from dmarcsieve.database import insert_processing_log
from dmarcsieve.errors import ParseError, TransportError
from dmarcsieve.mailbox.client import ParsedEmail, parse_email
from dmarcsieve.models import IntakeStatus, ProcessingLogEntry
from dmarcsieve.stages.parse import parse_report

logger = logging.getLogger(__name__)

XML_SUFFIX = ".xml"


class Mailbox(Protocol):
    def connect(self) -> None: ...
    def select_inbox(self) -> int: ...
    def search_unseen(self) -> list[str]: ...
    def fetch_message(self, uid: str) -> bytes: ...
    def flag_deleted(self, uid: str) -> None: ...
    def expunge(self) -> None: ...
    def close(self) -> None: ...


@dataclass
class IntakeResult:
    messages: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    reports_created: int = 0
    duplicates: int = 0


def extract_payload(filename: str, content: bytes) -> str | None:
    """Return the XML text carried by one attachment.

    ``.gz`` is gunzipped, ``.zip`` yields its first ``.xml`` entry (or its
    first entry when none has that suffix), ``.xml`` is used verbatim. Any
    other suffix returns None. Corrupt archives raise ParseError.
    """
    name = filename.lower()
    try:
        if name.endswith(".gz"):
            logger.debug("Extracting GZ file: %s", filename)
            return gzip.decompress(content).decode("utf-8")

        if name.endswith(".zip"):
            logger.debug("Extracting ZIP file: %s", filename)
            with zipfile.ZipFile(io.BytesIO(content)) as archive:
                entries = [i for i in archive.infolist() if not i.is_dir()]
                if not entries:
                    raise ParseError(f"ZIP file {filename} is empty")
                entry = next(
                    (e for e in entries if e.filename.lower().endswith(XML_SUFFIX)),
                    entries[0],
                )
                return archive.read(entry).decode("utf-8")

        if name.endswith(XML_SUFFIX):
            logger.debug("Reading XML file: %s", filename)
            return content.decode("utf-8")
    except (OSError, EOFError, zlib.error, zipfile.BadZipFile, UnicodeDecodeError) as e:
        raise ParseError(f"Error extracting {filename}: {e}") from e

    return None


class IntakeEngine:
    """Processes every unseen message of a mailbox into stored reports."""

    def __init__(self, mailbox: Mailbox, db: sqlite3.Connection):
        self.mailbox = mailbox
        self.db = db

    def run(self) -> IntakeResult:
        """Connect, process all unseen messages, expunge consumed ones, close.

        Connection, select and search failures propagate to the caller.
        Failures on a single message or attachment are logged and recorded
        in processing_log. An expunge failure is logged and the result is
        still returned.
        """
        result = IntakeResult()
        self.mailbox.connect()
        try:
            self.mailbox.select_inbox()
            uids = self.mailbox.search_unseen()

            if not uids:
                logger.info("No new emails to process")
                return result

            logger.info("Found %d unread email(s)", len(uids))
            flagged = 0
            for uid in uids:
                result.messages += 1
                status = self._process_uid(uid, result)
                if status == IntakeStatus.SUCCESS:
                    result.succeeded += 1
                    flagged += 1
                elif status == IntakeStatus.FAILED:
                    result.failed += 1
                else:
                    result.skipped += 1

            logger.info("All emails processed")
            if flagged:
                try:
                    self.mailbox.expunge()
                except TransportError as e:
                    # Flagged messages stay in the mailbox until the next expunge
                    logger.error("Error expunging %d flagged email(s): %s", flagged, e)
        finally:
            self.mailbox.close()

        return result

    def _process_uid(self, uid: str, result: IntakeResult) -> IntakeStatus:
        try:
            parsed = parse_email(uid, self.mailbox.fetch_message(uid))
            return self._process_email(parsed, result)
        except Exception as e:
            logger.exception("Error processing email %s", uid)
            self._log(uid, "Unknown", "Unknown", 0, IntakeStatus.FAILED, str(e))
            return IntakeStatus.FAILED

    def _process_email(self, parsed: ParsedEmail, result: IntakeResult) -> IntakeStatus:
        logger.info("Processing email: %s from %s", parsed.subject, parsed.sender)

        if not parsed.attachments:
            logger.warning("Email %s has no attachments, skipping", parsed.uid)
            self._log(parsed.uid, parsed.subject, parsed.sender, 0,
                      IntakeStatus.SKIPPED, "No attachments found")
            return IntakeStatus.SKIPPED

        processed = 0
        for attachment in parsed.attachments:
            try:
                xml = extract_payload(attachment.filename, attachment.content)
                if xml is None:
                    logger.warning("Unknown attachment format: %s", attachment.filename)
                    continue
                outcome = parse_report(self.db, xml)
            except ParseError as e:
                logger.error("Error parsing DMARC XML in %s: %s", attachment.filename, e)
                continue

            processed += 1
            if outcome.created:
                result.reports_created += 1
            else:
                result.duplicates += 1

        count = len(parsed.attachments)
        if processed > 0:
            self.mailbox.flag_deleted(parsed.uid)
            self._log(parsed.uid, parsed.subject, parsed.sender, count,
                      IntakeStatus.SUCCESS, None)
            return IntakeStatus.SUCCESS

        self._log(parsed.uid, parsed.subject, parsed.sender, count,
                  IntakeStatus.FAILED, "No valid DMARC XML found in attachments")
        return IntakeStatus.FAILED

    def _log(self, uid: str, subject: str, sender: str, attachment_count: int,
             status: IntakeStatus, error: str | None) -> None:
        insert_processing_log(self.db, ProcessingLogEntry(
            email_uid=uid,
            subject=subject,
            from_address=sender,
            attachment_count=attachment_count,
            status=status.value,
            error_message=error,
        ))
