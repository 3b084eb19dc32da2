"""
Extraction orchestrator -- drives one harvest session against a live page.

Phases: awaiting-ready -> (extracting <-> loading-more) -> complete.
Waits are ``asyncio`` suspension points, never busy loops. Cancellation is
checked at the top of every readiness poll, scroll round and listing, and
whatever was extracted before the signal is kept on the session.
"""

import asyncio
import hashlib
import random
from typing import List, Optional, Protocol, Set

from bs4 import Tag
from loguru import logger

from gmb_export.core.errors import ListingExtractionError, PageLoadTimeout
from gmb_export.core.parser import RecordExtractor
from gmb_export.models.business import BusinessRecord
from gmb_export.models.session import (
    ExtractionSession,
    ExtractionSettings,
    Phase,
    ProgressListener,
    SessionStatus,
)


class ListingPage(Protocol):
    """The live page as the orchestrator sees it. Read-only apart from scrolling."""

    async def is_ready(self) -> bool: ...

    async def load_more(self) -> None: ...

    async def content_height(self) -> int: ...

    async def listing_nodes(self) -> List[Tag]: ...

    async def reached_end(self) -> bool: ...


def _fingerprint(node: Tag) -> str:
    return hashlib.sha1(str(node).encode("utf-8")).hexdigest()


class ExtractionOrchestrator:
    """Runs sessions; holds no per-session state itself."""

    def __init__(
        self,
        extractor: Optional[RecordExtractor] = None,
        settings: Optional[ExtractionSettings] = None,
    ) -> None:
        self.extractor = extractor or RecordExtractor()
        self.settings = settings or ExtractionSettings()

    async def run(
        self,
        page: ListingPage,
        query: str,
        location: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> ExtractionSession:
        """
        Harvest every listing *page* reveals for *query*.

        Returns the session once it is terminal: ``complete`` (possibly with
        zero records), ``failed`` (page never became ready) or ``cancelled``
        (records gathered so far are kept).
        """
        session = ExtractionSession(query=query, location=location)
        session.subscribe(on_progress)
        cancel = cancel or asyncio.Event()

        logger.info("Session started for '{}'", query)
        try:
            await self._await_ready(page, session, cancel)
        except PageLoadTimeout as exc:
            session.failure = exc
            session.finish(SessionStatus.FAILED, exc.code)
            logger.error("Session for '{}' failed: {}", query, exc)
            return session

        if not session.is_terminal:
            await self._harvest(page, session, cancel)

        logger.info(
            "Session for '{}' ended {} ({}) with {} record(s), {} skipped listing(s)",
            query,
            session.status.value,
            session.end_reason,
            len(session.records),
            len(session.errors),
        )
        return session

    # -- awaiting-ready ----------------------------------------------------

    async def _await_ready(
        self,
        page: ListingPage,
        session: ExtractionSession,
        cancel: asyncio.Event,
    ) -> None:
        s = self.settings
        session.emit(Phase.AWAITING_READY)
        for attempt in range(1, s.ready_max_attempts + 1):
            if cancel.is_set():
                session.finish(SessionStatus.CANCELLED, "cancelled")
                return
            try:
                ready = await page.is_ready()
            except Exception as exc:
                logger.debug("Readiness check {} raised: {}", attempt, exc)
                ready = False
            if ready:
                logger.info("Page ready after {} poll(s)", attempt)
                return
            await asyncio.sleep(s.ready_poll_interval)
        raise PageLoadTimeout(s.ready_max_attempts)

    # -- extracting / loading-more -----------------------------------------

    async def _harvest(
        self,
        page: ListingPage,
        session: ExtractionSession,
        cancel: asyncio.Event,
    ) -> None:
        s = self.settings
        processed: Set[str] = set()
        consecutive_stale = 0
        done_reason: Optional[str] = None

        while True:
            if cancel.is_set():
                session.finish(SessionStatus.CANCELLED, "cancelled")
                return

            await self._extract_pending(page, session, processed, cancel)
            if session.is_terminal:
                return
            if self._target_reached(session):
                logger.info(
                    "Target reached ({}/{} records)",
                    len(session.records),
                    s.max_results,
                )
                session.finish(SessionStatus.COMPLETE, "max_results")
                return
            if done_reason:
                session.finish(SessionStatus.COMPLETE, done_reason)
                return

            # -- Load more ---------------------------------------------
            session.emit(Phase.LOADING_MORE)
            before = await self._height(page)
            try:
                await page.load_more()
            except Exception as exc:
                logger.warning("Scroll action failed: {}", exc)
            await asyncio.sleep(random.uniform(s.settle_min, s.settle_max))
            after = await self._height(page)
            session.scroll_rounds += 1

            if after == before:
                consecutive_stale += 1
                session.stale_rounds += 1
            else:
                consecutive_stale = 0
            logger.debug(
                "Height {} -> {} (stale rounds: {}, listings found: {})",
                before,
                after,
                consecutive_stale,
                session.listings_found,
            )

            if consecutive_stale >= s.max_stale_attempts:
                logger.info(
                    "No new results for {} rounds -- finishing", consecutive_stale
                )
                done_reason = "scroll_stall"
            elif await self._reached_end(page):
                logger.info("Reached end of list")
                done_reason = "end_of_list"
            elif session.scroll_rounds >= s.max_scroll_rounds:
                logger.warning(
                    "Scroll cap of {} rounds hit -- finishing", s.max_scroll_rounds
                )
                done_reason = "max_scroll_rounds"

    async def _extract_pending(
        self,
        page: ListingPage,
        session: ExtractionSession,
        processed: Set[str],
        cancel: asyncio.Event,
    ) -> None:
        """Extract every listing currently on the page not seen before."""
        try:
            nodes = await page.listing_nodes()
        except Exception as exc:
            logger.warning("Could not read listing nodes: {}", exc)
            return

        session.listings_found = max(session.listings_found, len(nodes))
        session.emit(Phase.EXTRACTING)

        for index, node in enumerate(nodes, start=1):
            if cancel.is_set():
                session.finish(SessionStatus.CANCELLED, "cancelled")
                return
            key = _fingerprint(node)
            if key in processed:
                continue
            processed.add(key)

            record = self._extract_one(node, index, session)
            if record is not None:
                # stalled until a listing extracts cleanly again
                if session.status == SessionStatus.STALLED:
                    session.status = SessionStatus.RUNNING
                if session.add_record(record):
                    session.emit(Phase.EXTRACTING)
                else:
                    logger.debug("Duplicate listing skipped: {}", record.name)
            if self._target_reached(session):
                return
            # yield to other jobs between listings
            await asyncio.sleep(0)

    def _extract_one(
        self,
        node: Tag,
        index: int,
        session: ExtractionSession,
    ) -> Optional[BusinessRecord]:
        attempts = self.settings.listing_max_attempts
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                result = self.extractor.extract(node, session.query)
            except Exception as exc:
                last_exc = exc
                logger.debug(
                    "Listing #{} attempt {}/{} raised: {}", index, attempt, attempts, exc
                )
                continue
            if not result:
                logger.debug("Listing #{} discarded: {}", index, result.reason)
                return None
            return result

        error = ListingExtractionError(index, attempts, last_exc)
        session.errors.append(error)
        session.status = SessionStatus.STALLED
        session.emit(Phase.STALLED)
        logger.warning("[{}] {} -- skipping", error.code, error)
        return None

    # -- helpers -----------------------------------------------------------

    def _target_reached(self, session: ExtractionSession) -> bool:
        cap = self.settings.max_results
        return cap is not None and len(session.records) >= cap

    @staticmethod
    async def _height(page: ListingPage) -> int:
        try:
            return await page.content_height()
        except Exception as exc:
            logger.debug("Could not read content height: {}", exc)
            return -1

    @staticmethod
    async def _reached_end(page: ListingPage) -> bool:
        try:
            return await page.reached_end()
        except Exception as exc:
            logger.debug("End-of-list check raised: {}", exc)
            return False
