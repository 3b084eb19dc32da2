"""
Robust error handling: logging setup, retry logic, screenshot capture.
"""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from loguru import logger

import gmb_export.config as cfg
from gmb_export.models.business import utcnow


class ErrorHandler:
    """Centralised error handling and recovery utilities."""

    _logging_ready = False

    # -- Logging -----------------------------------------------------------

    @classmethod
    def setup_logging(cls) -> None:
        """Configure the rotating file sink (once per process)."""
        if cls._logging_ready:
            return
        cfg.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        log_path = cfg.LOGS_DIR / "gmb_export_{time:YYYY-MM-DD}.log"
        logger.add(
            str(log_path),
            rotation="10 MB",
            retention="7 days",
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {message}",
            enqueue=True,
        )
        cls._logging_ready = True
        logger.info("Logging initialised  ->  {}", cfg.LOGS_DIR)

    # -- Screenshots -------------------------------------------------------

    @staticmethod
    async def take_screenshot(page: Any, error_name: str) -> Optional[Path]:
        """Save a screenshot of *page* (anything with ``screenshot(path)``)."""
        if not cfg.ENABLE_SCREENSHOTS or not hasattr(page, "screenshot"):
            return None

        cfg.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        ts = utcnow().strftime("%Y%m%d_%H%M%S")
        filename = cfg.LOGS_DIR / f"{ts}_{error_name}.png"
        try:
            await page.screenshot(path=str(filename))
            logger.warning("Screenshot saved  ->  {}", filename)
            return filename
        except Exception as exc:
            logger.error("Failed to save screenshot: {}", exc)
            return None

    # -- Retry with exponential backoff ------------------------------------

    @staticmethod
    async def retry_with_backoff(
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        max_retries: int = cfg.MAX_RETRIES,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        **kwargs: Any,
    ) -> Any:
        """
        Await *func* up to *max_retries* times with exponential backoff.

        Returns the result of the first successful call.
        Raises the last exception if all retries fail.
        """
        last_exc: Optional[BaseException] = None
        for attempt in range(1, max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except retry_on as exc:
                last_exc = exc
                if attempt == max_retries:
                    break
                wait = min(
                    cfg.RETRY_BACKOFF_BASE ** attempt,
                    cfg.RETRY_BACKOFF_MAX,
                )
                logger.warning(
                    "Attempt {}/{} failed ({}). Retrying in {:.1f}s ...",
                    attempt,
                    max_retries,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)
        raise last_exc  # type: ignore[misc]
