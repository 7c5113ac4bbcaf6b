"""Logging configuration for unifi-converge.

Provides:
- Console output for interactive runs
- File-based logging with rotation
- A separate performance logger timing controller round-trips

Environment Variables:
    UNIFI_CONVERGE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    UNIFI_CONVERGE_LOG_FILE: Path to log file (default: ~/.unifi-converge/unifi-converge.log)
    UNIFI_CONVERGE_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    UNIFI_CONVERGE_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from unifi_converge.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("list")
    async def list(self, collection):
        ...

    async with timed_section("stage", collection="networkconf", size=3):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("unifi_converge.perf")
main_logger = logging.getLogger("unifi_converge")

_configured = False


def get_log_level(default: str = "INFO") -> int:
    """Get log level from environment."""
    level_str = os.environ.get("UNIFI_CONVERGE_LOG_LEVEL", default).upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".unifi-converge" / "unifi-converge.log"
    return Path(os.environ.get("UNIFI_CONVERGE_LOG_FILE", str(default_path)))


def setup_logging(level: Optional[str] = None, log_to_file: bool = True) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (respects UNIFI_CONVERGE_LOG_LEVEL unless ``level`` is given)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance log next to the main log file

    Safe to call more than once; later calls only adjust the console level.
    """
    global _configured

    if level is None:
        log_level = get_log_level()
    else:
        log_level = getattr(logging, level.upper(), logging.INFO)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if _configured:
        for handler in main_logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(
                handler, RotatingFileHandler
            ):
                handler.setLevel(log_level)
        return

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(main_format)

    main_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    main_logger.addHandler(console_handler)

    # perf messages go to the console only when debugging
    perf_logger.propagate = False
    perf_console = logging.StreamHandler()
    perf_console.setLevel(logging.DEBUG if log_level <= logging.DEBUG else logging.CRITICAL)
    perf_console.setFormatter(perf_format)
    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_console)

    log_file = None
    if log_to_file:
        log_file = get_log_file()
        max_size_mb = int(os.environ.get("UNIFI_CONVERGE_LOG_MAX_SIZE", "10"))
        backup_count = int(os.environ.get("UNIFI_CONVERGE_LOG_BACKUPS", "5"))
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(main_format)
        main_logger.addHandler(file_handler)

        perf_handler = RotatingFileHandler(
            log_file.parent / "unifi-converge-perf.log",
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        perf_handler.setLevel(logging.DEBUG)
        perf_handler.setFormatter(perf_format)
        perf_logger.addHandler(perf_handler)

    _configured = True
    main_logger.debug(
        f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}"
    )


def _perf_line(operation: str, target: Optional[str], elapsed: float, outcome: str) -> str:
    return f"{operation:16s} | {target or 'N/A':24s} | {elapsed:8.2f}ms | {outcome}"


def timed(operation: str, target: Optional[str] = None):
    """Decorator to log execution time of async functions.

    The target defaults to the first positional argument after ``self``
    (the collection name for controller calls).

    Usage:
        @timed("create")
        async def create(self, collection, fields):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            label = target
            if label is None and len(args) > 1 and isinstance(args[1], str):
                label = args[1]

            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_perf_line(operation, label, elapsed, f"FAIL: {e}"))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            perf_logger.info(_perf_line(operation, label, elapsed, "OK"))
            return result

        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"@timed expects a coroutine function, got {func!r}")
        return wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, target: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Usage:
        async with timed_section("stage", target="networkconf", operations=3):
            await run_stage(...)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _perf_line(operation, target, elapsed, f"FAIL: {e}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
    elapsed = (time.perf_counter() - start) * 1000
    msg = _perf_line(operation, target, elapsed, "OK")
    if extra_str:
        msg += f" | {extra_str}"
    perf_logger.info(msg)
