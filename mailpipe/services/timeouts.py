from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

from mailpipe.logging_config import get_logger

logger = get_logger(__name__)


def run_with_timeout(func, timeout_seconds, *args, timeout_error=TimeoutError, **kwargs):
    """
    Run `func(*args, **kwargs)` on a worker thread and wait at most `timeout_seconds`.

    The worker is abandoned, not killed, when the deadline passes; callers must
    only pass outbound calls that hold no locks or database sessions.

    Args:
        func: Callable to run
        timeout_seconds: Deadline in seconds; None or 0 waits indefinitely
        timeout_error: Exception class raised when the deadline passes

    Raises:
        timeout_error: If func did not finish in time
        Exception: Whatever func raised
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mailpipe-outbound")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds or None)
    except FutureTimeoutError:
        future.cancel()
        logger.warning("Outbound call timed out", call=getattr(func, "__qualname__", repr(func)),
                       timeout_seconds=timeout_seconds)
        raise timeout_error(f"Timed out after {timeout_seconds}s") from None
    finally:
        executor.shutdown(wait=False)
