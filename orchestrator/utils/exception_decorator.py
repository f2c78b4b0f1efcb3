import functools
import inspect
import logging

from orchestrator.utils.errors import OrchestratorError


def _log(func, e: Exception):
    # Domain errors are reported once by whoever maps them to an exit code.
    if isinstance(e, OrchestratorError):
        logging.debug(f"{func.__qualname__} raised {type(e).__name__}: {e}")
    else:
        logging.error(f"Exception in {func.__qualname__}", exc_info=True)


def log_exceptions(func):
    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                _log(func, e)
                raise
    else:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _log(func, e)
                raise
    return wrapper
