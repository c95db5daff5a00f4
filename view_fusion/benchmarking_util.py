import contextlib
import logging
import time
from typing import Generator

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def debug_timing(span_name: str) -> Generator[None, None, None]:
    """Log the time spent in this context at debug level, also when it raises."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        total_time = time.perf_counter() - start_time
        logger.debug(f"{span_name}: {total_time:0.3f}s")


@contextlib.contextmanager
def profile_context(to_file: str) -> Generator[None, None, None]:
    """Run profiling with cProfile within this context and dump the output to the given file."""
    import cProfile

    pr = cProfile.Profile()
    pr.enable()
    try:
        yield
    finally:
        pr.disable()
        pr.dump_stats(to_file)
        logger.info(f"Wrote profile statistics to {to_file}")
