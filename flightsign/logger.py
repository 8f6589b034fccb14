from rich.console import Console
from functools import lru_cache


@lru_cache(maxsize=1)
def get_console() -> Console:
    """Get or create the shared Console instance"""
    return Console()


@lru_cache(maxsize=1)
def get_error_console() -> Console:
    """Console bound to stderr, used for errors and recovery suggestions"""
    return Console(stderr=True)
