"""
Utility functions for the randrpc SDK.

These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import random
import time


def sleep_with_jitter(seconds: float, jitter_factor: float = 0.1) -> None:
    """
    Sleep for the given duration with random jitter.

    Adds random variation to sleep duration to prevent thundering herd
    problems when multiple clients retry simultaneously.

    Args:
        seconds: Base sleep duration in seconds.
        jitter_factor: Maximum percentage variation (default: 10%).
            For example, 0.1 means sleep time varies by +/- 10%.

    Example:
        >>> sleep_with_jitter(10.0)  # Sleeps between 9.0 and 11.0 seconds
    """
    jitter = random.uniform(-jitter_factor, jitter_factor)
    sleep_time = max(0.0, seconds * (1 + jitter))
    time.sleep(sleep_time)


def mask_api_key(api_key: str, visible: int = 4) -> str:
    """
    Return a log-safe rendition of an API key.

    Example:
        >>> mask_api_key("6b1e65b9-4186-45c2-8981-b77a9842c4f0")
        '6b1e…'
    """
    if not api_key:
        return "<no key>"
    return f"{api_key[:visible]}…"
