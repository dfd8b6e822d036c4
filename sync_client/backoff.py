DEFAULT_BASE_DELAY_MS = 5000
DEFAULT_MAX_DELAY_MS = 300000


def backoff_delay_ms(retry_count: int, base_delay_ms: int = DEFAULT_BASE_DELAY_MS, max_delay_ms: int = DEFAULT_MAX_DELAY_MS) -> int:
    """Delay before retry number `retry_count` (1-based): min(base * 2^(n-1), max)."""
    if retry_count < 1:
        return 0
    return min(base_delay_ms * 2 ** (retry_count - 1), max_delay_ms)
