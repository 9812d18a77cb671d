"""Retry backoff calculator for driver call retries."""

import random


class RetryBackoffCalculator:
    """Calculate backoff delays for transient driver failures."""

    @staticmethod
    def calculate_delay(
        attempt: int,
        strategy: str,
        base_seconds: float,
        max_seconds: float,
        jitter: bool = True,
    ) -> float:
        """Calculate backoff delay with jitter.

        Args:
            attempt: Retry attempt number (1-based)
            strategy: Backoff strategy (exponential, linear, fixed)
            base_seconds: Base delay in seconds
            max_seconds: Maximum delay cap in seconds
            jitter: Apply ±10% jitter

        Returns:
            Delay in seconds
        """
        if strategy == "exponential":
            delay = base_seconds * (2 ** (attempt - 1))
        elif strategy == "linear":
            delay = base_seconds * attempt
        elif strategy == "fixed":
            delay = base_seconds
        else:
            raise ValueError(f"Unknown backoff strategy: {strategy}")

        # Cap at max
        delay = min(delay, max_seconds)

        if jitter:
            spread = delay * 0.1
            delay = delay + random.uniform(-spread, spread)

        return float(max(0.0, delay))
