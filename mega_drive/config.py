"""
MEGA drive client configuration.
"""

from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class MegaDriveConfig:
    """
    Attributes:
        api_url: Base URL for the MEGA command API.
        timeout: Request timeout for command batches in seconds.
        transfer_timeout: Timeout for a single chunk fetch or send in seconds.
        user_agent: User-Agent header value.
        max_retries: Maximum number of retries for transient failures (attempts = retries + 1).
        retry_delay: Initial backoff delay between retries in seconds.
        max_retry_delay: Upper bound for the backoff delay, which doubles per attempt.
        use_https_transfers: Rewrite storage URLs to HTTPS.
        solve_hashcash: Solve proof-of-work challenges sent with HTTP 402.
        key_derivation_rounds: Rounds of the v1 password key stretching.
        pbkdf2_iterations: PBKDF2 iterations for v2 accounts.
        max_concurrent_transfers: Maximum number of transfers running at once.
    """

    api_url: str = "https://g.api.mega.co.nz"
    timeout: float = 60.0
    transfer_timeout: float = 120.0
    user_agent: str = "MegaDrive-Python/1.0"
    max_retries: int = 3
    retry_delay: float = 0.25
    max_retry_delay: float = 8.0
    use_https_transfers: bool = True
    solve_hashcash: bool = True
    key_derivation_rounds: int = 0x10000
    pbkdf2_iterations: int = 100_000
    max_concurrent_transfers: int = 4

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)
        if self.transfer_timeout <= 0:
            msg = "transfer_timeout must be positive"
            raise ValueError(msg)
        if self.max_retries < 0:
            msg = "max_retries must be non-negative"
            raise ValueError(msg)
        if self.retry_delay < 0:
            msg = "retry_delay must be non-negative"
            raise ValueError(msg)
        if self.max_retry_delay < self.retry_delay:
            msg = "max_retry_delay must not be lower than retry_delay"
            raise ValueError(msg)
        if self.key_derivation_rounds <= 0:
            msg = "key_derivation_rounds must be positive"
            raise ValueError(msg)
        if self.pbkdf2_iterations <= 0:
            msg = "pbkdf2_iterations must be positive"
            raise ValueError(msg)
        if self.max_concurrent_transfers <= 0:
            msg = "max_concurrent_transfers must be positive"
            raise ValueError(msg)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.retry_delay * (2 ** (attempt - 1)), self.max_retry_delay)
