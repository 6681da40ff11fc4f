from typing import Any, Dict


class SchedulerSettings:
    """Typed accessors for the ``scheduler`` section of the app configuration.

    Only the transport and startup knobs of the post scheduler live here;
    platform secrets are read from the environment by
    :class:`~sheska.configuration.credentials.PlatformCredentials`.
    """

    def __init__(self, data: Dict[str, Any] | None = None) -> None:
        self.data: Dict[str, Any] = data or {}

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for `key` or `default` if missing."""
        return self.data.get(key, default)

    def as_dict(self) -> Dict[str, Any]:
        """Return the underlying mapping."""
        return self.data

    @property
    def max_retries(self) -> int:
        """Retries performed after the first attempt of a non-successful request."""
        return max(0, int(self.data.get("max_retries", 3)))

    @property
    def retry_delay_seconds(self) -> float:
        """Backoff step; retry ``n`` waits ``n * retry_delay_seconds``."""
        return max(0.0, float(self.data.get("retry_delay_seconds", 5.0)))

    @property
    def connect_attempts(self) -> int:
        return max(1, int(self.data.get("connect_attempts", 5)))

    @property
    def connect_timeout_seconds(self) -> float:
        return float(self.data.get("connect_timeout_seconds", 15.0))

    @property
    def max_connections(self) -> int:
        return max(1, int(self.data.get("max_connections", 4)))

    @property
    def synchronize_delay_seconds(self) -> float:
        return max(0.0, float(self.data.get("synchronize_delay_seconds", 1.0)))
