from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class UpstreamProvider(ABC):
    """
    An interface for the metered upstream API.

    Implementations perform exactly one network call per ``invoke`` and
    raise on failure; retrying, failover and quota accounting are the
    dispatcher's job.
    """

    @abstractmethod
    async def invoke(
        self, credential: str, operation: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Performs one upstream operation.

        Args:
            credential: The credential secret to authenticate with.
            operation: Operation name, also the key of the quota cost table.
            params: Operation parameters.

        Returns:
            The decoded upstream result.
        """
        pass

    async def close(self) -> None:
        """Releases any network resources held by the provider."""
        return None
