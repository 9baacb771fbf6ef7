"""Abstract base class for generation providers.

A provider performs exactly one HTTP exchange per call and never retries or
classifies failures itself; that is the RetryScheduler's job. Transport
failures (timeouts, refused connections) surface as TransientNetworkError.
"""

from abc import ABC, abstractmethod

from genorch.schemas.generation import GenerationRequest, ProviderResponse


class GenerationProvider(ABC):
    """Async interface every generation backend implements."""

    @abstractmethod
    async def send(self, request: GenerationRequest) -> ProviderResponse:
        """Submit one generation request.

        Args:
            request: The image or video request to submit.

        Returns:
            The raw response. Non-2xx responses are returned, not raised.
        """
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> ProviderResponse:
        """Fetch the status of an asynchronous provider task."""
        ...

    @abstractmethod
    def endpoint_key(self, request: GenerationRequest) -> str:
        """Key under which rate-limit events for this request are tracked."""
        ...

    async def close(self) -> None:
        """Release transport resources. Default is a no-op."""
        return None
