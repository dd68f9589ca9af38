from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class ProviderAdapter(ABC):
    """Abstract base class for generative-AI provider adapters.

    Implementations should be side-effect free constructors. The rate limiter
    treats ``generate_content`` as opaque: it is called once per dispatched
    request and its result or exception is handed back to the caller.
    """

    name: str = "provider"

    @abstractmethod
    async def generate_content(
        self,
        model: str,
        contents: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run one generation request and return the provider's raw response.

        The returned mapping carries the provider payload plus a ``text`` key
        holding the concatenated text of the first candidate, if any.
        """
