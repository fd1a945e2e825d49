"""Root exception shared by the token budget and the gateway adapter."""


class LiteLLMError(Exception):
    """Base class for gateway adapter errors."""
    pass
