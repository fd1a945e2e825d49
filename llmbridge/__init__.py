"""Protocol adapter between canonical chat requests and a LiteLLM gateway.

The gateway adapter lives in ``llmbridge.model_provider.litellm``; the
canonical request/response types in ``llmbridge.model_provider.types``.
"""

__version__ = "0.1.0"
