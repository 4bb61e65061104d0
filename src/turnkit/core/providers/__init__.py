from .openai_compat import OpenAICompatibleProvider, ProviderError, RETRYABLE_HTTP_CODES

__all__ = ["OpenAICompatibleProvider", "ProviderError", "RETRYABLE_HTTP_CODES"]
