from reader_ai.cloud.gemini import GeminiClient, GeminiCompletion, classify_gemini_error
from reader_ai.cloud.keys import ApiKeyStore

__all__ = ["ApiKeyStore", "GeminiClient", "GeminiCompletion", "classify_gemini_error"]
