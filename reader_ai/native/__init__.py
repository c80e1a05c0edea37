from reader_ai.native.ollama import OllamaBridge

__all__ = ["OllamaBridge"]
