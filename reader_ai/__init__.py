"""Article summarization and translation over interchangeable inference backends.

This package provides:
- An on-device worker host that owns one resident transformers model
- A platform-native backend (local Ollama daemon) with download semantics
- A rate-limited FastAPI proxy in front of the Gemini API
- The orchestrator that picks a usable backend per request
"""

__version__ = "0.1.0"
