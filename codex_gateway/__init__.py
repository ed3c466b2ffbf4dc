"""OpenAI-compatible gateway in front of the ChatGPT Codex Responses API."""

__version__ = "0.1.0"
