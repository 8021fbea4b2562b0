"""OpenAI-compatible chat-completions proxy in front of an NVIDIA NIM endpoint.

Requests are validated, translated to the upstream schema and relayed back
(buffered JSON or a server-sent event stream) with errors normalised into a
single ``{"error": {...}}`` envelope.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
