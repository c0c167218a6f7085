"""
LogTrains - Explain recent command output with a local language model.

LogTrains keeps a bounded history of captured command output and fits the
parts most likely to matter into a small model's context window:
- Durable, ordered capture history (one file per command)
- Explicit selection: the last N captures, or the one K steps back
- Budget-aware head/tail truncation with a visible elision marker
- Pluggable inference engine (Ollama by default)

Example usage:
    $ logtrains run -- make test
    $ logtrains explain --last 2
    $ journalctl -u nginx | logtrains explain
"""

__version__ = "0.1.0"
__author__ = "LogTrains Contributors"

__all__ = [
    "__version__",
    "__author__",
]
