"""
Output handlers.

Any async callable taking a list of logs works as an output; these are the
bundled HTTP ones.
"""

from .http import HttpOutput, LokiOutput, convert_to_loki_streams

__all__ = ["HttpOutput", "LokiOutput", "convert_to_loki_streams"]
