"""Token accounting."""

from palimpsest.tokens.counter import TokenCounter, token_count

__all__ = ["TokenCounter", "token_count"]
