"""Summarisation of the conversation prefix that no longer fits the budget."""

from palimpsest.summarization.summarizer import (
    LLMCall,
    LLMSummarizer,
    Summarizer,
    SummaryResult,
    concatenate_messages,
    make_llm_call,
)

__all__ = [
    "LLMCall",
    "LLMSummarizer",
    "Summarizer",
    "SummaryResult",
    "concatenate_messages",
    "make_llm_call",
]
