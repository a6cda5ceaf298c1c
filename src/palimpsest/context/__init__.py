"""Context assembly components."""

from palimpsest.context.assembler import ContextAssembler
from palimpsest.context.instructions import inject_instructions
from palimpsest.context.packer import REPLY_PRIMING_TOKENS, PackResult, pack_context
from palimpsest.context.summary import SummaryCoordinator, SummaryResolution
from palimpsest.context.threader import find_latest_summary, thread_messages
from palimpsest.context.token_map import build_token_count_map

__all__ = [
    "ContextAssembler",
    "PackResult",
    "REPLY_PRIMING_TOKENS",
    "SummaryCoordinator",
    "SummaryResolution",
    "build_token_count_map",
    "find_latest_summary",
    "inject_instructions",
    "pack_context",
    "thread_messages",
]
