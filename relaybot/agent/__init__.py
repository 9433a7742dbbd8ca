"""Turn assembly: coalescing, group policy and dispatch."""

from relaybot.agent.coalescer import CoalescingScheduler, FragmentKind, MessageFragment, combine_fragments
from relaybot.agent.dispatcher import DispatchPolicy, TurnDispatcher

__all__ = [
    "CoalescingScheduler",
    "DispatchPolicy",
    "FragmentKind",
    "MessageFragment",
    "TurnDispatcher",
    "combine_fragments",
]
