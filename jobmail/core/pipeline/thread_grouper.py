"""
Thread grouping.

Messages sharing a conversation id form a thread. Only the earliest message
(the representative) goes through classification and extraction; the other
members inherit its result.
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple
import logging

from jobmail.core.email.models import ExtractedEmail

logger = logging.getLogger(__name__)


@dataclass
class ThreadGroup:
    conversation_id: str
    messages: List[ExtractedEmail] = field(default_factory=list)

    @property
    def representative(self) -> ExtractedEmail:
        return self.messages[0]

    @property
    def members(self) -> List[ExtractedEmail]:
        """Every message except the representative, oldest first."""
        return self.messages[1:]

    def __len__(self) -> int:
        return len(self.messages)


class ThreadGrouper:
    """Split messages into multi-message threads and orphans."""

    def group(self, messages: Sequence[ExtractedEmail]) -> Tuple[List[ThreadGroup], List[ExtractedEmail]]:
        """
        Returns:
            (threads, orphans). Threads have two or more messages sorted oldest
            first; orphans have no conversation id or are alone in theirs.
        """
        by_conversation: "OrderedDict[str, List[ExtractedEmail]]" = OrderedDict()
        orphans: List[ExtractedEmail] = []

        for message in messages:
            if message.conversation_id:
                by_conversation.setdefault(message.conversation_id, []).append(message)
            else:
                orphans.append(message)

        threads: List[ThreadGroup] = []
        for conversation_id, members in by_conversation.items():
            # A lone message of a conversation is matched pairwise like a message with
            # no conversation id. The runner first routes it to the conversation's job
            # when an earlier sync already linked one.
            if len(members) == 1:
                orphans.append(members[0])
                continue
            members.sort(key=lambda m: (m.received_at, m.message_id))
            threads.append(ThreadGroup(conversation_id=conversation_id, messages=members))

        threads.sort(key=lambda t: t.representative.received_at)
        orphans.sort(key=lambda m: (m.received_at, m.message_id))
        logger.info(f"Grouped {len(messages)} messages into {len(threads)} threads and {len(orphans)} orphans")
        return threads, orphans
