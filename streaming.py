from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional, Sequence

from ai import ERROR_MARKER, TransportFailure
from node_models import ChatMessage, estimate_tokens

if TYPE_CHECKING:
    from conversation import ConversationController

Transport = Callable[[Sequence[ChatMessage], Optional[str]], AsyncIterator[str]]


@dataclass(frozen=True)
class StreamResult:
    node_id: str
    fragments: int
    output_tokens: int
    error: Optional[str] = None


class StreamingCoordinator:
    """Feeds transport fragments into an assistant node, in delivery order."""

    def __init__(self, controller: "ConversationController", transport: Transport) -> None:
        self._controller = controller
        self._transport = transport

    async def stream(
        self,
        node_id: str,
        history: Sequence[ChatMessage],
        highlighted_text: Optional[str] = None,
    ) -> StreamResult:
        fragments = 0
        output_tokens = 0
        try:
            async for fragment in self._transport(history, highlighted_text):
                if not fragment:
                    continue
                tokens = estimate_tokens(fragment)
                self._controller.append_content(node_id, fragment, output_tokens=tokens)
                fragments += 1
                output_tokens += tokens
        except TransportFailure as exc:
            # Partial output stays; the failure is shown inline.
            self._controller.append_content(node_id, ERROR_MARKER.format(message=exc.message))
            return StreamResult(node_id, fragments, output_tokens, exc.message)
        return StreamResult(node_id, fragments, output_tokens)
