"""Wire decoding, chunk translation and request building."""

from agent_bridge.protocol.request import ResponseRequest, convert_to_input
from agent_bridge.protocol.translator import ChunkTranslator, StepOutcome
from agent_bridge.protocol.wire import SSEDecoder, decode_frame, decode_ws_message

__all__ = [
    "ChunkTranslator",
    "ResponseRequest",
    "SSEDecoder",
    "StepOutcome",
    "convert_to_input",
    "decode_frame",
    "decode_ws_message",
]
