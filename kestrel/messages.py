"""Conversation data model shared by providers, the compactor and the store."""

from dataclasses import dataclass, field

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict
    type: str = field(default="tool_use", init=False)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


@dataclass(frozen=True)
class ImageBlock:
    media_type: str
    data: str  # base64
    type: str = field(default="image", init=False)


@dataclass
class Message:
    role: str
    content: list = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(ROLE_USER, [TextBlock(text)])

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls(ROLE_ASSISTANT, [TextBlock(text)])

    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def has_text(self) -> bool:
        return any(isinstance(b, TextBlock) for b in self.content)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


@dataclass(frozen=True)
class ToolCallRequest:
    """A complete tool call reassembled from a provider stream."""

    id: str
    name: str
    input: dict
    input_error: str | None = None

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(self.id, self.name, self.input)


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


# -- JSON codec --------------------------------------------------------------


def block_to_dict(block) -> dict:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    if isinstance(block, ImageBlock):
        return {"type": "image", "media_type": block.media_type, "data": block.data}
    raise TypeError(f"unknown content block: {block!r}")


def block_from_dict(data: dict):
    kind = data.get("type")
    if kind == "text":
        return TextBlock(data.get("text", ""))
    if kind == "tool_use":
        return ToolUseBlock(data["id"], data["name"], data.get("input") or {})
    if kind == "tool_result":
        return ToolResultBlock(
            data["tool_use_id"], data.get("content", ""), bool(data.get("is_error"))
        )
    if kind == "image":
        return ImageBlock(data.get("media_type", ""), data.get("data", ""))
    raise ValueError(f"unknown content block type: {kind!r}")


def message_to_dict(msg: Message) -> dict:
    return {"role": msg.role, "content": [block_to_dict(b) for b in msg.content]}


def message_from_dict(data: dict) -> Message:
    role = data.get("role")
    if role not in (ROLE_USER, ROLE_ASSISTANT):
        raise ValueError(f"invalid message role: {role!r}")
    return Message(role, [block_from_dict(b) for b in data.get("content", [])])
