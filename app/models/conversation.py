from enum import Enum


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SenderType(str, Enum):
    USER = "user"
    BOT = "bot"
    AGENT = "agent"


class ConversationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
