"""
SMS command parser

Turns an inbound SMS body into a command relative to the owner's current
conversation state. Case-insensitive and whitespace-trimmed, with a fixed
typo table for the commands owners mistype most.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from reviewpilot.db.models import ConversationStateType


class CommandType(str, Enum):
    APPROVE = "APPROVE"
    EDIT = "EDIT"
    IGNORE = "IGNORE"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    STATUS = "STATUS"
    BILLING = "BILLING"
    CANCEL = "CANCEL"
    HELP = "HELP"
    STOP = "STOP"
    CANCEL_CONFIRM = "CANCEL_CONFIRM"
    CANCEL_DENY = "CANCEL_DENY"
    CUSTOM_REPLY = "CUSTOM_REPLY"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ParsedCommand:
    type: CommandType
    raw: str
    body: Optional[str] = None  # replacement reply text for CUSTOM_REPLY


EXACT_COMMANDS = {
    "APPROVE": CommandType.APPROVE,
    "EDIT": CommandType.EDIT,
    "IGNORE": CommandType.IGNORE,
    "PAUSE": CommandType.PAUSE,
    "RESUME": CommandType.RESUME,
    "STATUS": CommandType.STATUS,
    "BILLING": CommandType.BILLING,
    "CANCEL": CommandType.CANCEL,
    "HELP": CommandType.HELP,
    "STOP": CommandType.STOP,
    "YES": CommandType.CANCEL_CONFIRM,
    "NO": CommandType.CANCEL_DENY,
}

FUZZY_COMMANDS = {
    "APROVE": CommandType.APPROVE,
    "APPROV": CommandType.APPROVE,
    "APRROVE": CommandType.APPROVE,
    "APORVE": CommandType.APPROVE,
    "EDTI": CommandType.EDIT,
    "IGNOR": CommandType.IGNORE,
    "INGNORE": CommandType.IGNORE,
    "PAUS": CommandType.PAUSE,
    "PASUE": CommandType.PAUSE,
    "RESUM": CommandType.RESUME,
    "RSUME": CommandType.RESUME,
    "STAUTS": CommandType.STATUS,
    "STATS": CommandType.STATUS,
    "STAUS": CommandType.STATUS,
    "BILING": CommandType.BILLING,
    "BILLIN": CommandType.BILLING,
    "CANCLE": CommandType.CANCEL,
    "CANEL": CommandType.CANCEL,
    "HLEP": CommandType.HELP,
    "HEPL": CommandType.HELP,
    "STPO": CommandType.STOP,
    "SOTP": CommandType.STOP,
    "Y": CommandType.CANCEL_CONFIRM,
    "YEP": CommandType.CANCEL_CONFIRM,
    "YEAH": CommandType.CANCEL_CONFIRM,
    "YA": CommandType.CANCEL_CONFIRM,
    "NOPE": CommandType.CANCEL_DENY,
    "NAH": CommandType.CANCEL_DENY,
    "N": CommandType.CANCEL_DENY,
}

CANCEL_AFFIRMATIVES = frozenset({"YES", "Y", "YEP", "YEAH", "YA"})

# Only meaningful while a cancellation is awaiting confirmation
CONFIRMATION_COMMANDS = frozenset({CommandType.CANCEL_CONFIRM, CommandType.CANCEL_DENY})

# Older clients and logs use the lowercase context names
_LEGACY_STATES = {
    "waiting_for_custom_reply": ConversationStateType.AWAITING_CUSTOM_REPLY,
    "waiting_for_cancel_confirm": ConversationStateType.AWAITING_CANCEL_CONFIRM,
}


def _normalize_state(state: Union[ConversationStateType, str, None]) -> Optional[ConversationStateType]:
    if state is None or isinstance(state, ConversationStateType):
        return state
    if state in _LEGACY_STATES:
        return _LEGACY_STATES[state]
    try:
        return ConversationStateType(state)
    except ValueError:
        return None


def parse_command(raw_text: Optional[str],
                  current_state: Union[ConversationStateType, str, None] = None) -> ParsedCommand:
    """
    Parse an inbound SMS body.

    Args:
        raw_text: SMS body exactly as received
        current_state: The phone's conversation state, if any

    Returns:
        ParsedCommand. CUSTOM_REPLY carries the trimmed original text in
        `body` with its casing preserved.
    """
    raw = (raw_text or "").strip()
    normalized = raw.upper()
    state = _normalize_state(current_state)

    if state == ConversationStateType.AWAITING_CUSTOM_REPLY:
        override = EXACT_COMMANDS.get(normalized)
        if override is not None and override not in CONFIRMATION_COMMANDS:
            return ParsedCommand(type=override, raw=raw)
        return ParsedCommand(type=CommandType.CUSTOM_REPLY, raw=raw, body=raw)

    if state == ConversationStateType.AWAITING_CANCEL_CONFIRM:
        if normalized in CANCEL_AFFIRMATIVES:
            return ParsedCommand(type=CommandType.CANCEL_CONFIRM, raw=raw)
        # Anything ambiguous keeps the subscription
        return ParsedCommand(type=CommandType.CANCEL_DENY, raw=raw)

    command = EXACT_COMMANDS.get(normalized) or FUZZY_COMMANDS.get(normalized)
    if command is None or command in CONFIRMATION_COMMANDS:
        return ParsedCommand(type=CommandType.UNKNOWN, raw=raw)

    return ParsedCommand(type=command, raw=raw)
