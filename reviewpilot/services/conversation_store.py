"""
Persisted per-phone conversation state

Callers must hold conversation_lock(phone) around a load and the commit
that follows it. The row lock below covers writers that bypass Redis.
"""
from typing import Optional

from sqlalchemy.orm import Session

from reviewpilot.db.models import ConversationState, ConversationStateType


def load_state(db: Session, phone: str, account_id: Optional[int] = None) -> ConversationState:
    """Fetch the phone's state row with a row lock, creating an IDLE one on first contact"""
    state = db.query(ConversationState).filter(
        ConversationState.phone == phone
    ).with_for_update().first()

    if state is None:
        state = ConversationState(
            phone=phone,
            account_id=account_id,
            state=ConversationStateType.IDLE.value,
        )
        db.add(state)
        db.flush()
    elif account_id is not None and state.account_id != account_id:
        state.account_id = account_id

    return state


def transition(state: ConversationState, new_state: ConversationStateType,
               review_id: Optional[int] = None, draft_id: Optional[int] = None) -> None:
    """
    Move to a new state. Entering AWAITING_APPROVAL sets the item in flight,
    returning to IDLE clears it, other states keep it.
    """
    state.state = new_state.value
    if new_state == ConversationStateType.AWAITING_APPROVAL:
        state.pending_review_id = review_id
        state.pending_draft_id = draft_id
    elif new_state == ConversationStateType.IDLE:
        state.pending_review_id = None
        state.pending_draft_id = None
