from turnrelay.services.conversation_service import (
    ConversationStore,
    HandleAssignment,
    SenderRecord,
    get_or_create_sender,
    set_conversation_handle,
)
from turnrelay.services.message_service import sanitize_text, save_message
