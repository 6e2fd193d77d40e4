"""Send a text through the gateway and record it as an agent message.

The sent message is admitted through the dedup gate under the gateway's key
id, so the next sync of the chat sees it as already imported.
"""

from __future__ import annotations

from dataclasses import dataclass

from inboxsync.infra.time import utc_now
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context
from inboxsync.whatsapp.evolution_client import ID_SOURCE_MESSAGE_KEY, EvolutionClient
from inboxsync.whatsapp.models import NormalizedMessage
from inboxsync.whatsapp.normalizer import parse_timestamp

from .dedupe import DedupGate
from .errors import ConversationNotFoundError, SetupError
from .run import RunContext
from .store import SyncStore
from .sync import ConversationSynchronizer

logger = get_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    conversation_id: str
    external_id: str | None
    recorded: bool


def send_text_and_record(
    ctx: RunContext,
    *,
    store: SyncStore,
    gateway: EvolutionClient,
    gate: DedupGate,
    synchronizer: ConversationSynchronizer,
    conversation_id: str,
    text: str,
) -> SendResult:
    """Send `text` to the conversation's chat and persist it.

    Raises:
        ConversationNotFoundError: Unknown conversation for the tenant.
        SetupError: Conversation has no chat address to send to.
        GatewayError: The send itself failed (nothing is recorded).
    """
    conversation = store.get_conversation(ctx.company_id, conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(f"conversation {conversation_id} not found")

    remote_jid = synchronizer.remote_jid_for(ctx, conversation)
    if not remote_jid:
        raise SetupError("conversation has no remote chat address")

    response = gateway.send_text(ctx.instance_name, remote_jid, text)
    key = response.get("key") if isinstance(response.get("key"), dict) else {}
    external_id = key.get("id") if isinstance(key.get("id"), str) else None

    message = NormalizedMessage(
        external_id=external_id,
        content=text,
        timestamp=parse_timestamp(response.get("messageTimestamp")) or utc_now(),
        from_me=True,
        sender_type="agent",
        remote_jid=remote_jid,
        message_type="conversation",
        id_source=ID_SOURCE_MESSAGE_KEY if external_id else None,
    )
    # The gateway key identifies this send; only a keyless send falls back to fuzzy matching
    admitted = gate.admit(conversation.id, [message], source="send", fuzzy=external_id is None)
    if admitted.newest is not None:
        store.bump_conversation_recency(conversation.id, admitted.newest)

    logger.info(
        "outbound message recorded",
        extra={
            "extra_fields": safe_log_context(
                conversation_id=conversation.id,
                has_external_id=external_id is not None,
                recorded=bool(admitted.inserted),
            )
        },
    )
    return SendResult(
        conversation_id=conversation.id,
        external_id=external_id,
        recorded=bool(admitted.inserted),
    )
